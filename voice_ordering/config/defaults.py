"""
Environment variable overrides applied on top of YAML values.

Each entry maps an environment variable to a (section, key, caster) triple.
Values that fail to cast are ignored so a typo never blocks startup.
"""

import os
from typing import Any, Callable, Dict, Tuple

import structlog

logger = structlog.get_logger(__name__)


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "VOICE_SESSION_IDLE_TIMEOUT_MINUTES": ("session", "idle_timeout_minutes", float),
    "VOICE_SESSION_CLEANUP_INTERVAL_SECONDS": ("session", "cleanup_interval_seconds", float),
    "VOICE_SESSION_MAX_TURNS": ("session", "max_turns", int),
    "VOICE_CONVERSATION_WINDOW_SIZE": ("conversation", "window_size", int),
    "VOICE_RATE_LIMIT_REQUESTS_PER_MINUTE": ("rate_limit", "requests_per_minute", int),
    "VOICE_RATE_LIMIT_REQUESTS_PER_HOUR": ("rate_limit", "requests_per_hour", int),
    "VOICE_RATE_LIMIT_AUDIO_MINUTES_PER_HOUR": ("rate_limit", "audio_minutes_per_hour", int),
    "VOICE_AUDIO_TEMP_DIR": ("audio", "temp_dir", str),
    "VOICE_AUDIO_MAX_FILE_SIZE_MB": ("audio", "max_file_size_mb", int),
    "VOICE_PIPELINE_MAX_ATTEMPTS": ("pipeline", "max_attempts", int),
    "VOICE_PIPELINE_TIMEOUT_SECONDS": ("pipeline", "request_timeout_seconds", float),
    "VOICE_REALTIME_MODEL": ("realtime", "model", str),
    "VOICE_REALTIME_VOICE": ("realtime", "voice", str),
    "VOICE_REALTIME_GRACE_PERIOD_SECONDS": ("realtime", "grace_period_seconds", float),
    "VOICE_ORDER_TAX_RATE": ("order", "tax_rate", float),
    "VOICE_ORDER_REQUIRE_EMAIL": ("order", "require_email", _as_bool),
}


def apply_env_overrides(config_data: Dict[str, Any]) -> None:
    """
    Apply environment variable overrides to the raw configuration dictionary.

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    for env_name, (section, key, caster) in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = caster(raw)
        except ValueError:
            logger.warning("Ignoring invalid environment override", variable=env_name, value=raw)
            continue
        section_cfg = config_data.get(section)
        if not isinstance(section_cfg, dict):
            section_cfg = {}
            config_data[section] = section_cfg
        section_cfg[key] = value


def apply_logging_defaults(config_data: Dict[str, Any]) -> None:
    logging_cfg = config_data.get('logging')
    if not isinstance(logging_cfg, dict):
        logging_cfg = {}
        config_data['logging'] = logging_cfg
    logging_cfg.setdefault('level', os.getenv('LOG_LEVEL', 'info'))
