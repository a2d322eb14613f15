"""
Structured logging for the voice ordering service.

``configure_logging()`` routes structlog through the stdlib ``logging`` module so
uvicorn, aiohttp and our own loggers share one set of handlers. Every event is
stamped with the service name, the emitting component and, while a voice turn
is being processed, a correlation id equal to the session id. Secrets are
redacted before rendering.
"""

import contextvars
import logging
import os
import sys
import time
import uuid
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

import structlog
from structlog import dev as structlog_dev

SERVICE_NAME = "voice-ordering"
REDACTED = "***REDACTED***"

correlation_id_var: contextvars.ContextVar = contextvars.ContextVar("correlation_id", default=None)

SENSITIVE_KEYS = {
    "api_key", "apikey", "api-key", "api_keys",
    "token", "access_token", "refresh_token", "auth_token", "bearer",
    "ephemeral_key", "ephemeral_token",
    "password", "passwd", "pwd", "pass",
    "authorization", "auth",
    "credential", "credentials", "secret", "secrets",
    "client_secret", "client-secret", "clientsecret",
}


def _normalize_key(key: Any) -> str:
    return str(key).lower().replace("_", "").replace("-", "")


_SENSITIVE_SUFFIXES = tuple(sorted({_normalize_key(k) for k in SENSITIVE_KEYS}))


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(value: Optional[str] = None) -> contextvars.Token:
    """Bind ``value`` (a fresh uuid4 when omitted); pass the result to reset_correlation_id."""
    return correlation_id_var.set(value or str(uuid.uuid4()))


def reset_correlation_id(token: contextvars.Token) -> None:
    correlation_id_var.reset(token)


def add_correlation_id(logger, method_name, event_dict):
    correlation_id = get_correlation_id()
    if correlation_id:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def add_service_context(logger, method_name, event_dict):
    event_dict["service"] = SERVICE_NAME
    component = event_dict.get("logger")
    if not component:
        stdlib_logger = getattr(logger, "logger", None)
        component = getattr(stdlib_logger, "name", None) or getattr(logger, "name", "unknown")
    event_dict["component"] = component
    return event_dict


def _is_sensitive_key(key: Any) -> bool:
    # Suffix match: "user_password" is sensitive, "passthrough_formats" is not
    return _normalize_key(key).endswith(_SENSITIVE_SUFFIXES)


def _redact(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        if not value:
            return ""
        # The two-character prefix ("sk", "ek") identifies the credential family
        return f"{value[:2]}{REDACTED}" if len(value) > 4 else REDACTED
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    if isinstance(value, dict):
        return {k: _redact(v) for k, v in value.items()}
    return REDACTED


def _sanitize(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _redact(v) if _is_sensitive_key(k) else _sanitize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(v) if isinstance(v, dict) else v for v in value]
    return value


def sanitize_secrets(logger, method_name, event_dict):
    """
    Redact secrets from a log event.

    Keys are compared case-insensitively with ``_`` and ``-`` ignored; a key is
    sensitive when it ends with one of ``SENSITIVE_KEYS`` (provider API keys,
    realtime client secrets and ephemeral tokens, authorization headers,
    passwords). Nested dicts and dicts inside lists are walked.
    """
    return _sanitize(event_dict)


@dataclass
class LogSettings:
    level: str = "INFO"
    fmt: str = "json"
    color: bool = True
    to_file: bool = False
    file_path: str = "service.log"
    show_tracebacks: bool = False


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _settings_from_env(log_level: str, log_to_file: bool, log_file_path: str) -> LogSettings:
    level = (os.getenv("LOG_LEVEL") or log_level or "INFO").upper()
    tracebacks = os.getenv("LOG_SHOW_TRACEBACKS", "auto").strip().lower()
    return LogSettings(
        level=level,
        fmt=os.getenv("LOG_FORMAT", "json").strip().lower(),
        color=_env_flag("LOG_COLOR", "1"),
        to_file=_env_flag("LOG_TO_FILE", "0") if os.getenv("LOG_TO_FILE") is not None else log_to_file,
        file_path=os.getenv("LOG_FILE_PATH", log_file_path),
        show_tracebacks=tracebacks == "always" or (tracebacks == "auto" and level == "DEBUG"),
    )


def _file_handler(settings: LogSettings, service_name: str) -> Optional[logging.Handler]:
    stamp = time.strftime("%Y%m%d-%H%M%S")
    path = settings.file_path
    if path.endswith(os.sep) or os.path.isdir(path):
        path = os.path.join(path, f"{service_name}-{stamp}.log")
    else:
        path = path.replace("{ts}", stamp)
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)
    except OSError as e:
        get_logger(__name__).warning("File logging disabled", error=str(e), configured_path=settings.file_path)
        return None
    get_logger(__name__).info("File logging configured", log_file_path=path)
    return handler


def configure_logging(log_level="INFO", log_to_file=False, log_file_path="service.log", service_name=SERVICE_NAME):
    """
    Install structlog and the root handlers.

    Environment overrides: LOG_LEVEL, LOG_FORMAT (json|console), LOG_COLOR,
    LOG_TO_FILE, LOG_FILE_PATH (a directory or a path containing ``{ts}``),
    LOG_SHOW_TRACEBACKS (auto|always|never; auto shows them at DEBUG).
    """
    settings = _settings_from_env(str(log_level), log_to_file, log_file_path)

    def drop_exc_info(logger, method_name, event_dict):
        if not settings.show_tracebacks:
            event_dict.pop("exc_info", None)
        return event_dict

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_service_context,
            add_correlation_id,
            sanitize_secrets,
            drop_exc_info,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if settings.fmt == "console":
        renderer = structlog_dev.ConsoleRenderer(colors=settings.color)
    else:
        renderer = structlog.processors.JSONRenderer()
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
        ],
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, settings.level, logging.INFO))
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root.addHandler(stdout_handler)

    if settings.to_file:
        handler = _file_handler(settings, service_name)
        if handler is not None:
            handler.setFormatter(formatter)
            root.addHandler(handler)

    for name in ("aiohttp", "asyncio", "websockets", "uvicorn.access", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str):
    return structlog.get_logger(name)
