"""
Configuration package for the voice ordering service.

This package contains:
- models: pydantic configuration sections and AppConfig
- loaders: YAML file loading and path resolution
- security: API key injection from the environment
- defaults: environment variable overrides
- validation: startup checks of a loaded configuration
"""

import os
from typing import Optional

from voice_ordering.config.defaults import apply_env_overrides, apply_logging_defaults
from voice_ordering.config.loaders import load_yaml_with_env_expansion, resolve_config_path
from voice_ordering.config.models import (
    AppConfig,
    AudioConfig,
    ConversationConfig,
    LoggingConfig,
    MenuItemConfig,
    OpenAIProviderConfig,
    OrderConfig,
    PipelineConfig,
    ProvidersConfig,
    RateLimitConfig,
    RealtimeConfig,
    SessionConfig,
)
from voice_ordering.config.security import inject_provider_api_keys
from voice_ordering.config.validation import validate_config

DEFAULT_CONFIG_PATH = "config/voice-ordering.yaml"


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load and validate configuration from a YAML file.

    Args:
        path: Path to YAML configuration file (absolute or relative to project root).
              Defaults to $VOICE_ORDERING_CONFIG or config/voice-ordering.yaml.

    Returns:
        Validated AppConfig instance

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
        pydantic.ValidationError: If values have the wrong shape
    """
    path = path or os.getenv("VOICE_ORDERING_CONFIG") or DEFAULT_CONFIG_PATH

    # Phase 1: Load YAML file with environment variable expansion
    config_data = load_yaml_with_env_expansion(resolve_config_path(path))

    # Phase 2: Security - credentials from environment variables only
    inject_provider_api_keys(config_data)

    # Phase 3: Environment overrides and defaults
    apply_env_overrides(config_data)
    apply_logging_defaults(config_data)

    # Phase 4: Validate and return
    return AppConfig(**config_data)


__all__ = [
    'AppConfig',
    'AudioConfig',
    'ConversationConfig',
    'LoggingConfig',
    'MenuItemConfig',
    'OpenAIProviderConfig',
    'OrderConfig',
    'PipelineConfig',
    'ProvidersConfig',
    'RateLimitConfig',
    'RealtimeConfig',
    'SessionConfig',
    'load_config',
    'resolve_config_path',
    'load_yaml_with_env_expansion',
    'validate_config',
]
