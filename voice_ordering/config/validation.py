"""Startup validation of a loaded configuration."""

from typing import List, Tuple

from voice_ordering.config.models import AppConfig


def validate_config(config: AppConfig) -> Tuple[List[str], List[str]]:
    """Check a configuration before the service starts.

    Returns:
        (errors, warnings): errors block startup, warnings are only logged
    """
    errors: List[str] = []
    warnings: List[str] = []

    if config.session.idle_timeout_minutes <= 0:
        errors.append("session.idle_timeout_minutes must be positive")
    if config.session.max_turns < 0:
        errors.append("session.max_turns must not be negative")
    if config.pipeline.max_attempts < 1:
        errors.append("pipeline.max_attempts must be at least 1")
    if config.conversation.window_size < 0:
        errors.append("conversation.window_size must not be negative")
    if not 0 <= config.order.tax_rate < 1:
        errors.append(f"order.tax_rate out of range: {config.order.tax_rate}")
    if config.realtime.vad_aggressiveness not in (0, 1, 2, 3):
        errors.append(f"realtime.vad_aggressiveness must be 0-3: {config.realtime.vad_aggressiveness}")

    unknown_formats = [f for f in config.audio.supported_formats if f != f.lower()]
    if unknown_formats:
        errors.append(f"audio.supported_formats must be lowercase: {unknown_formats}")

    ids = [item.id for item in config.menu]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        errors.append(f"Duplicate menu item ids: {duplicates}")
    for item in config.menu:
        if item.price < 0:
            errors.append(f"Menu item {item.id} has a negative price")

    if not config.menu:
        warnings.append("Menu is empty; no order intents can resolve an item")
    if not config.providers.openai.api_key:
        warnings.append("OPENAI_API_KEY not set; transcription, synthesis and realtime tokens are unavailable")
    if config.rate_limit.requests_per_minute < config.rate_limit.customer_divisor:
        warnings.append("rate_limit.requests_per_minute is below customer_divisor; customers get 1 request/minute")

    return errors, warnings
