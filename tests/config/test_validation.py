"""Unit tests for config.validation."""

from voice_ordering.config import (
    AppConfig,
    AudioConfig,
    MenuItemConfig,
    OpenAIProviderConfig,
    OrderConfig,
    PipelineConfig,
    ProvidersConfig,
    RealtimeConfig,
    SessionConfig,
    validate_config,
)

MENU = [MenuItemConfig(id="burger", name="Classic Burger", price=9.99)]


def _config(**sections) -> AppConfig:
    sections.setdefault("menu", MENU)
    sections.setdefault("providers", ProvidersConfig(openai=OpenAIProviderConfig(api_key="sk-test")))
    return AppConfig(**sections)


def test_valid_config_has_no_findings():
    errors, warnings = validate_config(_config())

    assert errors == []
    assert warnings == []


def test_errors_block_startup():
    config = _config(
        session=SessionConfig(idle_timeout_minutes=0, max_turns=-1),
        pipeline=PipelineConfig(max_attempts=0),
        order=OrderConfig(tax_rate=1.5),
        audio=AudioConfig(supported_formats=["WAV", "mp3"]),
    )

    errors, _ = validate_config(config)

    assert len(errors) == 5
    assert any("idle_timeout_minutes" in e for e in errors)
    assert any("max_attempts" in e for e in errors)
    assert any("tax_rate" in e for e in errors)
    assert any("['WAV']" in e for e in errors)


def test_menu_problems():
    menu = [
        MenuItemConfig(id="burger", name="Classic Burger", price=9.99),
        MenuItemConfig(id="burger", name="Double Burger", price=12.99),
        MenuItemConfig(id="water", name="Water", price=-1.0),
    ]

    errors, _ = validate_config(_config(menu=menu))

    assert "Duplicate menu item ids: ['burger']" in errors
    assert "Menu item water has a negative price" in errors


def test_vad_aggressiveness_out_of_range():
    errors, _ = validate_config(_config(realtime=RealtimeConfig(vad_aggressiveness=5)))

    assert errors == ["realtime.vad_aggressiveness must be 0-3: 5"]


def test_warnings_for_missing_key_and_menu():
    errors, warnings = validate_config(_config(menu=[], providers=ProvidersConfig()))

    assert errors == []
    assert len(warnings) == 2
    assert any("OPENAI_API_KEY" in w for w in warnings)
