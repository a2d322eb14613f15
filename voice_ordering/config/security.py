"""
Security-critical configuration injection.

SECURITY POLICY:
- Provider API keys MUST NEVER be in YAML files
- All credentials come from environment variables only
"""

import os
from typing import Any, Dict


def _is_nonempty_string(val: Any) -> bool:
    return isinstance(val, str) and val.strip() != ""


def inject_provider_api_keys(config_data: Dict[str, Any]) -> None:
    """
    Inject provider API keys from environment variables ONLY.

    Any api_key present in YAML is discarded. The OpenAI key is shared by the
    pipeline adapters and the realtime token issuer.

    Environment variables:
    - OPENAI_API_KEY
    - OPENAI_ORGANIZATION (optional)
    """
    providers = config_data.get('providers')
    if not isinstance(providers, dict):
        providers = {}
        config_data['providers'] = providers

    openai_cfg = providers.get('openai')
    if not isinstance(openai_cfg, dict):
        openai_cfg = {}
        providers['openai'] = openai_cfg

    api_key = os.getenv('OPENAI_API_KEY')
    openai_cfg['api_key'] = api_key if _is_nonempty_string(api_key) else None

    organization = os.getenv('OPENAI_ORGANIZATION')
    if _is_nonempty_string(organization):
        openai_cfg['organization'] = organization
