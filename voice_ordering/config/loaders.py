"""
YAML loading for the service configuration.

Relative paths resolve against the project root (the directory holding
``config/``). ``${VAR}`` and ``$VAR`` references are expanded from the
environment before parsing; unknown variables are left as written.
"""

import os
from pathlib import Path
from typing import Any, Dict, Union

import yaml

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def resolve_config_path(path: Union[str, os.PathLike]) -> str:
    candidate = Path(path)
    if candidate.is_absolute():
        return str(candidate)
    return str(PROJECT_ROOT / candidate)


def load_yaml_with_env_expansion(path: Union[str, os.PathLike]) -> Dict[str, Any]:
    """
    Read ``path``, expand environment references and parse the YAML mapping.

    Returns:
        The parsed mapping; an empty document yields ``{}``

    Raises:
        FileNotFoundError: the file does not exist
        yaml.YAMLError: the text is not valid YAML or its top level is not a mapping
    """
    config_path = Path(path)
    if not config_path.is_file():
        raise FileNotFoundError(f"Configuration file not found at: {config_path}")

    text = os.path.expandvars(config_path.read_text(encoding="utf-8"))
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML configuration {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"Top level of {config_path} must be a mapping, got {type(data).__name__}")
    return data
