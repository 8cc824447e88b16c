import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import StationConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")
CONFIG_ENV_VAR = "PDFSTATION_CONFIG"


def get_config_value(config: StationConfig | Dict, path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: StationConfig model or dict
        path: Dot-separated path like "processing.max_retries"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, StationConfig):
        config = config.model_dump()

    value = config
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    base_path: Optional[Path] = None,
) -> StationConfig:
    """
    Resolve config: Default < Local < CLI
    Returns validated Pydantic StationConfig model.

    The base YAML is `base_path`, else $PDFSTATION_CONFIG, else config/default.yaml.
    Raises pydantic.ValidationError if the merged config is invalid.
    """
    cli_args = cli_args or {}

    if base_path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        base_path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH

    config_data = load_yaml(base_path)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    config = StationConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
