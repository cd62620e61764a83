import os
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from .models import ClipforgeConfig

DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "CLIPFORGE_WORK_ROOT": ("workspace", "root"),
    "CLIPFORGE_STORAGE_BACKEND": ("storage", "backend"),
    "CLIPFORGE_STORAGE_ROOT": ("storage", "local_root"),
    "CLIPFORGE_QUEUE_BACKEND": ("queue", "backend"),
    "CLIPFORGE_QUEUE_DB": ("queue", "db_path"),
    "CLIPFORGE_STALL_TIMEOUT_S": ("progress", "stall_timeout_s"),
    "R2_BUCKET_NAME": ("storage", "bucket"),
    "R2_ENDPOINT": ("storage", "endpoint_url"),
    "R2_ACCESS_KEY_ID": ("storage", "access_key_id"),
    "R2_SECRET_ACCESS_KEY": ("storage", "secret_access_key"),
    "CLOUDFLARE_ACCOUNT_ID": ("queue", "account_id"),
    "CLOUDFLARE_API_TOKEN": ("queue", "api_token"),
    "CLOUDFLARE_QUEUE_NAME": ("queue", "queue_name"),
}


def get_config_value(config: Union[ClipforgeConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: ClipforgeConfig model or dict
        path: Dot-separated path like "deadline.base_minutes"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, ClipforgeConfig):
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


def env_overrides(environ: Dict[str, str] = None) -> Dict[str, Any]:
    """Collect config overrides from environment variables that are set."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def resolve_config(cli_args: Dict[str, Any] = None) -> ClipforgeConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic ClipforgeConfig model.
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides())

    config = ClipforgeConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
