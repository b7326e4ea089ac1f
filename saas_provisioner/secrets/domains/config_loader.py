"""Configuration loader for saas-provisioner."""
import copy
import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import yaml

from ...domains.errors import ConfigError
from .preferences import CONFIG_PATH_KEY, get_preference

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = ("onepassword", "gcp")

DEFAULTS: Dict[str, Any] = {
    "secret_store": {"backend": "onepassword"},
    "retry": {},
    "providers": {},
}


def default_config_path() -> Path:
    return Path.home() / ".config" / "saas-provisioner" / "config.yml"


def _get_config_path() -> Optional[str]:
    """
    Get config file path using XDG Base Directory standard.

    Priority order:
    1. User preference (stored in ~/.config/saas-provisioner/preferences.json)
    2. Default location: ~/.config/saas-provisioner/config.yml

    Returns:
        Absolute path to config file, or None when no settings file exists
        (every setting then takes its default)
    """
    # 1. Check user preference
    config_path_pref = get_preference(CONFIG_PATH_KEY)
    if config_path_pref:
        config_path = Path(config_path_pref)
        if config_path.exists():
            logger.debug(f"Using config from preference: {config_path}")
            return str(config_path)
        else:
            logger.warning(f"Config path from preference doesn't exist: {config_path}")

    # 2. Check default location
    default_config = default_config_path()
    if default_config.exists():
        logger.debug(f"Using default config location: {default_config}")
        return str(default_config)

    logger.debug("No config file found, using defaults")
    return None


def _merge_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(DEFAULTS)
    for key, value in config.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def load_config() -> Dict[str, Any]:
    """
    Load and validate the optional settings file.

    Returns:
        Dict containing configuration with keys:
        - secret_store: dict with backend (onepassword | gcp)
        - gcp: dict with project_id (gcp backend only)
        - authentication: dict with service_account_path (optional)
        - retry: retry policy overrides
        - providers: per-provider settings (e.g. database.region)

    Raises:
        ConfigError: If the config file is invalid, names an unknown backend,
            or the gcp backend has no project id
    """
    # Get config path dynamically each time (not cached at module level)
    config_path = _get_config_path()
    if config_path is None:
        return _merge_defaults({})

    # Load YAML
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML config at {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read config file at {config_path}: {e}")

    # Validate required fields
    if not config:
        raise ConfigError(f"Config file at {config_path} is empty")

    if not isinstance(config, dict):
        raise ConfigError(f"Config file at {config_path} must contain a mapping")

    config = _merge_defaults(config)

    backend = config["secret_store"].get("backend", "onepassword")
    if backend not in SUPPORTED_BACKENDS:
        raise ConfigError(
            f"Unsupported secret_store.backend: {backend}\n"
            f"Supported backends: {', '.join(SUPPORTED_BACKENDS)}"
        )

    auth = config.get("authentication")
    if auth:
        if auth.get("type", "service_account") != "service_account":
            raise ConfigError(
                f"Unsupported authentication type: {auth['type']}\n"
                f"Only 'service_account' is supported."
            )

        service_account_path = auth.get("service_account_path")
        if not service_account_path:
            raise ConfigError(
                "Missing 'authentication.service_account_path' in config\n"
                "Please specify the absolute path to your service account JSON file."
            )

        # Validate service account file exists
        if not os.path.exists(service_account_path):
            raise ConfigError(
                f"Service account file not found at: {service_account_path}\n"
                f"Please ensure the file exists or update the path in {config_path}"
            )

        if not os.path.isfile(service_account_path):
            raise ConfigError(
                f"Service account path is not a file: {service_account_path}"
            )

    if backend == "gcp" and not (config.get("gcp") or {}).get("project_id") and not os.getenv("GCP_PROJECT"):
        raise ConfigError(
            f"Missing 'gcp' section in config at {config_path}\n"
            f"The gcp secret store backend requires:\n"
            f"gcp:\n"
            f"  project_id: your-project-id"
        )

    logger.debug(f"Configuration loaded successfully from {config_path}")
    logger.debug(f"Using secret store backend: {backend}")

    return config
