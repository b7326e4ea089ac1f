"""User preferences for saas-provisioner.

Stored as a JSON object in ~/.config/saas-provisioner/preferences.json.
Only non-secret settings live here: which settings file to load and which
vault holds the provider credentials.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# XDG Base Directory standard location
PREFERENCES_DIR = Path.home() / ".config" / "saas-provisioner"
PREFERENCES_FILE = PREFERENCES_DIR / "preferences.json"

CONFIG_PATH_KEY = "config_path"
MASTER_VAULT_KEY = "master_vault"


def _read() -> Dict[str, Any]:
    """
    Current preferences.

    A missing, unreadable or malformed file counts as no preferences; the
    next write replaces it.
    """
    try:
        raw = PREFERENCES_FILE.read_text()
    except FileNotFoundError:
        return {}
    except OSError as e:
        logger.warning(f"Could not read preferences file {PREFERENCES_FILE}: {e}")
        return {}

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring malformed preferences file {PREFERENCES_FILE}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Ignoring preferences file {PREFERENCES_FILE}: expected a JSON object")
        return {}
    return data


def _write(data: Dict[str, Any]) -> None:
    PREFERENCES_DIR.mkdir(parents=True, exist_ok=True)
    tmp = PREFERENCES_FILE.with_name(PREFERENCES_FILE.name + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n")
    try:
        tmp.replace(PREFERENCES_FILE)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def get_preference(key: str) -> Optional[str]:
    """Preference value, or None when unset or empty."""
    value = _read().get(key)
    if isinstance(value, str) and value:
        return value
    return None


def set_preference(key: str, value: str) -> None:
    if not value:
        raise ValueError(f"Preference '{key}' needs a non-empty value")
    data = _read()
    data[key] = value
    _write(data)
    logger.debug(f"Preference '{key}' set to: {value}")


def get_master_vault() -> Optional[str]:
    """Name of the vault holding provider credentials, set by `--init`."""
    return get_preference(MASTER_VAULT_KEY)


def set_master_vault(name: str) -> None:
    set_preference(MASTER_VAULT_KEY, name)
