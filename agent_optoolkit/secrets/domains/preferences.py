"""Preferences manager for Agent-OPtoolkit.

Persistent per-user defaults stored in the XDG Base Directory location
~/.config/agent-optoolkit/preferences.json. Only ``config_path`` is used today:
it is the config file ``optoolkit secret`` reads when --config is omitted.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

PREFERENCES_DIR = Path.home() / ".config" / "agent-optoolkit"
PREFERENCES_FILE = PREFERENCES_DIR / "preferences.json"

KNOWN_KEYS = frozenset({"config_path"})


def _load_preferences() -> Dict[str, Any]:
    """Stored preferences, or {} when the file is absent or unreadable."""
    if not PREFERENCES_FILE.exists():
        return {}
    try:
        with open(PREFERENCES_FILE, 'r') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Ignoring unreadable preferences file {PREFERENCES_FILE}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.error(f"Ignoring preferences file {PREFERENCES_FILE}: top level is not an object")
        return {}
    return data


def _save_preferences(preferences: Dict[str, Any]) -> None:
    PREFERENCES_DIR.mkdir(parents=True, exist_ok=True)
    with open(PREFERENCES_FILE, 'w') as f:
        json.dump(preferences, f, indent=2, sort_keys=True)


def get_preference(key: str) -> Optional[str]:
    return _load_preferences().get(key)


def set_preference(key: str, value: str) -> None:
    """
    Store a preference.

    Raises:
        KeyError: If key is not a known preference
    """
    if key not in KNOWN_KEYS:
        raise KeyError(f"Unknown preference '{key}' (known: {', '.join(sorted(KNOWN_KEYS))})")
    preferences = _load_preferences()
    preferences[key] = value
    _save_preferences(preferences)
    logger.info(f"Preference '{key}' set to: {value}")


def clear_preference(key: str) -> bool:
    """Remove a preference. Returns whether anything was removed."""
    preferences = _load_preferences()
    if preferences.pop(key, None) is None:
        logger.debug(f"Preference '{key}' not found, nothing to clear")
        return False
    _save_preferences(preferences)
    logger.info(f"Preference '{key}' cleared")
    return True
