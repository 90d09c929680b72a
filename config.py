"""Configuration constants and settings for SMKSRG."""

import os
import json
import logging
from typing import Any, Dict, Optional

# ---- Earth model ----
# Toggle: set to True if you want spherical earth (a=b=6370000 m) instead of WGS84
USE_SPHERICAL_EARTH = True
# WGS84 authalic radius otherwise, so areas stay equal-area
EARTH_RADIUS = 6370000.0 if USE_SPHERICAL_EARTH else 6371007.181

LONLAT_CRS = 'EPSG:4326'

# ---- Spatial index ----
# STR-tree fan-out (bulk loaded, so only the max node size applies)
RTREE_NODE_CAPACITY = 50

# ---- Allocation ----
# overlap/area above this counts as fully inside the grid
COVERED_THRESHOLD = 0.9999

# SMOKE sentinel for "no surrogate filter"
NO_FILTER = 'NONE'

DEFAULT_SIMPLIFY_TOLERANCE = 0.0


def env_flag(name: str) -> bool:
    val = os.environ.get(name)
    if val is None:
        return False
    return val.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str) -> Optional[int]:
    val = os.environ.get(name)
    if not val:
        return None
    try:
        return int(val)
    except ValueError:
        logging.warning("Ignoring non-integer %s=%r", name, val)
        return None


CACHE_DISABLED = env_flag('SMKSRG_DISABLE_CACHE')


def _config_file() -> str:
    """Return the path to the configuration file."""
    cfg_dir = os.environ.get('XDG_CONFIG_HOME') or os.path.join(os.path.expanduser('~'), '.config')
    try:
        os.makedirs(cfg_dir, exist_ok=True)
    except OSError as exc:
        logging.warning("Could not create config directory %s: %s", cfg_dir, exc)
    return os.path.join(cfg_dir, 'smksrg_settings.json')


def load_settings() -> dict:
    """Load the entire settings dictionary from the JSON config file."""
    cfg = _config_file()
    if not os.path.exists(cfg):
        return {}
    try:
        with open(cfg, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        logging.warning("Ignoring unreadable settings file %s: %s", cfg, exc)
        return {}
    return data if isinstance(data, dict) else {}


def save_settings(settings: dict) -> None:
    """Write the settings dictionary to the JSON config file (best-effort)."""
    cfg = _config_file()
    try:
        with open(cfg, 'w') as f:
            json.dump(settings, f, indent=2)
    except OSError as exc:
        logging.warning("Could not save settings to %s: %s", cfg, exc)


def resolve_defaults(settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge environment overrides and saved settings into orchestrator defaults.

    Environment variables win over the settings file, which wins over the
    module constants.
    """
    if settings is None:
        settings = load_settings()
    out: Dict[str, Any] = {
        'workers': None,
        'simplify_tolerance': DEFAULT_SIMPLIFY_TOLERANCE,
    }
    if settings.get('workers') is not None:
        try:
            out['workers'] = int(settings['workers'])
        except (TypeError, ValueError):
            logging.warning("Ignoring invalid 'workers' setting: %r", settings['workers'])
    if settings.get('simplify_tolerance') is not None:
        try:
            out['simplify_tolerance'] = float(settings['simplify_tolerance'])
        except (TypeError, ValueError):
            logging.warning("Ignoring invalid 'simplify_tolerance' setting: %r", settings['simplify_tolerance'])
    env_workers = env_int('SMKSRG_WORKERS')
    if env_workers is not None:
        out['workers'] = env_workers
    return out
