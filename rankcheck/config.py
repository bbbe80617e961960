"""Project configuration.

Loads run defaults from search_config.json when available, falling back to
sensible defaults. Keep API request shapes centralized here.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

_REPO_ROOT = Path(__file__).resolve().parent.parent


class ConfigurationError(RuntimeError):
    """Raised when mandatory configuration (the API credential) is missing."""


# --- API endpoints ---

SERPER_PLACES_URL = "https://google.serper.dev/places"
SERPER_API_KEY_ENV = "SERPER_API_KEY"

# --- Locale ---

DEFAULT_COUNTRY = "gb"
DEFAULT_LANGUAGE = "en"
DEFAULT_DEVICE_TYPE = "desktop"
DEVICE_TYPES = ("desktop", "mobile")

# --- Geo grid ---

GEO_GRID_ENABLED = False
GEO_GRID_CENTER_LAT: Optional[float] = None
GEO_GRID_CENTER_LNG: Optional[float] = None
DEFAULT_GRID_RADIUS_KM = 5.0
DEFAULT_GRID_SIZE = 3
KM_PER_DEGREE_LAT = 111.32
LOCATION_BIAS_ZOOM = 14

# --- Ranking ---

LOCAL_PACK_SIZE = 3
NO_MATCH_TITLE = "Brand not found"
RANK_SCOPE_QUERY = "query"
RANK_SCOPE_GRID_POINT = "grid_point"
RANK_SCOPES = (RANK_SCOPE_QUERY, RANK_SCOPE_GRID_POINT)
RANK_SCOPE = RANK_SCOPE_GRID_POINT

# --- Pacing ---

PAGE_DELAY_SECONDS = 1.0
MAX_PAGES_PER_POINT: Optional[int] = None

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 20
HTTP_RETRY_MAX = 3
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 8.0

# --- Budgets ---

MAX_API_CALLS_PER_RUN = 5000

# --- Failure policy ---

KEEP_PARTIAL_RESULTS = True

# --- Storage and outputs ---

RESULTS_DB_PATH = "results.db"
OUTPUT_DIR = "out"
PROGRESS_LOG_EVERY = 10
PROGRESS_WRITE_INTERVAL_SECONDS = 5.0


def get_api_key() -> str:
    """Return the Serper credential, read from the environment on every call."""
    api_key = (os.environ.get(SERPER_API_KEY_ENV) or "").strip()
    if not api_key:
        raise ConfigurationError(f"{SERPER_API_KEY_ENV} not configured")
    return api_key


def load_search_config(path: Optional[str] = None) -> bool:
    """Load run configuration from a JSON file.

    Updates module-level globals with values from the config file.
    Returns True if config was loaded, False if file not found.
    """
    if path is None:
        path = str(_REPO_ROOT / "search_config.json")

    config_path = Path(path)
    if not config_path.exists():
        return False

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    globals_ref = globals()

    locale = data.get("locale", {})
    if locale.get("country"):
        globals_ref["DEFAULT_COUNTRY"] = str(locale["country"]).lower()
    if locale.get("language"):
        globals_ref["DEFAULT_LANGUAGE"] = str(locale["language"]).lower()
    if locale.get("device"):
        globals_ref["DEFAULT_DEVICE_TYPE"] = str(locale["device"]).lower()

    grid = data.get("geo_grid", {})
    if grid:
        globals_ref["GEO_GRID_ENABLED"] = bool(grid.get("enabled", True))
        if grid.get("center_lat") is not None:
            globals_ref["GEO_GRID_CENTER_LAT"] = float(grid["center_lat"])
        if grid.get("center_lng") is not None:
            globals_ref["GEO_GRID_CENTER_LNG"] = float(grid["center_lng"])
        if grid.get("radius_km") is not None:
            globals_ref["DEFAULT_GRID_RADIUS_KM"] = float(grid["radius_km"])
        if grid.get("grid_size") is not None:
            globals_ref["DEFAULT_GRID_SIZE"] = int(grid["grid_size"])

    pacing = data.get("pacing", {})
    if "page_delay_seconds" in pacing:
        globals_ref["PAGE_DELAY_SECONDS"] = float(pacing["page_delay_seconds"])
    if "max_pages_per_point" in pacing:
        max_pages = pacing["max_pages_per_point"]
        globals_ref["MAX_PAGES_PER_POINT"] = int(max_pages) if max_pages is not None else None

    rank_scope = data.get("rank_scope")
    if rank_scope is not None:
        if rank_scope not in RANK_SCOPES:
            raise ValueError(f"rank_scope must be one of: {', '.join(RANK_SCOPES)}")
        globals_ref["RANK_SCOPE"] = rank_scope

    http = data.get("http", {})
    if "timeout_seconds" in http:
        globals_ref["HTTP_TIMEOUT_SECONDS"] = float(http["timeout_seconds"])
    if "retry_max" in http:
        globals_ref["HTTP_RETRY_MAX"] = max(1, int(http["retry_max"]))

    max_calls = data.get("max_api_calls")
    if max_calls is not None:
        globals_ref["MAX_API_CALLS_PER_RUN"] = int(max_calls)

    if "keep_partial_results" in data:
        globals_ref["KEEP_PARTIAL_RESULTS"] = bool(data["keep_partial_results"])

    return True
