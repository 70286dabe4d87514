"""Central configuration for the route matching engine.

All values are constants imported by the rest of the package. Each one can be
overridden from the environment (optionally via a local `.env`). Per-call
overrides go through :class:`route_matching.models.RouteMatchConfig`.
"""

from __future__ import annotations

import importlib
import os


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


# Load .env variables when python-dotenv is available.
_load_dotenv = None
try:
    _dotenv_mod = importlib.import_module("dotenv")
    _load_dotenv = getattr(_dotenv_mod, "load_dotenv", None)
except Exception:
    _load_dotenv = None

if callable(_load_dotenv):
    # Load .env from the current directory or any parent folder.
    _load_dotenv()


# ---------------------------------------------------------------------------
# Signature generation
# ---------------------------------------------------------------------------
# Starting Douglas-Peucker tolerance (metres). Adapted per trace to reach the
# target point count.
ROUTE_SIMPLIFICATION_TOLERANCE_M = _env_float("ROUTE_SIMPLIFICATION_TOLERANCE_M", 15.0)

# Approximate number of points kept in a simplified signature.
ROUTE_TARGET_POINTS = _env_int("ROUTE_TARGET_POINTS", 100)

# Consecutive samples further apart than this are GPS dropouts, not movement.
ROUTE_MAX_STEP_DISTANCE_M = _env_float("ROUTE_MAX_STEP_DISTANCE_M", 10_000.0)

# Start/end closer than this (metres) marks the route as a loop.
ROUTE_LOOP_THRESHOLD_M = _env_float("ROUTE_LOOP_THRESHOLD_M", 100.0)

# Region hash grid size in degrees (~500 m at the equator).
ROUTE_REGION_GRID_SIZE_DEG = _env_float("ROUTE_REGION_GRID_SIZE_DEG", 0.005)

# Distances above this (metres) are logged as suspicious for one activity.
ROUTE_SUSPICIOUS_DISTANCE_M = _env_float("ROUTE_SUSPICIOUS_DISTANCE_M", 500_000.0)


# ---------------------------------------------------------------------------
# Matching thresholds
# ---------------------------------------------------------------------------
# Maximum offset (metres) for a resampled station to count as matched.
ROUTE_DISTANCE_THRESHOLD_M = _env_float("ROUTE_DISTANCE_THRESHOLD_M", 50.0)

# Display threshold: matches below this percentage are discarded.
ROUTE_MIN_MATCH_PERCENTAGE = _env_float("ROUTE_MIN_MATCH_PERCENTAGE", 20.0)

# Cluster threshold: activities must share most of the route to group.
ROUTE_MIN_GROUPING_PERCENTAGE = _env_float("ROUTE_MIN_GROUPING_PERCENTAGE", 70.0)

# Minimum bounding box overlap (fraction of the smaller box).
ROUTE_MIN_BOUNDS_OVERLAP = _env_float("ROUTE_MIN_BOUNDS_OVERLAP", 0.2)

# Maximum relative distance difference accepted by the quick filter.
ROUTE_MAX_DISTANCE_DIFFERENCE = _env_float("ROUTE_MAX_DISTANCE_DIFFERENCE", 0.5)

# Endpoint proximity (metres) used by the quick filter.
ROUTE_ENDPOINT_THRESHOLD_M = _env_float("ROUTE_ENDPOINT_THRESHOLD_M", 500.0)

# Number of arc-length stations used when scoring a full match.
ROUTE_MATCH_RESAMPLE_POINTS = _env_int("ROUTE_MATCH_RESAMPLE_POINTS", 50)

# Match percentage at which a same/reverse match stops being "partial".
ROUTE_FULL_MATCH_PERCENTAGE = _env_float("ROUTE_FULL_MATCH_PERCENTAGE", 75.0)

# A reversed endpoint pairing must beat the forward one by this many metres.
ROUTE_MIN_DIRECTION_DIFF_M = _env_float("ROUTE_MIN_DIRECTION_DIFF_M", 100.0)

# Maximum number of projected route geometries kept in memory.
MATCH_CACHE_MAX_ENTRIES = _env_int("MATCH_CACHE_MAX_ENTRIES", 256)


# ---------------------------------------------------------------------------
# Consensus polyline
# ---------------------------------------------------------------------------
CONSENSUS_STATIONS = _env_int("CONSENSUS_STATIONS", 100)

# Fraction of members that must reach a station for it to be kept.
CONSENSUS_COVERAGE_THRESHOLD = _env_float("CONSENSUS_COVERAGE_THRESHOLD", 0.8)

# Station contributions beyond this many standard deviations are ignored.
CONSENSUS_OUTLIER_STDDEV = _env_float("CONSENSUS_OUTLIER_STDDEV", 2.0)


# ---------------------------------------------------------------------------
# Spatial index
# ---------------------------------------------------------------------------
# Padding (degrees, ~100 m) applied when looking for overlapping activities.
SPATIAL_INDEX_PADDING_DEG = _env_float("SPATIAL_INDEX_PADDING_DEG", 0.001)

# Batches larger than this trigger a full rebuild instead of single inserts.
SPATIAL_INDEX_REBUILD_THRESHOLD = _env_int("SPATIAL_INDEX_REBUILD_THRESHOLD", 100)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------
SECTION_PROXIMITY_THRESHOLD_M = _env_float("SECTION_PROXIMITY_THRESHOLD_M", 50.0)
SECTION_MIN_OVERLAP_POINTS = _env_int("SECTION_MIN_OVERLAP_POINTS", 3)
SECTION_BOUNDS_PADDING = _env_float("SECTION_BOUNDS_PADDING", 0.15)

# Laps separated by less than this (metres) are merged.
LAP_MERGE_GAP_M = _env_float("LAP_MERGE_GAP_M", 30.0)

# Frequent-section detection: shared stretches between this minimum and
# maximum length (metres) travelled by at least FREQUENT_SECTION_MIN_ACTIVITIES.
FREQUENT_SECTION_MIN_LENGTH_M = _env_float("FREQUENT_SECTION_MIN_LENGTH_M", 200.0)
FREQUENT_SECTION_MAX_LENGTH_M = _env_float("FREQUENT_SECTION_MAX_LENGTH_M", 5000.0)
FREQUENT_SECTION_MIN_ACTIVITIES = _env_int("FREQUENT_SECTION_MIN_ACTIVITIES", 3)
# Overlaps whose centres lie within this distance (metres) may describe the same section.
FREQUENT_SECTION_CLUSTER_TOLERANCE_M = _env_float(
    "FREQUENT_SECTION_CLUSTER_TOLERANCE_M", 80.0
)
FREQUENT_SECTION_SAMPLE_POINTS = _env_int("FREQUENT_SECTION_SAMPLE_POINTS", 50)


# ---------------------------------------------------------------------------
# Processing / persistence
# ---------------------------------------------------------------------------
# Activities handled per batch before progress is reported.
PROCESSING_BATCH_SIZE = _env_int("PROCESSING_BATCH_SIZE", 5)

# Bump when the persisted cache layout or the algorithms change.
ROUTE_CACHE_VERSION = _env_int("ROUTE_CACHE_VERSION", 1)

# Default location of the persisted cache used by the command line tool.
ROUTE_CACHE_FILE = os.getenv("ROUTE_CACHE_FILE", "route_match_cache.json")

# Log a warning with the first invalid point when points are dropped.
LOG_FIRST_INVALID_POINT = _env_bool("LOG_FIRST_INVALID_POINT", True)
