"""Route signatures, matching, grouping and spatial indexing for GPS activities."""

from .consensus import calculate_consensus_route
from .errors import CacheFormatError, InvalidConfigError, RouteMatchingError
from .filtering import calculate_bounds_overlap, quick_filter_match
from .frequent_sections import FrequentSection, SectionConfig, detect_frequent_sections
from .grouping import AssignmentOutcome, AssignmentState, RouteGrouper
from .main import main
from .models import (
    DEFAULT_ROUTE_MATCH_CONFIG,
    ActivityInfo,
    Bounds,
    MatchDirection,
    RouteGroup,
    RouteMatch,
    RouteMatchCache,
    RouteMatchConfig,
    RoutePoint,
    RouteSignature,
)
from .processing import ActivityPayload, RouteProcessor
from .sections import RouteLap, detect_laps, detect_laps_for_group
from .signature import generate_route_signature
from .similarity import compute_match_percentage, find_matches, match_routes
from .spatial_index import ActivitySpatialIndex
from .storage import load_route_cache, save_route_cache

__all__ = [
    "main",
    "ActivityInfo",
    "ActivityPayload",
    "ActivitySpatialIndex",
    "AssignmentOutcome",
    "AssignmentState",
    "Bounds",
    "CacheFormatError",
    "FrequentSection",
    "DEFAULT_ROUTE_MATCH_CONFIG",
    "InvalidConfigError",
    "MatchDirection",
    "RouteGroup",
    "RouteLap",
    "RouteGrouper",
    "RouteMatch",
    "RouteMatchCache",
    "RouteMatchConfig",
    "RouteMatchingError",
    "RoutePoint",
    "RouteProcessor",
    "RouteSignature",
    "SectionConfig",
    "calculate_bounds_overlap",
    "calculate_consensus_route",
    "compute_match_percentage",
    "detect_frequent_sections",
    "detect_laps",
    "detect_laps_for_group",
    "find_matches",
    "generate_route_signature",
    "load_route_cache",
    "match_routes",
    "quick_filter_match",
    "save_route_cache",
]
