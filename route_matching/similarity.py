"""Full route comparison producing match percentages, direction and confidence."""

from __future__ import annotations

from dataclasses import dataclass
from threading import RLock
from typing import Iterable, List, Optional, Tuple

import numpy as np
from cachetools import LRUCache
from numpy.typing import NDArray
from pyproj import Transformer
import shapely
from shapely.geometry import LineString

from .config import (
    MATCH_CACHE_MAX_ENTRIES,
    ROUTE_FULL_MATCH_PERCENTAGE,
    ROUTE_MATCH_RESAMPLE_POINTS,
    ROUTE_MIN_DIRECTION_DIFF_M,
)
from .filtering import quick_filter_match
from .geometry import (
    MetricArray,
    haversine_distance,
    local_utm_epsg,
    project_points,
    resample_by_fraction,
    transformer_for_epsg,
)
from .models import (
    ConfigInput,
    MatchDirection,
    RouteMatch,
    RouteMatchConfig,
    RoutePoint,
    RouteSignature,
    resolve_config,
)
from .utils import contiguous_runs

# Signatures with fewer simplified points than this get a reduced confidence.
_DENSITY_FULL_POINTS = 30
_GAP_PENALTY_PER_RUN = 0.1
_MAX_GAP_PENALTY = 0.3


@dataclass(slots=True)
class ProjectedRoute:
    """Metric representation of a signature reused across comparisons."""

    stations: MetricArray
    line: LineString
    length_m: float


@dataclass(slots=True)
class MatchResult:
    """Outcome of comparing a signature against a reference signature."""

    reference_id: str
    match_percentage: float
    direction: MatchDirection
    confidence: float
    coverage_a: float
    coverage_b: float
    overlap_start: Optional[float] = None
    overlap_end: Optional[float] = None
    overlap_distance: Optional[float] = None


@dataclass(slots=True)
class _MatchProfile:
    matched_a: NDArray[np.bool_]
    matched_b: NDArray[np.bool_]
    offsets_a: MetricArray
    offsets_b: MetricArray
    length_a: float

    @property
    def percentage(self) -> float:
        coverage_a = float(np.mean(self.matched_a)) if self.matched_a.size else 0.0
        coverage_b = float(np.mean(self.matched_b)) if self.matched_b.size else 0.0
        return min(coverage_a, coverage_b) * 100.0


_ProjectionKey = Tuple[int, Tuple[RoutePoint, ...], int]

_projection_cache: LRUCache[_ProjectionKey, ProjectedRoute] = LRUCache(
    maxsize=max(1, MATCH_CACHE_MAX_ENTRIES)
)
_transformer_cache: LRUCache[int, Transformer] = LRUCache(maxsize=16)
_cache_lock = RLock()


def clear_projection_cache() -> None:
    """Drop cached projections (primarily for testing)."""

    with _cache_lock:
        _projection_cache.clear()
        _transformer_cache.clear()


def projection_cache_size() -> int:
    with _cache_lock:
        return len(_projection_cache)


def compute_match_percentage(
    first: RouteSignature,
    second: RouteSignature,
    config: ConfigInput = None,
) -> float:
    """Percentage (0-100) of shared geometry between two signatures.

    Both routes are resampled to evenly spaced stations; a station counts as
    matched when it lies within ``distance_threshold`` metres of the other
    route's polyline. The result is the smaller of the two coverages, so it
    grows with geometric overlap and does not change when either route is
    reversed.
    """

    if first.is_degenerate or second.is_degenerate:
        return 0.0
    cfg = resolve_config(config)
    return _match_profile(first, second, cfg).percentage


def match_routes(
    first: RouteSignature,
    second: RouteSignature,
    config: ConfigInput = None,
) -> Optional[MatchResult]:
    """Compare ``first`` against ``second``; ``None`` when they do not match.

    The quick filter runs first. Results below ``min_match_percentage`` are
    discarded.
    """

    cfg = resolve_config(config)
    if not quick_filter_match(first, second, cfg):
        return None
    result = score_match(first, second, cfg)
    if result.match_percentage < cfg.min_match_percentage:
        return None
    return result


def score_match(
    first: RouteSignature,
    second: RouteSignature,
    config: ConfigInput = None,
) -> MatchResult:
    """Full comparison without the quick filter or the display threshold."""

    if first.is_degenerate or second.is_degenerate:
        return MatchResult(
            reference_id=second.activity_id,
            match_percentage=0.0,
            direction=MatchDirection.PARTIAL,
            confidence=0.0,
            coverage_a=0.0,
            coverage_b=0.0,
        )
    cfg = resolve_config(config)
    profile = _match_profile(first, second, cfg)
    percentage = profile.percentage
    direction = detect_direction(first, second, percentage)
    result = MatchResult(
        reference_id=second.activity_id,
        match_percentage=percentage,
        direction=direction,
        confidence=_confidence(first, second, profile, cfg),
        coverage_a=float(np.mean(profile.matched_a)),
        coverage_b=float(np.mean(profile.matched_b)),
    )
    if direction is MatchDirection.PARTIAL:
        _apply_overlap(result, profile)
    return result


def find_matches(
    signature: RouteSignature,
    candidates: Iterable[RouteSignature],
    config: ConfigInput = None,
) -> List[MatchResult]:
    """Match ``signature`` against every candidate, best first, skipping itself."""

    cfg = resolve_config(config)
    results: List[MatchResult] = []
    for candidate in candidates:
        if candidate.activity_id == signature.activity_id:
            continue
        result = match_routes(signature, candidate, cfg)
        if result is not None:
            results.append(result)
    results.sort(key=lambda item: (-item.match_percentage, -item.confidence))
    return results


def create_route_match(
    activity_id: str, route_group_id: str, result: MatchResult
) -> RouteMatch:
    """Convert a :class:`MatchResult` into the cached :class:`RouteMatch` record."""

    return RouteMatch(
        activity_id=activity_id,
        route_group_id=route_group_id,
        match_percentage=result.match_percentage,
        direction=result.direction,
        confidence=result.confidence,
        overlap_start=result.overlap_start,
        overlap_end=result.overlap_end,
        overlap_distance=result.overlap_distance,
    )


def detect_direction(
    first: RouteSignature, second: RouteSignature, percentage: float
) -> MatchDirection:
    """Classify the traversal direction of ``first`` relative to ``second``."""

    if percentage < ROUTE_FULL_MATCH_PERCENTAGE:
        return MatchDirection.PARTIAL
    if is_reverse_traversal(first, second):
        return MatchDirection.REVERSE
    return MatchDirection.SAME


def is_reverse_traversal(first: RouteSignature, second: RouteSignature) -> bool:
    """True when swapping endpoints pairs them clearly better than the forward pairing.

    Loops never count as reversed.
    """

    if first.is_loop and second.is_loop:
        return False
    start_a, end_a = first.points[0], first.points[-1]
    start_b, end_b = second.points[0], second.points[-1]
    same_score = haversine_distance(start_a, start_b) + haversine_distance(end_a, end_b)
    reverse_score = haversine_distance(start_a, end_b) + haversine_distance(end_a, start_b)
    return reverse_score + ROUTE_MIN_DIRECTION_DIFF_M < same_score


def project_signature(
    signature: RouteSignature,
    epsg: int,
    stations: int = ROUTE_MATCH_RESAMPLE_POINTS,
) -> ProjectedRoute:
    """Project and resample a signature, reusing cached work when possible."""

    points = tuple(signature.points)
    key: _ProjectionKey = (epsg, points, stations)
    with _cache_lock:
        cached = _projection_cache.get(key)
    if cached is not None:
        return cached
    metric = project_points(points, _transformer(epsg))
    resampled = resample_by_fraction(metric, stations)
    line = LineString(metric.tolist())
    projected = ProjectedRoute(
        stations=resampled, line=line, length_m=float(line.length)
    )
    with _cache_lock:
        _projection_cache[key] = projected
    return projected


def _transformer(epsg: int) -> Transformer:
    with _cache_lock:
        transformer = _transformer_cache.get(epsg)
        if transformer is None:
            transformer = transformer_for_epsg(epsg)
            _transformer_cache[epsg] = transformer
        return transformer


def _match_profile(
    first: RouteSignature, second: RouteSignature, cfg: RouteMatchConfig
) -> _MatchProfile:
    epsg = local_utm_epsg(list(first.points) + list(second.points))
    route_a = project_signature(first, epsg)
    route_b = project_signature(second, epsg)
    offsets_a = _offsets(route_a.stations, route_b.line)
    offsets_b = _offsets(route_b.stations, route_a.line)
    return _MatchProfile(
        matched_a=offsets_a <= cfg.distance_threshold,
        matched_b=offsets_b <= cfg.distance_threshold,
        offsets_a=offsets_a,
        offsets_b=offsets_b,
        length_a=route_a.length_m,
    )


def _offsets(stations: MetricArray, line: LineString) -> MetricArray:
    return np.asarray(shapely.distance(shapely.points(stations), line), dtype=float)


def _apply_overlap(result: MatchResult, profile: _MatchProfile) -> None:
    mask = profile.matched_a
    runs = contiguous_runs(mask)
    if not runs:
        return
    last_station = max(1, len(mask) - 1)
    spacing = profile.length_a / last_station
    result.overlap_start = runs[0][0] / last_station * 100.0
    result.overlap_end = runs[-1][1] / last_station * 100.0
    result.overlap_distance = sum((end - start) * spacing for start, end in runs)


def _confidence(
    first: RouteSignature,
    second: RouteSignature,
    profile: _MatchProfile,
    cfg: RouteMatchConfig,
) -> float:
    density = min(1.0, min(len(first.points), len(second.points)) / _DENSITY_FULL_POINTS)
    matched_offsets = np.concatenate(
        (profile.offsets_a[profile.matched_a], profile.offsets_b[profile.matched_b])
    )
    if matched_offsets.size and cfg.distance_threshold > 0:
        quality = 1.0 - float(np.mean(matched_offsets)) / cfg.distance_threshold
    else:
        quality = 0.0
    runs = len(contiguous_runs(profile.matched_a))
    penalty = min(_MAX_GAP_PENALTY, _GAP_PENALTY_PER_RUN * max(0, runs - 1))
    return float(min(1.0, max(0.0, (density + quality) / 2.0 - penalty)))


__all__ = [
    "MatchResult",
    "ProjectedRoute",
    "clear_projection_cache",
    "compute_match_percentage",
    "create_route_match",
    "detect_direction",
    "find_matches",
    "is_reverse_traversal",
    "match_routes",
    "project_signature",
    "projection_cache_size",
    "score_match",
]
