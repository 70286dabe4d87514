"""Detect stretches of road shared by several activities across different routes.

Every pair of same-sport activities whose boxes meet is compared point by
point; the longest stretch where one trace stays within
``proximity_threshold`` of the other becomes a pairwise overlap. Overlaps
describing the same place are clustered, the member trace closest to all
others (the medoid) becomes the section polyline, and each activity's pass
along it is recorded. Section polylines feed
:func:`route_matching.sections.extract_section_overlaps`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
import logging
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .config import (
    FREQUENT_SECTION_CLUSTER_TOLERANCE_M,
    FREQUENT_SECTION_MAX_LENGTH_M,
    FREQUENT_SECTION_MIN_ACTIVITIES,
    FREQUENT_SECTION_MIN_LENGTH_M,
    FREQUENT_SECTION_SAMPLE_POINTS,
    SECTION_PROXIMITY_THRESHOLD_M,
)
from .errors import InvalidConfigError
from .geometry import (
    as_latlng_array,
    calculate_bounds,
    calculate_route_distance,
    haversine_array,
    haversine_distance,
)
from .models import MatchDirection, RouteGroup, RoutePoint, RouteSignature
from .spatial_index import ActivityBounds, ActivitySpatialIndex
from .utils import contiguous_runs

LOGGER = logging.getLogger(__name__)

_METRES_PER_DEGREE = 111_000.0
# Traces are densified to this fraction of the proximity threshold so that
# vertex-to-vertex distances stand in for point-to-line distances.
_DENSIFY_FRACTION = 0.5
_MAX_DENSIFIED_POINTS = 2000
_CLUSTER_SAMPLES = 10
_DIRECTION_SAMPLES = 5
_MEDOID_FULL_PAIRWISE_LIMIT = 10
_MEDOID_SAMPLE_SIZE = 5


@dataclass(frozen=True, slots=True)
class SectionConfig:
    """Thresholds for frequent-section detection."""

    proximity_threshold: float = SECTION_PROXIMITY_THRESHOLD_M
    min_section_length: float = FREQUENT_SECTION_MIN_LENGTH_M
    max_section_length: float = FREQUENT_SECTION_MAX_LENGTH_M
    min_activities: int = FREQUENT_SECTION_MIN_ACTIVITIES
    cluster_tolerance: float = FREQUENT_SECTION_CLUSTER_TOLERANCE_M
    sample_points: int = FREQUENT_SECTION_SAMPLE_POINTS

    def with_overrides(self, **overrides: Any) -> "SectionConfig":
        known = {item.name for item in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise InvalidConfigError(
                f"Unknown section config field(s): {', '.join(unknown)}"
            )
        config = replace(self, **overrides)
        if config.proximity_threshold <= 0:
            raise InvalidConfigError("proximity_threshold must be > 0")
        if config.min_activities < 2:
            raise InvalidConfigError("min_activities must be >= 2")
        if config.sample_points < 2:
            raise InvalidConfigError("sample_points must be >= 2")
        return config


SectionConfigInput = Union[SectionConfig, Mapping[str, Any], None]


def resolve_section_config(config: SectionConfigInput = None) -> SectionConfig:
    if config is None:
        return SectionConfig()
    if isinstance(config, SectionConfig):
        return config
    return SectionConfig().with_overrides(**dict(config))


@dataclass(slots=True)
class SectionPortion:
    """One activity's pass along a section, as indices into its densified trace."""

    activity_id: str
    start_index: int
    end_index: int
    distance: float
    direction: MatchDirection


@dataclass(slots=True)
class FrequentSection:
    """A stretch travelled by at least ``min_activities`` activities."""

    id: str
    sport_type: str
    polyline: List[RoutePoint]
    representative_activity_id: str
    activity_ids: List[str]
    activity_portions: List[SectionPortion] = field(default_factory=list)
    route_ids: List[str] = field(default_factory=list)
    visit_count: int = 0
    distance: float = 0.0


@dataclass(slots=True)
class TrackOverlap:
    """Longest shared stretch between two traces."""

    activity_a: str
    activity_b: str
    points_a: List[RoutePoint]
    points_b: List[RoutePoint]
    center: RoutePoint


@dataclass(slots=True)
class _OverlapCluster:
    overlaps: List[TrackOverlap]
    activity_ids: List[str]


def densify_track(points: Sequence[Sequence[float]], spacing_m: float) -> List[RoutePoint]:
    """Resample a trace so consecutive points are at most ``spacing_m`` apart."""

    array = as_latlng_array(points)
    if len(array) < 2:
        return [RoutePoint(float(lat), float(lng)) for lat, lng in array]
    steps = haversine_array(array[:-1, 0], array[:-1, 1], array[1:, 0], array[1:, 1])
    cumulative = np.concatenate(([0.0], np.cumsum(steps)))
    total = float(cumulative[-1])
    if total <= 0:
        return [RoutePoint(float(array[0, 0]), float(array[0, 1]))]
    count = min(_MAX_DENSIFIED_POINTS, max(len(array), math.ceil(total / spacing_m) + 1))
    return _interpolate(array, cumulative, count)


def resample_track(points: Sequence[RoutePoint], count: int) -> List[RoutePoint]:
    """Resample to ``count`` points evenly spaced by distance; short input is returned as is."""

    if len(points) <= count:
        return list(points)
    array = as_latlng_array(points)
    steps = haversine_array(array[:-1, 0], array[:-1, 1], array[1:, 0], array[1:, 1])
    cumulative = np.concatenate(([0.0], np.cumsum(steps)))
    if cumulative[-1] < 1.0:
        return list(points)
    return _interpolate(array, cumulative, count)


def average_min_distance(
    first: Sequence[RoutePoint], second: Sequence[RoutePoint], samples: int
) -> float:
    """Mean of the nearest-point distances from each trace to the other."""

    if not first or not second:
        return math.inf
    a = as_latlng_array(resample_track(first, samples))
    b = as_latlng_array(resample_track(second, samples))
    distances = _pairwise(a, b)
    total = distances.min(axis=1).sum() + distances.min(axis=0).sum()
    return float(total / (len(a) + len(b)))


def find_track_overlap(
    activity_a: str,
    track_a: Sequence[RoutePoint],
    activity_b: str,
    track_b: Sequence[RoutePoint],
    config: SectionConfigInput = None,
) -> Optional[TrackOverlap]:
    """Longest stretch of ``track_a`` within reach of ``track_b``; ``None`` when too short."""

    cfg = resolve_section_config(config)
    if len(track_a) < 2 or len(track_b) < 2:
        return None
    a = as_latlng_array(track_a)
    distances = _pairwise(a, as_latlng_array(track_b))
    nearest = distances.argmin(axis=1)
    near = distances[np.arange(len(a)), nearest] <= cfg.proximity_threshold

    best: Optional[Tuple[int, int, float]] = None
    for start, end in contiguous_runs(near):
        length = calculate_route_distance(track_a[start : end + 1])
        if length >= cfg.min_section_length and (best is None or length > best[2]):
            best = (start, end, length)
    if best is None:
        return None

    start, end, _ = best
    b_start = int(nearest[start : end + 1].min())
    b_end = int(nearest[start : end + 1].max())
    points_a = list(track_a[start : end + 1])
    center = a[start : end + 1].mean(axis=0)
    return TrackOverlap(
        activity_a=activity_a,
        activity_b=activity_b,
        points_a=points_a,
        points_b=list(track_b[b_start : b_end + 1]),
        center=RoutePoint(float(center[0]), float(center[1])),
    )


def find_track_portion(
    track: Sequence[RoutePoint],
    reference: Sequence[RoutePoint],
    threshold_m: float,
) -> Optional[Tuple[int, int, MatchDirection]]:
    """First to last index of ``track`` near ``reference`` plus its direction along it."""

    if not track or not reference:
        return None
    distances = _pairwise(as_latlng_array(track), as_latlng_array(reference))
    nearest = distances.argmin(axis=1)
    near = np.flatnonzero(distances[np.arange(len(track)), nearest] <= threshold_m)
    if near.size == 0:
        return None
    start, end = int(near[0]), int(near[-1])
    direction = _portion_direction(nearest[start : end + 1], len(reference))
    return start, end, direction


def cluster_overlaps(
    overlaps: Sequence[TrackOverlap], config: SectionConfigInput = None
) -> List[_OverlapCluster]:
    """Greedily group overlaps whose centres and shapes agree."""

    cfg = resolve_section_config(config)
    clusters: List[_OverlapCluster] = []
    assigned: set[int] = set()
    for idx, overlap in enumerate(overlaps):
        if idx in assigned:
            continue
        assigned.add(idx)
        members = [overlap]
        activity_ids = [overlap.activity_a, overlap.activity_b]
        for other_idx in range(idx + 1, len(overlaps)):
            if other_idx in assigned:
                continue
            other = overlaps[other_idx]
            if haversine_distance(overlap.center, other.center) > cfg.cluster_tolerance:
                continue
            if not _shapes_match(overlap.points_a, other.points_a, cfg.proximity_threshold):
                continue
            assigned.add(other_idx)
            members.append(other)
            for activity_id in (other.activity_a, other.activity_b):
                if activity_id not in activity_ids:
                    activity_ids.append(activity_id)
        clusters.append(_OverlapCluster(members, activity_ids))
    return clusters


def select_medoid(
    cluster: _OverlapCluster, samples: int = FREQUENT_SECTION_SAMPLE_POINTS
) -> Tuple[str, List[RoutePoint]]:
    """The member trace with the smallest total distance to all the others."""

    traces: Dict[str, List[RoutePoint]] = {}
    for overlap in cluster.overlaps:
        traces.setdefault(overlap.activity_a, overlap.points_a)
        traces.setdefault(overlap.activity_b, overlap.points_b)
    items = list(traces.items())
    if len(items) == 1:
        return items[0]

    if len(items) <= _MEDOID_FULL_PAIRWISE_LIMIT:
        others = list(range(len(items)))
    else:
        # Large clusters compare each trace with an even sample of the others.
        step = max(1, len(items) // _MEDOID_SAMPLE_SIZE)
        others = list(range(0, len(items), step))[:_MEDOID_SAMPLE_SIZE]

    best_idx = 0
    best_score = math.inf
    for idx, (_, trace) in enumerate(items):
        scores = [
            average_min_distance(trace, items[other][1], samples)
            for other in others
            if other != idx
        ]
        if not scores:
            continue
        score = sum(scores) / len(scores)
        if score < best_score:
            best_idx, best_score = idx, score
    return items[best_idx]


def detect_frequent_sections(
    signatures: Iterable[RouteSignature],
    groups: Sequence[RouteGroup] = (),
    sport_types: Optional[Mapping[str, str]] = None,
    config: SectionConfigInput = None,
) -> List[FrequentSection]:
    """Find sections shared by at least ``min_activities`` activities of one sport.

    Sport types come from ``sport_types`` first and then from the group each
    activity belongs to. Sections are returned most visited first.
    """

    cfg = resolve_section_config(config)
    activity_to_route: Dict[str, str] = {}
    group_sports: Dict[str, str] = {}
    for group in groups:
        for activity_id in group.activity_ids:
            group_sports[activity_id] = group.sport_type
            if group.activity_count >= 2:
                activity_to_route[activity_id] = group.id
    sport_types = sport_types or {}

    spacing = cfg.proximity_threshold * _DENSIFY_FRACTION
    by_sport: Dict[str, Dict[str, List[RoutePoint]]] = {}
    for signature in signatures:
        if signature.is_degenerate:
            continue
        sport = sport_types.get(signature.activity_id) or group_sports.get(
            signature.activity_id, "Unknown"
        )
        by_sport.setdefault(sport, {})[signature.activity_id] = densify_track(
            signature.points, spacing
        )

    sections: List[FrequentSection] = []
    for sport, tracks in sorted(by_sport.items()):
        if len(tracks) < cfg.min_activities:
            continue
        overlaps = _pairwise_overlaps(tracks, cfg)
        clusters = [
            cluster
            for cluster in cluster_overlaps(overlaps, cfg)
            if len(cluster.activity_ids) >= cfg.min_activities
        ]
        LOGGER.debug(
            "Found %d overlaps and %d clusters across %d %s activities",
            len(overlaps),
            len(clusters),
            len(tracks),
            sport,
        )
        for cluster in clusters:
            section = _build_section(cluster, sport, tracks, activity_to_route, cfg)
            if section is not None:
                sections.append(section)

    sections.sort(key=lambda section: section.visit_count, reverse=True)
    counters: Dict[str, int] = {}
    for section in sections:
        number = counters.get(section.sport_type, 0)
        counters[section.sport_type] = number + 1
        section.id = f"sec_{section.sport_type.lower()}_{number}"
    LOGGER.info("Detected %d frequent sections", len(sections))
    return sections


def _pairwise_overlaps(
    tracks: Mapping[str, List[RoutePoint]], cfg: SectionConfig
) -> List[TrackOverlap]:
    padding = cfg.proximity_threshold / _METRES_PER_DEGREE
    boxes: Dict[str, ActivityBounds] = {}
    for activity_id, points in tracks.items():
        box = calculate_bounds(points)
        boxes[activity_id] = ActivityBounds(
            activity_id, box.min_lat, box.max_lat, box.min_lng, box.max_lng
        )
    index = ActivitySpatialIndex()
    index.build(boxes.values())

    # Each unordered pair is compared once, in input order.
    order = {activity_id: position for position, activity_id in enumerate(tracks)}
    overlaps: List[TrackOverlap] = []
    for activity_id, points in tracks.items():
        later = [
            other
            for other in index.find_potential_matches(boxes[activity_id], padding)
            if order[other] > order[activity_id]
        ]
        for other in sorted(later, key=order.__getitem__):
            overlap = find_track_overlap(activity_id, points, other, tracks[other], cfg)
            if overlap is not None:
                overlaps.append(overlap)
    return overlaps


def _build_section(
    cluster: _OverlapCluster,
    sport: str,
    tracks: Mapping[str, List[RoutePoint]],
    activity_to_route: Mapping[str, str],
    cfg: SectionConfig,
) -> Optional[FrequentSection]:
    representative_id, polyline = select_medoid(cluster, cfg.sample_points)
    if len(polyline) < 2:
        return None
    distance = calculate_route_distance(polyline)
    if distance > cfg.max_section_length:
        return None

    portions: List[SectionPortion] = []
    for activity_id in cluster.activity_ids:
        track = tracks.get(activity_id)
        if track is None:
            continue
        found = find_track_portion(track, polyline, cfg.proximity_threshold)
        if found is None:
            continue
        start, end, direction = found
        portions.append(
            SectionPortion(
                activity_id=activity_id,
                start_index=start,
                end_index=end,
                distance=calculate_route_distance(track[start : end + 1]),
                direction=direction,
            )
        )

    route_ids = sorted(
        {activity_to_route[aid] for aid in cluster.activity_ids if aid in activity_to_route}
    )
    return FrequentSection(
        id="",
        sport_type=sport,
        polyline=list(polyline),
        representative_activity_id=representative_id,
        activity_ids=list(cluster.activity_ids),
        activity_portions=portions,
        route_ids=route_ids,
        visit_count=len(cluster.overlaps) + 1,
        distance=distance,
    )


def _shapes_match(
    first: Sequence[RoutePoint], second: Sequence[RoutePoint], threshold: float
) -> bool:
    if not first or not second:
        return False
    sample_count = min(_CLUSTER_SAMPLES, len(first))
    step = max(1, len(first) // sample_count)
    samples = as_latlng_array(first[::step][:sample_count])
    nearest = _pairwise(samples, as_latlng_array(second)).min(axis=1)
    return int((nearest <= threshold).sum()) >= sample_count // 2


def _portion_direction(
    reference_indices: NDArray[np.int64], reference_length: int
) -> MatchDirection:
    if len(reference_indices) < 3 or reference_length < 3:
        return MatchDirection.SAME
    sample_count = min(_DIRECTION_SAMPLES, len(reference_indices))
    step = len(reference_indices) // sample_count
    sampled = [
        int(reference_indices[min(idx * step, len(reference_indices) - 1)])
        for idx in range(sample_count)
    ]
    forward = sum(1 for prev, curr in zip(sampled, sampled[1:]) if curr > prev)
    backward = sum(1 for prev, curr in zip(sampled, sampled[1:]) if curr < prev)
    return MatchDirection.REVERSE if backward > forward else MatchDirection.SAME


def _pairwise(
    first: NDArray[np.float64], second: NDArray[np.float64]
) -> NDArray[np.float64]:
    return haversine_array(
        first[:, 0][:, None],
        first[:, 1][:, None],
        second[:, 0][None, :],
        second[:, 1][None, :],
    )


def _interpolate(
    array: NDArray[np.float64], cumulative: NDArray[np.float64], count: int
) -> List[RoutePoint]:
    targets = np.linspace(0.0, float(cumulative[-1]), num=count)
    lats = np.interp(targets, cumulative, array[:, 0])
    lngs = np.interp(targets, cumulative, array[:, 1])
    return [RoutePoint(float(lat), float(lng)) for lat, lng in zip(lats, lngs)]


__all__ = [
    "FrequentSection",
    "SectionConfig",
    "SectionPortion",
    "TrackOverlap",
    "average_min_distance",
    "cluster_overlaps",
    "densify_track",
    "detect_frequent_sections",
    "find_track_overlap",
    "find_track_portion",
    "resample_track",
    "resolve_section_config",
    "select_medoid",
]
