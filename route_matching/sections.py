"""Find the parts of individual tracks that follow a shared section or route."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .config import (
    LAP_MERGE_GAP_M,
    SECTION_BOUNDS_PADDING,
    SECTION_MIN_OVERLAP_POINTS,
    SECTION_PROXIMITY_THRESHOLD_M,
)
from .geometry import calculate_route_distance, haversine_distance, min_distances_to_points
from .models import Bounds, MatchDirection, RoutePoint, RouteSignature, SectionOverlap
from .utils import contiguous_runs

# Laps must cover at least this many metres (or half the route, if shorter).
DEFAULT_MIN_LAP_DISTANCE_M = 100.0


@dataclass(slots=True)
class RouteLap:
    """One continuous pass of an activity along a route."""

    lap_number: int
    start_index: int
    end_index: int
    distance: float
    estimated_duration: float
    speed: float
    direction: MatchDirection
    points: List[RoutePoint]


def extract_section_overlap(
    activity_id: str,
    track: Sequence[Sequence[float]],
    section_polyline: Sequence[Sequence[float]],
    threshold_m: float = SECTION_PROXIMITY_THRESHOLD_M,
) -> Optional[SectionOverlap]:
    """Return the longest contiguous run of ``track`` lying near the section.

    A point is near when its distance to the closest section vertex is at
    most ``threshold_m``. Only runs of at least ``SECTION_MIN_OVERLAP_POINTS``
    points qualify; an out-and-back crossing the section twice reports only
    its longest pass.
    """

    if len(track) < SECTION_MIN_OVERLAP_POINTS or len(section_polyline) < 2:
        return None
    full_track = [RoutePoint(float(pt[0]), float(pt[1])) for pt in track]
    near = min_distances_to_points(full_track, section_polyline) <= threshold_m
    runs = [
        (start, end)
        for start, end in contiguous_runs(near)
        if end - start + 1 >= SECTION_MIN_OVERLAP_POINTS
    ]
    if not runs:
        return None
    # Earliest run wins a tie.
    start, end = max(runs, key=lambda run: (run[1] - run[0], -run[0]))
    return SectionOverlap(
        activity_id=activity_id,
        overlap_points=full_track[start : end + 1],
        full_track=full_track,
        start_index=start,
        end_index=end,
    )


def extract_section_overlaps(
    tracks: Mapping[str, Sequence[Sequence[float]]],
    section_polyline: Sequence[Sequence[float]],
    threshold_m: float = SECTION_PROXIMITY_THRESHOLD_M,
) -> List[SectionOverlap]:
    """Run :func:`extract_section_overlap` for each track, dropping misses."""

    results: List[SectionOverlap] = []
    for activity_id, track in tracks.items():
        overlap = extract_section_overlap(activity_id, track, section_polyline, threshold_m)
        if overlap is not None:
            results.append(overlap)
    return results


def compute_overlap_bounds(
    section_polyline: Sequence[Sequence[float]],
    overlaps: Iterable[SectionOverlap],
    padding: float = SECTION_BOUNDS_PADDING,
) -> Optional[Bounds]:
    """Box around the section and every overlap, padded by a fraction of its size."""

    lats: List[float] = [float(pt[0]) for pt in section_polyline]
    lngs: List[float] = [float(pt[1]) for pt in section_polyline]
    for overlap in overlaps:
        lats.extend(pt.lat for pt in overlap.overlap_points)
        lngs.extend(pt.lng for pt in overlap.overlap_points)
    if not lats:
        return None
    min_lat, max_lat = min(lats), max(lats)
    min_lng, max_lng = min(lngs), max(lngs)
    lat_pad = (max_lat - min_lat) * padding
    lng_pad = (max_lng - min_lng) * padding
    return Bounds(
        min_lat - lat_pad,
        max_lat + lat_pad,
        min_lng - lng_pad,
        max_lng + lng_pad,
    )


def detect_laps(
    activity_points: Sequence[RoutePoint],
    consensus_points: Sequence[RoutePoint],
    activity_distance: float,
    activity_duration: float,
    distance_threshold: float = SECTION_PROXIMITY_THRESHOLD_M,
    min_lap_distance: float = DEFAULT_MIN_LAP_DISTANCE_M,
) -> List[RouteLap]:
    """Split an activity into passes along a route's consensus polyline.

    Lap durations are estimated from the activity's average speed. Passes
    separated by less than ``LAP_MERGE_GAP_M`` of off-route travel are treated
    as one lap interrupted by a GPS dropout.
    """

    if len(activity_points) < 3 or len(consensus_points) < 3:
        return []
    if not activity_distance or not activity_duration or activity_duration <= 0:
        return []
    average_speed = activity_distance / activity_duration
    if not np.isfinite(average_speed) or average_speed <= 0:
        return []

    points = [RoutePoint(float(pt[0]), float(pt[1])) for pt in activity_points]
    on_route = min_distances_to_points(points, consensus_points) <= distance_threshold
    route_length = calculate_route_distance(consensus_points)
    min_coverage = min(min_lap_distance, route_length * 0.5)
    consensus_start = consensus_points[0]
    consensus_end = consensus_points[-1]

    laps: List[RouteLap] = []
    for start, end in contiguous_runs(on_route):
        lap_points = points[start : end + 1]
        lap_distance = calculate_route_distance(lap_points)
        if lap_distance < min_coverage:
            continue
        duration = lap_distance / average_speed
        speed = lap_distance / duration if duration > 0 else average_speed
        if not np.isfinite(speed) or speed <= 0:
            continue
        if haversine_distance(lap_points[0], consensus_start) < haversine_distance(
            lap_points[0], consensus_end
        ):
            direction = MatchDirection.SAME
        else:
            direction = MatchDirection.REVERSE
        laps.append(
            RouteLap(
                lap_number=len(laps) + 1,
                start_index=start,
                end_index=end,
                distance=lap_distance,
                estimated_duration=duration,
                speed=speed,
                direction=direction,
                points=lap_points,
            )
        )

    merged = merge_laps_with_small_gaps(laps, points, LAP_MERGE_GAP_M)
    return [replace(lap, lap_number=idx) for idx, lap in enumerate(merged, start=1)]


def merge_laps_with_small_gaps(
    laps: Sequence[RouteLap],
    activity_points: Sequence[RoutePoint],
    max_gap_m: float = LAP_MERGE_GAP_M,
) -> List[RouteLap]:
    """Join consecutive laps whose off-route gap is at most ``max_gap_m``."""

    if len(laps) <= 1:
        return list(laps)
    merged: List[RouteLap] = [laps[0]]
    for current in laps[1:]:
        previous = merged[-1]
        gap = list(activity_points[previous.end_index + 1 : current.start_index])
        gap_distance = calculate_route_distance(gap) if gap else 0.0
        if gap_distance > max_gap_m:
            merged.append(current)
            continue
        combined = list(activity_points[previous.start_index : current.end_index + 1])
        distance = calculate_route_distance(combined)
        duration = previous.estimated_duration + current.estimated_duration
        merged[-1] = replace(
            previous,
            end_index=current.end_index,
            distance=distance,
            estimated_duration=duration,
            speed=distance / duration if duration > 0 else previous.speed,
            points=combined,
        )
    return merged


def detect_laps_for_group(
    signatures: Mapping[str, RouteSignature],
    consensus_points: Sequence[RoutePoint],
    activity_data: Mapping[str, Tuple[float, float]],
    distance_threshold: float = SECTION_PROXIMITY_THRESHOLD_M,
) -> Dict[str, List[RouteLap]]:
    """Run :func:`detect_laps` for every member of a group.

    ``activity_data`` maps activity ids to ``(distance_m, duration_s)``. Members
    without timing data or with fewer than three signature points get no laps.
    """

    result: Dict[str, List[RouteLap]] = {}
    for activity_id, signature in signatures.items():
        data = activity_data.get(activity_id)
        if data is None or len(signature.points) < 3:
            result[activity_id] = []
            continue
        distance, duration = data
        result[activity_id] = detect_laps(
            signature.points,
            consensus_points,
            distance,
            duration,
            distance_threshold,
        )
    return result


__all__ = [
    "DEFAULT_MIN_LAP_DISTANCE_M",
    "RouteLap",
    "compute_overlap_bounds",
    "detect_laps",
    "detect_laps_for_group",
    "extract_section_overlap",
    "extract_section_overlaps",
    "merge_laps_with_small_gaps",
]
