"""Cheap pairwise compatibility checks run before any full route comparison."""

from __future__ import annotations

from .config import ROUTE_ENDPOINT_THRESHOLD_M
from .geometry import haversine_distance
from .models import Bounds, ConfigInput, RouteSignature, resolve_config


def calculate_bounds_overlap(first: Bounds, second: Bounds) -> float:
    """Intersection area as a fraction of the smaller box.

    Returns 0 when the boxes do not overlap or when either box has no area,
    and 1 when one box lies completely inside the other.
    """

    min_lat = max(first.min_lat, second.min_lat)
    max_lat = min(first.max_lat, second.max_lat)
    min_lng = max(first.min_lng, second.min_lng)
    max_lng = min(first.max_lng, second.max_lng)
    if min_lat >= max_lat or min_lng >= max_lng:
        return 0.0
    intersection = (max_lat - min_lat) * (max_lng - min_lng)
    smaller = min(first.area, second.area)
    if smaller <= 0:
        return 0.0
    return intersection / smaller


def quick_filter_match(
    first: RouteSignature,
    second: RouteSignature,
    config: ConfigInput = None,
) -> bool:
    """Return ``True`` when two signatures could plausibly be the same route.

    Checks run in order and short-circuit: bounding box overlap, distance
    ratio, the loop exception, then endpoint proximity in either direction.
    """

    if first.is_degenerate or second.is_degenerate:
        return False
    cfg = resolve_config(config)

    if calculate_bounds_overlap(first.bounds, second.bounds) < cfg.min_bounds_overlap:
        return False

    longest = max(first.distance, second.distance)
    if longest > 0:
        ratio = abs(first.distance - second.distance) / longest
        if ratio > cfg.max_distance_difference:
            return False

    # Loops have no meaningful start/end to compare.
    if first.is_loop and second.is_loop:
        return True

    start_a, end_a = first.points[0], first.points[-1]
    start_b, end_b = second.points[0], second.points[-1]
    same_direction = (
        haversine_distance(start_a, start_b) < ROUTE_ENDPOINT_THRESHOLD_M
        and haversine_distance(end_a, end_b) < ROUTE_ENDPOINT_THRESHOLD_M
    )
    if same_direction:
        return True
    return (
        haversine_distance(start_a, end_b) < ROUTE_ENDPOINT_THRESHOLD_M
        and haversine_distance(end_a, start_b) < ROUTE_ENDPOINT_THRESHOLD_M
    )


__all__ = ["calculate_bounds_overlap", "quick_filter_match"]
