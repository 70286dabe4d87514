"""Turn raw GPS traces into compact, comparable route signatures."""

from __future__ import annotations

from dataclasses import replace
import logging
import math
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
from polyline import decode as polyline_decode

from .config import LOG_FIRST_INVALID_POINT, ROUTE_SUSPICIOUS_DISTANCE_M
from .geometry import (
    calculate_bounds,
    calculate_route_distance,
    generate_region_hash,
    is_loop,
    perpendicular_distances,
)
from .models import (
    Bounds,
    ConfigInput,
    ReversedPoints,
    RoutePoint,
    RouteSignature,
    resolve_config,
)

LOGGER = logging.getLogger(__name__)

# Adaptive simplification stops once within this fraction of the target.
_TARGET_SLACK = 0.2
_MAX_TOLERANCE_ITERATIONS = 5
_TOLERANCE_GROWTH = 1.5
_TOLERANCE_SHRINK = 0.7


def douglas_peucker(
    points: Sequence[RoutePoint], tolerance_m: float
) -> List[RoutePoint]:
    """Simplify ``points`` keeping every vertex further than ``tolerance_m`` from its chord.

    Endpoints are always preserved. Works on an explicit stack so very long
    traces do not hit the recursion limit.
    """

    count = len(points)
    if count < 3:
        return list(points)
    coords = np.asarray([(pt[0], pt[1]) for pt in points], dtype=float)
    keep = np.zeros(count, dtype=bool)
    keep[0] = keep[-1] = True
    stack: List[Tuple[int, int]] = [(0, count - 1)]
    while stack:
        start, end = stack.pop()
        if end - start < 2:
            continue
        distances = perpendicular_distances(
            coords[start + 1 : end], coords[start], coords[end]
        )
        offset = int(np.argmax(distances))
        if distances[offset] > tolerance_m:
            split = start + 1 + offset
            keep[split] = True
            stack.append((start, split))
            stack.append((split, end))
    return [points[idx] for idx in np.flatnonzero(keep)]


def simplify_route(
    points: Sequence[RoutePoint],
    target_points: int,
    initial_tolerance_m: float,
) -> List[RoutePoint]:
    """Run Douglas-Peucker with a tolerance adapted towards ``target_points``."""

    if len(points) <= target_points:
        return list(points)
    tolerance = initial_tolerance_m
    simplified = douglas_peucker(points, tolerance)
    for _ in range(_MAX_TOLERANCE_ITERATIONS):
        if abs(len(simplified) - target_points) <= target_points * _TARGET_SLACK:
            break
        if len(simplified) > target_points:
            tolerance *= _TOLERANCE_GROWTH
        else:
            tolerance *= _TOLERANCE_SHRINK
        simplified = douglas_peucker(points, tolerance)
    return simplified


def uniform_sample(
    points: Sequence[RoutePoint], target_points: int
) -> List[RoutePoint]:
    """Keep every n-th point (and always the last) to land near ``target_points``."""

    count = len(points)
    if count == 0:
        return []
    step = max(1, count // max(1, min(target_points, count)))
    return [pt for idx, pt in enumerate(points) if idx % step == 0 or idx == count - 1]


def generate_route_signature(
    activity_id: Any,
    latlngs: Sequence[Sequence[Any]],
    config: ConfigInput = None,
) -> RouteSignature:
    """Build a :class:`RouteSignature` from raw ``(lat, lng)`` samples.

    Invalid samples are dropped rather than substituted. An input with no
    valid samples produces a degenerate signature with zeroed fields; this
    function never raises for malformed geometry.
    """

    cfg = resolve_config(config)
    activity_key = str(activity_id)
    raw = list(latlngs) if latlngs is not None else []
    points: List[RoutePoint] = []
    first_invalid: Optional[Any] = None
    for sample in raw:
        point = _coerce_point(sample)
        if point is None:
            if first_invalid is None:
                first_invalid = sample
            continue
        points.append(point)

    dropped = len(raw) - len(points)
    if dropped:
        LOGGER.warning(
            "Activity %s: filtered out %d invalid points (%d/%d valid)",
            activity_key,
            dropped,
            len(points),
            len(raw),
        )
        if LOG_FIRST_INVALID_POINT:
            LOGGER.warning("Activity %s: first invalid point %r", activity_key, first_invalid)

    if not points:
        return empty_signature(activity_key)

    simplified = simplify_route(
        points, cfg.target_points, cfg.simplification_tolerance
    )
    if len(simplified) < 3 and len(points) >= 3:
        LOGGER.warning(
            "Activity %s: simplification too aggressive (%d points), using uniform sampling",
            activity_key,
            len(simplified),
        )
        simplified = uniform_sample(points, cfg.target_points)
        LOGGER.debug(
            "Activity %s: uniform sampling kept %d points", activity_key, len(simplified)
        )

    distance = calculate_route_distance(points)
    if distance > ROUTE_SUSPICIOUS_DISTANCE_M:
        LOGGER.warning(
            "Activity %s: unusually large distance %.1fkm from %d points",
            activity_key,
            distance / 1000.0,
            len(points),
        )

    bounds = calculate_bounds(simplified)
    return RouteSignature(
        activity_id=activity_key,
        points=tuple(simplified),
        distance=distance,
        bounds=bounds,
        center=bounds.center,
        start_region_hash=generate_region_hash(simplified[0], cfg.region_grid_size),
        end_region_hash=generate_region_hash(simplified[-1], cfg.region_grid_size),
        is_loop=is_loop(simplified, cfg.loop_threshold),
    )


def empty_signature(activity_id: str) -> RouteSignature:
    """Zero-valued signature used when a trace has no usable points."""

    return RouteSignature(
        activity_id=activity_id,
        points=(),
        distance=0.0,
        bounds=Bounds.empty(),
        center=RoutePoint(0.0, 0.0),
        start_region_hash="",
        end_region_hash="",
        is_loop=False,
    )


def reverse_signature(signature: RouteSignature) -> RouteSignature:
    """Return the signature traversed backwards without copying its points."""

    points = signature.points
    if isinstance(points, ReversedPoints):
        reversed_points: Sequence[RoutePoint] = points.base
    else:
        reversed_points = ReversedPoints(points)
    return replace(
        signature,
        points=reversed_points,
        start_region_hash=signature.end_region_hash,
        end_region_hash=signature.start_region_hash,
    )


def decode_polyline(encoded: str) -> List[RoutePoint]:
    """Decode an encoded polyline string into route points."""

    if not encoded:
        return []
    try:
        decoded = polyline_decode(encoded)
    except (ValueError, TypeError, IndexError) as exc:
        raise ValueError("Unable to decode polyline") from exc
    return [RoutePoint(float(lat), float(lng)) for lat, lng in decoded]


def signature_from_polyline(
    activity_id: Any, encoded: str, config: ConfigInput = None
) -> RouteSignature:
    """Build a signature from an encoded polyline; undecodable input is degenerate."""

    try:
        points = decode_polyline(encoded)
    except ValueError:
        LOGGER.warning("Activity %s: unable to decode polyline", activity_id)
        return empty_signature(str(activity_id))
    return generate_route_signature(activity_id, points, config)


def _coerce_point(sample: Any) -> Optional[RoutePoint]:
    try:
        lat, lng = sample[0], sample[1]
    except (TypeError, IndexError, KeyError):
        return None
    if not (_is_number(lat) and _is_number(lng)):
        return None
    lat = float(lat)
    lng = float(lng)
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    return RoutePoint(lat, lng)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, float, np.integer, np.floating))


__all__ = [
    "decode_polyline",
    "douglas_peucker",
    "empty_signature",
    "generate_route_signature",
    "reverse_signature",
    "signature_from_polyline",
    "simplify_route",
    "uniform_sample",
]
