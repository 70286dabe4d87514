"""Pure geometry helpers shared by the signature, matching and section code."""

from __future__ import annotations

import math
from typing import Iterable, List, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError
from pyproj.enums import TransformDirection

from .config import ROUTE_MAX_STEP_DISTANCE_M, ROUTE_REGION_GRID_SIZE_DEG
from .models import Bounds, RoutePoint

MetricArray = NDArray[np.float64]

EARTH_RADIUS_M = 6_371_000.0


def haversine_distance(p1: Sequence[float], p2: Sequence[float]) -> float:
    """Return the great-circle distance in metres between two (lat, lng) points."""

    lat1 = math.radians(p1[0])
    lat2 = math.radians(p2[0])
    d_lat = math.radians(p2[0] - p1[0])
    d_lng = math.radians(p2[1] - p1[1])
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def haversine_array(
    lats1: NDArray[np.float64],
    lngs1: NDArray[np.float64],
    lats2: NDArray[np.float64],
    lngs2: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Vectorised haversine distance; inputs broadcast against each other."""

    lat1 = np.radians(lats1)
    lat2 = np.radians(lats2)
    d_lat = lat2 - lat1
    d_lng = np.radians(lngs2) - np.radians(lngs1)
    a = np.sin(d_lat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(d_lng / 2) ** 2
    a = np.clip(a, 0.0, 1.0)
    return EARTH_RADIUS_M * 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def min_distances_to_points(
    points: Sequence[Sequence[float]], targets: Sequence[Sequence[float]]
) -> NDArray[np.float64]:
    """For each point, return the haversine distance to its nearest target."""

    if len(points) == 0:
        return np.empty(0, dtype=float)
    if len(targets) == 0:
        return np.full(len(points), np.inf, dtype=float)
    source = as_latlng_array(points)
    target = as_latlng_array(targets)
    distances = haversine_array(
        source[:, 0][:, None],
        source[:, 1][:, None],
        target[:, 0][None, :],
        target[:, 1][None, :],
    )
    return distances.min(axis=1)


def perpendicular_distance(
    point: Sequence[float],
    line_start: Sequence[float],
    line_end: Sequence[float],
) -> float:
    """Distance in metres from ``point`` to the closest point on a segment."""

    distances = perpendicular_distances(
        np.asarray([(point[0], point[1])], dtype=float),
        np.asarray((line_start[0], line_start[1]), dtype=float),
        np.asarray((line_end[0], line_end[1]), dtype=float),
    )
    return float(distances[0])


def perpendicular_distances(
    points: NDArray[np.float64],
    line_start: NDArray[np.float64],
    line_end: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Vectorised :func:`perpendicular_distance` for an ``(n, 2)`` lat/lng array.

    The closest point is found by planar interpolation in degrees with the
    parameter clamped to the segment; the final distance is haversine. A
    zero-length segment falls back to the distance to its start.
    """

    d_lat = line_end[0] - line_start[0]
    d_lng = line_end[1] - line_start[1]
    length_sq = d_lat * d_lat + d_lng * d_lng
    if length_sq == 0:
        return haversine_array(points[:, 0], points[:, 1], line_start[0], line_start[1])
    t = (
        (points[:, 1] - line_start[1]) * d_lng + (points[:, 0] - line_start[0]) * d_lat
    ) / length_sq
    t = np.clip(t, 0.0, 1.0)
    return haversine_array(
        points[:, 0],
        points[:, 1],
        line_start[0] + t * d_lat,
        line_start[1] + t * d_lng,
    )


def calculate_route_distance(
    points: Sequence[Sequence[float]],
    max_step_m: float = ROUTE_MAX_STEP_DISTANCE_M,
) -> float:
    """Total path length in metres, ignoring steps longer than ``max_step_m``."""

    pts = list(points)
    if len(pts) < 2:
        return 0.0
    total = 0.0
    for prev, curr in zip(pts, pts[1:]):
        if not _is_finite_pair(prev) or not _is_finite_pair(curr):
            continue
        step = haversine_distance(prev, curr)
        # Long jumps are GPS dropouts rather than real movement.
        if not math.isfinite(step) or step > max_step_m:
            continue
        total += step
    return total


def calculate_bounds(points: Iterable[Sequence[float]]) -> Bounds:
    """Bounding box of the points; an all-zero box when there are none."""

    lats: List[float] = []
    lngs: List[float] = []
    for point in points:
        lats.append(float(point[0]))
        lngs.append(float(point[1]))
    if not lats:
        return Bounds.empty()
    return Bounds(min(lats), max(lats), min(lngs), max(lngs))


def generate_region_hash(
    point: Sequence[float], grid_size: float = ROUTE_REGION_GRID_SIZE_DEG
) -> str:
    """Coarse grid cell identifier for a point."""

    lat_cell = math.floor(point[0] / grid_size)
    lng_cell = math.floor(point[1] / grid_size)
    return f"{lat_cell},{lng_cell}"


def is_loop(points: Sequence[Sequence[float]], threshold_m: float) -> bool:
    """True when the first and last points are closer than ``threshold_m``."""

    if len(points) < 2:
        return False
    return haversine_distance(points[0], points[-1]) < threshold_m


def as_latlng_array(points: Iterable[Sequence[float]]) -> NDArray[np.float64]:
    """Convert (lat, lng) pairs into an ``(n, 2)`` float array."""

    array = np.asarray(list(points), dtype=float)
    if array.size == 0:
        return np.empty((0, 2), dtype=float)
    if array.ndim != 2 or array.shape[1] != 2:
        raise ValueError("Expected a sequence of (lat, lng) pairs")
    return array


def cumulative_distances(points: MetricArray) -> MetricArray:
    """Cumulative planar distances along a projected polyline."""

    if len(points) == 0:
        return np.zeros(1, dtype=float)
    deltas = np.diff(points, axis=0)
    lengths = np.linalg.norm(deltas, axis=1)
    return np.concatenate(([0.0], np.cumsum(lengths)))


def resample_by_fraction(points: MetricArray, count: int) -> MetricArray:
    """Resample a projected polyline to exactly ``count`` evenly spaced stations."""

    count = max(2, int(count))
    if len(points) == 0:
        return points
    if len(points) == 1:
        return np.repeat(points[:1], count, axis=0)
    cumulative = cumulative_distances(points)
    total = cumulative[-1]
    if total <= 0:
        return np.repeat(points[:1], count, axis=0)
    targets = np.linspace(0.0, total, num=count)
    xs = np.interp(targets, cumulative, points[:, 0])
    ys = np.interp(targets, cumulative, points[:, 1])
    return np.column_stack((xs, ys))


def local_utm_epsg(points: Sequence[Sequence[float]]) -> int:
    """EPSG code of the UTM zone containing the mean of the (lat, lng) points."""

    array = as_latlng_array(points)
    if array.shape[0] == 0:
        raise ValueError("Cannot build a projection for an empty point collection")
    mean_lat = float(np.mean(array[:, 0]))
    mean_lon = float(np.mean(array[:, 1]))
    zone = int((mean_lon + 180.0) // 6.0) + 1
    zone = max(1, min(zone, 60))
    return 32600 + zone if mean_lat >= 0 else 32700 + zone


def transformer_for_epsg(epsg: int) -> Transformer:
    """WGS84 to ``epsg`` transformer taking (lon, lat) order; falls back to web mercator."""

    try:
        target_crs = CRS.from_epsg(epsg)
    except CRSError:
        target_crs = CRS.from_epsg(3857)
    return Transformer.from_crs(CRS.from_epsg(4326), target_crs, always_xy=True)


def build_local_transformer(points: Sequence[Sequence[float]]) -> Transformer:
    """Build a UTM transformer centred on the provided (lat, lng) coordinates."""

    return transformer_for_epsg(local_utm_epsg(points))


def project_points(
    points: Sequence[Sequence[float]], transformer: Transformer
) -> MetricArray:
    """Project (lat, lng) pairs into the transformer's metric CRS."""

    array = as_latlng_array(points)
    if array.shape[0] == 0:
        return np.empty((0, 2), dtype=float)
    xs, ys = transformer.transform(array[:, 1], array[:, 0])
    return np.column_stack((xs, ys)).astype(float, copy=False)


def unproject_points(points: MetricArray, transformer: Transformer) -> List[RoutePoint]:
    """Inverse of :func:`project_points`."""

    if len(points) == 0:
        return []
    lons, lats = transformer.transform(
        points[:, 0], points[:, 1], direction=TransformDirection.INVERSE
    )
    return [RoutePoint(float(lat), float(lon)) for lat, lon in zip(lats, lons)]


def reproject_to_local_crs(
    points: Sequence[Sequence[float]],
) -> Tuple[MetricArray, Transformer]:
    """Project lat/lng points into a local metric coordinate system."""

    transformer = build_local_transformer(points)
    return project_points(points, transformer), transformer


def _is_finite_pair(point: Sequence[float]) -> bool:
    try:
        return math.isfinite(point[0]) and math.isfinite(point[1])
    except (TypeError, IndexError):
        return False


__all__ = [
    "EARTH_RADIUS_M",
    "MetricArray",
    "as_latlng_array",
    "build_local_transformer",
    "calculate_bounds",
    "calculate_route_distance",
    "cumulative_distances",
    "generate_region_hash",
    "haversine_array",
    "haversine_distance",
    "is_loop",
    "local_utm_epsg",
    "min_distances_to_points",
    "perpendicular_distance",
    "perpendicular_distances",
    "project_points",
    "reproject_to_local_crs",
    "resample_by_fraction",
    "transformer_for_epsg",
    "unproject_points",
]
