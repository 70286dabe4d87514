"""Consensus polyline: the common core shared by most members of a route group."""

from __future__ import annotations

import logging
from typing import List, Sequence

import numpy as np

from .config import (
    CONSENSUS_COVERAGE_THRESHOLD,
    CONSENSUS_OUTLIER_STDDEV,
    CONSENSUS_STATIONS,
)
from .geometry import (
    MetricArray,
    cumulative_distances,
    local_utm_epsg,
    project_points,
    resample_by_fraction,
    transformer_for_epsg,
    unproject_points,
)
from .models import RoutePoint, RouteSignature
from .utils import contiguous_runs

LOGGER = logging.getLogger(__name__)

# Stations used only to decide which way a member runs relative to the representative.
_ORIENTATION_STATIONS = 32


def calculate_consensus_route(
    signatures: Sequence[RouteSignature],
    coverage_threshold: float = CONSENSUS_COVERAGE_THRESHOLD,
    stations: int = CONSENSUS_STATIONS,
    outlier_stddev: float = CONSENSUS_OUTLIER_STDDEV,
) -> List[RoutePoint]:
    """Build the consensus polyline for a group; the first signature is the representative.

    Members are oriented to the representative, projected into a shared metric
    CRS and sampled at stations placed by distance from their start, spread
    over the longest member. A member only contributes to stations it reaches.
    Contributions further than ``outlier_stddev`` RMS deviations from the
    station mean are discarded before averaging, and a station is kept when at
    least ``coverage_threshold`` of members reached it. The longest contiguous
    run of kept stations is returned.
    """

    members = [sig for sig in signatures if not sig.is_degenerate]
    if not members:
        return []
    if len(members) == 1:
        return list(members[0].points)

    epsg = local_utm_epsg([pt for sig in members for pt in sig.points])
    transformer = transformer_for_epsg(epsg)
    projected = [project_points(list(sig.points), transformer) for sig in members]
    reference = projected[0]
    oriented = [reference] + [_orient(track, reference) for track in projected[1:]]

    cumulative = [cumulative_distances(track) for track in oriented]
    lengths = np.asarray([float(cum[-1]) for cum in cumulative])
    longest = float(lengths.max())
    if longest <= 0:
        return [members[0].points[0]]

    count = max(2, int(stations))
    targets = np.linspace(0.0, longest, num=count)
    # Tolerance so a member of exactly the longest length reaches the last station.
    tolerance = longest * 1e-9
    total = len(oriented)
    kept = np.zeros(count, dtype=bool)
    consensus = np.zeros((count, 2), dtype=float)
    for station, target in enumerate(targets):
        contributions = [
            _position_at(track, cum, target)
            for track, cum, length in zip(oriented, cumulative, lengths)
            if target <= length + tolerance
        ]
        if len(contributions) / total < coverage_threshold:
            continue
        kept[station] = True
        consensus[station] = _robust_mean(np.asarray(contributions), outlier_stddev)

    runs = contiguous_runs(kept)
    if not runs:
        LOGGER.debug("No consensus station reached the coverage threshold")
        return []
    start, end = max(runs, key=lambda run: (run[1] - run[0], -run[0]))
    return unproject_points(consensus[start : end + 1], transformer)


def _orient(track: MetricArray, reference: MetricArray) -> MetricArray:
    """Return ``track`` or its reverse, whichever follows ``reference`` more closely."""

    if len(track) < 2 or len(reference) < 2:
        return track
    ref = resample_by_fraction(reference, _ORIENTATION_STATIONS)
    forward = resample_by_fraction(track, _ORIENTATION_STATIONS)
    backward = forward[::-1]
    forward_cost = float(np.mean(np.linalg.norm(forward - ref, axis=1)))
    backward_cost = float(np.mean(np.linalg.norm(backward - ref, axis=1)))
    if backward_cost < forward_cost:
        return track[::-1].copy()
    return track


def _position_at(track: MetricArray, cumulative: MetricArray, distance: float) -> MetricArray:
    if len(track) == 1:
        return track[0]
    x = np.interp(distance, cumulative, track[:, 0])
    y = np.interp(distance, cumulative, track[:, 1])
    return np.asarray((x, y), dtype=float)


def _robust_mean(points: MetricArray, outlier_stddev: float) -> MetricArray:
    centre = points.mean(axis=0)
    if len(points) < 3 or outlier_stddev <= 0:
        return centre
    deviations = np.linalg.norm(points - centre, axis=1)
    spread = float(np.sqrt(np.mean(deviations**2)))
    if spread == 0:
        return centre
    inliers = points[deviations <= outlier_stddev * spread]
    if len(inliers) == 0:
        return centre
    return inliers.mean(axis=0)


__all__ = ["calculate_consensus_route"]
