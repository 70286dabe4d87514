"""Benchmark signature generation, route matching and grouping with large traces."""

from __future__ import annotations

import argparse
import statistics
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Late imports rely on the adjusted sys.path above.
from route_matching.grouping import RouteGrouper  # noqa: E402
from route_matching.models import RoutePoint  # noqa: E402
from route_matching.signature import generate_route_signature  # noqa: E402
from route_matching.similarity import (  # noqa: E402
    clear_projection_cache,
    match_routes,
)


@dataclass(slots=True)
class StageDurations:
    """Timing measurements (in seconds) for one benchmark iteration."""

    signature: float
    match: float
    grouping: float

    @property
    def total(self) -> float:
        """Return the aggregate duration for this benchmark iteration."""

        return self.signature + self.match + self.grouping


@dataclass(slots=True)
class BenchmarkSummary:
    """Aggregated statistics for multiple benchmark iterations."""

    point_count: int
    activity_count: int
    iterations: int
    mean_signature_ms: float
    mean_match_ms: float
    mean_grouping_ms: float
    mean_total_ms: float
    worst_total_ms: float


def _build_trace(point_count: int, offset_deg: float = 0.0) -> List[RoutePoint]:
    """Generate a gently curving lat/lng trace with evenly spaced points."""

    base_lat = 37.0 + offset_deg
    base_lng = -122.0
    step_deg = 1.2e-5
    return [
        (base_lat + idx * step_deg, base_lng + (idx * step_deg) ** 1.5)
        for idx in range(point_count)
    ]


def _run_iteration(point_count: int, activity_count: int) -> StageDurations:
    """Execute one benchmark iteration and capture per-stage timings."""

    clear_projection_cache()
    traces = [
        _build_trace(point_count, offset_deg=(idx % 4) * 1.0e-5)
        for idx in range(activity_count)
    ]

    start = time.perf_counter()
    signatures = [
        generate_route_signature(f"bench-{idx}", trace)
        for idx, trace in enumerate(traces)
    ]
    signature = time.perf_counter() - start

    start = time.perf_counter()
    result = match_routes(signatures[0], signatures[-1])
    if result is None:
        raise RuntimeError("Synthetic activities failed to match each other")
    match = time.perf_counter() - start

    start = time.perf_counter()
    grouper = RouteGrouper()
    for item in signatures:
        grouper.assign_activity(item)
    grouping = time.perf_counter() - start
    if len(grouper.groups) != 1:
        raise RuntimeError("Synthetic activities were split across groups")

    return StageDurations(signature=signature, match=match, grouping=grouping)


def run_benchmark(
    point_count: int,
    activity_count: int,
    iterations: int,
) -> BenchmarkSummary:
    """Benchmark the matching pipeline and return aggregated timings."""

    if point_count < 1000:
        raise ValueError("point_count must be at least 1,000")
    if activity_count < 2:
        raise ValueError("activity_count must be at least 2")
    if iterations <= 0:
        raise ValueError("iterations must be positive")

    durations = [
        _run_iteration(point_count, activity_count) for _ in range(iterations)
    ]

    return BenchmarkSummary(
        point_count=point_count,
        activity_count=activity_count,
        iterations=iterations,
        mean_signature_ms=statistics.fmean(d.signature for d in durations) * 1000.0,
        mean_match_ms=statistics.fmean(d.match for d in durations) * 1000.0,
        mean_grouping_ms=statistics.fmean(d.grouping for d in durations) * 1000.0,
        mean_total_ms=statistics.fmean(d.total for d in durations) * 1000.0,
        worst_total_ms=max(d.total for d in durations) * 1000.0,
    )


def _format_summary(summary: BenchmarkSummary) -> Dict[str, float]:
    """Return a JSON-friendly representation of the benchmark summary."""

    return {
        "point_count": summary.point_count,
        "activity_count": summary.activity_count,
        "iterations": summary.iterations,
        "mean_signature_ms": summary.mean_signature_ms,
        "mean_match_ms": summary.mean_match_ms,
        "mean_grouping_ms": summary.mean_grouping_ms,
        "mean_total_ms": summary.mean_total_ms,
        "worst_total_ms": summary.worst_total_ms,
    }


def _parse_args() -> argparse.Namespace:
    """Parse command-line arguments for the benchmark utility."""

    parser = argparse.ArgumentParser(
        description="Benchmark route signatures, matching and grouping",
    )
    parser.add_argument(
        "--points",
        type=int,
        default=12000,
        help="Number of GPS samples in each synthetic activity",
    )
    parser.add_argument(
        "--activities",
        type=int,
        default=20,
        help="Number of synthetic activities to group",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=5,
        help="Number of repetitions for averaging",
    )
    return parser.parse_args()


def main() -> None:
    """Entry point when running the module as a script."""

    args = _parse_args()
    summary = run_benchmark(args.points, args.activities, args.iterations)
    for key, value in _format_summary(summary).items():
        if key in {"point_count", "activity_count", "iterations"}:
            print(f"{key}: {value}")
        else:
            print(f"{key}: {value:.3f}")


if __name__ == "__main__":
    main()
