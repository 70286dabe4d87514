"""Tests for section overlap extraction and lap detection."""

from __future__ import annotations

import pytest

from route_matching.geometry import calculate_route_distance
from route_matching.grouping import RouteGrouper
from route_matching.models import Bounds, MatchDirection, RoutePoint
from route_matching.sections import (
    RouteLap,
    compute_overlap_bounds,
    detect_laps,
    detect_laps_for_group,
    extract_section_overlap,
    extract_section_overlaps,
    merge_laps_with_small_gaps,
)
from route_matching.signature import generate_route_signature

START = (51.5, -0.1)
TURN = (51.56, -0.02)


def _out_and_back(routes) -> list[tuple[float, float]]:
    """Out along the section, then home on a parallel path a few hundred metres away."""

    outbound = routes.interpolate([START, TURN], 200)
    across = (TURN[0], TURN[1] - 0.004)
    home = (START[0], START[1] - 0.004)
    return outbound + routes.interpolate([TURN, across, home], 5)[1:6] + routes.interpolate(
        [across, home], 200
    )[1:]


def test_out_and_back_reports_first_half_only(routes) -> None:
    section = routes.interpolate([START, TURN], 200)
    track = _out_and_back(routes)

    overlap = extract_section_overlap("out-back", track, section)

    assert overlap is not None
    assert overlap.activity_id == "out-back"
    assert overlap.start_index == 0
    assert 200 <= overlap.end_index <= 202
    assert overlap.end_index < len(track) // 2
    assert overlap.overlap_points == overlap.full_track[0 : overlap.end_index + 1]
    assert len(overlap.full_track) == len(track)


def test_longest_pass_wins(routes) -> None:
    section = routes.interpolate([START, (51.51, -0.1)], 40)
    short_pass = routes.interpolate([(51.5, -0.1), (51.503, -0.1)], 10)
    detour = routes.interpolate([(51.503, -0.1), (51.503, -0.09)], 10)[1:]
    long_pass = routes.interpolate([(51.503, -0.09), (51.503, -0.1), (51.51, -0.1)], 20)[1:]
    track = short_pass + detour + long_pass
    overlap = extract_section_overlap("a", track, section)
    assert overlap is not None
    assert overlap.start_index > len(short_pass)
    assert overlap.end_index == len(track) - 1


def test_no_overlap_or_short_inputs(routes) -> None:
    section = routes.interpolate([START, (51.51, -0.1)], 40)
    far = routes.interpolate([(52.0, 0.5), (52.01, 0.5)], 40)
    assert extract_section_overlap("far", far, section) is None
    assert extract_section_overlap("short", [START, START], section) is None
    assert extract_section_overlap("x", section, [START]) is None
    # Two near points are below the minimum run length.
    track = [(52.0, 0.5), START, (51.5001, -0.1), (52.0, 0.5)]
    assert extract_section_overlap("tiny", track, section) is None


def test_extract_overlaps_filters_misses(routes) -> None:
    section = routes.interpolate([START, (51.51, -0.1)], 40)
    tracks = {
        "near": routes.interpolate([START, (51.51, -0.1)], 40),
        "far": routes.interpolate([(52.0, 0.5), (52.01, 0.5)], 40),
    }
    overlaps = extract_section_overlaps(tracks, section)
    assert [item.activity_id for item in overlaps] == ["near"]


def test_overlap_bounds_are_padded() -> None:
    section = [(51.5, -0.1), (51.6, 0.0)]
    bounds = compute_overlap_bounds(section, [])
    assert bounds.min_lat == pytest.approx(51.485)
    assert bounds.max_lat == pytest.approx(51.615)
    assert bounds.min_lng == pytest.approx(-0.115)
    assert bounds.max_lng == pytest.approx(0.015)
    assert compute_overlap_bounds([], []) is None


def test_overlap_bounds_include_overlaps(routes) -> None:
    section = routes.interpolate([START, (51.51, -0.1)], 40)
    track = routes.interpolate([START, (51.51, -0.1)], 40) + [(51.53, -0.1)]
    overlap = extract_section_overlap("a", track, section)
    bounds = compute_overlap_bounds(section, [overlap], padding=0.0)
    assert bounds == Bounds(51.5, 51.51, -0.1, -0.1)


def _lap_activity(routes) -> list[RoutePoint]:
    """L route forwards, a detour off the end, then the L route back."""

    route = routes.l_route()
    end = route[-1]
    away = (end[0], end[1] + 0.0045)
    detour = routes.interpolate([end, away, end], 10)[1:-1]
    return [RoutePoint(*pt) for pt in route + detour + list(reversed(route))]


def test_detect_laps_finds_both_passes(routes) -> None:
    consensus = [RoutePoint(*pt) for pt in routes.l_route()]
    activity = _lap_activity(routes)
    distance = calculate_route_distance(activity)
    duration = distance / 3.0

    laps = detect_laps(activity, consensus, distance, duration)

    assert [lap.lap_number for lap in laps] == [1, 2]
    assert laps[0].start_index == 0
    assert laps[1].end_index == len(activity) - 1
    assert laps[0].direction is MatchDirection.SAME
    assert laps[1].direction is MatchDirection.REVERSE
    for lap in laps:
        assert lap.distance == pytest.approx(2000, rel=0.1)
        assert lap.speed == pytest.approx(3.0)
        assert lap.estimated_duration == pytest.approx(lap.distance / 3.0)
        assert lap.points == activity[lap.start_index : lap.end_index + 1]


def test_detect_laps_rejects_bad_inputs(routes) -> None:
    consensus = [RoutePoint(*pt) for pt in routes.l_route()]
    activity = _lap_activity(routes)
    assert detect_laps(activity[:2], consensus, 100.0, 10.0) == []
    assert detect_laps(activity, consensus[:2], 100.0, 10.0) == []
    assert detect_laps(activity, consensus, 0.0, 10.0) == []
    assert detect_laps(activity, consensus, 100.0, 0.0) == []


def test_merge_laps_with_small_gaps() -> None:
    points = [RoutePoint(51.5 + idx * 0.00005, -0.1) for idx in range(10)]

    def lap(number: int, start: int, end: int) -> RouteLap:
        distance = calculate_route_distance(points[start : end + 1])
        return RouteLap(number, start, end, distance, distance / 2.0, 2.0, MatchDirection.SAME, points[start : end + 1])

    merged = merge_laps_with_small_gaps([lap(1, 0, 3), lap(2, 6, 9)], points, max_gap_m=30.0)
    assert len(merged) == 1
    assert merged[0].start_index == 0
    assert merged[0].end_index == 9
    assert merged[0].distance == pytest.approx(calculate_route_distance(points))
    assert merged[0].points == points

    kept = merge_laps_with_small_gaps([lap(1, 0, 3), lap(2, 6, 9)], points, max_gap_m=1.0)
    assert len(kept) == 2


def test_detect_laps_for_group_covers_every_member(routes) -> None:
    consensus = [RoutePoint(*pt) for pt in routes.l_route()]
    activity = _lap_activity(routes)
    distance = calculate_route_distance(activity)
    signatures = {
        "laps": generate_route_signature("laps", activity, {"target_points": 500}),
        "no-data": routes.signature("no-data", routes.l_route()),
        "tiny": routes.signature("tiny", routes.l_route()[:2]),
    }
    data = {"laps": (distance, distance / 3.0), "tiny": (200.0, 60.0)}

    result = detect_laps_for_group(signatures, consensus, data)

    assert set(result) == {"laps", "no-data", "tiny"}
    assert [lap.lap_number for lap in result["laps"]] == [1, 2]
    assert result["no-data"] == []
    assert result["tiny"] == []


def test_grouper_laps_use_group_consensus(routes) -> None:
    grouper = RouteGrouper()
    first = grouper.assign_activity(routes.signature("a", routes.l_route()), routes.info("a"))
    grouper.assign_activity(
        routes.signature("b", routes.l_route(offset_lat=0.0001)), routes.info("b")
    )
    distance = calculate_route_distance(routes.l_route())

    laps = grouper.laps_for_group(first.group_id, {"a": (distance, distance / 2.5)})

    assert set(laps) == {"a", "b"}
    assert len(laps["a"]) == 1
    assert laps["a"][0].direction is MatchDirection.SAME
    assert laps["a"][0].speed == pytest.approx(2.5)
    assert laps["b"] == []
    assert grouper.laps_for_group("route_404", {}) == {}
