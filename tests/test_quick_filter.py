"""Tests for the bounds overlap and quick filter checks."""

from __future__ import annotations

import pytest

from route_matching.filtering import calculate_bounds_overlap, quick_filter_match
from route_matching.models import Bounds
from route_matching.signature import reverse_signature

BOX_PAIRS = [
    (Bounds(0.0, 1.0, 0.0, 1.0), Bounds(0.5, 1.5, 0.5, 1.5)),
    (Bounds(0.0, 2.0, 0.0, 2.0), Bounds(0.5, 1.0, 0.5, 1.0)),
    (Bounds(0.0, 1.0, 0.0, 1.0), Bounds(2.0, 3.0, 2.0, 3.0)),
    (Bounds(0.0, 1.0, 0.0, 1.0), Bounds(1.0, 2.0, 0.0, 1.0)),
    (Bounds(51.5, 51.6, -0.2, -0.1), Bounds(51.55, 51.58, -0.25, -0.15)),
]


@pytest.mark.parametrize("first,second", BOX_PAIRS)
def test_bounds_overlap_is_symmetric(first: Bounds, second: Bounds) -> None:
    assert calculate_bounds_overlap(first, second) == pytest.approx(
        calculate_bounds_overlap(second, first)
    )


def test_bounds_overlap_values() -> None:
    assert calculate_bounds_overlap(*BOX_PAIRS[0]) == pytest.approx(0.25)
    assert calculate_bounds_overlap(*BOX_PAIRS[1]) == pytest.approx(1.0)
    assert calculate_bounds_overlap(*BOX_PAIRS[2]) == 0.0
    # Touching edges share no area.
    assert calculate_bounds_overlap(*BOX_PAIRS[3]) == 0.0


def test_bounds_overlap_zero_area_box() -> None:
    flat = Bounds(0.0, 1.0, 0.5, 0.5)
    assert calculate_bounds_overlap(flat, Bounds(0.0, 1.0, 0.0, 1.0)) == 0.0


def test_quick_filter_accepts_nearby_copy(routes) -> None:
    first = routes.signature("a", routes.l_route())
    second = routes.signature("b", routes.l_route(offset_lat=0.0002, offset_lng=0.0002))
    assert quick_filter_match(first, second)
    assert quick_filter_match(second, first)


def test_quick_filter_accepts_reverse_traversal(routes) -> None:
    first = routes.signature("a", routes.l_route())
    backwards = routes.signature("b", list(reversed(routes.l_route())))
    assert quick_filter_match(first, backwards)


def test_quick_filter_rejects_distant_routes(routes) -> None:
    first = routes.signature("a", routes.l_route())
    far = routes.signature("b", routes.l_route(offset_lat=0.05))
    assert not quick_filter_match(first, far)


def test_quick_filter_rejects_large_distance_difference(routes) -> None:
    long_route = routes.signature("a", routes.l_route())
    # Same box and endpoints, but the diagonal is about 30% shorter.
    short = routes.signature(
        "b",
        routes.interpolate([(51.5, -0.1), (51.509, -0.0855)], 20),
    )
    assert calculate_bounds_overlap(long_route.bounds, short.bounds) == pytest.approx(1.0)
    assert not quick_filter_match(long_route, short, {"max_distance_difference": 0.2})


def test_quick_filter_rejects_degenerate(routes) -> None:
    first = routes.signature("a", routes.l_route())
    empty = routes.signature("b", [])
    assert not quick_filter_match(first, empty)
    assert not quick_filter_match(empty, first)


def test_quick_filter_loop_exception(routes) -> None:
    clockwise = routes.signature("cw", routes.square_loop(clockwise=True))
    counter = routes.signature("ccw", routes.square_loop(clockwise=False))
    assert clockwise.is_loop and counter.is_loop
    assert quick_filter_match(clockwise, counter)


@pytest.mark.parametrize(
    "offset",
    [(0.0, 0.0), (0.0002, 0.0002), (0.003, 0.0), (0.05, 0.0), (0.0, 0.01)],
)
def test_quick_filter_reversal_symmetry(routes, offset) -> None:
    first = routes.signature("a", routes.l_route())
    second = routes.signature("b", routes.l_route(*offset))
    assert quick_filter_match(first, second) == quick_filter_match(
        reverse_signature(first), second
    )


def test_out_and_back_against_one_way_is_filtered(routes) -> None:
    start = (51.5, -0.1)
    turn = (51.56, -0.02)
    one_way = routes.signature("one-way", routes.interpolate([start, turn], 200))
    out_and_back = routes.signature(
        "out-back", routes.interpolate([start, turn, start], 200)
    )
    assert out_and_back.distance == pytest.approx(2 * one_way.distance, rel=1e-6)
    assert calculate_bounds_overlap(one_way.bounds, out_and_back.bounds) >= 0.2
    assert not quick_filter_match(one_way, out_and_back)
    assert not quick_filter_match(out_and_back, one_way)
