"""Tests for the consensus polyline builder."""

from __future__ import annotations

from route_matching.consensus import calculate_consensus_route
from route_matching.geometry import haversine_distance, min_distances_to_points
from route_matching.models import RoutePoint
from route_matching.signature import reverse_signature


def test_empty_and_single_member(routes) -> None:
    assert calculate_consensus_route([]) == []
    assert calculate_consensus_route([routes.signature("empty", [])]) == []
    signature = routes.signature("a", routes.l_route())
    assert calculate_consensus_route([signature]) == list(signature.points)


def test_identical_members_reproduce_route(routes) -> None:
    raw = routes.l_route()
    members = [routes.signature(f"a{idx}", raw) for idx in range(3)]
    consensus = calculate_consensus_route(members)
    assert len(consensus) == 100
    assert haversine_distance(consensus[0], raw[0]) < 1.0
    assert haversine_distance(consensus[-1], raw[-1]) < 1.0
    assert min_distances_to_points(consensus, routes.l_route(per_leg=400)).max() < 5.0


def test_members_are_oriented_to_the_representative(routes) -> None:
    raw = routes.l_route()
    forward = routes.signature("a", raw)
    backward = reverse_signature(routes.signature("b", raw))
    consensus = calculate_consensus_route([forward, backward])
    assert haversine_distance(consensus[0], raw[0]) < 1.0
    assert haversine_distance(consensus[-1], raw[-1]) < 1.0


def test_short_member_trims_to_common_core(routes) -> None:
    raw = routes.l_route()
    corner = RoutePoint(*raw[40])
    members = [routes.signature(f"full{idx}", raw) for idx in range(3)]
    members.append(routes.signature("half", raw[:41]))

    core = calculate_consensus_route(members, coverage_threshold=0.8)
    assert haversine_distance(core[0], raw[0]) < 1.0
    assert haversine_distance(core[-1], corner) < 40.0

    everything = calculate_consensus_route(members, coverage_threshold=0.7)
    assert haversine_distance(everything[-1], raw[-1]) < 1.0


def test_outlier_member_is_rejected(routes) -> None:
    raw = routes.l_route()
    members = [routes.signature(f"a{idx}", raw) for idx in range(5)]
    # About 500 m east of the others along its whole length.
    members.append(routes.signature("stray", routes.l_route(offset_lng=0.0072)))
    consensus = calculate_consensus_route(members)
    assert min_distances_to_points(consensus, routes.l_route(per_leg=400)).max() < 5.0

    averaged = calculate_consensus_route(members, outlier_stddev=0.0)
    assert min_distances_to_points(averaged, routes.l_route(per_leg=400)).max() > 50.0
