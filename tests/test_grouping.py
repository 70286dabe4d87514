"""Tests for incremental route grouping and cache consistency."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from route_matching import grouping
from route_matching.errors import CacheInvariantError
from route_matching.grouping import AssignmentState, RouteGrouper
from route_matching.models import MatchDirection, RouteMatchCache


@pytest.fixture
def grouper() -> RouteGrouper:
    return RouteGrouper()


def test_first_activity_starts_a_group(grouper, routes) -> None:
    outcome = grouper.assign_activity(
        routes.signature("a", routes.l_route()),
        routes.info("a", date="2024-03-01T08:00:00Z"),
    )
    grouper.verify()
    assert outcome.state is AssignmentState.NEW_GROUP
    assert outcome.group_id == "route_1"
    group = grouper.groups[0]
    assert group.activity_ids == ["a"]
    assert group.signature.activity_id == "a"
    assert group.name == "Run route 1"
    assert group.first_date == datetime(2024, 3, 1, 8, tzinfo=timezone.utc)
    assert outcome.match is not None
    assert outcome.match.match_percentage == 100.0
    assert outcome.match.direction is MatchDirection.SAME
    assert grouper.cache.activity_to_route_id == {"a": "route_1"}
    assert "a" in grouper.index


def test_matching_activities_share_a_group(grouper, routes) -> None:
    grouper.assign_activity(routes.signature("a", routes.l_route()), routes.info("a", date="2024-03-01"))
    grouper.verify()
    outcome = grouper.assign_activity(
        routes.signature("b", routes.l_route(offset_lat=0.0002)),
        routes.info("b", date="2024-02-01"),
    )
    grouper.verify()
    assert outcome.state is AssignmentState.GROUPED
    assert outcome.group_id == "route_1"
    group = grouper.groups[0]
    assert group.activity_ids == ["a", "b"]
    assert group.first_date.month == 2
    assert group.last_date.month == 3
    assert group.match_count == 2
    assert group.average_match_quality == pytest.approx(100.0)
    assert group.consensus_stale


def test_reverse_activity_joins_with_reverse_direction(grouper, routes) -> None:
    grouper.assign_activity(routes.signature("a", routes.l_route()))
    outcome = grouper.assign_activity(
        routes.signature("b", list(reversed(routes.l_route())))
    )
    grouper.verify()
    assert outcome.state is AssignmentState.GROUPED
    assert outcome.match is not None
    assert outcome.match.direction is MatchDirection.REVERSE


def test_ten_km_loops_in_opposite_directions_form_one_group(grouper, routes) -> None:
    clockwise = routes.signature("cw", routes.square_loop(clockwise=True))
    counter = routes.signature("ccw", routes.square_loop(clockwise=False))
    assert clockwise.is_loop and counter.is_loop
    assert clockwise.distance == pytest.approx(10_000, rel=0.02)

    grouper.assign_activity(clockwise)
    outcome = grouper.assign_activity(counter)
    grouper.verify()

    assert outcome.state is AssignmentState.GROUPED
    assert len(grouper.groups) == 1
    assert grouper.groups[0].activity_count == 2
    assert outcome.match is not None
    assert outcome.match.match_percentage >= grouper.config.min_grouping_percentage


def test_distant_activity_starts_new_group(grouper, routes) -> None:
    grouper.assign_activity(routes.signature("a", routes.l_route()))
    outcome = grouper.assign_activity(routes.signature("b", routes.l_route(offset_lat=0.05)))
    grouper.verify()
    assert outcome.state is AssignmentState.NEW_GROUP
    assert outcome.group_id == "route_2"
    assert [group.id for group in grouper.groups] == ["route_1", "route_2"]


def test_partial_overlap_starts_new_group(grouper, routes) -> None:
    grouper.assign_activity(routes.signature("a", routes.l_route()))
    outcome = grouper.assign_activity(routes.signature("b", routes.l_route(offset_lat=0.003)))
    grouper.verify()
    assert outcome.state is AssignmentState.NEW_GROUP


def test_sport_types_are_grouped_separately(grouper, routes) -> None:
    grouper.assign_activity(routes.signature("run", routes.l_route()), routes.info("run", "Run"))
    outcome = grouper.assign_activity(
        routes.signature("ride", routes.l_route()), routes.info("ride", "Ride")
    )
    grouper.verify()
    assert outcome.state is AssignmentState.NEW_GROUP
    assert grouper.groups[1].sport_type == "Ride"
    assert grouper.groups[1].name == "Ride route 2"


@pytest.mark.parametrize(
    "percentage,expected",
    [(70.0, AssignmentState.GROUPED), (69.0, AssignmentState.NEW_GROUP)],
)
def test_grouping_threshold_is_inclusive(monkeypatch, grouper, routes, percentage, expected) -> None:
    monkeypatch.setattr(
        grouping, "compute_match_percentage", lambda *args, **kwargs: percentage
    )
    grouper.assign_activity(routes.signature("a", routes.l_route()))
    outcome = grouper.assign_activity(routes.signature("b", routes.l_route()))
    grouper.verify()
    assert outcome.state is expected
    if expected is AssignmentState.GROUPED:
        assert outcome.match is not None
        assert outcome.match.match_percentage == percentage
        assert outcome.match.direction is MatchDirection.PARTIAL


def test_custom_grouping_threshold(routes) -> None:
    grouper = RouteGrouper(config={"min_grouping_percentage": 30.0})
    grouper.assign_activity(routes.signature("a", routes.l_route()))
    outcome = grouper.assign_activity(routes.signature("b", routes.l_route(offset_lat=0.003)))
    assert outcome.state is AssignmentState.GROUPED


def test_already_processed_activity_is_skipped(grouper, routes) -> None:
    signature = routes.signature("a", routes.l_route())
    grouper.assign_activity(signature)
    outcome = grouper.assign_activity(signature)
    grouper.verify()
    assert outcome.state is AssignmentState.SKIPPED
    assert outcome.group_id == "route_1"
    assert grouper.groups[0].activity_ids == ["a"]


def test_degenerate_activity_is_processed_without_group(grouper, routes) -> None:
    outcome = grouper.assign_activity(routes.signature("empty", []))
    grouper.verify()
    assert outcome.state is AssignmentState.NO_MATCH
    assert grouper.cache.is_processed("empty")
    assert "empty" in grouper.cache.signatures
    assert grouper.groups == []
    assert "empty" not in grouper.index


def test_remove_representative_promotes_next_member(grouper, routes) -> None:
    grouper.assign_activity(routes.signature("a", routes.l_route()))
    grouper.assign_activity(routes.signature("b", routes.l_route(offset_lat=0.0002)))
    grouper.assign_activity(routes.signature("c", routes.l_route(offset_lat=0.0001)))

    assert grouper.remove_activity("a")
    grouper.verify()
    group = grouper.groups[0]
    assert group.activity_ids == ["b", "c"]
    assert group.signature.activity_id == "b"
    assert grouper.cache.matches["b"].match_percentage == 100.0
    assert "a" not in grouper.index
    assert not grouper.cache.is_processed("a")

    assert grouper.remove_activity("b")
    assert grouper.remove_activity("c")
    grouper.verify()
    assert grouper.groups == []
    assert grouper.cache.activity_to_route_id == {}
    assert not grouper.remove_activity("unknown")


def test_removing_representative_rechecks_remaining_members(grouper, routes) -> None:
    # About 40 m either side of the first trace: each is close to it but not
    # to the other.
    east = routes.signature("b", routes.l_route(offset_lng=0.00058))
    west = routes.signature("c", routes.l_route(offset_lng=-0.00058))
    grouper.assign_activity(routes.signature("a", routes.l_route()))
    grouper.assign_activity(east)
    grouper.assign_activity(west)
    assert grouper.groups[0].activity_ids == ["a", "b", "c"]
    assert grouping.compute_match_percentage(west, east) < 70.0

    assert grouper.remove_activity("a")

    grouper.verify()
    assert grouper.cache.activity_to_route_id["b"] != grouper.cache.activity_to_route_id["c"]
    assert grouper.cache.is_processed("c")
    assert "c" in grouper.index
    for group in grouper.groups:
        members = [aid for aid in group.activity_ids if aid != group.signature.activity_id]
        for member in members:
            percentage = grouping.compute_match_percentage(
                grouper.cache.signatures[member], group.signature
            )
            assert percentage >= 70.0
        assert group.match_count == len(group.activity_ids)


def test_removing_member_drops_its_match_quality(grouper, routes, monkeypatch) -> None:
    monkeypatch.setattr(grouping, "compute_match_percentage", lambda *args, **kwargs: 80.0)
    grouper.assign_activity(routes.signature("a", routes.l_route()))
    grouper.assign_activity(routes.signature("b", routes.l_route(offset_lat=0.0001)))
    group = grouper.groups[0]
    assert group.average_match_quality == pytest.approx(90.0)

    assert grouper.remove_activity("b")

    assert group.match_count == 1
    assert group.average_match_quality == pytest.approx(100.0)


def test_group_numbers_continue_after_reload(routes) -> None:
    first = RouteGrouper()
    first.assign_activity(routes.signature("a", routes.l_route()))
    first.assign_activity(routes.signature("b", routes.l_route(offset_lat=0.05)))

    reloaded = RouteGrouper.from_cache(first.cache)
    assert len(reloaded.index) == 2
    outcome = reloaded.assign_activity(routes.signature("c", routes.l_route(offset_lat=0.1)))
    assert outcome.group_id == "route_3"
    outcome = reloaded.assign_activity(routes.signature("d", routes.l_route(offset_lat=0.05)))
    assert outcome.group_id == "route_2"


def test_consensus_is_lazy(grouper, routes) -> None:
    grouper.assign_activity(routes.signature("a", routes.l_route()))
    grouper.assign_activity(routes.signature("b", routes.l_route(offset_lat=0.0001)))
    group = grouper.groups[0]
    assert group.consensus_points is None

    points = grouper.consensus_for("route_1")
    assert points
    assert not group.consensus_stale
    assert group.consensus_points == points

    grouper.assign_activity(routes.signature("c", routes.l_route()))
    assert group.consensus_stale
    assert grouper.consensus_for("missing") is None


def test_regroup_all_rebuilds_from_scratch(grouper, routes) -> None:
    signatures = [
        routes.signature("a", routes.l_route()),
        routes.signature("b", routes.l_route(offset_lat=0.05)),
        routes.signature("c", routes.l_route(offset_lat=0.0002)),
    ]
    for signature in signatures:
        grouper.assign_activity(signature)
    outcomes = grouper.regroup_all(reversed(signatures))
    grouper.verify()
    assert [outcome.state for outcome in outcomes] == [
        AssignmentState.NEW_GROUP,
        AssignmentState.NEW_GROUP,
        AssignmentState.GROUPED,
    ]
    assert grouper.cache.activity_to_route_id == {"c": "route_1", "b": "route_2", "a": "route_1"}


def test_verify_consistency_detects_drift(grouper, routes) -> None:
    grouper.assign_activity(routes.signature("a", routes.l_route()))
    grouper.cache.activity_to_route_id["ghost"] = "route_1"
    with pytest.raises(CacheInvariantError):
        grouper.verify()


def test_verify_consistency_detects_duplicate_membership(routes) -> None:
    cache = RouteMatchCache()
    cache.verify_consistency()
    grouper = RouteGrouper(cache)
    grouper.assign_activity(routes.signature("a", routes.l_route()))
    grouper.assign_activity(routes.signature("b", routes.l_route(offset_lat=0.05)))
    grouper.groups[1].activity_ids.append("a")
    with pytest.raises(CacheInvariantError, match="belongs to groups"):
        cache.verify_consistency()
