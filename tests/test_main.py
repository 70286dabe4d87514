"""End-to-end tests for the command line entry point."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from route_matching.main import load_activities, main
from route_matching.storage import load_route_cache


def _write_activities(path: Path, routes) -> None:
    activities = [
        {"id": 101, "date": "2024-06-01T07:00:00Z", "type": "Run", "latlng": routes.l_route()},
        {
            "id": 102,
            "date": "2024-06-03T07:00:00Z",
            "type": "Run",
            "latlng": routes.l_route(offset_lat=0.0001),
        },
        {"id": 103, "type": "Ride", "latlng": routes.l_route(offset_lat=0.05)},
        {"type": "Run", "latlng": routes.l_route()},
    ]
    path.write_text(json.dumps(activities), encoding="utf-8")


def test_load_activities_skips_entries_without_id(tmp_path: Path, routes, caplog) -> None:
    path = tmp_path / "activities.json"
    _write_activities(path, routes)
    payloads = load_activities(path)
    assert [payload.activity_id for payload in payloads] == ["101", "102", "103"]
    assert "without an id" in caplog.text


def test_main_groups_and_persists(tmp_path: Path, routes) -> None:
    activities = tmp_path / "activities.json"
    cache_path = tmp_path / "routes.json"
    _write_activities(activities, routes)

    assert main([str(activities), "--cache", str(cache_path), "--consensus"]) == 0

    cache = load_route_cache(cache_path)
    assert cache is not None
    cache.verify_consistency()
    assert [group.activity_ids for group in cache.groups] == [["101", "102"], ["103"]]
    assert cache.groups[0].consensus_points
    assert not cache.groups[0].consensus_stale

    # A second run reuses the cache and changes nothing.
    assert main([str(activities), "--cache", str(cache_path)]) == 0
    again = load_route_cache(cache_path)
    assert [group.activity_ids for group in again.groups] == [["101", "102"], ["103"]]


def test_main_accepts_threshold_override(tmp_path: Path, routes) -> None:
    activities = tmp_path / "activities.json"
    activities.write_text(
        json.dumps(
            [
                {"id": 1, "latlng": routes.l_route()},
                {"id": 2, "latlng": routes.l_route(offset_lat=0.003)},
            ]
        ),
        encoding="utf-8",
    )
    cache_path = tmp_path / "routes.json"
    assert main([str(activities), "--cache", str(cache_path), "--min-grouping", "30"]) == 0
    cache = load_route_cache(cache_path)
    assert len(cache.groups) == 1


def test_main_reports_unreadable_input(tmp_path: Path) -> None:
    missing = tmp_path / "missing.json"
    assert main([str(missing), "--cache", str(tmp_path / "routes.json")]) == 1
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"activities": "nope"}), encoding="utf-8")
    assert main([str(bad), "--cache", str(tmp_path / "routes.json")]) == 1
    assert not (tmp_path / "routes.json").exists()


def test_main_logs_shared_sections(tmp_path: Path, routes, caplog) -> None:
    caplog.set_level(logging.INFO)
    activities = tmp_path / "activities.json"
    north_west = routes.interpolate([(51.5, -0.1), (51.509, -0.1), (51.509, -0.1145)], 40)
    activities.write_text(
        json.dumps(
            [
                {"id": 1, "latlng": routes.l_route()},
                {"id": 2, "latlng": routes.l_route(offset_lat=0.0001)},
                {"id": 3, "latlng": north_west},
            ]
        ),
        encoding="utf-8",
    )

    assert main([str(activities), "--cache", str(tmp_path / "routes.json"), "--sections"]) == 0
    assert "Detected 1 frequent sections" in caplog.text
    assert "Section sec_run_0 (Run): 3 activities" in caplog.text
