"""Global pytest fixtures & helpers.

Adds project root to path and provides synthetic GPS routes shared by the
signature, matching, grouping and section tests.
"""
from __future__ import annotations

import os
import sys
from typing import Iterator, List, Sequence, Tuple

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from route_matching.models import ActivityInfo, RouteSignature
from route_matching.signature import generate_route_signature
from route_matching.similarity import clear_projection_cache

LatLng = Tuple[float, float]

# Origin of every synthetic route (central London).
LAT0 = 51.5
LNG0 = -0.1


# --- Factory helpers -------------------------------------------------
def interpolate(waypoints: Sequence[LatLng], per_leg: int) -> List[LatLng]:
    """Evenly spaced points along straight legs between waypoints."""

    points: List[LatLng] = []
    for (lat1, lng1), (lat2, lng2) in zip(waypoints, waypoints[1:]):
        for step in range(per_leg):
            t = step / per_leg
            points.append((lat1 + (lat2 - lat1) * t, lng1 + (lng2 - lng1) * t))
    points.append(tuple(waypoints[-1]))
    return points


def l_route(offset_lat: float = 0.0, offset_lng: float = 0.0, per_leg: int = 40) -> List[LatLng]:
    """Roughly 1 km north then 1 km east."""

    waypoints = [
        (LAT0 + offset_lat, LNG0 + offset_lng),
        (LAT0 + 0.009 + offset_lat, LNG0 + offset_lng),
        (LAT0 + 0.009 + offset_lat, LNG0 + 0.0145 + offset_lng),
    ]
    return interpolate(waypoints, per_leg)


def square_loop(clockwise: bool = True, per_leg: int = 50) -> List[LatLng]:
    """Roughly 10 km square loop starting and finishing at its south-west corner."""

    sw = (LAT0, LNG0)
    nw = (LAT0 + 0.0225, LNG0)
    ne = (LAT0 + 0.0225, LNG0 + 0.036)
    se = (LAT0, LNG0 + 0.036)
    corners = [sw, nw, ne, se, sw] if clockwise else [sw, se, ne, nw, sw]
    return interpolate(corners, per_leg)


def straight_line(count: int = 500, length_deg: float = 0.02) -> List[LatLng]:
    step = length_deg / (count - 1)
    return [(LAT0 + idx * step, LNG0) for idx in range(count)]


class RouteFactory:
    interpolate = staticmethod(interpolate)
    l_route = staticmethod(l_route)
    square_loop = staticmethod(square_loop)
    straight_line = staticmethod(straight_line)

    @staticmethod
    def signature(activity_id: str, points: Sequence[LatLng]) -> RouteSignature:
        return generate_route_signature(activity_id, points)

    @staticmethod
    def info(activity_id: str, sport_type: str = "Run", date: str | None = None) -> ActivityInfo:
        return ActivityInfo.from_payload({"id": activity_id, "type": sport_type, "date": date})


# --- Fixtures --------------------------------------------------------
@pytest.fixture
def routes() -> type[RouteFactory]:
    return RouteFactory


@pytest.fixture(autouse=True)
def clear_projections() -> Iterator[None]:
    """Ensure the projection cache is cleared before and after each test."""

    clear_projection_cache()
    yield
    clear_projection_cache()
