"""Dataclasses describing route signatures, groups and the match cache."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
import math
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Set,
    Union,
    overload,
)

from .config import (
    ROUTE_CACHE_VERSION,
    ROUTE_DISTANCE_THRESHOLD_M,
    ROUTE_LOOP_THRESHOLD_M,
    ROUTE_MAX_DISTANCE_DIFFERENCE,
    ROUTE_MIN_BOUNDS_OVERLAP,
    ROUTE_MIN_GROUPING_PERCENTAGE,
    ROUTE_MIN_MATCH_PERCENTAGE,
    ROUTE_REGION_GRID_SIZE_DEG,
    ROUTE_SIMPLIFICATION_TOLERANCE_M,
    ROUTE_TARGET_POINTS,
)
from .errors import CacheInvariantError, InvalidConfigError


class RoutePoint(NamedTuple):
    """GPS point in decimal degrees."""

    lat: float
    lng: float


class MatchDirection(str, Enum):
    """Traversal direction of a match relative to the route representative."""

    SAME = "same"
    REVERSE = "reverse"
    PARTIAL = "partial"


@dataclass(frozen=True, slots=True)
class RouteMatchConfig:
    """Tunable thresholds for signatures, filtering and grouping."""

    simplification_tolerance: float = ROUTE_SIMPLIFICATION_TOLERANCE_M
    target_points: int = ROUTE_TARGET_POINTS
    distance_threshold: float = ROUTE_DISTANCE_THRESHOLD_M
    min_match_percentage: float = ROUTE_MIN_MATCH_PERCENTAGE
    min_grouping_percentage: float = ROUTE_MIN_GROUPING_PERCENTAGE
    min_bounds_overlap: float = ROUTE_MIN_BOUNDS_OVERLAP
    max_distance_difference: float = ROUTE_MAX_DISTANCE_DIFFERENCE
    loop_threshold: float = ROUTE_LOOP_THRESHOLD_M
    region_grid_size: float = ROUTE_REGION_GRID_SIZE_DEG

    def with_overrides(self, **overrides: Any) -> "RouteMatchConfig":
        """Return a copy with the given fields replaced."""

        known = {item.name for item in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise InvalidConfigError(
                f"Unknown route match config field(s): {', '.join(unknown)}"
            )
        config = replace(self, **overrides)
        if config.target_points < 2:
            raise InvalidConfigError("target_points must be >= 2")
        if config.region_grid_size <= 0:
            raise InvalidConfigError("region_grid_size must be > 0")
        return config


DEFAULT_ROUTE_MATCH_CONFIG = RouteMatchConfig()

ConfigInput = Union[RouteMatchConfig, Mapping[str, Any], None]


def resolve_config(config: ConfigInput = None) -> RouteMatchConfig:
    """Merge a partial override mapping (or full config) onto the defaults."""

    if config is None:
        return DEFAULT_ROUTE_MATCH_CONFIG
    if isinstance(config, RouteMatchConfig):
        return config
    return DEFAULT_ROUTE_MATCH_CONFIG.with_overrides(**dict(config))


@dataclass(frozen=True, slots=True)
class Bounds:
    """Axis-aligned bounding box in degrees."""

    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @classmethod
    def empty(cls) -> "Bounds":
        return cls(0.0, 0.0, 0.0, 0.0)

    @property
    def center(self) -> RoutePoint:
        return RoutePoint(
            (self.min_lat + self.max_lat) / 2.0,
            (self.min_lng + self.max_lng) / 2.0,
        )

    @property
    def area(self) -> float:
        """Area in square degrees (only meaningful for ratios)."""
        return (self.max_lat - self.min_lat) * (self.max_lng - self.min_lng)

    @property
    def is_finite(self) -> bool:
        return all(
            math.isfinite(value)
            for value in (self.min_lat, self.max_lat, self.min_lng, self.max_lng)
        )

    def normalized(self) -> "Bounds":
        """Return a copy whose min corner is never above the max corner."""

        min_lat, max_lat = sorted((self.min_lat, self.max_lat))
        min_lng, max_lng = sorted((self.min_lng, self.max_lng))
        return Bounds(min_lat, max_lat, min_lng, max_lng)

    def padded(self, degrees: float) -> "Bounds":
        return Bounds(
            self.min_lat - degrees,
            self.max_lat + degrees,
            self.min_lng - degrees,
            self.max_lng + degrees,
        )

    def intersects(self, other: "Bounds") -> bool:
        return not (
            self.min_lat > other.max_lat
            or self.max_lat < other.min_lat
            or self.min_lng > other.max_lng
            or self.max_lng < other.min_lng
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "minLat": self.min_lat,
            "maxLat": self.max_lat,
            "minLng": self.min_lng,
            "maxLng": self.max_lng,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Bounds":
        return cls(
            float(payload["minLat"]),
            float(payload["maxLat"]),
            float(payload["minLng"]),
            float(payload["maxLng"]),
        )


class ReversedPoints(Sequence[RoutePoint]):
    """Read-only reversed view over a point tuple (no copy)."""

    __slots__ = ("_base",)

    def __init__(self, base: Sequence[RoutePoint]) -> None:
        self._base = base

    @property
    def base(self) -> Sequence[RoutePoint]:
        return self._base

    def __len__(self) -> int:
        return len(self._base)

    @overload
    def __getitem__(self, index: int) -> RoutePoint: ...

    @overload
    def __getitem__(self, index: slice) -> Sequence[RoutePoint]: ...

    def __getitem__(self, index):
        if isinstance(index, slice):
            return tuple(self)[index]
        size = len(self._base)
        if index < 0:
            index += size
        if index < 0 or index >= size:
            raise IndexError("point index out of range")
        return self._base[size - 1 - index]

    def __iter__(self) -> Iterator[RoutePoint]:
        return reversed(self._base)

    def __reversed__(self) -> Iterator[RoutePoint]:
        return iter(self._base)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Sequence):
            return tuple(self) == tuple(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(tuple(self))

    def __repr__(self) -> str:
        return f"ReversedPoints({len(self)} points)"


@dataclass(frozen=True, slots=True)
class RouteSignature:
    """Compact, comparable representation of one activity's GPS trace."""

    activity_id: str
    points: Sequence[RoutePoint]
    distance: float
    bounds: Bounds
    center: RoutePoint
    start_region_hash: str
    end_region_hash: str
    is_loop: bool

    @property
    def is_degenerate(self) -> bool:
        return len(self.points) < 2

    @property
    def start(self) -> Optional[RoutePoint]:
        return self.points[0] if self.points else None

    @property
    def end(self) -> Optional[RoutePoint]:
        return self.points[-1] if self.points else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activityId": self.activity_id,
            "points": [[pt.lat, pt.lng] for pt in self.points],
            "distance": self.distance,
            "bounds": self.bounds.to_dict(),
            "center": [self.center.lat, self.center.lng],
            "startRegionHash": self.start_region_hash,
            "endRegionHash": self.end_region_hash,
            "isLoop": self.is_loop,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RouteSignature":
        center = payload.get("center") or [0.0, 0.0]
        return cls(
            activity_id=str(payload["activityId"]),
            points=tuple(
                RoutePoint(float(lat), float(lng)) for lat, lng in payload["points"]
            ),
            distance=float(payload["distance"]),
            bounds=Bounds.from_dict(payload["bounds"]),
            center=RoutePoint(float(center[0]), float(center[1])),
            start_region_hash=str(payload.get("startRegionHash", "")),
            end_region_hash=str(payload.get("endRegionHash", "")),
            is_loop=bool(payload.get("isLoop", False)),
        )


@dataclass(slots=True)
class RouteMatch:
    """Outcome of comparing one activity against a route group."""

    activity_id: str
    route_group_id: str
    match_percentage: float
    direction: MatchDirection
    confidence: float
    overlap_start: Optional[float] = None
    overlap_end: Optional[float] = None
    overlap_distance: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activityId": self.activity_id,
            "routeGroupId": self.route_group_id,
            "matchPercentage": self.match_percentage,
            "direction": self.direction.value,
            "confidence": self.confidence,
            "overlapStart": self.overlap_start,
            "overlapEnd": self.overlap_end,
            "overlapDistance": self.overlap_distance,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RouteMatch":
        return cls(
            activity_id=str(payload["activityId"]),
            route_group_id=str(payload["routeGroupId"]),
            match_percentage=float(payload["matchPercentage"]),
            direction=MatchDirection(payload.get("direction", "same")),
            confidence=float(payload.get("confidence", 0.0)),
            overlap_start=_optional_float(payload.get("overlapStart")),
            overlap_end=_optional_float(payload.get("overlapEnd")),
            overlap_distance=_optional_float(payload.get("overlapDistance")),
        )


@dataclass(slots=True)
class ActivityInfo:
    """Ingestion metadata supplied alongside a raw trace."""

    activity_id: str
    date: Optional[datetime] = None
    sport_type: str = "Run"
    name: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ActivityInfo":
        return cls(
            activity_id=str(payload["id"]),
            date=parse_datetime(payload.get("date")),
            sport_type=str(payload.get("type") or "Run"),
            name=payload.get("name"),
        )


@dataclass(slots=True)
class RouteGroup:
    """Cluster of activities believed to traverse the same route."""

    id: str
    name: str
    sport_type: str
    signature: RouteSignature
    activity_ids: List[str] = field(default_factory=list)
    first_date: Optional[datetime] = None
    last_date: Optional[datetime] = None
    average_match_quality: float = 100.0
    match_count: int = 1
    consensus_points: Optional[List[RoutePoint]] = None
    consensus_stale: bool = True

    @property
    def activity_count(self) -> int:
        return len(self.activity_ids)

    def include_date(self, value: Optional[datetime]) -> None:
        if value is None:
            return
        if self.first_date is None or value < self.first_date:
            self.first_date = value
        if self.last_date is None or value > self.last_date:
            self.last_date = value

    def record_match_quality(self, percentage: float) -> None:
        """Fold one more member percentage into the running mean."""

        total = self.average_match_quality * self.match_count + percentage
        self.match_count += 1
        self.average_match_quality = total / self.match_count

    def reset_match_quality(self) -> None:
        """Restart the running mean from the representative alone."""

        self.average_match_quality = 100.0
        self.match_count = 1

    def to_dict(self) -> Dict[str, Any]:
        consensus = None
        if self.consensus_points is not None:
            consensus = [[pt.lat, pt.lng] for pt in self.consensus_points]
        return {
            "id": self.id,
            "name": self.name,
            "type": self.sport_type,
            "signature": self.signature.to_dict(),
            "activityIds": list(self.activity_ids),
            "activityCount": self.activity_count,
            "firstDate": _format_datetime(self.first_date),
            "lastDate": _format_datetime(self.last_date),
            "averageMatchQuality": self.average_match_quality,
            "matchCount": self.match_count,
            "consensusPoints": consensus,
            "consensusStale": self.consensus_stale,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RouteGroup":
        consensus_raw = payload.get("consensusPoints")
        consensus = None
        if consensus_raw is not None:
            consensus = [RoutePoint(float(lat), float(lng)) for lat, lng in consensus_raw]
        activity_ids = [str(value) for value in payload.get("activityIds", [])]
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            sport_type=str(payload.get("type", "Run")),
            signature=RouteSignature.from_dict(payload["signature"]),
            activity_ids=activity_ids,
            first_date=parse_datetime(payload.get("firstDate")),
            last_date=parse_datetime(payload.get("lastDate")),
            average_match_quality=float(payload.get("averageMatchQuality", 100.0)),
            match_count=int(payload.get("matchCount", max(1, len(activity_ids)))),
            consensus_points=consensus,
            consensus_stale=bool(payload.get("consensusStale", consensus is None)),
        )


@dataclass(slots=True)
class SectionOverlap:
    """Portion of one activity's track lying within reach of a section."""

    activity_id: str
    overlap_points: List[RoutePoint]
    full_track: List[RoutePoint]
    start_index: int
    end_index: int


@dataclass(slots=True)
class RouteMatchCache:
    """Aggregate root holding signatures, groups, matches and indexes."""

    version: int = ROUTE_CACHE_VERSION
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    signatures: Dict[str, RouteSignature] = field(default_factory=dict)
    groups: List[RouteGroup] = field(default_factory=list)
    matches: Dict[str, RouteMatch] = field(default_factory=dict)
    processed_activity_ids: Set[str] = field(default_factory=set)
    activity_to_route_id: Dict[str, str] = field(default_factory=dict)

    def touch(self) -> None:
        self.last_updated = datetime.now(timezone.utc)

    def group_by_id(self, group_id: str) -> Optional[RouteGroup]:
        for group in self.groups:
            if group.id == group_id:
                return group
        return None

    def group_for_activity(self, activity_id: str) -> Optional[RouteGroup]:
        group_id = self.activity_to_route_id.get(activity_id)
        if group_id is None:
            return None
        return self.group_by_id(group_id)

    def is_processed(self, activity_id: str) -> bool:
        return activity_id in self.processed_activity_ids

    def unprocessed_ids(self, activity_ids: Iterable[str]) -> List[str]:
        return [aid for aid in activity_ids if aid not in self.processed_activity_ids]

    def stats(self) -> Dict[str, Any]:
        return {
            "total_signatures": len(self.signatures),
            "total_groups": len(self.groups),
            "total_matches": len(self.matches),
            "processed_count": len(self.processed_activity_ids),
            "last_updated": self.last_updated.isoformat(),
        }

    def verify_consistency(self) -> None:
        """Raise :class:`CacheInvariantError` if groups and reverse index disagree."""

        seen: Dict[str, str] = {}
        group_ids: Set[str] = set()
        for group in self.groups:
            if group.id in group_ids:
                raise CacheInvariantError(f"Duplicate route group id {group.id}")
            group_ids.add(group.id)
            if not group.activity_ids:
                raise CacheInvariantError(f"Route group {group.id} has no members")
            if len(set(group.activity_ids)) != len(group.activity_ids):
                raise CacheInvariantError(f"Route group {group.id} repeats a member")
            for activity_id in group.activity_ids:
                if activity_id in seen:
                    raise CacheInvariantError(
                        f"Activity {activity_id} belongs to groups "
                        f"{seen[activity_id]} and {group.id}"
                    )
                seen[activity_id] = group.id
        if seen != self.activity_to_route_id:
            stale = set(self.activity_to_route_id.items()) ^ set(seen.items())
            raise CacheInvariantError(
                f"Reverse index disagrees with group membership: {sorted(stale)}"
            )


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings (``Z`` suffix allowed) into datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    # Naive values are treated as UTC so dates from mixed sources compare.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


__all__ = [
    "ActivityInfo",
    "Bounds",
    "ConfigInput",
    "DEFAULT_ROUTE_MATCH_CONFIG",
    "MatchDirection",
    "ReversedPoints",
    "RouteGroup",
    "RouteMatch",
    "RouteMatchCache",
    "RouteMatchConfig",
    "RoutePoint",
    "RouteSignature",
    "SectionOverlap",
    "parse_datetime",
    "resolve_config",
]
