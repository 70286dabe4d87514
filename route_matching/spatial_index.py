"""R-tree over activity bounding boxes for viewport, overlap and radius queries."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from rtree import index

from .config import SPATIAL_INDEX_PADDING_DEG, SPATIAL_INDEX_REBUILD_THRESHOLD
from .models import Bounds, RouteSignature

_KM_PER_DEGREE_LAT = 111.0

_Coords = Tuple[float, float, float, float]


@dataclass(frozen=True, slots=True)
class ActivityBounds:
    """Bounding box supplied for one activity (corners may arrive inverted)."""

    activity_id: str
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @classmethod
    def from_signature(cls, signature: RouteSignature) -> "ActivityBounds":
        bounds = signature.bounds
        return cls(
            signature.activity_id,
            bounds.min_lat,
            bounds.max_lat,
            bounds.min_lng,
            bounds.max_lng,
        )

    @property
    def bounds(self) -> Bounds:
        return Bounds(self.min_lat, self.max_lat, self.min_lng, self.max_lng)


@dataclass(frozen=True, slots=True)
class SpatialIndexItem:
    """Normalised entry stored in the tree (x is longitude, y is latitude)."""

    min_x: float
    min_y: float
    max_x: float
    max_y: float
    activity_id: str

    @property
    def coords(self) -> _Coords:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    @property
    def bounds(self) -> Bounds:
        return Bounds(self.min_y, self.max_y, self.min_x, self.max_x)


class ActivitySpatialIndex:
    """Dynamic R-tree keyed by activity id.

    The index is a derived accelerator over signature bounds and can always be
    rebuilt from them. Instances are owned by their caller; there is no shared
    module state. Callers serialise writes themselves.
    """

    def __init__(self, rebuild_threshold: int = SPATIAL_INDEX_REBUILD_THRESHOLD) -> None:
        self._log = logging.getLogger(self.__class__.__name__)
        self._rebuild_threshold = rebuild_threshold
        self._tree = index.Index()
        self._items: Dict[str, SpatialIndexItem] = {}
        self._tree_ids: Dict[str, int] = {}
        self._activity_ids: Dict[int, str] = {}
        self._next_id = 0
        self._built = False

    @property
    def ready(self) -> bool:
        return self._built

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, activity_id: object) -> bool:
        return activity_id in self._items

    def get(self, activity_id: str) -> Optional[SpatialIndexItem]:
        return self._items.get(activity_id)

    def activity_ids(self) -> List[str]:
        return list(self._items)

    def build(self, activities: Iterable[ActivityBounds]) -> None:
        """Replace the tree contents using a bulk load."""

        self._reset()
        for activity in activities:
            item = self._to_item(activity)
            if item is not None:
                self._items[item.activity_id] = item
        self._tree = self._bulk_load(self._items.values())
        self._built = True
        self._log.debug("Built spatial index with %d activities", len(self._items))

    def insert(self, activity: ActivityBounds) -> bool:
        """Insert (or replace) one activity; returns ``False`` if its box was rejected."""

        self.remove(activity.activity_id)
        item = self._to_item(activity)
        if item is None:
            return False
        self._items[item.activity_id] = item
        self._tree.insert(self._tree_id(item.activity_id), item.coords)
        return True

    def remove(self, activity_id: str) -> bool:
        item = self._items.pop(activity_id, None)
        if item is None:
            return False
        tree_id = self._tree_ids.pop(activity_id)
        self._activity_ids.pop(tree_id, None)
        self._tree.delete(tree_id, item.coords)
        return True

    def bulk_insert(self, activities: Iterable[ActivityBounds]) -> int:
        """Insert many activities, rebuilding the tree for large batches.

        An id repeated within the batch keeps only its last box.
        """

        pending: Dict[str, SpatialIndexItem] = {}
        for activity in activities:
            self.remove(activity.activity_id)
            pending.pop(activity.activity_id, None)
            item = self._to_item(activity)
            if item is not None:
                pending[item.activity_id] = item
        if len(pending) > self._rebuild_threshold:
            self._items.update(pending)
            self._tree_ids.clear()
            self._activity_ids.clear()
            self._tree = self._bulk_load(self._items.values())
        else:
            for item in pending.values():
                self._items[item.activity_id] = item
                self._tree.insert(self._tree_id(item.activity_id), item.coords)
        return len(pending)

    def query_viewport(self, bounds: Bounds) -> List[str]:
        """Activity ids whose boxes intersect ``bounds`` (edges inclusive)."""

        if not self._built:
            return []
        return self._search(bounds)

    def find_potential_matches(
        self,
        activity: ActivityBounds,
        padding: float = SPATIAL_INDEX_PADDING_DEG,
    ) -> List[str]:
        """Activities overlapping the padded bounds of ``activity``, excluding itself."""

        item = self._to_item(activity)
        if item is None:
            return []
        hits = self._search(item.bounds.padded(padding))
        return [activity_id for activity_id in hits if activity_id != activity.activity_id]

    def query_radius(self, lat: float, lng: float, radius_km: float) -> List[str]:
        """Candidate superset of activities within ``radius_km`` of a point.

        Uses a degree box, so callers needing an exact circle must post-filter
        with haversine distances.
        """

        if not self._built:
            return []
        lat_delta = radius_km / _KM_PER_DEGREE_LAT
        cos_lat = math.cos(math.radians(lat))
        if cos_lat <= 1e-9 or radius_km / (_KM_PER_DEGREE_LAT * cos_lat) >= 180.0:
            # Near the poles the circle covers every longitude.
            min_lng, max_lng = -180.0, 180.0
        else:
            lng_delta = radius_km / (_KM_PER_DEGREE_LAT * cos_lat)
            min_lng, max_lng = lng - lng_delta, lng + lng_delta
        return self._search(Bounds(lat - lat_delta, lat + lat_delta, min_lng, max_lng))

    def clear(self) -> None:
        self._reset()
        self._built = False

    def _reset(self) -> None:
        self._tree = index.Index()
        self._items.clear()
        self._tree_ids.clear()
        self._activity_ids.clear()

    def _search(self, bounds: Bounds) -> List[str]:
        box = bounds.normalized()
        if not box.is_finite:
            return []
        coords = (box.min_lng, box.min_lat, box.max_lng, box.max_lat)
        return [self._activity_ids[tree_id] for tree_id in self._tree.intersection(coords)]

    def _tree_id(self, activity_id: str) -> int:
        tree_id = self._tree_ids.get(activity_id)
        if tree_id is None:
            tree_id = self._next_id
            self._next_id += 1
            self._tree_ids[activity_id] = tree_id
            self._activity_ids[tree_id] = activity_id
        return tree_id

    def _bulk_load(self, items: Iterable[SpatialIndexItem]) -> index.Index:
        entries = [(self._tree_id(item.activity_id), item.coords, None) for item in items]
        if not entries:
            return index.Index()
        return index.Index(_stream(entries))

    def _to_item(self, activity: ActivityBounds) -> Optional[SpatialIndexItem]:
        raw = activity.bounds
        if not raw.is_finite:
            self._log.warning(
                "Rejected non-finite bounds for activity %s: %s",
                activity.activity_id,
                raw.to_dict(),
            )
            return None
        box = raw.normalized()
        return SpatialIndexItem(
            min_x=box.min_lng,
            min_y=box.min_lat,
            max_x=box.max_lng,
            max_y=box.max_lat,
            activity_id=activity.activity_id,
        )


def _stream(
    entries: Sequence[Tuple[int, _Coords, None]]
) -> Iterator[Tuple[int, _Coords, None]]:
    yield from entries


def map_bounds_to_viewport(sw: Sequence[float], ne: Sequence[float]) -> Bounds:
    """Convert map corner pairs given as ``[lng, lat]`` into :class:`Bounds`."""

    return Bounds(
        min_lat=float(sw[1]),
        max_lat=float(ne[1]),
        min_lng=float(sw[0]),
        max_lng=float(ne[0]),
    ).normalized()


def find_activities_with_potential_matches(
    activity_ids: Iterable[str], spatial_index: ActivitySpatialIndex
) -> List[str]:
    """Subset of ``activity_ids`` whose indexed box overlaps at least one other."""

    result: List[str] = []
    for activity_id in activity_ids:
        item = spatial_index.get(activity_id)
        if item is None:
            continue
        activity = ActivityBounds(
            activity_id, item.min_y, item.max_y, item.min_x, item.max_x
        )
        if spatial_index.find_potential_matches(activity):
            result.append(activity_id)
    return result


__all__ = [
    "ActivityBounds",
    "ActivitySpatialIndex",
    "SpatialIndexItem",
    "find_activities_with_potential_matches",
    "map_bounds_to_viewport",
]
