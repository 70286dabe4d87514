"""Incremental clustering of activities into route groups."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import re
from threading import RLock
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .config import SECTION_PROXIMITY_THRESHOLD_M
from .consensus import calculate_consensus_route
from .filtering import quick_filter_match
from .frequent_sections import FrequentSection, SectionConfigInput, detect_frequent_sections
from .models import (
    ActivityInfo,
    ConfigInput,
    MatchDirection,
    RouteGroup,
    RouteMatch,
    RouteMatchCache,
    RoutePoint,
    RouteSignature,
    resolve_config,
)
from .sections import RouteLap, detect_laps_for_group
from .signature import reverse_signature
from .similarity import compute_match_percentage, detect_direction, score_match
from .spatial_index import ActivityBounds, ActivitySpatialIndex

_GROUP_ID_PATTERN = re.compile(r"^route_(\d+)$")


class AssignmentState(str, Enum):
    """Terminal state of one activity after candidate search."""

    GROUPED = "grouped"
    NEW_GROUP = "new-group"
    NO_MATCH = "no-match"
    SKIPPED = "skipped"


@dataclass(slots=True)
class AssignmentOutcome:
    activity_id: str
    state: AssignmentState
    group_id: Optional[str] = None
    match: Optional[RouteMatch] = None


class RouteGrouper:
    """Owns the route cache and its spatial index; the single writer for both.

    Every mutation of ``groups`` and the reverse index happens inside one
    critical section so they never disagree.
    """

    def __init__(
        self,
        cache: Optional[RouteMatchCache] = None,
        config: ConfigInput = None,
        spatial_index: Optional[ActivitySpatialIndex] = None,
    ) -> None:
        self._log = logging.getLogger(self.__class__.__name__)
        self.cache = cache if cache is not None else RouteMatchCache()
        self.config = resolve_config(config)
        self.index = spatial_index if spatial_index is not None else ActivitySpatialIndex()
        self._lock = RLock()
        self._next_group_number = self._highest_group_number() + 1
        self.rebuild_index()

    @classmethod
    def from_cache(
        cls, cache: RouteMatchCache, config: ConfigInput = None
    ) -> "RouteGrouper":
        """Wrap a persisted cache, rebuilding the spatial index from its signatures."""

        return cls(cache=cache, config=config)

    @property
    def lock(self) -> RLock:
        return self._lock

    @property
    def groups(self) -> List[RouteGroup]:
        return self.cache.groups

    def rebuild_index(self) -> None:
        with self._lock:
            self.index.build(
                ActivityBounds.from_signature(sig)
                for sig in self.cache.signatures.values()
                if not sig.is_degenerate
            )

    def assign_activity(
        self, signature: RouteSignature, info: Optional[ActivityInfo] = None
    ) -> AssignmentOutcome:
        """Place one signed activity into an existing group or a new one."""

        activity_id = signature.activity_id
        info = info or ActivityInfo(activity_id=activity_id)
        with self._lock:
            if self.cache.is_processed(activity_id):
                return AssignmentOutcome(
                    activity_id,
                    AssignmentState.SKIPPED,
                    self.cache.activity_to_route_id.get(activity_id),
                    self.cache.matches.get(activity_id),
                )
            self.cache.signatures[activity_id] = signature
            if signature.is_degenerate:
                self._log.info(
                    "Activity %s has no usable geometry; not grouped", activity_id
                )
                self._mark_processed(activity_id)
                return AssignmentOutcome(activity_id, AssignmentState.NO_MATCH)

            best = self._best_group(signature, info.sport_type)
            if best is not None and best[1] >= self.config.min_grouping_percentage:
                group, percentage = best
                match = self._join_group(group, signature, info, percentage)
                state = AssignmentState.GROUPED
            else:
                group = self._create_group(signature, info)
                match = self.cache.matches[activity_id]
                state = AssignmentState.NEW_GROUP

            self.index.insert(ActivityBounds.from_signature(signature))
            self._mark_processed(activity_id)
            return AssignmentOutcome(activity_id, state, group.id, match)

    def remove_activity(self, activity_id: str) -> bool:
        """Forget an activity, dissolving its group if it was the last member."""

        with self._lock:
            known = (
                activity_id in self.cache.signatures
                or activity_id in self.cache.processed_activity_ids
            )
            self.cache.signatures.pop(activity_id, None)
            self.cache.matches.pop(activity_id, None)
            self.cache.processed_activity_ids.discard(activity_id)
            self.index.remove(activity_id)
            group_id = self.cache.activity_to_route_id.pop(activity_id, None)
            group = self.cache.group_by_id(group_id) if group_id else None
            if group is not None:
                group.activity_ids.remove(activity_id)
                if not group.activity_ids:
                    self.cache.groups.remove(group)
                    self._log.debug("Dissolved empty route group %s", group.id)
                else:
                    evicted: List[RouteSignature] = []
                    if group.signature.activity_id == activity_id:
                        evicted = self._promote_representative(
                            group, group.activity_ids[0]
                        )
                    self._recompute_match_quality(group)
                    group.consensus_stale = True
                    for signature in evicted:
                        outcome = self.assign_activity(
                            signature,
                            ActivityInfo(
                                activity_id=signature.activity_id,
                                sport_type=group.sport_type,
                            ),
                        )
                        self._log.info(
                            "Activity %s no longer matches %s; moved to %s",
                            signature.activity_id,
                            group.id,
                            outcome.group_id,
                        )
            if known:
                self.cache.touch()
            return known

    def consensus_for(self, group_id: str) -> Optional[List[RoutePoint]]:
        """Return the group's consensus polyline, recomputing it when stale."""

        with self._lock:
            group = self.cache.group_by_id(group_id)
            if group is None:
                return None
            if group.consensus_stale or group.consensus_points is None:
                members = [group.signature] + [
                    self.cache.signatures[aid]
                    for aid in group.activity_ids
                    if aid != group.signature.activity_id
                    and aid in self.cache.signatures
                ]
                group.consensus_points = calculate_consensus_route(members)
                group.consensus_stale = False
            return list(group.consensus_points)

    def frequent_sections(self, config: SectionConfigInput = None) -> List[FrequentSection]:
        """Sections shared across the cached activities, tagged with their route groups."""

        with self._lock:
            signatures = list(self.cache.signatures.values())
            groups = list(self.cache.groups)
            return detect_frequent_sections(signatures, groups, config=config)

    def laps_for_group(
        self,
        group_id: str,
        activity_data: Mapping[str, Tuple[float, float]],
        distance_threshold: float = SECTION_PROXIMITY_THRESHOLD_M,
    ) -> Dict[str, List[RouteLap]]:
        """Laps of every member along the group's consensus; ``{}`` for unknown groups.

        ``activity_data`` maps activity ids to ``(distance_m, duration_s)``.
        """

        with self._lock:
            consensus = self.consensus_for(group_id)
            group = self.cache.group_by_id(group_id)
            if consensus is None or group is None:
                return {}
            members = {
                aid: self.cache.signatures[aid]
                for aid in group.activity_ids
                if aid in self.cache.signatures
            }
        return detect_laps_for_group(members, consensus, activity_data, distance_threshold)

    def regroup_all(
        self,
        signatures: Iterable[RouteSignature],
        infos: Optional[Mapping[str, ActivityInfo]] = None,
    ) -> List[AssignmentOutcome]:
        """Discard every group and assign ``signatures`` again in order."""

        infos = infos or {}
        with self._lock:
            self.cache.signatures.clear()
            self.cache.groups.clear()
            self.cache.matches.clear()
            self.cache.processed_activity_ids.clear()
            self.cache.activity_to_route_id.clear()
            self.index.build([])
            self._next_group_number = 1
            return [
                self.assign_activity(sig, infos.get(sig.activity_id))
                for sig in signatures
            ]

    def verify(self) -> None:
        with self._lock:
            self.cache.verify_consistency()

    def _best_group(
        self, signature: RouteSignature, sport_type: str
    ) -> Optional[Tuple[RouteGroup, float]]:
        candidate_ids = self.index.find_potential_matches(
            ActivityBounds.from_signature(signature)
        )
        seen: set[str] = set()
        best: Optional[Tuple[RouteGroup, float]] = None
        reversed_signature = reverse_signature(signature)
        for candidate_id in candidate_ids:
            group_id = self.cache.activity_to_route_id.get(candidate_id)
            if group_id is None or group_id in seen:
                continue
            seen.add(group_id)
            group = self.cache.group_by_id(group_id)
            if group is None or group.sport_type != sport_type:
                continue
            representative = group.signature
            if not (
                quick_filter_match(signature, representative, self.config)
                or quick_filter_match(reversed_signature, representative, self.config)
            ):
                continue
            percentage = compute_match_percentage(signature, representative, self.config)
            if best is None or percentage > best[1]:
                best = (group, percentage)
        return best

    def _join_group(
        self,
        group: RouteGroup,
        signature: RouteSignature,
        info: ActivityInfo,
        percentage: float,
    ) -> RouteMatch:
        match = self._build_match(group, signature, percentage)
        group.activity_ids.append(signature.activity_id)
        group.include_date(info.date)
        group.record_match_quality(percentage)
        group.consensus_stale = True
        self.cache.matches[signature.activity_id] = match
        self.cache.activity_to_route_id[signature.activity_id] = group.id
        self._log.debug(
            "Activity %s joined %s (%.1f%%, %s)",
            signature.activity_id,
            group.id,
            percentage,
            match.direction.value,
        )
        return match

    def _create_group(self, signature: RouteSignature, info: ActivityInfo) -> RouteGroup:
        number = self._next_group_number
        self._next_group_number += 1
        group = RouteGroup(
            id=f"route_{number}",
            name=info.name or f"{info.sport_type} route {number}",
            sport_type=info.sport_type,
            signature=signature,
            activity_ids=[signature.activity_id],
        )
        group.include_date(info.date)
        self.cache.groups.append(group)
        self.cache.matches[signature.activity_id] = _representative_match(
            signature.activity_id, group.id
        )
        self.cache.activity_to_route_id[signature.activity_id] = group.id
        self._log.debug("Activity %s started %s", signature.activity_id, group.id)
        return group

    def _build_match(
        self, group: RouteGroup, signature: RouteSignature, percentage: float
    ) -> RouteMatch:
        scored = score_match(signature, group.signature, self.config)
        return RouteMatch(
            activity_id=signature.activity_id,
            route_group_id=group.id,
            match_percentage=percentage,
            direction=detect_direction(signature, group.signature, percentage),
            confidence=scored.confidence,
            overlap_start=scored.overlap_start,
            overlap_end=scored.overlap_end,
            overlap_distance=scored.overlap_distance,
        )

    def _promote_representative(
        self, group: RouteGroup, successor: str
    ) -> List[RouteSignature]:
        """Make ``successor`` the representative and re-score the other members.

        Members that no longer reach ``min_grouping_percentage`` against the new
        representative are detached from the group, the reverse index and the
        spatial index, and returned for reassignment.
        """

        group.signature = self.cache.signatures[successor]
        self.cache.matches[successor] = _representative_match(successor, group.id)
        evicted: List[RouteSignature] = []
        for member in list(group.activity_ids):
            signature = self.cache.signatures.get(member)
            if member == successor or signature is None:
                continue
            percentage = compute_match_percentage(signature, group.signature, self.config)
            if percentage >= self.config.min_grouping_percentage:
                self.cache.matches[member] = self._build_match(group, signature, percentage)
                continue
            group.activity_ids.remove(member)
            self.cache.matches.pop(member, None)
            self.cache.activity_to_route_id.pop(member, None)
            self.cache.processed_activity_ids.discard(member)
            self.index.remove(member)
            evicted.append(signature)
        return evicted

    def _recompute_match_quality(self, group: RouteGroup) -> None:
        group.reset_match_quality()
        for member in group.activity_ids:
            if member == group.signature.activity_id:
                continue
            match = self.cache.matches.get(member)
            if match is not None:
                group.record_match_quality(match.match_percentage)

    def _mark_processed(self, activity_id: str) -> None:
        self.cache.processed_activity_ids.add(activity_id)
        self.cache.touch()

    def _highest_group_number(self) -> int:
        highest = 0
        for group in self.cache.groups:
            found = _GROUP_ID_PATTERN.match(group.id)
            if found:
                highest = max(highest, int(found.group(1)))
        return highest


def _representative_match(activity_id: str, group_id: str) -> RouteMatch:
    return RouteMatch(
        activity_id=activity_id,
        route_group_id=group_id,
        match_percentage=100.0,
        direction=MatchDirection.SAME,
        confidence=1.0,
    )


__all__ = ["AssignmentOutcome", "AssignmentState", "RouteGrouper"]
