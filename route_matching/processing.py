"""Batch signing and grouping with progress reporting and cooperative cancellation."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence

from .config import PROCESSING_BATCH_SIZE
from .grouping import AssignmentOutcome, AssignmentState, RouteGrouper
from .models import ActivityInfo, ConfigInput, RouteSignature, resolve_config
from .signature import generate_route_signature, signature_from_polyline


@dataclass(slots=True)
class ActivityPayload:
    """Raw trace plus metadata for one activity awaiting processing."""

    info: ActivityInfo
    latlngs: Sequence[Sequence[float]] = ()
    polyline: Optional[str] = None

    @property
    def activity_id(self) -> str:
        return self.info.activity_id

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ActivityPayload":
        """Read ``id``/``date``/``type``/``name`` plus ``latlng`` or ``polyline``."""

        latlngs = payload.get("latlng") or payload.get("latlngs") or ()
        polyline = payload.get("polyline")
        if polyline is None and isinstance(payload.get("map"), Mapping):
            polyline = payload["map"].get("polyline") or payload["map"].get(
                "summary_polyline"
            )
        return cls(
            info=ActivityInfo.from_payload(payload),
            latlngs=list(latlngs),
            polyline=polyline,
        )


@dataclass(slots=True)
class ProcessingProgress:
    completed: int
    total: int

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 1.0


@dataclass(slots=True)
class BatchSummary:
    """Counts of each terminal state reached during one batch run."""

    total: int
    completed: int = 0
    grouped: int = 0
    new_groups: int = 0
    no_match: int = 0
    skipped: int = 0
    cancelled: bool = False
    outcomes: List[AssignmentOutcome] = field(default_factory=list)

    def record(self, outcome: AssignmentOutcome) -> None:
        self.completed += 1
        self.outcomes.append(outcome)
        if outcome.state is AssignmentState.GROUPED:
            self.grouped += 1
        elif outcome.state is AssignmentState.NEW_GROUP:
            self.new_groups += 1
        elif outcome.state is AssignmentState.NO_MATCH:
            self.no_match += 1
        else:
            self.skipped += 1


ProgressCallback = Callable[[ProcessingProgress], None]


class RouteProcessor:
    """Sign raw traces and feed them to a :class:`RouteGrouper`.

    Signing is pure and runs outside the grouper's writer lock; assignment
    is serialised through it.
    """

    def __init__(
        self,
        grouper: RouteGrouper,
        config: ConfigInput = None,
        batch_size: int = PROCESSING_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._log = logging.getLogger(self.__class__.__name__)
        self.grouper = grouper
        self.config = resolve_config(config) if config is not None else grouper.config
        self.batch_size = batch_size

    def sign(self, payload: ActivityPayload) -> RouteSignature:
        if len(payload.latlngs):
            return generate_route_signature(
                payload.activity_id, payload.latlngs, self.config
            )
        if payload.polyline:
            return signature_from_polyline(
                payload.activity_id, payload.polyline, self.config
            )
        return generate_route_signature(payload.activity_id, [], self.config)

    def process_activity(
        self,
        activity_id: str,
        latlngs: Sequence[Sequence[float]],
        info: Optional[ActivityInfo] = None,
    ) -> AssignmentOutcome:
        """Sign and assign one activity; already processed ids are skipped unsigned."""

        info = info or ActivityInfo(activity_id=str(activity_id))
        return self._process(ActivityPayload(info=info, latlngs=latlngs))

    def process_batch(
        self,
        items: Iterable[ActivityPayload],
        progress: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BatchSummary:
        """Process ``items`` in batches, reporting progress after every item.

        Cancellation is checked between items; an item already started always
        completes, so the cache is never left half-updated.
        """

        pending = list(items)
        summary = BatchSummary(total=len(pending))
        batches = [
            pending[offset : offset + self.batch_size]
            for offset in range(0, len(pending), self.batch_size)
        ]
        for batch_number, batch in enumerate(batches, start=1):
            for payload in batch:
                if cancel_event is not None and cancel_event.is_set():
                    summary.cancelled = True
                    self._log.info(
                        "Route processing cancelled after %d/%d activities",
                        summary.completed,
                        summary.total,
                    )
                    return summary
                summary.record(self._process(payload))
                if progress is not None:
                    progress(ProcessingProgress(summary.completed, summary.total))
            self._log.debug(
                "Processed batch %d/%d (%d/%d activities)",
                batch_number,
                len(batches),
                summary.completed,
                summary.total,
            )
        return summary

    def _process(self, payload: ActivityPayload) -> AssignmentOutcome:
        cache = self.grouper.cache
        if cache.is_processed(payload.activity_id):
            return AssignmentOutcome(
                payload.activity_id,
                AssignmentState.SKIPPED,
                cache.activity_to_route_id.get(payload.activity_id),
                cache.matches.get(payload.activity_id),
            )
        signature = self.sign(payload)
        return self.grouper.assign_activity(signature, payload.info)


__all__ = [
    "ActivityPayload",
    "BatchSummary",
    "ProcessingProgress",
    "ProgressCallback",
    "RouteProcessor",
]
