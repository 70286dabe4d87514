"""Command line entry point: group a JSON file of activities into routes."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .config import PROCESSING_BATCH_SIZE, ROUTE_CACHE_FILE
from .grouping import RouteGrouper
from .models import RouteMatchCache, resolve_config
from .processing import ActivityPayload, ProcessingProgress, RouteProcessor
from .storage import create_empty_cache, load_route_cache, save_route_cache
from .utils import format_distance

LOGGER = logging.getLogger(__name__)


def _setup_logging(level: str) -> None:
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(
            level=getattr(logging, level),
            format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Group GPS activities that follow the same route"
    )
    parser.add_argument(
        "activities",
        help="JSON file holding a list of activities (id, date, type, latlng or polyline)",
    )
    parser.add_argument(
        "--cache",
        default=ROUTE_CACHE_FILE,
        help=f"Route cache file to load and update (default: {ROUTE_CACHE_FILE})",
    )
    parser.add_argument(
        "--target-points",
        type=int,
        help="Approximate number of points kept per signature",
    )
    parser.add_argument(
        "--min-grouping",
        type=float,
        help="Match percentage required to join an existing route group",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=PROCESSING_BATCH_SIZE,
        help=f"Activities per processing batch (default: {PROCESSING_BATCH_SIZE})",
    )
    parser.add_argument(
        "--consensus",
        action="store_true",
        help="Compute consensus polylines for every group before saving",
    )
    parser.add_argument(
        "--sections",
        action="store_true",
        help="Log stretches shared by several activities after grouping",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Python logging level",
    )
    return parser


def load_activities(path: Path) -> List[ActivityPayload]:
    """Read activity payloads from a JSON list (or an object with ``activities``)."""

    with path.open("r", encoding="utf-8") as handle:
        raw = json.load(handle)
    if isinstance(raw, dict):
        raw = raw.get("activities", [])
    if not isinstance(raw, list):
        raise ValueError("Expected a JSON list of activities")
    payloads: List[ActivityPayload] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict) or "id" not in entry:
            LOGGER.warning("Skipping activity entry %d without an id", index)
            continue
        payloads.append(ActivityPayload.from_dict(entry))
    return payloads


def _config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if args.target_points is not None:
        overrides["target_points"] = args.target_points
    if args.min_grouping is not None:
        overrides["min_grouping_percentage"] = args.min_grouping
    return overrides


def _load_cache(path: Path) -> RouteMatchCache:
    cache = load_route_cache(path)
    if cache is None:
        LOGGER.info("Starting with an empty route cache")
        return create_empty_cache()
    LOGGER.info("Loaded route cache %s: %s", path, cache.stats())
    return cache


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.log_level)

    config = resolve_config(_config_overrides(args))
    activities_path = Path(args.activities)
    try:
        payloads = load_activities(activities_path)
    except (OSError, ValueError) as exc:
        LOGGER.error("Failed to load activities from '%s': %s", activities_path, exc)
        return 1

    cache_path = Path(args.cache)
    grouper = RouteGrouper.from_cache(_load_cache(cache_path), config)
    processor = RouteProcessor(grouper, config, batch_size=args.batch_size)

    def _progress(update: ProcessingProgress) -> None:
        if update.completed == update.total or update.completed % 25 == 0:
            LOGGER.info("Route progress: %d/%d activities", update.completed, update.total)

    summary = processor.process_batch(payloads, progress=_progress)
    grouper.verify()

    if args.consensus:
        for group in list(grouper.groups):
            grouper.consensus_for(group.id)

    save_route_cache(grouper.cache, cache_path)
    LOGGER.info(
        "Processed %d activities: %d grouped, %d new groups, %d without geometry, %d skipped",
        summary.completed,
        summary.grouped,
        summary.new_groups,
        summary.no_match,
        summary.skipped,
    )
    for group in grouper.groups:
        LOGGER.info(
            "%s (%s): %d activities, %s, avg match %.1f%%",
            group.name,
            group.id,
            group.activity_count,
            format_distance(group.signature.distance),
            group.average_match_quality,
        )
    if args.sections:
        for section in grouper.frequent_sections():
            LOGGER.info(
                "Section %s (%s): %d activities, %s, routes %s",
                section.id,
                section.sport_type,
                len(section.activity_ids),
                format_distance(section.distance),
                ", ".join(section.route_ids) or "-",
            )
    LOGGER.info("Route cache saved to %s", cache_path)
    return 0


__all__ = ["load_activities", "main"]
