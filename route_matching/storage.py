"""JSON persistence for :class:`RouteMatchCache`."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .config import ROUTE_CACHE_VERSION
from .errors import CacheFormatError
from .models import (
    RouteGroup,
    RouteMatch,
    RouteMatchCache,
    RouteSignature,
    parse_datetime,
)
from .utils import json_dumps_sorted

_LOGGER = logging.getLogger(__name__)


def create_empty_cache(version: int = ROUTE_CACHE_VERSION) -> RouteMatchCache:
    return RouteMatchCache(version=version)


def cache_to_dict(cache: RouteMatchCache) -> Dict[str, Any]:
    """Serialise the cache into plain JSON-compatible structures."""

    return {
        "version": cache.version,
        "lastUpdated": cache.last_updated.isoformat(),
        "signatures": {
            activity_id: signature.to_dict()
            for activity_id, signature in cache.signatures.items()
        },
        "groups": [group.to_dict() for group in cache.groups],
        "matches": {
            activity_id: match.to_dict() for activity_id, match in cache.matches.items()
        },
        "processedActivityIds": sorted(cache.processed_activity_ids),
        "activityToRouteId": dict(cache.activity_to_route_id),
    }


def cache_from_dict(
    payload: Mapping[str, Any], expected_version: int = ROUTE_CACHE_VERSION
) -> Optional[RouteMatchCache]:
    """Rebuild a cache; ``None`` when it was written by another cache version.

    Raises :class:`CacheFormatError` for payloads that cannot be decoded.
    """

    try:
        version = int(payload["version"])
    except (KeyError, TypeError, ValueError) as exc:
        raise CacheFormatError("Route cache payload has no usable version") from exc
    if version != expected_version:
        return None
    try:
        cache = RouteMatchCache(
            version=version,
            signatures={
                str(activity_id): RouteSignature.from_dict(raw)
                for activity_id, raw in payload.get("signatures", {}).items()
            },
            groups=[RouteGroup.from_dict(raw) for raw in payload.get("groups", [])],
            matches={
                str(activity_id): RouteMatch.from_dict(raw)
                for activity_id, raw in payload.get("matches", {}).items()
            },
            processed_activity_ids={
                str(value) for value in payload.get("processedActivityIds", [])
            },
            activity_to_route_id={
                str(activity_id): str(group_id)
                for activity_id, group_id in payload.get("activityToRouteId", {}).items()
            },
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise CacheFormatError(f"Malformed route cache payload: {exc}") from exc
    last_updated = parse_datetime(payload.get("lastUpdated"))
    if last_updated is not None:
        cache.last_updated = last_updated
    return cache


def save_route_cache(cache: RouteMatchCache, path: str | Path) -> Path:
    """Write the cache as UTF-8 JSON, replacing the target atomically."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path = target.with_suffix(target.suffix + ".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            handle.write(json_dumps_sorted(cache_to_dict(cache), indent=2))
        temp_path.replace(target)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    _LOGGER.debug("Saved route cache to %s (%s)", target, cache.stats())
    return target


def load_route_cache(
    path: str | Path, expected_version: int = ROUTE_CACHE_VERSION
) -> Optional[RouteMatchCache]:
    """Load a cache file; ``None`` when it is missing, unreadable or outdated."""

    source = Path(path)
    try:
        with source.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        _LOGGER.error("Failed reading route cache %s: %s", source, exc)
        return None
    if not isinstance(payload, Mapping):
        _LOGGER.error("Route cache %s is not a JSON object", source)
        return None
    try:
        cache = cache_from_dict(payload, expected_version)
    except CacheFormatError as exc:
        _LOGGER.error("Discarding route cache %s: %s", source, exc)
        return None
    if cache is None:
        _LOGGER.info(
            "Route cache %s has version %s, expected %s; rebuilding",
            source,
            payload.get("version"),
            expected_version,
        )
    return cache


__all__ = [
    "cache_from_dict",
    "cache_to_dict",
    "create_empty_cache",
    "load_route_cache",
    "save_route_cache",
]
