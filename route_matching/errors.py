"""Central error types used across the route matching engine."""

from __future__ import annotations


class RouteMatchingError(RuntimeError):
    """Base error for route matching failures."""


class InvalidConfigError(RouteMatchingError, ValueError):
    """Raised when a configuration override names an unknown or invalid field."""


class CacheInvariantError(RouteMatchingError):
    """Raised when the reverse index disagrees with group membership."""


class CacheFormatError(RouteMatchingError):
    """Raised when a persisted cache payload cannot be decoded."""


__all__ = [
    "RouteMatchingError",
    "InvalidConfigError",
    "CacheInvariantError",
    "CacheFormatError",
]
