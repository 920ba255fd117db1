"""
ams2stats Core - snapshot parsing and shared foundations.

This module contains:
- parser: Stats snapshot parsing and normalization
- schemas: Raw snapshot data contracts
- errors: Error taxonomy
- config: Application configuration management
"""

from ams2stats.core.errors import (
    ConstraintViolation,
    MalformedInputError,
    NotFoundError,
    PerSessionError,
    ProtectedResultError,
    StatsError,
)
from ams2stats.core.parser import (
    IdentitySource,
    ParsedResult,
    SessionRecord,
    StatsSnapshot,
    format_duration,
    format_lap_time,
    normalize_collection,
    parse_distance,
    parse_duration,
    strip_comments,
)

__all__ = [
    # Errors
    "StatsError",
    "MalformedInputError",
    "ConstraintViolation",
    "NotFoundError",
    "PerSessionError",
    "ProtectedResultError",
    # Parser
    "IdentitySource",
    "ParsedResult",
    "SessionRecord",
    "StatsSnapshot",
    "format_duration",
    "format_lap_time",
    "normalize_collection",
    "parse_distance",
    "parse_duration",
    "strip_comments",
]
