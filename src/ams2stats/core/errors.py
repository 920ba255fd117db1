"""
Error taxonomy for ams2stats.

Errors local to one session's import transaction are caught by the importer
and downgraded to entries in ImportResult.errors. Everything else propagates
to the caller.
"""

from __future__ import annotations

from typing import Any


class StatsError(Exception):
    """Base class for all ams2stats errors."""


class MalformedInputError(StatsError, ValueError):
    """The snapshot text is not well-formed stats data."""


class ConstraintViolation(StatsError):
    """A unique or foreign-key constraint rejected a write."""


class NotFoundError(StatsError, LookupError):
    """A referenced server, session, stage or result does not exist."""


class ProtectedResultError(StatsError):
    """An operator tried to delete a result that was parsed from a snapshot."""


class PerSessionError(StatsError):
    """One session's insert or update failed; the rest of the import continues."""

    def __init__(self, session_index: int, message: str):
        super().__init__(f"Session {session_index}: {message}")
        self.session_index = session_index
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"session_index": self.session_index, "error": self.message}
