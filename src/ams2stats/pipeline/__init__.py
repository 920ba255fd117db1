"""
ams2stats Pipeline - snapshot import.

Parses a snapshot, classifies every session against the store by content
hash, writes new and changed sessions, syncs player counters and records
the import in the audit log.
"""

from ams2stats.pipeline.importer import ImportResult, SessionError, StatsImporter

__all__ = ["ImportResult", "SessionError", "StatsImporter"]
