"""
ams2stats - Automobilista 2 dedicated server stats archive

Imports the server's sms_stats_data.json snapshots into a SQLite store,
deduplicating the rolling session history, and answers queries over
servers, players, sessions and results.

Usage:
    from ams2stats import DatabaseManager, StatsImporter, StatsQueryService

    db = DatabaseManager("stats.db")
    result = StatsImporter(db).import_file("sms_stats_data.json")
    print(f"{result.imported} new sessions ({result.status})")

    for server in StatsQueryService(db).get_servers():
        print(server["name"], server["session_count"])
"""

__version__ = "0.1.0"
__author__ = "ams2stats Contributors"


def __getattr__(name):
    """Lazy import so the parser can be used without SQLAlchemy loaded."""
    if name == "StatsSnapshot":
        from ams2stats.core.parser import StatsSnapshot
        return StatsSnapshot
    elif name == "DatabaseManager":
        from ams2stats.infra.database import DatabaseManager
        return DatabaseManager
    elif name == "StatsImporter":
        from ams2stats.pipeline.importer import StatsImporter
        return StatsImporter
    elif name == "ImportResult":
        from ams2stats.pipeline.importer import ImportResult
        return ImportResult
    elif name == "StatsQueryService":
        from ams2stats.infra.queries import StatsQueryService
        return StatsQueryService
    elif name == "ManualResultInput":
        from ams2stats.infra.queries import ManualResultInput
        return ManualResultInput
    raise AttributeError(f"module 'ams2stats' has no attribute '{name}'")


__all__ = [
    "__version__",
    "StatsSnapshot",
    "DatabaseManager",
    "StatsImporter",
    "ImportResult",
    "StatsQueryService",
    "ManualResultInput",
]
