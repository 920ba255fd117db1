"""
ams2stats Infrastructure - persistence and queries.

- database: SQLAlchemy models, schema migrations, DatabaseManager
- queries: Read queries and operator maintenance (StatsQueryService)
"""

from ams2stats.infra.database import DatabaseManager, get_db
from ams2stats.infra.queries import ManualResultInput, StatsQueryService

__all__ = ["DatabaseManager", "get_db", "ManualResultInput", "StatsQueryService"]
