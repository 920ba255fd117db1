"""
ams2stats persistent store.

SQLite via SQLAlchemy ORM. Holds servers, players, per-server player
counters, sessions with their participants/members/stages/results, and an
append-only import log.

Snapshot-derived times are stored as integer epoch seconds exactly as the
server reports them; bookkeeping timestamps are UTC datetimes.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    inspect,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from ams2stats.core.config import DEFAULT_DB_PATH, DatabaseConfig, get_config
from ams2stats.core.errors import ConstraintViolation


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
MEMORY_DB = ":memory:"

Base = declarative_base()


# =============================================================================
# Database Models
# =============================================================================


class Server(Base):
    """A dedicated server whose snapshots have been imported."""

    __tablename__ = "servers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier = Column(String(200), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    file_path = Column(String(1000))
    last_imported_at = Column(DateTime(timezone=True))
    # next_history_index of the most recent import
    last_known_history_index = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now)

    sessions = relationship("RaceSession", back_populates="server", passive_deletes=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "identifier": self.identifier,
            "name": self.name,
            "file_path": self.file_path,
            "last_imported_at": _iso(self.last_imported_at),
            "last_known_history_index": self.last_known_history_index,
            "created_at": _iso(self.created_at),
        }


class Player(Base):
    """A driver, keyed by steam id across all servers."""

    __tablename__ = "players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    steam_id = Column(String(32), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    first_seen = Column(Integer)  # epoch seconds
    last_seen = Column(Integer)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "steam_id": self.steam_id,
            "name": self.name,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
        }


class PlayerServerStats(Base):
    """Cumulative per-server counters, overwritten from each snapshot."""

    __tablename__ = "player_server_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    player_id = Column(Integer, ForeignKey("players.id", ondelete="CASCADE"), nullable=False)
    server_id = Column(Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=False)
    race_joins = Column(Integer, default=0, nullable=False)
    race_finishes = Column(Integer, default=0, nullable=False)
    race_loads = Column(Integer, default=0, nullable=False)
    last_joined = Column(Integer)
    updated_at = Column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)

    player = relationship("Player")

    __table_args__ = (UniqueConstraint("player_id", "server_id", name="uq_player_server"),)


class PlayerDistance(Base):
    """Distance driven by a player on one track of one server (metres)."""

    __tablename__ = "player_distances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    player_id = Column(Integer, ForeignKey("players.id", ondelete="CASCADE"), nullable=False)
    server_id = Column(Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=False)
    track_id = Column(Integer, nullable=False)
    distance = Column(Float, default=0.0, nullable=False)

    __table_args__ = (
        UniqueConstraint("player_id", "server_id", "track_id", name="uq_player_server_track"),
    )


class RaceSession(Base):
    """One entry of a server's session history."""

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=False)
    session_index = Column(Integer, nullable=False)
    start_time = Column(Integer, nullable=False)
    end_time = Column(Integer)  # NULL while the session is running
    finished = Column(Boolean, default=False, nullable=False)
    track_id = Column(Integer)
    vehicle_model_id = Column(Integer)
    vehicle_class_id = Column(Integer)
    setup_json = Column(Text)
    content_hash = Column(String(64), nullable=False)
    imported_at = Column(DateTime(timezone=True), default=_utc_now)
    updated_at = Column(DateTime(timezone=True), default=_utc_now)

    server = relationship("Server", back_populates="sessions")
    participants = relationship(
        "SessionParticipant", back_populates="session", cascade="all, delete-orphan", passive_deletes=True
    )
    members = relationship(
        "SessionMember", back_populates="session", cascade="all, delete-orphan", passive_deletes=True
    )
    stages = relationship(
        "Stage", back_populates="session", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("server_id", "session_index", name="uq_server_session_index"),
        Index("idx_sessions_server_start", "server_id", "start_time"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "server_id": self.server_id,
            "session_index": self.session_index,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "finished": bool(self.finished),
            "track_id": self.track_id,
            "vehicle_model_id": self.vehicle_model_id,
            "vehicle_class_id": self.vehicle_class_id,
            "content_hash": self.content_hash,
            "imported_at": _iso(self.imported_at),
            "updated_at": _iso(self.updated_at),
        }


class SessionParticipant(Base):
    """A roster slot of a session."""

    __tablename__ = "session_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    participant_index = Column(Integer, nullable=False)
    player_id = Column(Integer, ForeignKey("players.id"))
    steam_id = Column(String(32))
    name = Column(String(200))
    vehicle_id = Column(Integer)
    livery_id = Column(Integer)
    ref_id = Column(Integer)
    is_player = Column(Boolean, default=True)

    session = relationship("RaceSession", back_populates="participants")

    def to_dict(self) -> dict[str, Any]:
        return {
            "participant_index": self.participant_index,
            "steam_id": self.steam_id,
            "name": self.name,
            "vehicle_id": self.vehicle_id,
            "livery_id": self.livery_id,
            "ref_id": self.ref_id,
            "is_player": bool(self.is_player),
        }


class SessionMember(Base):
    """A join/leave record of a session."""

    __tablename__ = "session_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(String(32), nullable=False)
    player_id = Column(Integer, ForeignKey("players.id"))
    steam_id = Column(String(32))
    name = Column(String(200))
    join_time = Column(Integer)
    leave_time = Column(Integer)  # NULL while still connected
    participant_id = Column(Integer)
    vehicle_id = Column(Integer)
    livery_id = Column(Integer)

    session = relationship("RaceSession", back_populates="members")

    def to_dict(self) -> dict[str, Any]:
        return {
            "member_id": self.member_id,
            "steam_id": self.steam_id,
            "name": self.name,
            "join_time": self.join_time,
            "leave_time": self.leave_time,
            "participant_id": self.participant_id,
            "vehicle_id": self.vehicle_id,
            "livery_id": self.livery_id,
        }


class Stage(Base):
    """A named phase of a session (practice1, qualifying1, race1, ...)."""

    __tablename__ = "stages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(50), nullable=False)
    start_time = Column(Integer)
    end_time = Column(Integer)

    session = relationship("RaceSession", back_populates="stages")
    results = relationship(
        "StageResult", back_populates="stage", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (UniqueConstraint("session_id", "name", name="uq_session_stage"),)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "name": self.name,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }


class StageResult(Base):
    """A driver's classification in a stage, parsed or entered manually."""

    __tablename__ = "stage_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stage_id = Column(Integer, ForeignKey("stages.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    player_id = Column(Integer, ForeignKey("players.id"), index=True)
    steam_id = Column(String(32))  # NULL when the driver could not be identified
    name = Column(String(200), nullable=False)
    participant_id = Column(Integer)
    ref_id = Column(Integer)
    is_player = Column(Boolean, default=True)
    position = Column(Integer)
    fastest_lap_time = Column(Integer)  # ms, NULL without a valid lap
    laps_completed = Column(Integer)
    total_time = Column(Integer)  # ms
    state = Column(String(50))
    vehicle_id = Column(Integer)
    recorded_at = Column(Integer)
    is_manual = Column(Boolean, default=False, server_default=text("0"), nullable=False)

    stage = relationship("Stage", back_populates="results")

    __table_args__ = (Index("idx_stage_results_manual", "is_manual"),)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "session_id": self.session_id,
            "player_id": self.player_id,
            "steam_id": self.steam_id,
            "name": self.name,
            "participant_id": self.participant_id,
            "ref_id": self.ref_id,
            "is_player": bool(self.is_player),
            "position": self.position,
            "fastest_lap_time": self.fastest_lap_time,
            "laps_completed": self.laps_completed,
            "total_time": self.total_time,
            "state": self.state,
            "vehicle_id": self.vehicle_id,
            "recorded_at": self.recorded_at,
            "is_manual": bool(self.is_manual),
        }


class ImportLog(Base):
    """Audit record of one import attempt."""

    __tablename__ = "import_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(Integer, ForeignKey("servers.id", ondelete="CASCADE"), index=True)
    imported_at = Column(DateTime(timezone=True), default=_utc_now, index=True)
    file_path = Column(String(1000))
    file_size = Column(Integer)
    sessions_in_file = Column(Integer, default=0)
    sessions_imported = Column(Integer, default=0)
    sessions_updated = Column(Integer, default=0)
    sessions_skipped = Column(Integer, default=0)
    status = Column(String(20), nullable=False)  # success, partial, error
    error_message = Column(Text)  # JSON list of per-session errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "server_id": self.server_id,
            "imported_at": _iso(self.imported_at),
            "file_path": self.file_path,
            "file_size": self.file_size,
            "sessions_in_file": self.sessions_in_file,
            "sessions_imported": self.sessions_imported,
            "sessions_updated": self.sessions_updated,
            "sessions_skipped": self.sessions_skipped,
            "status": self.status,
            "error_message": self.error_message,
        }


class SchemaMeta(Base):
    """Key/value store for schema bookkeeping."""

    __tablename__ = "schema_meta"

    key = Column(String(50), primary_key=True)
    value = Column(String(200))


# =============================================================================
# Migrations
# =============================================================================


def ensure_column(connection: Connection, table: str, column: str, ddl: str) -> bool:
    """Add a column to an existing table if it is missing. Returns True if added."""
    existing = {c["name"] for c in inspect(connection).get_columns(table)}
    if column in existing:
        return False
    connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
    logger.info(f"Added column {table}.{column}")
    return True


def _run_migrations(engine: Engine) -> None:
    with engine.begin() as conn:
        ensure_column(conn, "stage_results", "is_manual", "BOOLEAN NOT NULL DEFAULT 0")
        conn.execute(
            text("CREATE INDEX IF NOT EXISTS idx_stage_results_manual ON stage_results (is_manual)")
        )

        current = conn.execute(
            text("SELECT value FROM schema_meta WHERE key = 'schema_version'")
        ).scalar()
        current_version = int(current) if current is not None else 0

        # Never downgrade: a newer build may have written a higher version
        if current_version < SCHEMA_VERSION:
            conn.execute(
                text("INSERT OR REPLACE INTO schema_meta (key, value) VALUES ('schema_version', :v)"),
                {"v": str(SCHEMA_VERSION)},
            )
            logger.info(f"Schema version {current_version} -> {SCHEMA_VERSION}")


# =============================================================================
# Database Manager
# =============================================================================


class DatabaseManager:
    """
    Owns the engine and session factory for one SQLite store.

    Every connection is opened with foreign keys enforced, so deleting a
    session row cascades to its participants, members, stages and results.
    """

    def __init__(self, db_path: Path | str | None = None, config: DatabaseConfig | None = None):
        """Initialize database connection."""
        config = config or DatabaseConfig()
        if db_path is None:
            db_path = config.path or DEFAULT_DB_PATH

        self.is_memory = str(db_path) == MEMORY_DB
        if self.is_memory:
            self.db_path = None
            # One shared connection, otherwise each checkout sees an empty database
            self.engine = create_engine(
                "sqlite://",
                echo=config.echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.db_path = Path(db_path).expanduser()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_engine(
                f"sqlite:///{self.db_path}",
                echo=config.echo,
                connect_args={"check_same_thread": False},
            )

        use_wal = config.wal_mode and not self.is_memory
        busy_timeout = int(config.busy_timeout_ms)

        @event.listens_for(self.engine, "connect")
        def _configure_connection(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.execute(f"PRAGMA busy_timeout = {busy_timeout}")
            if use_wal:
                cursor.execute("PRAGMA journal_mode = WAL")
            cursor.close()

        # Rows are handed back to callers after commit
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        Base.metadata.create_all(self.engine)
        _run_migrations(self.engine)

        logger.info(f"Database initialized at: {self.db_path or MEMORY_DB}")

    def get_session(self) -> Session:
        """Get a database session."""
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        One transaction: commit on success, roll back and re-raise on error.

        IntegrityError is surfaced as ConstraintViolation.
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise ConstraintViolation(str(e.orig)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_schema_version(self) -> int:
        session = self.get_session()
        try:
            meta = session.get(SchemaMeta, "schema_version")
            return int(meta.value) if meta else 0
        finally:
            session.close()

    def dispose(self) -> None:
        """Close all pooled connections."""
        self.engine.dispose()


# Global database instance (lazy initialization)
_db_manager: DatabaseManager | None = None


def get_db() -> DatabaseManager:
    """Get the global database manager, opened from the global config."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager(config=get_config().database)
    return _db_manager


def set_db(db: DatabaseManager | None) -> None:
    """Replace the global database manager (None to reset)."""
    global _db_manager
    if _db_manager is not None and _db_manager is not db:
        _db_manager.dispose()
    _db_manager = db
