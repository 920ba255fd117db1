"""
Snapshot import pipeline.

Persists a parsed stats snapshot into the store. Snapshots are full
dumps of a rolling history, so the same session shows up in many
consecutive files; each one is classified by content hash and only
inserted or rewritten when it actually changed.

Pipeline:
    resolve server -> per-session insert/update/skip -> sync cumulative
    player counters -> append an import_log row
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session

from ams2stats.core.config import ImportConfig
from ams2stats.core.errors import PerSessionError
from ams2stats.core.parser import SessionRecord, StatsSnapshot
from ams2stats.infra.database import (
    DatabaseManager,
    ImportLog,
    Player,
    PlayerDistance,
    PlayerServerStats,
    RaceSession,
    SessionMember,
    SessionParticipant,
    Server,
    Stage,
    StageResult,
)

logger = logging.getLogger(__name__)


class SessionAction(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    SKIP = "skip"


@dataclass
class SessionError:
    session_index: int
    error: str


@dataclass
class ImportResult:
    """Outcome of one import call."""

    server_id: int
    server_name: str
    sessions_in_file: int = 0
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[SessionError] = field(default_factory=list)

    @property
    def status(self) -> str:
        """success, partial (some sessions failed, some were written) or error."""
        if not self.errors:
            return "success"
        if self.imported + self.updated > 0:
            return "partial"
        return "error"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status
        return data


def compute_session_hash(session: SessionRecord) -> str:
    """
    Fingerprint of the parts of a session that change while it progresses.

    Covers end time, finished flag, each stage's end time and result count,
    and the member and participant counts. Start time and setup are fixed
    for a session index and are left out.
    """
    payload = {
        "end_time": session.end_time,
        "finished": session.finished,
        "stages": [
            {"name": stage.name, "end_time": stage.end_time, "result_count": len(stage.results)}
            for stage in sorted(session.stages.values(), key=lambda s: s.name)
        ],
        "member_count": len(session.members),
        "participant_count": len(session.participants),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _nullable_epoch(value: int) -> int | None:
    return value if value > 0 else None


class StatsImporter:
    """
    Imports stats snapshots into a DatabaseManager store.

    Each session is written in its own transaction. A failing session is
    rolled back and reported in ImportResult.errors while the rest of the
    file is still imported. Everything outside the session loop (parsing,
    server resolution, counter sync) raises.
    """

    def __init__(self, db: DatabaseManager, config: ImportConfig | None = None):
        self.db = db
        self.config = config or ImportConfig()

    # =========================================================================
    # Entry points
    # =========================================================================

    def import_file(
        self,
        file_path: Path | str,
        content: str | None = None,
        server_identifier: str | None = None,
    ) -> ImportResult:
        """
        Import a snapshot file.

        Args:
            file_path: Path of the snapshot (recorded on the server and in the log)
            content: Snapshot text, read from file_path when omitted
            server_identifier: Overrides the in-file server name as identity

        Returns:
            ImportResult with per-session counts and errors
        """
        if content is None:
            content = Path(file_path).read_text(encoding="utf-8")

        snapshot = StatsSnapshot.from_json(content, strip=self.config.strip_comments)
        return self.import_snapshot(
            snapshot,
            str(file_path),
            file_size=len(content.encode("utf-8")),
            server_identifier=server_identifier,
        )

    def import_snapshot(
        self,
        snapshot: StatsSnapshot,
        file_path: str,
        file_size: int | None = None,
        server_identifier: str | None = None,
    ) -> ImportResult:
        """Import an already parsed snapshot."""
        identifier = server_identifier or self.config.server_identifier or snapshot.server_name
        server_id = self._resolve_server(snapshot, identifier, file_path)

        result = ImportResult(
            server_id=server_id,
            server_name=snapshot.server_name,
            sessions_in_file=len(snapshot.sessions),
        )

        for record in snapshot.sessions:
            try:
                action = self._import_session(server_id, snapshot, record)
            except Exception as e:
                error = PerSessionError(record.index, str(e))
                logger.warning(f"Import of session {record.index} failed: {e}")
                result.errors.append(SessionError(**error.to_dict()))
                continue

            if action is SessionAction.INSERT:
                result.imported += 1
            elif action is SessionAction.UPDATE:
                result.updated += 1
            else:
                result.skipped += 1

        self._sync_player_stats(server_id, snapshot)
        self._log_import(server_id, file_path, file_size, result)

        logger.info(
            f"Imported '{snapshot.server_name}' from {file_path}: "
            f"{result.imported} new, {result.updated} updated, {result.skipped} unchanged, "
            f"{len(result.errors)} failed ({result.status})"
        )
        return result

    # =========================================================================
    # Server
    # =========================================================================

    def _resolve_server(self, snapshot: StatsSnapshot, identifier: str, file_path: str) -> int:
        with self.db.session_scope() as session:
            server = session.query(Server).filter_by(identifier=identifier).one_or_none()
            if server is None:
                server = Server(identifier=identifier, name=snapshot.server_name, file_path=file_path)
                session.add(server)
                session.flush()
                logger.info(f"Registered server '{identifier}' (id {server.id})")
            else:
                server.name = snapshot.server_name
                server.file_path = file_path
            return server.id

    # =========================================================================
    # Sessions
    # =========================================================================

    def _import_session(
        self, server_id: int, snapshot: StatsSnapshot, record: SessionRecord
    ) -> SessionAction:
        content_hash = compute_session_hash(record)

        with self.db.session_scope() as session:
            existing = (
                session.query(RaceSession)
                .filter_by(server_id=server_id, session_index=record.index)
                .one_or_none()
            )

            if existing is not None and existing.content_hash == content_hash:
                logger.debug(f"Session {record.index} unchanged, skipping")
                return SessionAction.SKIP

            if existing is None:
                race_session = RaceSession(server_id=server_id, session_index=record.index)
                session.add(race_session)
                action = SessionAction.INSERT
            else:
                race_session = existing
                self._delete_children(session, race_session.id)
                race_session.updated_at = datetime.now(UTC)
                action = SessionAction.UPDATE

            race_session.start_time = record.start_time
            race_session.end_time = _nullable_epoch(record.end_time)
            race_session.finished = record.finished
            race_session.track_id = record.track_id
            race_session.vehicle_model_id = record.vehicle_model_id
            race_session.vehicle_class_id = record.vehicle_class_id
            race_session.setup_json = json.dumps(record.setup)
            race_session.content_hash = content_hash
            session.flush()

            self._insert_children(session, race_session.id, snapshot, record)

        logger.info(f"Session {record.index}: {action.value}")
        return action

    @staticmethod
    def _delete_children(session: Session, session_id: int) -> None:
        # Results go with the rest, manual entries included
        for model in (StageResult, Stage, SessionMember, SessionParticipant):
            session.query(model).filter(model.session_id == session_id).delete(
                synchronize_session=False
            )

    def _insert_children(
        self, session: Session, session_id: int, snapshot: StatsSnapshot, record: SessionRecord
    ) -> None:
        for p in snapshot.get_session_participants(record):
            session.add(
                SessionParticipant(
                    session_id=session_id,
                    participant_index=p.index,
                    player_id=self._resolve_player(session, p.steam_id, p.name, record.start_time),
                    steam_id=p.steam_id,
                    name=p.name,
                    vehicle_id=p.vehicle_id,
                    livery_id=p.livery_id,
                    ref_id=p.ref_id,
                    is_player=p.is_player,
                )
            )

        for m in record.members:
            session.add(
                SessionMember(
                    session_id=session_id,
                    member_id=m.member_id,
                    player_id=self._resolve_player(session, m.steam_id, m.name, m.join_time),
                    steam_id=m.steam_id,
                    name=m.name,
                    join_time=m.join_time,
                    leave_time=m.leave_time,
                    participant_id=m.participant_id,
                    vehicle_id=m.setup.vehicle_id,
                    livery_id=m.setup.livery_id,
                )
            )

        for stage_record in record.stages.values():
            stage = Stage(
                session_id=session_id,
                name=stage_record.name,
                start_time=stage_record.start_time,
                end_time=_nullable_epoch(stage_record.end_time),
            )
            session.add(stage)
            session.flush()

            for r in snapshot.get_parsed_stage_results(record, stage_record.name):
                player_id = None
                if r.steam_id:
                    player_id = self._resolve_player(session, r.steam_id, r.name, record.start_time)
                session.add(
                    StageResult(
                        stage_id=stage.id,
                        session_id=session_id,
                        player_id=player_id,
                        steam_id=r.steam_id,
                        name=r.name,
                        participant_id=r.participant_id,
                        ref_id=r.ref_id,
                        is_player=r.is_player,
                        position=r.position,
                        fastest_lap_time=r.fastest_lap if r.fastest_lap > 0 else None,
                        laps_completed=r.laps_completed,
                        total_time=r.total_time,
                        state=r.state,
                        vehicle_id=r.vehicle_id,
                        recorded_at=r.recorded_at,
                        is_manual=False,
                    )
                )

    # =========================================================================
    # Players
    # =========================================================================

    @staticmethod
    def _resolve_player(session: Session, steam_id: str, name: str, seen_at: int) -> int | None:
        """
        Find or create the player for a steam id.

        The stored name only changes when this sighting is newer than the
        last one, so re-importing old sessions never reverts a rename.
        """
        if not steam_id or not name:
            return None

        player = session.query(Player).filter_by(steam_id=steam_id).one_or_none()
        if player is None:
            player = Player(steam_id=steam_id, name=name, first_seen=seen_at, last_seen=seen_at)
            session.add(player)
            session.flush()
            return player.id

        if player.last_seen is None or seen_at > player.last_seen:
            player.name = name
            player.last_seen = seen_at
        if player.first_seen is None or seen_at < player.first_seen:
            player.first_seen = seen_at
        return player.id

    def _sync_player_stats(self, server_id: int, snapshot: StatsSnapshot) -> None:
        """Overwrite per-server counters and distances with the snapshot's values."""
        with self.db.session_scope() as session:
            server = session.get(Server, server_id)
            server.last_known_history_index = snapshot.next_history_index
            server.last_imported_at = datetime.now(UTC)

            players = {
                p.steam_id: p
                for p in session.query(Player).filter(Player.steam_id.in_(list(snapshot.players)))
            }
            stats_by_player = {
                s.player_id: s
                for s in session.query(PlayerServerStats).filter_by(server_id=server_id)
            }
            distances = {
                (d.player_id, d.track_id): d
                for d in session.query(PlayerDistance).filter_by(server_id=server_id)
            }

            synced = 0
            for steam_id, record in snapshot.players.items():
                player = players.get(steam_id)
                # Counters are only kept for drivers seen in some session
                if player is None:
                    continue

                stats = stats_by_player.get(player.id)
                if stats is None:
                    stats = PlayerServerStats(player_id=player.id, server_id=server_id)
                    session.add(stats)
                stats.race_joins = record.race_joins
                stats.race_finishes = record.race_finishes
                stats.race_loads = record.race_loads
                stats.last_joined = record.last_joined

                for track_id, distance in record.track_distances.items():
                    row = distances.get((player.id, track_id))
                    if row is None:
                        row = PlayerDistance(player_id=player.id, server_id=server_id, track_id=track_id)
                        session.add(row)
                    row.distance = distance
                synced += 1

        logger.debug(f"Synced counters for {synced} players on server {server_id}")

    # =========================================================================
    # Audit
    # =========================================================================

    def _log_import(
        self, server_id: int, file_path: str, file_size: int | None, result: ImportResult
    ) -> None:
        with self.db.session_scope() as session:
            session.add(
                ImportLog(
                    server_id=server_id,
                    file_path=file_path,
                    file_size=file_size,
                    sessions_in_file=result.sessions_in_file,
                    sessions_imported=result.imported,
                    sessions_updated=result.updated,
                    sessions_skipped=result.skipped,
                    status=result.status,
                    error_message=json.dumps([asdict(e) for e in result.errors])
                    if result.errors
                    else None,
                )
            )
