"""
Read and maintenance queries over the stats store.

Reads return plain dicts and lists, never ORM objects, and never fail on
an empty store. The write operations here are the operator-facing ones:
deleting a server and adding/removing manually entered results.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func

from ams2stats.core.errors import NotFoundError, ProtectedResultError
from ams2stats.infra.database import (
    DatabaseManager,
    ImportLog,
    Player,
    PlayerDistance,
    PlayerServerStats,
    RaceSession,
    Server,
    SessionParticipant,
    Stage,
    StageResult,
)

logger = logging.getLogger(__name__)


@dataclass
class ManualResultInput:
    """A result typed in by an operator (e.g. a driver the server never classified)."""

    session_id: int
    stage_name: str
    name: str
    position: int
    state: str
    laps_completed: int
    total_time: int
    steam_id: str | None = None
    fastest_lap_time: int | None = None
    vehicle_id: int = 0


def _result_row(result: StageResult, stage_name: str) -> dict[str, Any]:
    return {
        "id": result.id,
        "stage_name": stage_name,
        "position": result.position,
        "name": result.name,
        "steam_id": result.steam_id,
        "fastest_lap_time": result.fastest_lap_time,
        "laps_completed": result.laps_completed,
        "total_time": result.total_time,
        "state": result.state,
        "vehicle_id": result.vehicle_id,
        "is_manual": bool(result.is_manual),
    }


class StatsQueryService:
    """Query layer used by the CLI and any other reader of the store."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    # =========================================================================
    # Servers
    # =========================================================================

    def _server_summary(self, session, server: Server) -> dict[str, Any]:
        summary = server.to_dict()
        summary["session_count"] = (
            session.query(func.count(RaceSession.id)).filter(RaceSession.server_id == server.id).scalar()
        )
        summary["player_count"] = (
            session.query(func.count(func.distinct(PlayerServerStats.player_id)))
            .filter(PlayerServerStats.server_id == server.id)
            .scalar()
        )
        return summary

    def get_servers(self) -> list[dict]:
        """All servers with session and player counts, by name."""
        session = self.db.get_session()
        try:
            servers = session.query(Server).order_by(Server.name).all()
            return [self._server_summary(session, s) for s in servers]
        finally:
            session.close()

    def get_server(self, server_id: int) -> dict | None:
        session = self.db.get_session()
        try:
            server = session.get(Server, server_id)
            return self._server_summary(session, server) if server else None
        finally:
            session.close()

    def delete_server(self, server_id: int) -> None:
        """
        Delete a server and everything imported for it.

        Session children (participants, members, stages, results) go with
        their session through the schema's cascading foreign keys.
        """
        with self.db.session_scope() as session:
            if session.get(Server, server_id) is None:
                raise NotFoundError(f"Server {server_id} not found")

            for model in (PlayerDistance, PlayerServerStats, ImportLog, RaceSession):
                session.query(model).filter(model.server_id == server_id).delete(
                    synchronize_session=False
                )
            session.query(Server).filter(Server.id == server_id).delete(synchronize_session=False)

        logger.info(f"Deleted server {server_id}")

    # =========================================================================
    # Players
    # =========================================================================

    def get_players(self, server_id: int) -> list[dict]:
        """Players with counters on a server, by name."""
        session = self.db.get_session()
        try:
            distance = (
                session.query(
                    PlayerDistance.player_id,
                    func.sum(PlayerDistance.distance).label("total_distance"),
                )
                .filter(PlayerDistance.server_id == server_id)
                .group_by(PlayerDistance.player_id)
                .subquery()
            )

            rows = (
                session.query(Player, PlayerServerStats, distance.c.total_distance)
                .join(PlayerServerStats, PlayerServerStats.player_id == Player.id)
                .outerjoin(distance, distance.c.player_id == Player.id)
                .filter(PlayerServerStats.server_id == server_id)
                .order_by(Player.name)
                .all()
            )

            return [
                {
                    **player.to_dict(),
                    "race_joins": stats.race_joins or 0,
                    "race_finishes": stats.race_finishes or 0,
                    "race_loads": stats.race_loads or 0,
                    "last_joined": stats.last_joined,
                    "total_distance": total_distance or 0.0,
                }
                for player, stats, total_distance in rows
            ]
        finally:
            session.close()

    def get_player(self, steam_id: str) -> dict | None:
        """A player with counters summed over every server."""
        session = self.db.get_session()
        try:
            player = session.query(Player).filter(Player.steam_id == steam_id).first()
            if not player:
                return None

            joins, finishes = (
                session.query(
                    func.coalesce(func.sum(PlayerServerStats.race_joins), 0),
                    func.coalesce(func.sum(PlayerServerStats.race_finishes), 0),
                )
                .filter(PlayerServerStats.player_id == player.id)
                .one()
            )
            total_distance = (
                session.query(func.coalesce(func.sum(PlayerDistance.distance), 0.0))
                .filter(PlayerDistance.player_id == player.id)
                .scalar()
            )

            return {
                **player.to_dict(),
                "race_joins": joins,
                "race_finishes": finishes,
                "total_distance": total_distance,
            }
        finally:
            session.close()

    def get_leaderboard(self, server_id: int, sort_by: str = "distance", limit: int = 20) -> list[dict]:
        """Players of a server ranked by distance, joins or finishes."""
        valid_metrics = {
            "distance": "total_distance",
            "joins": "race_joins",
            "finishes": "race_finishes",
        }
        if sort_by not in valid_metrics:
            raise ValueError(f"Unknown leaderboard metric: {sort_by}")

        key = valid_metrics[sort_by]
        players = sorted(self.get_players(server_id), key=lambda p: p[key], reverse=True)

        return [
            {
                "rank": i + 1,
                "steam_id": p["steam_id"],
                "name": p["name"],
                "value": round(p[key], 2) if key == "total_distance" else p[key],
            }
            for i, p in enumerate(players[:limit])
        ]

    # =========================================================================
    # Sessions
    # =========================================================================

    def _session_summary(self, session, race_session: RaceSession) -> dict[str, Any]:
        summary = race_session.to_dict()
        summary["stage_names"] = [
            name
            for (name,) in session.query(Stage.name)
            .filter(Stage.session_id == race_session.id)
            .order_by(Stage.name)
        ]
        summary["participant_count"] = (
            session.query(func.count(SessionParticipant.id))
            .filter(SessionParticipant.session_id == race_session.id)
            .scalar()
        )
        summary["has_results"] = (
            session.query(StageResult.id).filter(StageResult.session_id == race_session.id).first()
            is not None
        )
        return summary

    def get_sessions(
        self,
        server_id: int,
        limit: int = 50,
        offset: int = 0,
        has_results: bool = False,
    ) -> list[dict]:
        """
        Sessions of a server, newest first.

        Args:
            server_id: Server to list
            limit: Page size
            offset: Rows to skip
            has_results: Only sessions with at least one stage result
        """
        session = self.db.get_session()
        try:
            query = session.query(RaceSession).filter(RaceSession.server_id == server_id)

            if has_results:
                query = query.filter(
                    session.query(StageResult.id)
                    .filter(StageResult.session_id == RaceSession.id)
                    .exists()
                )

            sessions = (
                query.order_by(RaceSession.start_time.desc(), RaceSession.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [self._session_summary(session, s) for s in sessions]
        finally:
            session.close()

    def get_session(self, session_id: int) -> dict | None:
        """Session summary with its participants, members and stages."""
        session = self.db.get_session()
        try:
            race_session = session.get(RaceSession, session_id)
            if race_session is None:
                return None

            details = self._session_summary(session, race_session)
            details["participants"] = [
                p.to_dict() for p in sorted(race_session.participants, key=lambda p: p.participant_index)
            ]
            details["members"] = [m.to_dict() for m in race_session.members]
            details["stages"] = [s.to_dict() for s in sorted(race_session.stages, key=lambda s: s.name)]
            return details
        finally:
            session.close()

    # =========================================================================
    # Stage results
    # =========================================================================

    def get_stage_results(self, session_id: int, stage_name: str) -> list[dict]:
        session = self.db.get_session()
        try:
            rows = (
                session.query(StageResult)
                .join(Stage, Stage.id == StageResult.stage_id)
                .filter(StageResult.session_id == session_id, Stage.name == stage_name)
                .order_by(StageResult.position.asc(), StageResult.id.asc())
                .all()
            )
            return [_result_row(r, stage_name) for r in rows]
        finally:
            session.close()

    def get_all_session_results(self, session_id: int) -> dict[str, list[dict]]:
        """Results of every stage of a session, grouped by stage name."""
        session = self.db.get_session()
        try:
            rows = (
                session.query(StageResult, Stage.name)
                .join(Stage, Stage.id == StageResult.stage_id)
                .filter(StageResult.session_id == session_id)
                .order_by(Stage.name, StageResult.position.asc(), StageResult.id.asc())
                .all()
            )

            grouped: dict[str, list[dict]] = {}
            for result, stage_name in rows:
                grouped.setdefault(stage_name, []).append(_result_row(result, stage_name))
            return grouped
        finally:
            session.close()

    def _player_results(self, session, steam_id: str, server_id: int | None):
        query = (
            session.query(StageResult, Stage.name, RaceSession)
            .join(Stage, Stage.id == StageResult.stage_id)
            .join(RaceSession, RaceSession.id == StageResult.session_id)
            .filter(StageResult.steam_id == steam_id)
        )
        if server_id is not None:
            query = query.filter(RaceSession.server_id == server_id)
        return query

    def get_player_result_history(self, steam_id: str, server_id: int | None = None) -> list[dict]:
        """Every classified result of a player, newest session first."""
        session = self.db.get_session()
        try:
            rows = (
                self._player_results(session, steam_id, server_id)
                .order_by(RaceSession.start_time.desc(), Stage.name)
                .all()
            )
            return [
                {
                    "session_index": race_session.session_index,
                    "session_start_time": race_session.start_time,
                    "stage_name": stage_name,
                    "track_id": race_session.track_id,
                    "position": result.position,
                    "fastest_lap_time": result.fastest_lap_time,
                    "laps_completed": result.laps_completed,
                    "total_time": result.total_time,
                    "state": result.state,
                }
                for result, stage_name, race_session in rows
            ]
        finally:
            session.close()

    def get_player_best_laps(self, steam_id: str, server_id: int | None = None) -> list[dict]:
        """
        Best valid lap per track for a player.

        Each entry names the session and stage the lap was set in. Ties
        keep the earliest session.
        """
        session = self.db.get_session()
        try:
            rows = (
                self._player_results(session, steam_id, server_id)
                .filter(StageResult.fastest_lap_time > 0)
                .order_by(RaceSession.start_time.asc(), StageResult.id.asc())
                .all()
            )

            best: dict[int, dict] = {}
            for result, stage_name, race_session in rows:
                current = best.get(race_session.track_id)
                if current is None or result.fastest_lap_time < current["best_lap_time"]:
                    best[race_session.track_id] = {
                        "track_id": race_session.track_id,
                        "best_lap_time": result.fastest_lap_time,
                        "session_index": race_session.session_index,
                        "stage_name": stage_name,
                        "session_start_time": race_session.start_time,
                    }

            return [best[track_id] for track_id in sorted(best, key=lambda t: (t is None, t))]
        finally:
            session.close()

    # =========================================================================
    # Overview & audit
    # =========================================================================

    def get_server_overview(self, server_id: int, recent: int = 5) -> dict[str, Any]:
        session = self.db.get_session()
        try:
            total_sessions = (
                session.query(func.count(RaceSession.id))
                .filter(RaceSession.server_id == server_id)
                .scalar()
            )
            sessions_with_results = (
                session.query(func.count(func.distinct(StageResult.session_id)))
                .join(RaceSession, RaceSession.id == StageResult.session_id)
                .filter(RaceSession.server_id == server_id)
                .scalar()
            )
            total_players = (
                session.query(func.count(PlayerServerStats.id))
                .filter(PlayerServerStats.server_id == server_id)
                .scalar()
            )
            stage_counts = (
                session.query(Stage.name, func.count(Stage.id))
                .join(RaceSession, RaceSession.id == Stage.session_id)
                .filter(RaceSession.server_id == server_id)
                .group_by(Stage.name)
                .all()
            )
        finally:
            session.close()

        return {
            "total_sessions": total_sessions,
            "sessions_with_results": sessions_with_results,
            "total_players": total_players,
            "total_stages": dict(stage_counts),
            "recent_sessions": self.get_sessions(server_id, limit=recent),
        }

    def get_import_history(self, server_id: int, limit: int = 20) -> list[dict]:
        session = self.db.get_session()
        try:
            logs = (
                session.query(ImportLog)
                .filter(ImportLog.server_id == server_id)
                .order_by(ImportLog.imported_at.desc(), ImportLog.id.desc())
                .limit(limit)
                .all()
            )
            return [log.to_dict() for log in logs]
        finally:
            session.close()

    # =========================================================================
    # Manual results
    # =========================================================================

    def insert_manual_result(self, params: ManualResultInput) -> dict:
        """
        Add an operator-entered result to an existing stage.

        An unknown steam id is stored as given without a player link.
        Manual results are replaced along with the rest of the session's
        results if the session is later re-imported with changed content.
        """
        with self.db.session_scope() as session:
            stage = (
                session.query(Stage)
                .filter(Stage.session_id == params.session_id, Stage.name == params.stage_name)
                .first()
            )
            if stage is None:
                raise NotFoundError(
                    f"Stage '{params.stage_name}' not found for session {params.session_id}"
                )

            player_id = None
            if params.steam_id:
                player = session.query(Player).filter(Player.steam_id == params.steam_id).first()
                player_id = player.id if player else None

            result = StageResult(
                stage_id=stage.id,
                session_id=params.session_id,
                player_id=player_id,
                steam_id=params.steam_id,
                name=params.name,
                participant_id=0,
                ref_id=0,
                is_player=True,
                position=params.position,
                fastest_lap_time=params.fastest_lap_time,
                laps_completed=params.laps_completed,
                total_time=params.total_time,
                state=params.state,
                vehicle_id=params.vehicle_id,
                recorded_at=int(datetime.now(UTC).timestamp()),
                is_manual=True,
            )
            session.add(result)
            session.flush()
            row = _result_row(result, stage.name)

        logger.info(f"Added manual result {row['id']} to session {params.session_id} {params.stage_name}")
        return row

    def delete_manual_result(self, result_id: int) -> None:
        """Delete a manually entered result. Parsed results cannot be deleted."""
        with self.db.session_scope() as session:
            result = session.get(StageResult, result_id)
            if result is None:
                raise NotFoundError(f"Result {result_id} not found")
            if not result.is_manual:
                raise ProtectedResultError(f"Result {result_id} is not a manual entry")
            session.delete(result)

        logger.info(f"Deleted manual result {result_id}")
