"""
Stats snapshot parser for Automobilista 2 dedicated servers.

Turns the raw JSON written by the server's stats module into a stable
object model. The raw format has a few quirks that are resolved here and
nowhere else:

- participants arrive as a list or as a sparse map keyed by index
- stage results arrive as a list, or as an empty object before any exist
- cumulative counters (distances, durations) are unsigned 32-bit values
  transmitted as signed decimals, so they turn negative on overflow

Downstream code (importer, CLI) only sees the dataclasses defined below.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ams2stats.core.errors import MalformedInputError
from ams2stats.core.schemas import (
    RawMember,
    RawParticipant,
    RawPlayer,
    RawSession,
    RawStage,
    RawStageResult,
    RawStatsFile,
)

logger = logging.getLogger(__name__)

# Wrap-around of an unsigned 32-bit counter
COUNTER_WRAP = 2**32

QUALIFYING_STAGE = "qualifying1"
RACE_STAGE = "race1"
PRACTICE_STAGE = "practice1"
FINISHED_STATE = "Finished"


# =============================================================================
# Scalar helpers
# =============================================================================


def safe_int(value: Any, default: int = 0) -> int:
    """Safely convert a value to int."""
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def safe_str(value: Any, default: str = "") -> str:
    """Safely convert a value to string."""
    if value is None:
        return default
    return str(value)


def safe_float(value: Any, default: float = 0.0) -> float:
    """Safely convert a value to float, rejecting NaN."""
    if value is None:
        return default
    try:
        result = float(value)
    except (ValueError, TypeError):
        return default
    return default if math.isnan(result) else result


def strip_comments(text: str) -> str:
    """Drop lines starting with // (the server tolerates hand-written comments)."""
    return "\n".join(line for line in text.splitlines() if not line.lstrip().startswith("//"))


def _unwrap_counter(value: Any) -> float:
    """
    Undo signed 32-bit overflow of an unsigned counter.

    Aggregated counters may have wrapped more than once, so the
    correction is applied until the value is non-negative.
    """
    num = safe_float(value)
    while num < 0:
        num += COUNTER_WRAP
    return num


def parse_distance(value: Any) -> float:
    """Convert a raw distance counter (millimetres, maybe overflowed) to metres."""
    return _unwrap_counter(value) / 1000


def parse_duration(value: Any) -> float:
    """Convert a raw duration counter (milliseconds, maybe overflowed) to seconds."""
    return _unwrap_counter(value) / 1000


def format_lap_time(milliseconds: int | float | None) -> str:
    """Format a lap time as M:SS.mmm (SS.mmm under a minute)."""
    if not milliseconds or milliseconds <= 0:
        return "--:--.---"

    total_ms = int(round(milliseconds))
    minutes, remainder = divmod(total_ms, 60_000)
    seconds, millis = divmod(remainder, 1000)

    if minutes > 0:
        return f"{minutes}:{seconds:02d}.{millis:03d}"
    return f"{seconds:02d}.{millis:03d}"


def format_duration(seconds: int | float) -> str:
    """Format a duration in seconds as e.g. '1d 2h 3m 4s'."""
    seconds = max(0, int(seconds))
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, secs = divmod(seconds, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def format_distance(meters: float) -> str:
    """Format a distance in metres, switching to km at 1000m."""
    if meters >= 1000:
        return f"{meters / 1000:.2f} km"
    return f"{meters:.2f} m"


def normalize_collection(value: Any) -> list[tuple[int, Any]]:
    """
    Normalize a list-or-map collection to (index, item) pairs.

    Lists are indexed by position. Maps are indexed by their integer keys
    and keep the producer's key order. An empty map is an empty collection.
    """
    if isinstance(value, list):
        return list(enumerate(value))
    if isinstance(value, dict):
        items = []
        for key, item in value.items():
            try:
                items.append((int(key), item))
            except (TypeError, ValueError) as e:
                raise MalformedInputError(f"Non-integer collection key: {key!r}") from e
        return items
    if value is None:
        return []
    raise MalformedInputError(f"Expected a list or an object, got {type(value).__name__}")


# =============================================================================
# Object model
# =============================================================================


class IdentitySource(str, Enum):
    """How a stage result's steam id was resolved."""

    PARTICIPANT = "participant"
    MEMBER = "member"
    UNRESOLVED = "unresolved"


@dataclass
class ServerInfo:
    """Server metadata from stats.server."""

    name: str
    uptime: float = 0.0
    total_uptime: float = 0.0


@dataclass
class PlayerRecord:
    """Cumulative counters for one player (stats.players[steam_id])."""

    steam_id: str
    name: str
    last_joined: int
    race_joins: int = 0
    race_finishes: int = 0
    race_loads: int = 0
    # Metres per track / vehicle id, overflow-corrected
    track_distances: dict[int, float] = field(default_factory=dict)
    vehicle_distances: dict[int, float] = field(default_factory=dict)

    @property
    def total_distance(self) -> float:
        return sum(self.track_distances.values())


@dataclass
class Participant:
    """A roster slot in a session."""

    index: int
    name: str
    steam_id: str
    ref_id: int
    vehicle_id: int
    livery_id: int
    is_player: bool


@dataclass
class MemberSetup:
    vehicle_id: int = 0
    livery_id: int = 0
    race_stat_flags: int = 0


@dataclass
class Member:
    """A join/leave record. A player who rejoins gets a second member."""

    member_id: str
    name: str
    steam_id: str
    join_time: int
    leave_time: int | None  # None while still connected
    participant_id: int
    setup: MemberSetup = field(default_factory=MemberSetup)

    @property
    def is_spectator(self) -> bool:
        return self.participant_id < 0


@dataclass
class RawResult:
    """A stage result as the server wrote it, before identity resolution."""

    name: str
    participant_id: int
    ref_id: int
    is_player: bool
    recorded_at: int
    position: int
    fastest_lap_time: int
    laps_completed: int
    total_time: int
    state: str
    vehicle_id: int


@dataclass
class StageRecord:
    """A named phase of a session (practice1, qualifying1, race1, ...)."""

    name: str
    start_time: int
    end_time: int
    results: list[RawResult] = field(default_factory=list)

    @property
    def has_results(self) -> bool:
        return len(self.results) > 0


@dataclass
class SessionRecord:
    """One entry of stats.history."""

    index: int
    start_time: int
    end_time: int
    finished: bool
    participants: list[Participant] = field(default_factory=list)
    members: list[Member] = field(default_factory=list)
    stages: dict[str, StageRecord] = field(default_factory=dict)
    setup: dict[str, Any] = field(default_factory=dict)

    @property
    def track_id(self) -> int:
        return safe_int(self.setup.get("TrackId"))

    @property
    def vehicle_model_id(self) -> int:
        return safe_int(self.setup.get("VehicleModelId"))

    @property
    def vehicle_class_id(self) -> int | None:
        value = self.setup.get("VehicleClassId")
        return None if value is None else safe_int(value)

    @property
    def has_results(self) -> bool:
        return any(stage.has_results for stage in self.stages.values())


@dataclass
class ParsedResult:
    """A stage result with its driver identity resolved where possible."""

    position: int
    name: str
    steam_id: str | None
    identity_source: IdentitySource
    fastest_lap: int
    laps_completed: int
    total_time: int
    state: str
    vehicle_id: int
    is_player: bool
    participant_id: int
    ref_id: int
    recorded_at: int

    @property
    def is_resolved(self) -> bool:
        return self.identity_source is not IdentitySource.UNRESOLVED

    @property
    def fastest_lap_formatted(self) -> str:
        return format_lap_time(self.fastest_lap)

    @property
    def total_time_formatted(self) -> str:
        return format_lap_time(self.total_time)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["identity_source"] = self.identity_source.value
        data["fastest_lap_formatted"] = self.fastest_lap_formatted
        data["total_time_formatted"] = self.total_time_formatted
        return data


# =============================================================================
# Raw -> model conversion
# =============================================================================


def _object(raw: Any, context: str) -> Any:
    if not isinstance(raw, dict):
        raise MalformedInputError(f"{context} must be an object")
    return raw


def _require(mapping: Any, key: str, context: str) -> Any:
    if key not in _object(mapping, context):
        raise MalformedInputError(f"{context} is missing '{key}'")
    return mapping[key]


def _parse_participant(index: int, raw: RawParticipant) -> Participant:
    raw = _object(raw, f"Participant {index}")
    return Participant(
        index=index,
        name=safe_str(raw.get("Name")),
        steam_id=safe_str(raw.get("SteamID")),
        ref_id=safe_int(raw.get("RefId")),
        vehicle_id=safe_int(raw.get("VehicleId")),
        livery_id=safe_int(raw.get("LiveryId")),
        is_player=bool(safe_int(raw.get("IsPlayer"), 1)),
    )


def _parse_member(member_id: str, raw: RawMember) -> Member:
    raw = _object(raw, f"Member {member_id}")
    setup = _object(raw.get("setup") or {}, f"Member {member_id} setup")
    leave_time = safe_int(raw.get("leave_time"), -1)
    return Member(
        member_id=member_id,
        name=safe_str(raw.get("name")),
        steam_id=safe_str(raw.get("steamid")),
        join_time=safe_int(raw.get("join_time")),
        leave_time=None if leave_time == -1 else leave_time,
        participant_id=safe_int(raw.get("participantid"), -1),
        setup=MemberSetup(
            vehicle_id=safe_int(setup.get("VehicleId")),
            livery_id=safe_int(setup.get("LiveryId")),
            race_stat_flags=safe_int(setup.get("RaceStatFlags")),
        ),
    )


def _parse_result(raw: RawStageResult) -> RawResult:
    raw = _object(raw, "Stage result")
    attributes = _object(raw.get("attributes") or {}, "Stage result attributes")
    return RawResult(
        name=safe_str(raw.get("name")),
        participant_id=safe_int(raw.get("participantid"), -1),
        ref_id=safe_int(raw.get("refid")),
        is_player=bool(raw.get("is_player", True)),
        recorded_at=safe_int(raw.get("time")),
        position=safe_int(attributes.get("RacePosition")),
        fastest_lap_time=safe_int(attributes.get("FastestLapTime")),
        laps_completed=safe_int(attributes.get("Lap")),
        total_time=safe_int(attributes.get("TotalTime")),
        state=safe_str(attributes.get("State")),
        vehicle_id=safe_int(attributes.get("VehicleId")),
    )


def _parse_stage(name: str, raw: RawStage) -> StageRecord:
    raw = _object(raw, f"Stage '{name}'")
    return StageRecord(
        name=name,
        start_time=safe_int(raw.get("start_time")),
        end_time=safe_int(raw.get("end_time")),
        results=[_parse_result(r) for _, r in normalize_collection(raw.get("results"))],
    )


def _parse_session(raw: RawSession) -> SessionRecord:
    index = _require(raw, "index", "History entry")
    context = f"Session {index}"

    members = _object(raw.get("members") or {}, f"{context} members")
    stages = _object(raw.get("stages") or {}, f"{context} stages")

    return SessionRecord(
        index=safe_int(index),
        start_time=safe_int(_require(raw, "start_time", context)),
        end_time=safe_int(raw.get("end_time")),
        finished=bool(raw.get("finished", False)),
        participants=[
            _parse_participant(i, p) for i, p in normalize_collection(raw.get("participants"))
        ],
        members=[_parse_member(str(key), m) for key, m in members.items()],
        stages={name: _parse_stage(name, s or {}) for name, s in stages.items()},
        setup=dict(_object(raw.get("setup") or {}, f"{context} setup")),
    )


def _parse_player(steam_id: str, raw: RawPlayer) -> PlayerRecord:
    context = f"Player {steam_id}"
    raw = _object(raw, context)
    counts = _object(raw.get("counts") or {}, f"{context} counts")
    tracks = _object(counts.get("track_distances") or {}, f"{context} track_distances")
    vehicles = _object(counts.get("vehicle_distances") or {}, f"{context} vehicle_distances")
    return PlayerRecord(
        steam_id=steam_id,
        name=safe_str(raw.get("name")),
        last_joined=safe_int(raw.get("last_joined")),
        race_joins=safe_int(counts.get("race_joins")),
        race_finishes=safe_int(counts.get("race_finishes")),
        race_loads=safe_int(counts.get("race_loads")),
        track_distances={safe_int(k): parse_distance(v) for k, v in tracks.items()},
        vehicle_distances={safe_int(k): parse_distance(v) for k, v in vehicles.items()},
    )


# =============================================================================
# Snapshot
# =============================================================================


class StatsSnapshot:
    """
    Parsed stats snapshot with derived read views.

    Usage:
        snapshot = StatsSnapshot.from_file("sms_stats_data.json")
        for session in snapshot.sessions:
            results = snapshot.get_parsed_stage_results(session, "race1")
    """

    def __init__(self, data: RawStatsFile):
        if not isinstance(data, dict):
            raise MalformedInputError("Snapshot top level must be an object")

        stats = _require(data, "stats", "Snapshot")
        history = _require(stats, "history", "stats")
        players = _require(stats, "players", "stats")
        server = _require(stats, "server", "stats")

        if not isinstance(history, list):
            raise MalformedInputError("stats.history must be a list")
        if not isinstance(players, dict):
            raise MalformedInputError("stats.players must be an object")

        self.raw = data
        self.next_history_index = safe_int(data.get("next_history_index"))
        self.server = ServerInfo(
            name=safe_str(_require(server, "name", "stats.server")),
            uptime=safe_float(server.get("uptime")),
            total_uptime=safe_float(server.get("total_uptime")),
        )
        self.sessions = [_parse_session(s) for s in history]
        self.players = {str(sid): _parse_player(str(sid), p or {}) for sid, p in players.items()}
        session_section = _object(stats.get("session") or {}, "stats.session")
        self.session_counts: dict[str, Any] = dict(
            _object(session_section.get("counts") or {}, "stats.session.counts")
        )

        logger.debug(
            f"Parsed snapshot for '{self.server.name}': "
            f"{len(self.sessions)} sessions, {len(self.players)} players"
        )

    @classmethod
    def from_json(cls, text: str, strip: bool = True) -> StatsSnapshot:
        """Parse snapshot text, stripping // comment lines first by default."""
        if strip:
            text = strip_comments(text)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedInputError(f"Snapshot is not valid JSON: {e}") from e
        return cls(data)

    @classmethod
    def from_file(cls, path: Path | str, strip: bool = True) -> StatsSnapshot:
        """Read and parse a snapshot file."""
        return cls.from_json(Path(path).read_text(encoding="utf-8"), strip=strip)

    # =========================================================================
    # Server
    # =========================================================================

    @property
    def server_name(self) -> str:
        return self.server.name

    def get_formatted_uptime(self) -> str:
        return format_duration(self.server.uptime)

    # =========================================================================
    # Players
    # =========================================================================

    def get_player(self, steam_id: str) -> PlayerRecord | None:
        return self.players.get(steam_id)

    def get_player_leaderboard(self, sort_by: str = "distance") -> list[PlayerRecord]:
        """Players sorted by total distance, race joins or race finishes."""
        keys = {
            "distance": lambda p: p.total_distance,
            "joins": lambda p: p.race_joins,
            "finishes": lambda p: p.race_finishes,
        }
        if sort_by not in keys:
            raise ValueError(f"Unknown leaderboard metric: {sort_by}")
        return sorted(self.players.values(), key=keys[sort_by], reverse=True)

    def get_total_distance(self) -> float:
        """
        Total distance in metres.

        Summed from per-player counters: the server's own total is a sum of
        values that may each have wrapped, which cannot be corrected reliably.
        """
        return sum(p.total_distance for p in self.players.values())

    def get_formatted_total_distance(self) -> str:
        return format_distance(self.get_total_distance())

    # =========================================================================
    # Sessions
    # =========================================================================

    def get_session(self, index: int) -> SessionRecord | None:
        return next((s for s in self.sessions if s.index == index), None)

    def get_recent_sessions(self, count: int = 10) -> list[SessionRecord]:
        return sorted(self.sessions, key=lambda s: s.start_time, reverse=True)[:count]

    def get_session_participants(self, session: SessionRecord) -> list[Participant]:
        return list(session.participants)

    def get_sessions_with_results(self) -> list[SessionRecord]:
        return [s for s in self.sessions if s.has_results]

    def get_sessions_by_stage(self, stage_name: str) -> list[SessionRecord]:
        return [s for s in self.sessions if stage_name in s.stages]

    def get_event_sessions(self) -> list[SessionRecord]:
        """Sessions with results in qualifying1 or race1."""
        return [
            s
            for s in self.sessions
            if any(
                name in s.stages and s.stages[name].has_results
                for name in (QUALIFYING_STAGE, RACE_STAGE)
            )
        ]

    # =========================================================================
    # Members
    # =========================================================================

    @staticmethod
    def _member_leave_epoch(member: Member, session: SessionRecord, now: int) -> int:
        if member.leave_time is not None:
            return member.leave_time
        return session.end_time if session.end_time > 0 else now

    def get_parsed_members(self, session: SessionRecord, now: int | None = None) -> list[dict]:
        """Members with time spent in the session."""
        now = int(time.time()) if now is None else now
        return [
            {
                "member_id": m.member_id,
                "name": m.name,
                "steam_id": m.steam_id,
                "join_time": m.join_time,
                "leave_time": m.leave_time,
                "session_duration": max(0, self._member_leave_epoch(m, session, now) - m.join_time),
                "participant_id": m.participant_id,
                "is_spectator": m.is_spectator,
            }
            for m in session.members
        ]

    def get_unique_session_players(
        self, session: SessionRecord, now: int | None = None
    ) -> list[dict]:
        """Members grouped by steam id, so a rejoin counts once."""
        now = int(time.time()) if now is None else now
        grouped: dict[str, list[Member]] = {}
        for member in session.members:
            grouped.setdefault(member.steam_id, []).append(member)

        players = []
        for steam_id, joins in grouped.items():
            latest = max(joins, key=lambda m: m.join_time)
            still_connected = any(m.leave_time is None for m in joins)
            players.append(
                {
                    "steam_id": steam_id,
                    "name": latest.name,
                    "join_count": len(joins),
                    "total_time_in_session": sum(
                        max(0, self._member_leave_epoch(m, session, now) - m.join_time)
                        for m in joins
                    ),
                    "first_join": min(m.join_time for m in joins),
                    "last_leave": None
                    if still_connected
                    else max(m.leave_time for m in joins if m.leave_time is not None),
                }
            )
        return players

    # =========================================================================
    # Stages & results
    # =========================================================================

    def get_stage_overviews(self, session: SessionRecord, now: int | None = None) -> list[dict]:
        now = int(time.time()) if now is None else now
        overviews = []
        for stage in session.stages.values():
            if stage.end_time > 0:
                duration_end = stage.end_time
            else:
                duration_end = session.end_time if session.end_time > 0 else now
            overviews.append(
                {
                    "stage_name": stage.name,
                    "start_time": stage.start_time,
                    "end_time": stage.end_time if stage.end_time > 0 else None,
                    "duration": max(0, duration_end - stage.start_time),
                    "result_count": len(stage.results),
                    "has_results": stage.has_results,
                }
            )
        return overviews

    def get_parsed_stage_results(
        self, session: SessionRecord, stage_name: str
    ) -> list[ParsedResult]:
        """
        Results of one stage with driver identities resolved.

        Resolution order: the participant at the result's participant id,
        then the result's ref id through the member list. Results neither
        step resolves are returned with IdentitySource.UNRESOLVED.
        """
        stage = session.stages.get(stage_name)
        if stage is None or not stage.results:
            return []

        participants = {p.index: p for p in session.participants}

        ref_to_steam: dict[int, str] = {}
        for member in session.members:
            if member.participant_id < 0:
                continue
            participant = participants.get(member.participant_id)
            if participant is not None and member.steam_id:
                ref_to_steam[participant.ref_id] = member.steam_id

        parsed = []
        for result in stage.results:
            participant = participants.get(result.participant_id)
            if participant is not None and participant.steam_id:
                steam_id, source = participant.steam_id, IdentitySource.PARTICIPANT
            elif result.ref_id in ref_to_steam:
                steam_id, source = ref_to_steam[result.ref_id], IdentitySource.MEMBER
            else:
                steam_id, source = None, IdentitySource.UNRESOLVED
                logger.debug(
                    f"Unresolved result '{result.name}' in session {session.index} {stage_name}"
                )

            parsed.append(
                ParsedResult(
                    position=result.position,
                    name=result.name,
                    steam_id=steam_id,
                    identity_source=source,
                    fastest_lap=result.fastest_lap_time,
                    laps_completed=result.laps_completed,
                    total_time=result.total_time,
                    state=result.state,
                    vehicle_id=result.vehicle_id,
                    is_player=result.is_player,
                    participant_id=result.participant_id,
                    ref_id=result.ref_id,
                    recorded_at=result.recorded_at,
                )
            )
        return parsed

    def get_all_session_results(self, session: SessionRecord) -> dict[str, list[ParsedResult]]:
        all_results = {}
        for stage_name in session.stages:
            results = self.get_parsed_stage_results(session, stage_name)
            if results:
                all_results[stage_name] = results
        return all_results

    def get_stage_fastest_lap(self, session: SessionRecord, stage_name: str) -> ParsedResult | None:
        valid = [r for r in self.get_parsed_stage_results(session, stage_name) if r.fastest_lap > 0]
        return min(valid, key=lambda r: r.fastest_lap) if valid else None

    # =========================================================================
    # Event statistics (qualifying1 / race1)
    # =========================================================================

    def get_event_overview_stats(self) -> dict[str, Any]:
        events = self.get_event_sessions()
        drivers: set[str] = set()
        track_usage: dict[int, dict[str, int]] = {}
        qualifying_count = 0
        race_count = 0

        for session in events:
            usage = track_usage.setdefault(
                session.track_id, {"qualifying_count": 0, "race_count": 0}
            )
            for stage_name, counter in ((QUALIFYING_STAGE, "qualifying_count"), (RACE_STAGE, "race_count")):
                stage = session.stages.get(stage_name)
                if stage is None or not stage.has_results:
                    continue
                usage[counter] += 1
                if stage_name == QUALIFYING_STAGE:
                    qualifying_count += 1
                else:
                    race_count += 1
                drivers.update(
                    r.steam_id for r in self.get_parsed_stage_results(session, stage_name) if r.steam_id
                )

        return {
            "total_events": len(events),
            "qualifying_count": qualifying_count,
            "race_count": race_count,
            "unique_drivers": len(drivers),
            "track_usage": [{"track_id": tid, **counts} for tid, counts in track_usage.items()],
        }

    def get_player_event_stats(self) -> list[dict[str, Any]]:
        """Per-driver qualifying and race records across event sessions."""
        qualifying: dict[str, dict[str, Any]] = {}
        race: dict[str, dict[str, Any]] = {}

        for session in self.get_event_sessions():
            for r in self.get_parsed_stage_results(session, QUALIFYING_STAGE):
                entry = qualifying.setdefault(
                    r.steam_id or r.name, {"name": r.name, "positions": [], "poles": 0}
                )
                if r.position > 0:
                    entry["positions"].append(r.position)
                if r.position == 1:
                    entry["poles"] += 1

            for r in self.get_parsed_stage_results(session, RACE_STAGE):
                entry = race.setdefault(
                    r.steam_id or r.name,
                    {"name": r.name, "wins": 0, "podiums": 0, "finishes": 0, "dnfs": 0, "positions": []},
                )
                if r.state == FINISHED_STATE:
                    entry["finishes"] += 1
                    if r.position == 1:
                        entry["wins"] += 1
                    if r.position <= 3:
                        entry["podiums"] += 1
                    if r.position > 0:
                        entry["positions"].append(r.position)
                else:
                    entry["dnfs"] += 1

        def _summary(positions: list[int]) -> tuple[int, float]:
            if not positions:
                return 0, 0.0
            return min(positions), sum(positions) / len(positions)

        stats = []
        for key in dict.fromkeys([*qualifying, *race]):
            qual_entry = qualifying.get(key)
            race_entry = race.get(key)
            name = (qual_entry or race_entry)["name"]

            qual_stats = None
            if qual_entry:
                best, avg = _summary(qual_entry["positions"])
                qual_stats = {
                    "appearances": len(qual_entry["positions"]),
                    "poles": qual_entry["poles"],
                    "best_position": best,
                    "avg_position": avg,
                }

            race_stats = None
            if race_entry:
                best, avg = _summary(race_entry["positions"])
                race_stats = {
                    "appearances": race_entry["finishes"] + race_entry["dnfs"],
                    "wins": race_entry["wins"],
                    "podiums": race_entry["podiums"],
                    "finishes": race_entry["finishes"],
                    "dnfs": race_entry["dnfs"],
                    "best_position": best,
                    "avg_position": avg,
                }

            stats.append({"steam_id": key, "name": name, "qualifying": qual_stats, "race": race_stats})
        return stats

    # =========================================================================
    # Server-wide counters
    # =========================================================================

    def get_session_stats(self) -> dict[str, Any]:
        counts = self.session_counts
        return {
            "total_lobbies": safe_int(counts.get("lobbies")),
            "total_sessions": safe_int(counts.get("sessions")),
            "race_finishes": safe_int(counts.get("race_finishes")),
            "race_loads": safe_int(counts.get("race_loads")),
            "player_finishes": safe_int(counts.get("player_finishes")),
            "stage_counts": dict(counts.get("stage_counts") or {}),
            "stage_durations": {
                stage: format_duration(parse_duration(value))
                for stage, value in (counts.get("stage_durations") or {}).items()
            },
        }

    def get_track_usage(self) -> list[dict[str, Any]]:
        tracks = self.session_counts.get("tracks") or {}
        distances = self.session_counts.get("track_distances") or {}
        return [
            {
                "track_id": safe_int(track_id),
                "sessions": safe_int(tracks.get(track_id)),
                "distance": parse_distance(distances.get(track_id)),
            }
            for track_id in dict.fromkeys([*tracks, *distances])
        ]

    def get_vehicle_usage(self) -> list[dict[str, Any]]:
        distances = self.session_counts.get("vehicle_distances") or {}
        return [
            {"vehicle_id": safe_int(vehicle_id), "distance": parse_distance(raw)}
            for vehicle_id, raw in distances.items()
        ]
