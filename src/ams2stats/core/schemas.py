"""
Raw snapshot data contracts.

Shapes of the JSON written by the dedicated server's stats module
(sms_stats_data.json). Only the keys ams2stats reads are listed; the
server writes many more.

Producer: the dedicated server process
Consumer: core/parser.py (the only module that touches raw dicts)
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

# Counters that started life as unsigned 32-bit values arrive as signed
# decimals (number or string) once they overflow.
RawCounter = int | float | str


class RawServerStats(TypedDict):
    name: str
    uptime: NotRequired[str]  # seconds, as a decimal string
    total_uptime: NotRequired[str]
    steam_disconnects: NotRequired[int]
    steam_downtime: NotRequired[int]
    total_steam_downtime: NotRequired[int]


class RawSessionCounts(TypedDict):
    lobbies: NotRequired[int]
    sessions: NotRequired[int]
    race_finishes: NotRequired[int]
    race_loads: NotRequired[int]
    race_loads_done: NotRequired[int]
    player_finishes: NotRequired[int]
    player_loads: NotRequired[int]
    player_loads_done: NotRequired[int]
    stage_counts: NotRequired[dict[str, int]]
    stage_durations: NotRequired[dict[str, RawCounter]]  # milliseconds
    track_distances: NotRequired[dict[str, RawCounter]]  # millimetres
    tracks: NotRequired[dict[str, int]]
    vehicle_distances: NotRequired[dict[str, RawCounter]]
    vehicles: NotRequired[dict[str, int]]


class RawPlayerCounts(TypedDict):
    race_joins: int
    race_finishes: int
    race_loads: int
    race_loads_done: NotRequired[int]
    track_distances: NotRequired[dict[str, RawCounter]]
    vehicle_distances: NotRequired[dict[str, RawCounter]]
    tracks: NotRequired[dict[str, int]]
    vehicles: NotRequired[dict[str, int]]


class RawPlayer(TypedDict):
    name: str
    last_joined: int  # epoch seconds
    counts: RawPlayerCounts


class RawParticipant(TypedDict):
    Name: str
    SteamID: str
    RefId: int
    VehicleId: int
    LiveryId: int
    IsPlayer: int


class RawMemberSetup(TypedDict):
    VehicleId: int
    LiveryId: int
    RaceStatFlags: NotRequired[int]


class RawMember(TypedDict):
    index: int
    name: str
    steamid: str
    join_time: int
    leave_time: int  # -1 = still connected
    participantid: int  # -1 = spectator / unassigned
    setup: RawMemberSetup


class RawResultAttributes(TypedDict):
    RacePosition: int
    FastestLapTime: int  # milliseconds, 0 = no valid lap
    Lap: int
    State: str  # "Finished", "DNF", "Retired", ...
    TotalTime: int  # milliseconds
    VehicleId: int


class RawStageResult(TypedDict):
    name: str
    participantid: int
    refid: int
    is_player: bool
    time: int  # epoch seconds the result was recorded
    attributes: RawResultAttributes


class RawStage(TypedDict):
    start_time: int
    end_time: int
    # A list once results exist, an empty object before that
    results: list[RawStageResult] | dict[str, RawStageResult]


class RawSession(TypedDict):
    index: int
    start_time: int
    end_time: int
    finished: bool
    # Older producers write a list, newer ones a sparse map keyed by index
    participants: list[RawParticipant] | dict[str, RawParticipant]
    members: dict[str, RawMember]
    stages: dict[str, RawStage]
    setup: dict[str, int]


class RawStats(TypedDict):
    history: list[RawSession]
    players: dict[str, RawPlayer]
    server: RawServerStats
    session: NotRequired[dict[str, RawSessionCounts]]


class RawStatsFile(TypedDict):
    next_history_index: int
    stats: RawStats
