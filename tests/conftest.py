"""
Shared fixtures: a small two-session snapshot and a file-backed store.

Session 5 is a finished race with two classified drivers on track 123.
Session 6 is still running on track 456 and has no results yet; its
participants use the sparse map encoding.
"""

from __future__ import annotations

import copy
import json

import pytest

from ams2stats.core.parser import StatsSnapshot
from ams2stats.infra.database import DatabaseManager
from ams2stats.infra.queries import StatsQueryService
from ams2stats.pipeline.importer import StatsImporter

SERVER_NAME = "Test League"

ALICE = "76561190000000001"
BOB = "76561190000000002"
CAROL = "76561190000000003"

T5 = 1_700_000_000
T6 = 1_700_010_000


def make_participant(name, steam_id, ref_id, vehicle_id=100, is_player=1):
    return {
        "Name": name,
        "SteamID": steam_id,
        "RefId": ref_id,
        "VehicleId": vehicle_id,
        "LiveryId": 51,
        "IsPlayer": is_player,
    }


def make_member(index, name, steam_id, join_time, participant_id, leave_time=-1):
    return {
        "index": index,
        "name": name,
        "steamid": steam_id,
        "join_time": join_time,
        "leave_time": leave_time,
        "participantid": participant_id,
        "setup": {"VehicleId": 100, "LiveryId": 51, "RaceStatFlags": 0},
    }


def make_result(name, participant_id, ref_id, position, fastest_lap, total_time=1_800_000, state="Finished", time=T5 + 3500):
    return {
        "name": name,
        "participantid": participant_id,
        "refid": ref_id,
        "is_player": True,
        "time": time,
        "attributes": {
            "RacePosition": position,
            "FastestLapTime": fastest_lap,
            "Lap": 20,
            "State": state,
            "TotalTime": total_time,
            "VehicleId": 100,
        },
    }


def make_session(index, start_time, participants, members, stages, end_time=0, finished=False, track_id=123):
    return {
        "index": index,
        "start_time": start_time,
        "end_time": end_time,
        "finished": finished,
        "participants": participants,
        "members": members,
        "stages": stages,
        "setup": {"TrackId": track_id, "VehicleModelId": 100, "VehicleClassId": 7},
    }


def make_player(name, last_joined, race_joins=5, track_distances=None):
    return {
        "name": name,
        "last_joined": last_joined,
        "counts": {
            "race_joins": race_joins,
            "race_finishes": 3,
            "race_loads": 6,
            "track_distances": track_distances or {},
            "vehicle_distances": {},
        },
    }


def make_stats(history, players=None, next_history_index=None, server_name=SERVER_NAME):
    return {
        "next_history_index": next_history_index if next_history_index is not None else len(history),
        "stats": {
            "history": history,
            "players": players or {},
            "server": {"name": server_name, "uptime": "93784", "total_uptime": "100000"},
            "session": {
                "counts": {
                    "lobbies": 2,
                    "sessions": 2,
                    "race_finishes": 1,
                    "stage_durations": {"race1": 3400000},
                    "tracks": {"123": 1, "456": 1},
                    "track_distances": {"123": 500000, "456": -1294967296},
                    "vehicle_distances": {"100": 1000000},
                }
            },
        },
    }


BASE_SNAPSHOT = make_stats(
    history=[
        make_session(
            5,
            T5,
            participants=[
                make_participant("Alice", ALICE, 1001),
                make_participant("Bob", BOB, 1002),
            ],
            members={
                "1": make_member(1, "Alice", ALICE, T5, 0, leave_time=T5 + 3600),
                "2": make_member(2, "Bob", BOB, T5 + 10, 1, leave_time=T5 + 3600),
            },
            stages={
                "practice1": {"start_time": T5 - 600, "end_time": T5 - 100, "results": {}},
                "race1": {
                    "start_time": T5 + 100,
                    "end_time": T5 + 3500,
                    "results": [
                        make_result("Alice", 0, 1001, 1, 95_000, total_time=1_800_000),
                        make_result("Bob", 1, 1002, 2, 96_500, total_time=1_805_000),
                    ],
                },
            },
            end_time=T5 + 3600,
            finished=True,
        ),
        make_session(
            6,
            T6,
            participants={
                "0": make_participant("Alice", ALICE, 1001),
                "3": make_participant("Carol", CAROL, 1003),
            },
            members={
                "4": make_member(4, "Alice", ALICE, T6, 0),
                "5": make_member(5, "Carol", CAROL, T6 + 5, 3),
            },
            stages={"practice1": {"start_time": T6, "end_time": 0, "results": {}}},
            track_id=456,
        ),
    ],
    players={
        ALICE: make_player("Alice", T6, race_joins=5, track_distances={"123": 500000, "456": -1294967296}),
        BOB: make_player("Bob", T5, race_joins=2, track_distances={"123": 250000}),
        CAROL: make_player("Carol", T6, race_joins=1),
    },
    next_history_index=7,
)


@pytest.fixture
def snapshot_data():
    """A fresh deep copy of the base snapshot dict, safe to mutate."""
    return copy.deepcopy(BASE_SNAPSHOT)


@pytest.fixture
def snapshot_json(snapshot_data):
    return json.dumps(snapshot_data)


@pytest.fixture
def snapshot(snapshot_data):
    return StatsSnapshot(snapshot_data)


@pytest.fixture
def stats_file(tmp_path, snapshot_json):
    path = tmp_path / "sms_stats_data.json"
    path.write_text(snapshot_json, encoding="utf-8")
    return path


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(tmp_path / "stats.db")
    yield manager
    manager.dispose()


@pytest.fixture
def importer(db):
    return StatsImporter(db)


@pytest.fixture
def queries(db):
    return StatsQueryService(db)
