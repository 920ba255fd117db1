"""Tests for the query service: listings, pagination, best laps, deletes, manual results."""

from __future__ import annotations

import copy
import json

import pytest
from conftest import ALICE, BOB, CAROL

from ams2stats.core.errors import NotFoundError, ProtectedResultError
from ams2stats.infra.database import (
    ImportLog,
    Player,
    PlayerDistance,
    PlayerServerStats,
    RaceSession,
    SessionMember,
    SessionParticipant,
    Stage,
    StageResult,
)
from ams2stats.infra.queries import ManualResultInput


def count(db, model):
    session = db.get_session()
    try:
        return session.query(model).count()
    finally:
        session.close()


@pytest.fixture
def server_id(importer, snapshot_json):
    return importer.import_file("sms_stats_data.json", content=snapshot_json).server_id


def session_id_for(queries, server_id, index):
    return next(s["id"] for s in queries.get_sessions(server_id) if s["session_index"] == index)


class TestEmptyStore:
    def test_reads_return_empty(self, queries):
        assert queries.get_servers() == []
        assert queries.get_server(1) is None
        assert queries.get_players(1) == []
        assert queries.get_player(ALICE) is None
        assert queries.get_sessions(1) == []
        assert queries.get_session(1) is None
        assert queries.get_stage_results(1, "race1") == []
        assert queries.get_all_session_results(1) == {}
        assert queries.get_player_result_history(ALICE) == []
        assert queries.get_player_best_laps(ALICE) == []
        assert queries.get_import_history(1) == []

    def test_overview_of_unknown_server(self, queries):
        overview = queries.get_server_overview(1)
        assert overview["total_sessions"] == 0
        assert overview["total_stages"] == {}
        assert overview["recent_sessions"] == []


class TestServersAndPlayers:
    def test_servers(self, queries, server_id):
        servers = queries.get_servers()
        assert len(servers) == 1
        assert servers[0]["id"] == server_id
        assert servers[0]["name"] == "Test League"
        assert servers[0]["session_count"] == 2
        assert servers[0]["player_count"] == 3

    def test_players_sorted_by_name(self, queries, server_id):
        players = queries.get_players(server_id)
        assert [p["name"] for p in players] == ["Alice", "Bob", "Carol"]
        alice = players[0]
        assert alice["race_joins"] == 5
        assert alice["total_distance"] == 3_000_500.0
        assert players[2]["total_distance"] == 0.0

    def test_player(self, queries, server_id):
        bob = queries.get_player(BOB)
        assert bob["name"] == "Bob"
        assert bob["race_joins"] == 2
        assert bob["total_distance"] == 250.0

    def test_leaderboard(self, queries, server_id):
        by_distance = queries.get_leaderboard(server_id)
        assert [r["steam_id"] for r in by_distance] == [ALICE, BOB, CAROL]
        assert by_distance[0]["rank"] == 1

        by_joins = queries.get_leaderboard(server_id, sort_by="joins", limit=2)
        assert [r["value"] for r in by_joins] == [5, 2]

        with pytest.raises(ValueError):
            queries.get_leaderboard(server_id, sort_by="laps")


class TestSessions:
    def test_newest_first(self, queries, server_id):
        sessions = queries.get_sessions(server_id)
        assert [s["session_index"] for s in sessions] == [6, 5]

    def test_pagination(self, queries, server_id):
        page = queries.get_sessions(server_id, limit=1, offset=1)
        assert [s["session_index"] for s in page] == [5]
        assert queries.get_sessions(server_id, limit=1, offset=2) == []

    def test_has_results_filter(self, queries, server_id):
        sessions = queries.get_sessions(server_id, has_results=True)
        assert [s["session_index"] for s in sessions] == [5]
        assert sessions[0]["has_results"] is True

    def test_summary_fields(self, queries, server_id):
        running, finished = queries.get_sessions(server_id)
        assert running["stage_names"] == ["practice1"]
        assert running["participant_count"] == 2
        assert running["has_results"] is False
        assert finished["stage_names"] == ["practice1", "race1"]
        assert finished["finished"] is True

    def test_session_details(self, queries, server_id):
        details = queries.get_session(session_id_for(queries, server_id, 6))
        assert [p["participant_index"] for p in details["participants"]] == [0, 3]
        assert {m["steam_id"] for m in details["members"]} == {ALICE, CAROL}
        assert [s["name"] for s in details["stages"]] == ["practice1"]


class TestResults:
    def test_stage_results_by_position(self, queries, server_id):
        results = queries.get_stage_results(session_id_for(queries, server_id, 5), "race1")
        assert [(r["position"], r["steam_id"]) for r in results] == [(1, ALICE), (2, BOB)]
        assert results[0]["fastest_lap_time"] == 95_000
        assert results[0]["is_manual"] is False

    def test_all_session_results_grouped(self, queries, server_id):
        grouped = queries.get_all_session_results(session_id_for(queries, server_id, 5))
        assert list(grouped) == ["race1"]
        assert len(grouped["race1"]) == 2

    def test_player_history(self, queries, server_id):
        history = queries.get_player_result_history(BOB)
        assert history == [
            {
                "session_index": 5,
                "session_start_time": 1_700_000_000,
                "stage_name": "race1",
                "track_id": 123,
                "position": 2,
                "fastest_lap_time": 96_500,
                "laps_completed": 20,
                "total_time": 1_805_000,
                "state": "Finished",
            }
        ]

    def test_best_laps_across_servers(self, importer, queries, server_id, snapshot_data):
        faster = copy.deepcopy(snapshot_data)
        faster["stats"]["history"][0]["stages"]["race1"]["results"][0]["attributes"]["FastestLapTime"] = 94_000
        other = importer.import_file("b.json", content=json.dumps(faster), server_identifier="other").server_id

        best = queries.get_player_best_laps(ALICE)
        assert [(b["track_id"], b["best_lap_time"]) for b in best] == [(123, 94_000)]
        assert best[0]["stage_name"] == "race1"

        assert queries.get_player_best_laps(ALICE, server_id)[0]["best_lap_time"] == 95_000
        assert queries.get_player_best_laps(ALICE, other)[0]["best_lap_time"] == 94_000

    def test_best_laps_ignore_missing_laps(self, importer, queries, snapshot_data):
        snapshot_data["stats"]["history"][0]["stages"]["race1"]["results"][1]["attributes"]["FastestLapTime"] = 0
        importer.import_file("s.json", content=json.dumps(snapshot_data))
        assert queries.get_player_best_laps(BOB) == []


class TestOverviewAndHistory:
    def test_overview(self, queries, server_id):
        overview = queries.get_server_overview(server_id)
        assert overview["total_sessions"] == 2
        assert overview["sessions_with_results"] == 1
        assert overview["total_players"] == 3
        assert overview["total_stages"] == {"practice1": 2, "race1": 1}
        assert len(overview["recent_sessions"]) == 2

    def test_import_history_newest_first(self, importer, queries, server_id, snapshot_json):
        importer.import_file("sms_stats_data.json", content=snapshot_json)
        history = queries.get_import_history(server_id)
        assert len(history) == 2
        assert history[0]["sessions_skipped"] == 2
        assert history[1]["sessions_imported"] == 2
        assert queries.get_import_history(server_id, limit=1) == history[:1]


class TestDeleteServer:
    def test_cascade(self, importer, db, queries, server_id, snapshot_json):
        importer.import_file("b.json", content=snapshot_json, server_identifier="other")

        queries.delete_server(server_id)

        assert [s["identifier"] for s in queries.get_servers()] == ["other"]
        assert count(db, RaceSession) == 2
        assert count(db, SessionParticipant) == 4
        assert count(db, SessionMember) == 4
        assert count(db, Stage) == 3
        assert count(db, StageResult) == 2
        assert count(db, PlayerServerStats) == 3
        assert count(db, PlayerDistance) == 3
        assert count(db, ImportLog) == 1
        # Players are global and survive
        assert count(db, Player) == 3

    def test_unknown_server(self, queries):
        with pytest.raises(NotFoundError):
            queries.delete_server(42)


class TestManualResults:
    def manual(self, session_id, **overrides):
        params = {
            "session_id": session_id,
            "stage_name": "race1",
            "name": "Late Entry",
            "position": 3,
            "state": "Finished",
            "laps_completed": 19,
            "total_time": 1_900_000,
        }
        params.update(overrides)
        return ManualResultInput(**params)

    def test_insert(self, queries, db, server_id):
        sid = session_id_for(queries, server_id, 5)
        row = queries.insert_manual_result(self.manual(sid, steam_id=BOB, fastest_lap_time=99_000))
        assert row["is_manual"] is True
        assert row["stage_name"] == "race1"

        results = queries.get_stage_results(sid, "race1")
        assert [r["position"] for r in results] == [1, 2, 3]
        assert results[2]["is_manual"] is True

        session = db.get_session()
        try:
            stored = session.get(StageResult, row["id"])
            bob = session.query(Player).filter_by(steam_id=BOB).one()
            assert stored.player_id == bob.id
            assert stored.participant_id == 0
            assert stored.recorded_at > 0
        finally:
            session.close()

    def test_unknown_steam_id_left_unlinked(self, queries, db, server_id):
        sid = session_id_for(queries, server_id, 5)
        row = queries.insert_manual_result(self.manual(sid, steam_id="76561190000000077"))
        session = db.get_session()
        try:
            stored = session.get(StageResult, row["id"])
            assert stored.steam_id == "76561190000000077"
            assert stored.player_id is None
        finally:
            session.close()

    def test_unknown_stage(self, queries, server_id):
        sid = session_id_for(queries, server_id, 5)
        with pytest.raises(NotFoundError):
            queries.insert_manual_result(self.manual(sid, stage_name="race2"))

    def test_delete_manual(self, queries, server_id):
        sid = session_id_for(queries, server_id, 5)
        row = queries.insert_manual_result(self.manual(sid))
        queries.delete_manual_result(row["id"])
        assert len(queries.get_stage_results(sid, "race1")) == 2

        with pytest.raises(NotFoundError):
            queries.delete_manual_result(row["id"])

    def test_parsed_results_protected(self, queries, server_id):
        sid = session_id_for(queries, server_id, 5)
        parsed = queries.get_stage_results(sid, "race1")[0]

        with pytest.raises(ProtectedResultError, match="is not a manual entry"):
            queries.delete_manual_result(parsed["id"])

        assert queries.get_stage_results(sid, "race1")[0] == parsed

    def test_manual_results_replaced_on_session_update(self, importer, queries, server_id, snapshot_data):
        sid = session_id_for(queries, server_id, 5)
        queries.insert_manual_result(self.manual(sid))

        snapshot_data["stats"]["history"][0]["end_time"] += 60
        result = importer.import_file("s.json", content=json.dumps(snapshot_data))
        assert result.updated == 1

        assert all(not r["is_manual"] for r in queries.get_stage_results(sid, "race1"))
