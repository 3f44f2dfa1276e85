import asyncio
import json
import sqlite3
from datetime import timedelta

from station.auth import TgUser
from station.db import Database
from station.game import default_state, isoformat
from tools.repair_states import repair_players

from conftest import START


def run(database: Database, scenario):
    async def runner():
        await database.connect()
        await database.init()
        try:
            return await scenario(database)
        finally:
            await database.close()

    return asyncio.run(runner())


USER = TgUser(id=42, username="chief", first_name="Ada", last_name="Byron", photo_url="p.jpg")


def test_get_or_create_creates_default_record(database):
    async def scenario(db):
        record = await db.get_or_create_player(USER, START)
        again = await db.get_or_create_player(USER, START + timedelta(minutes=5))
        return record, again, await db.count_players()

    record, again, count = run(database, scenario)

    assert record.state == default_state()
    assert record.daily_claim_date is None
    assert record.daily_streak == 0
    assert record.created_at == record.last_login == record.last_tick == isoformat(START)
    assert record.photo_url == "p.jpg"
    assert again.created_at == record.created_at
    assert count == 1


def test_corrupt_state_falls_back_to_defaults(database):
    async def scenario(db):
        await db.get_or_create_player(USER, START)
        await db.conn.execute(
            "UPDATE players SET state_json = ? WHERE tg_id = ?", ("{not json", USER.id)
        )
        await db.conn.commit()
        broken = await db.get_or_create_player(USER, START)

        partial = {"resources": {"energy": 7}, "buildings": "???"}
        await db.conn.execute(
            "UPDATE players SET state_json = ? WHERE tg_id = ?", (json.dumps(partial), USER.id)
        )
        await db.conn.commit()
        return broken, await db.get_or_create_player(USER, START)

    broken, partial = run(database, scenario)

    assert broken.state == default_state()
    assert partial.state["resources"]["energy"] == 7
    assert partial.state["resources"]["metal"] == 2000
    assert partial.state["buildings"] == default_state()["buildings"]


def test_upsert_overwrites_single_row(database):
    renamed = TgUser(id=42, username="boss")

    async def scenario(db):
        await db.get_or_create_player(USER, START)
        state = default_state()
        state["resources"]["crystals"] = 999
        later = START + timedelta(hours=1)
        await db.upsert_player(renamed, state, isoformat(later), "2026-03-10", 9, later)
        return await db.get_player(USER.id), await db.count_players()

    row, count = run(database, scenario)

    assert count == 1
    assert row["username"] == "boss"
    assert row["first_name"] is None
    assert json.loads(row["state_json"])["resources"]["crystals"] == 999
    assert row["daily_claim_date"] == "2026-03-10"
    assert row["daily_streak"] == 7
    assert row["last_login"] == isoformat(START + timedelta(hours=1))
    assert row["version"] == 1


def test_stale_version_is_rejected(database):
    async def scenario(db):
        record = await db.get_or_create_player(USER, START)
        first = await db.upsert_player(
            USER, record.state, record.last_tick, None, 0, START,
            expected_version=record.version,
        )
        second = await db.upsert_player(
            USER, record.state, record.last_tick, None, 0, START,
            expected_version=record.version,
        )
        return first, second, await db.get_player(USER.id)

    first, second, row = run(database, scenario)

    assert first is True
    assert second is False
    assert row["version"] == 1


def test_repair_tool_normalizes_rows(database):
    async def scenario(db):
        await db.get_or_create_player(USER, START)
        await db.get_or_create_player(TgUser(id=43), START)

    run(database, scenario)

    conn = sqlite3.connect(database.path)
    try:
        conn.execute(
            "UPDATE players SET state_json = ?, last_tick = ?, daily_streak = ? WHERE tg_id = ?",
            ('{"army": {"militia": 3}}', "garbage", 12, 42),
        )
        repaired = repair_players(conn, START)
        conn.commit()
        state_json, last_tick, streak, version = conn.execute(
            "SELECT state_json, last_tick, daily_streak, version FROM players WHERE tg_id = 42"
        ).fetchone()
    finally:
        conn.close()

    assert repaired == 1
    state = json.loads(state_json)
    assert state["army"] == {"militia": 3}
    assert state["resources"] == default_state()["resources"]
    assert last_tick == isoformat(START)
    assert streak == 7
    assert version == 1
