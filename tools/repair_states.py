"""Rewrite every stored player state through the default-fill normalizer.

Usage: python -m tools.repair_states
"""
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from station.db import MAX_STREAK, decode_state, encode_state
from station.game import isoformat, parse_timestamp


ROOT = Path(__file__).resolve().parents[1]
DB_PATH = Path(os.getenv("DB_PATH", ROOT / "station.db"))


def repair_players(conn: sqlite3.Connection, now: datetime) -> int:
    cursor = conn.cursor()
    rows = cursor.execute(
        "SELECT tg_id, state_json, last_tick, daily_streak FROM players"
    ).fetchall()
    repaired = 0
    for tg_id, state_json, last_tick, daily_streak in rows:
        updates = {}
        normalized = encode_state(decode_state(state_json, tg_id))
        if normalized != state_json:
            updates["state_json"] = normalized
        if parse_timestamp(last_tick) is None:
            updates["last_tick"] = isoformat(now)
        streak = max(0, min(MAX_STREAK, int(daily_streak or 0)))
        if streak != daily_streak:
            updates["daily_streak"] = streak
        if updates:
            cols = ", ".join(f"{k} = ?" for k in updates.keys())
            cursor.execute(
                f"UPDATE players SET {cols}, version = version + 1 WHERE tg_id = ?",
                (*updates.values(), tg_id),
            )
            repaired += 1
    return repaired


def main() -> None:
    if not DB_PATH.exists():
        raise SystemExit(f"DB not found: {DB_PATH}")

    backup = DB_PATH.with_suffix(".bak")
    if not backup.exists():
        backup.write_bytes(DB_PATH.read_bytes())

    conn = sqlite3.connect(DB_PATH)
    try:
        repaired = repair_players(conn, datetime.now(timezone.utc))
        conn.commit()
    finally:
        conn.close()

    print(f"Repair complete, {repaired} player row(s) rewritten.")


if __name__ == "__main__":
    main()
