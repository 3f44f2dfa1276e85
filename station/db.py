from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import aiosqlite

from .auth import TgUser
from .config import DB_PATH
from .game import default_state, isoformat, normalize_state


logger = logging.getLogger(__name__)

MAX_STREAK = 7


@dataclass
class PlayerRecord:
    tg_id: int
    state: Dict[str, Any]
    created_at: str
    last_login: str
    last_tick: str
    daily_claim_date: Optional[str]
    daily_streak: int
    version: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    photo_url: Optional[str] = None


def decode_state(raw: Optional[str], tg_id: Optional[int] = None) -> Dict[str, Any]:
    parsed: Any = None
    if raw:
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("player %s: state_json is corrupt, using defaults", tg_id)
    if parsed is not None and not isinstance(parsed, dict):
        logger.warning("player %s: state_json is not an object, using defaults", tg_id)
    return normalize_state(parsed)


def encode_state(state: Dict[str, Any]) -> str:
    return json.dumps(state, ensure_ascii=False, separators=(",", ":"))


class Database:
    def __init__(self, path=DB_PATH):
        self.path = str(path)
        self.conn: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        self.conn.row_factory = aiosqlite.Row
        await self.conn.execute("PRAGMA journal_mode = WAL")
        await self.conn.commit()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def init(self) -> None:
        assert self.conn is not None
        await self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS players (
                tg_id INTEGER PRIMARY KEY,
                username TEXT,
                first_name TEXT,
                last_name TEXT,
                photo_url TEXT,
                created_at TEXT NOT NULL,
                last_login TEXT NOT NULL,
                last_tick TEXT NOT NULL,
                state_json TEXT NOT NULL,
                daily_claim_date TEXT,
                daily_streak INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        await self.conn.commit()

    async def _fetchone(self, query: str, params: tuple) -> Optional[aiosqlite.Row]:
        assert self.conn is not None
        async with self.conn.execute(query, params) as cursor:
            return await cursor.fetchone()

    async def get_player(self, tg_id: int) -> Optional[Dict[str, Any]]:
        row = await self._fetchone(
            "SELECT * FROM players WHERE tg_id = ?",
            (tg_id,),
        )
        return dict(row) if row else None

    async def count_players(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS n FROM players", ())
        return int(row["n"]) if row else 0

    async def get_or_create_player(self, user: TgUser, now: datetime) -> PlayerRecord:
        assert self.conn is not None
        row = await self.get_player(user.id)
        if row is None:
            stamp = isoformat(now)
            # DO NOTHING keeps the row a concurrent first request may have written.
            await self.conn.execute(
                """
                INSERT INTO players (
                    tg_id, username, first_name, last_name, photo_url,
                    created_at, last_login, last_tick, state_json,
                    daily_claim_date, daily_streak, version
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, 0, 0)
                ON CONFLICT(tg_id) DO NOTHING
                """,
                (
                    user.id,
                    user.username,
                    user.first_name,
                    user.last_name,
                    user.photo_url,
                    stamp,
                    stamp,
                    stamp,
                    encode_state(default_state()),
                ),
            )
            await self.conn.commit()
            logger.info("created player %s", user.id)
            row = await self.get_player(user.id)
            assert row is not None
        return PlayerRecord(
            tg_id=row["tg_id"],
            username=row["username"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            photo_url=row["photo_url"],
            state=decode_state(row["state_json"], row["tg_id"]),
            created_at=row["created_at"],
            last_login=row["last_login"],
            last_tick=row["last_tick"] or isoformat(now),
            daily_claim_date=row["daily_claim_date"],
            daily_streak=int(row["daily_streak"] or 0),
            version=int(row["version"] or 0),
        )

    async def upsert_player(
        self,
        user: TgUser,
        state: Dict[str, Any],
        last_tick: str,
        daily_claim_date: Optional[str],
        daily_streak: int,
        now: datetime,
        expected_version: Optional[int] = None,
    ) -> bool:
        """Overwrite the player's row.

        With ``expected_version`` the write only lands if nobody else saved the
        row since it was read; ``False`` means the caller lost that race.
        """
        assert self.conn is not None
        stamp = isoformat(now)
        streak = max(0, min(MAX_STREAK, int(daily_streak)))
        state_json = encode_state(state)
        if expected_version is None:
            await self.conn.execute(
                """
                INSERT INTO players (
                    tg_id, username, first_name, last_name, photo_url,
                    created_at, last_login, last_tick, state_json,
                    daily_claim_date, daily_streak, version
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(tg_id) DO UPDATE SET
                    username = excluded.username,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    photo_url = excluded.photo_url,
                    last_login = excluded.last_login,
                    last_tick = excluded.last_tick,
                    state_json = excluded.state_json,
                    daily_claim_date = excluded.daily_claim_date,
                    daily_streak = excluded.daily_streak,
                    version = players.version + 1
                """,
                (
                    user.id,
                    user.username,
                    user.first_name,
                    user.last_name,
                    user.photo_url,
                    stamp,
                    stamp,
                    last_tick,
                    state_json,
                    daily_claim_date,
                    streak,
                ),
            )
            await self.conn.commit()
            return True

        cursor = await self.conn.execute(
            """
            UPDATE players
            SET username = ?, first_name = ?, last_name = ?, photo_url = ?,
                last_login = ?, last_tick = ?, state_json = ?,
                daily_claim_date = ?, daily_streak = ?, version = version + 1
            WHERE tg_id = ? AND version = ?
            """,
            (
                user.username,
                user.first_name,
                user.last_name,
                user.photo_url,
                stamp,
                last_tick,
                state_json,
                daily_claim_date,
                streak,
                user.id,
                expected_version,
            ),
        )
        await self.conn.commit()
        if cursor.rowcount != 1:
            logger.info(
                "player %s: version %s is stale, save rejected", user.id, expected_version
            )
            return False
        return True
