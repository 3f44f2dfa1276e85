from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Callable, Dict, Optional, Union

from fastapi import Depends, FastAPI, Request
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.types import ASGIApp, Receive, Scope, Send

from station.auth import TgUser, extract_init_data, verify_init_data
from station.config import (
    ALLOWED_ORIGIN,
    BOT_TOKEN,
    DB_PATH,
    DEFAULTS,
    LOG_LEVEL,
    WEBAPP_AUTH_MAX_AGE,
)
from station.db import Database, PlayerRecord
from station.game import (
    AlreadyClaimedError as DailyAlreadyClaimed,
    apply_offline_income,
    claim_daily,
    compute_daily_info,
    merge_state,
    utcnow,
)

from .errors import (
    AlreadyClaimedError,
    ConflictError,
    InvalidPayloadError,
    register_error_handlers,
)


logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

NonNegative = Annotated[Union[int, float], Field(ge=0)]
BuildingLevel = Annotated[int, Field(ge=1)]
Count = Annotated[int, Field(ge=0)]


class ProfilePatch(BaseModel):
    model_config = ConfigDict(extra="allow")

    level: Optional[int] = Field(None, ge=1)
    xp: Optional[int] = Field(None, ge=0)
    title: Optional[str] = None


class ClanPatch(BaseModel):
    id: Optional[int] = None
    role: Optional[str] = None


class StatePatch(BaseModel):
    # Unknown categories pass validation and are dropped by merge_state.
    model_config = ConfigDict(extra="allow")

    profile: Optional[ProfilePatch] = None
    resources: Optional[Dict[str, NonNegative]] = None
    buildings: Optional[Dict[str, BuildingLevel]] = None
    army: Optional[Dict[str, Count]] = None
    research: Optional[Dict[str, Count]] = None
    clan: Optional[ClanPatch] = None


class SaveRequest(BaseModel):
    state: StatePatch


@dataclass
class PlayerUpdate:
    state: Dict[str, Any]
    last_tick: str
    daily_claim_date: Optional[str]
    daily_streak: int
    body: Dict[str, Any]


def cors_headers_for(allowed_origin: str) -> Callable[[Optional[str]], Dict[str, str]]:
    def cors_headers(origin: Optional[str]) -> Dict[str, str]:
        if allowed_origin == "*":
            allow_origin = "*"
        elif origin and origin == allowed_origin:
            allow_origin = origin
        else:
            allow_origin = allowed_origin
        return {
            "Access-Control-Allow-Origin": allow_origin,
            "Access-Control-Allow-Headers": "Content-Type, Authorization",
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Max-Age": "86400",
        }

    return cors_headers


class CORSHeadersMiddleware:
    """Answers preflight requests and stamps CORS headers on every response."""

    def __init__(self, app: ASGIApp, cors_headers: Callable[[Optional[str]], Dict[str, str]]):
        self.app = app
        self.cors_headers = cors_headers

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        origin = None
        for key, value in scope.get("headers", []):
            if key == b"origin":
                origin = value.decode("latin-1")
                break
        extra = [
            (key.lower().encode("latin-1"), value.encode("latin-1"))
            for key, value in self.cors_headers(origin).items()
        ]

        if scope["method"] == "OPTIONS":
            await send({"type": "http.response.start", "status": 204, "headers": extra})
            await send({"type": "http.response.body", "body": b""})
            return

        async def send_with_cors(message):
            if message["type"] == "http.response.start":
                names = {name for name, _ in extra}
                raw_headers = [
                    (name, value)
                    for name, value in message.get("headers", [])
                    if name.lower() not in names
                ]
                message["headers"] = raw_headers + extra
            await send(message)

        await self.app(scope, receive, send_with_cors)


def _user_payload(user: TgUser) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "firstName": user.first_name,
        "lastName": user.last_name,
    }


def create_app(
    database: Optional[Database] = None,
    bot_token: Optional[str] = None,
    allowed_origin: Optional[str] = None,
    auth_max_age: Optional[int] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    db = database or Database(DB_PATH)
    token = BOT_TOKEN if bot_token is None else bot_token
    max_age = WEBAPP_AUTH_MAX_AGE if auth_max_age is None else auth_max_age
    now_fn = clock or utcnow
    cors_headers = cors_headers_for(allowed_origin or ALLOWED_ORIGIN)

    if not token:
        logger.warning("BOT_TOKEN is not set, every request will be rejected")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db.connect()
        await db.init()
        yield
        await db.close()

    app = FastAPI(title="Station Web App", lifespan=lifespan, redirect_slashes=False)
    app.state.db = db
    app.add_middleware(CORSHeadersMiddleware, cors_headers=cors_headers)
    register_error_handlers(app, cors_headers)

    async def authorize(request: Request) -> TgUser:
        init_data = extract_init_data(request.headers.get("authorization"))
        return verify_init_data(init_data, token, now=now_fn(), max_age=max_age)

    async def apply_update(
        user: TgUser, step: Callable[[PlayerRecord, datetime], PlayerUpdate]
    ) -> Dict[str, Any]:
        for attempt in range(1, DEFAULTS.save_attempts + 1):
            now = now_fn()
            player = await db.get_or_create_player(user, now)
            update = step(player, now)
            saved = await db.upsert_player(
                user,
                update.state,
                update.last_tick,
                update.daily_claim_date,
                update.daily_streak,
                now,
                expected_version=player.version,
            )
            if saved:
                return update.body
            logger.info("player %s: save attempt %s lost a race, retrying", user.id, attempt)
        raise ConflictError()

    @app.get("/healthz")
    async def healthz() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/state")
    async def state(user: TgUser = Depends(authorize)) -> Dict[str, Any]:
        def step(player: PlayerRecord, now: datetime) -> PlayerUpdate:
            offline = apply_offline_income(player.state, player.last_tick, now)
            if offline.gains:
                logger.debug("player %s: offline gains %s", user.id, offline.gains)
            daily = compute_daily_info(player.daily_claim_date, player.daily_streak, now)
            return PlayerUpdate(
                state=offline.state,
                last_tick=offline.last_tick,
                daily_claim_date=player.daily_claim_date,
                daily_streak=player.daily_streak,
                body={
                    "user": _user_payload(user),
                    "resources": offline.state["resources"],
                    "daily": daily,
                },
            )

        return await apply_update(user, step)

    @app.post("/daily/claim")
    async def daily_claim(user: TgUser = Depends(authorize)) -> Dict[str, Any]:
        def step(player: PlayerRecord, now: datetime) -> PlayerUpdate:
            try:
                claim = claim_daily(
                    player.state, player.daily_claim_date, player.daily_streak, now
                )
            except DailyAlreadyClaimed:
                daily = compute_daily_info(player.daily_claim_date, player.daily_streak, now)
                raise AlreadyClaimedError(player.state["resources"], daily)
            logger.info(
                "player %s claimed daily day %s (+%s crystals)",
                user.id, claim.streak, claim.reward,
            )
            return PlayerUpdate(
                state=claim.state,
                last_tick=player.last_tick,
                daily_claim_date=claim.claim_date,
                daily_streak=claim.streak,
                body={
                    "resources": claim.state["resources"],
                    "daily": compute_daily_info(claim.claim_date, claim.streak, now),
                },
            )

        return await apply_update(user, step)

    @app.post("/save")
    async def save(request: Request, user: TgUser = Depends(authorize)) -> Dict[str, Any]:
        try:
            payload = SaveRequest.model_validate(await request.json())
        except (ValueError, ValidationError) as exc:
            logger.info("player %s: rejected save payload: %s", user.id, exc)
            raise InvalidPayloadError()
        patch = payload.state.model_dump(exclude_unset=True)

        def step(player: PlayerRecord, now: datetime) -> PlayerUpdate:
            merged = merge_state(player.state, patch)
            return PlayerUpdate(
                state=merged,
                last_tick=player.last_tick,
                daily_claim_date=player.daily_claim_date,
                daily_streak=player.daily_streak,
                body={"state": merged},
            )

        return await apply_update(user, step)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("station_webapp.app:app", host="0.0.0.0", port=8000)
