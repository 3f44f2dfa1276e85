from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from station.auth import sign_init_data
from station.db import Database
from station_webapp.app import create_app


BOT_TOKEN = "123456:TEST-TOKEN"
START = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_init_data(user_id=42, token=BOT_TOKEN, **extra):
    fields = {
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "user": {"id": user_id, "username": "chief", "first_name": "Ada", "last_name": "Byron"},
        "auth_date": "1700000000",
    }
    fields.update(extra)
    return sign_init_data(fields, token)


def auth_header(user_id=42, **extra):
    return {"Authorization": f"tma {make_init_data(user_id, **extra)}"}


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def database(tmp_path):
    return Database(tmp_path / "station.db")


@pytest.fixture()
def app(database, clock):
    return create_app(
        database=database,
        bot_token=BOT_TOKEN,
        allowed_origin="*",
        auth_max_age=0,
        clock=clock,
    )


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client
