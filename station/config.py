from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Tuple
import os

from dotenv import load_dotenv


load_dotenv()


BASE_DIR = Path(__file__).resolve().parent.parent
DB_PATH = Path(os.getenv("DB_PATH", BASE_DIR / "station.db"))
BOT_TOKEN = os.getenv("BOT_TOKEN", "").strip()
ALLOWED_ORIGIN = os.getenv("ALLOWED_ORIGIN", "").strip() or "*"
WEBAPP_AUTH_MAX_AGE = int(os.getenv("WEBAPP_AUTH_MAX_AGE", "86400"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()


def _base_production() -> Dict[str, int]:
    return {"energy": 140, "metal": 90, "water": 70, "food": 60}


def _production_buildings() -> Dict[str, str]:
    return {"energy": "generator", "metal": "mine", "water": "well", "food": "farm"}


@dataclass(frozen=True)
class EconomyDefaults:
    start_title: str = "Station Chief"
    start_energy: int = 5000
    start_metal: int = 2000
    start_water: int = 1000
    start_food: int = 500
    start_crystals: int = 100
    start_militia: int = 10
    level_step: float = 0.25
    offline_cap_hours: float = 8.0
    min_tick_hours: float = 0.01
    daily_crystals: Tuple[int, ...] = (1, 2, 3, 4, 5, 6, 7)
    base_production: Dict[str, int] = field(default_factory=_base_production)
    production_buildings: Dict[str, str] = field(default_factory=_production_buildings)
    save_attempts: int = 3


DEFAULTS = EconomyDefaults()
