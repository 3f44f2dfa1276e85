from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .config import DEFAULTS


logger = logging.getLogger(__name__)

DAILY_CRYSTALS = DEFAULTS.daily_crystals


class AlreadyClaimedError(Exception):
    pass


@dataclass
class OfflineResult:
    state: Dict[str, Any]
    last_tick: str
    gains: Optional[Dict[str, int]]


@dataclass
class DailyClaim:
    state: Dict[str, Any]
    claim_date: str
    streak: int
    reward: int


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def date_key(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).date().isoformat()


def clamp(value: float, min_v: float, max_v: float) -> float:
    return max(min_v, min(max_v, value))


def clamp_day(value: int) -> int:
    return int(clamp(value, 1, len(DAILY_CRYSTALS)))


# --- default state and normalization ---------------------------------------


def default_state() -> Dict[str, Any]:
    return {
        "profile": {
            "level": 1,
            "xp": 0,
            "title": DEFAULTS.start_title,
        },
        "resources": {
            "energy": DEFAULTS.start_energy,
            "metal": DEFAULTS.start_metal,
            "water": DEFAULTS.start_water,
            "food": DEFAULTS.start_food,
            "crystals": DEFAULTS.start_crystals,
        },
        "buildings": {
            "command_center": 1,
            "generator": 1,
            "mine": 1,
            "well": 1,
            "farm": 1,
        },
        "army": {
            "militia": DEFAULTS.start_militia,
        },
        "research": {},
        "clan": {
            "id": None,
            "role": None,
        },
    }


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _to_amount(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        parsed = _to_int(value)
        if parsed is not None:
            return parsed
        try:
            number = float(value)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _normalize_profile(raw: Any, base: Dict[str, Any]) -> Dict[str, Any]:
    profile = dict(base)
    if not isinstance(raw, dict):
        return profile
    level = _to_int(raw.get("level"))
    if level is not None:
        profile["level"] = max(1, level)
    xp = _to_int(raw.get("xp"))
    if xp is not None:
        profile["xp"] = max(0, xp)
    title = raw.get("title")
    if isinstance(title, str):
        profile["title"] = title
    for key, value in raw.items():
        if key not in ("level", "xp", "title"):
            profile[key] = value
    return profile


def _normalize_resources(raw: Any, base: Dict[str, Any]) -> Dict[str, Any]:
    resources = dict(base)
    if not isinstance(raw, dict):
        return resources
    for key, value in raw.items():
        amount = _to_amount(value)
        if amount is None:
            continue
        resources[key] = max(0, amount)
    return resources


def _normalize_levels(raw: Any, base: Dict[str, int], minimum: int) -> Dict[str, int]:
    levels = dict(base)
    if not isinstance(raw, dict):
        return levels
    for key, value in raw.items():
        level = _to_int(value)
        if level is None:
            continue
        levels[str(key)] = max(minimum, level)
    return levels


def _normalize_clan(raw: Any, base: Dict[str, Any]) -> Dict[str, Any]:
    clan = dict(base)
    if not isinstance(raw, dict):
        return clan
    if "id" in raw:
        clan["id"] = None if raw["id"] is None else _to_int(raw["id"])
    if "role" in raw:
        role = raw["role"]
        clan["role"] = role if isinstance(role, str) else None
    return clan


def _normalize_buildings(raw: Any, base: Dict[str, int]) -> Dict[str, int]:
    return _normalize_levels(raw, base, 1)


def _normalize_counts(raw: Any, base: Dict[str, int]) -> Dict[str, int]:
    return _normalize_levels(raw, base, 0)


CATEGORY_NORMALIZERS = {
    "profile": _normalize_profile,
    "resources": _normalize_resources,
    "buildings": _normalize_buildings,
    "army": _normalize_counts,
    "research": _normalize_counts,
    "clan": _normalize_clan,
}


def normalize_state(raw: Any) -> Dict[str, Any]:
    """Materialize the default state, then lay every parsable category over it.

    A category that is absent or has the wrong shape keeps its default; inside
    a category, values that cannot be coerced keep the default for that key.
    """
    state = default_state()
    if not isinstance(raw, dict):
        return state
    for category, normalize in CATEGORY_NORMALIZERS.items():
        state[category] = normalize(raw.get(category), state[category])
    return state


def merge_state(current: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay a partial state onto ``current`` category by category.

    Keys the patch omits keep their current value. Submitted values are
    trusted as long as they fit the data model.
    """
    merged = normalize_state(current)
    for category, values in patch.items():
        normalize = CATEGORY_NORMALIZERS.get(category)
        if normalize is None:
            logger.debug("dropping unknown state category %r", category)
            continue
        merged[category] = normalize(values, merged[category])
    return merged


# --- economy -----------------------------------------------------------------


def level_multiplier(level: int) -> float:
    return 1 + max(0, level - 1) * DEFAULTS.level_step


def compute_production(buildings: Dict[str, int]) -> Dict[str, float]:
    production: Dict[str, float] = {}
    for resource, building in DEFAULTS.production_buildings.items():
        level = buildings.get(building, 1)
        production[resource] = DEFAULTS.base_production[resource] * level_multiplier(level)
    return production


def apply_offline_income(
    state: Dict[str, Any], last_tick: Optional[str], now: datetime
) -> OfflineResult:
    last = parse_timestamp(last_tick)
    if last is None:
        return OfflineResult(state=state, last_tick=isoformat(now), gains=None)
    elapsed = max(0.0, (now - last).total_seconds())
    hours = min(elapsed / 3600, DEFAULTS.offline_cap_hours)
    if hours <= DEFAULTS.min_tick_hours:
        return OfflineResult(state=state, last_tick=last_tick, gains=None)

    production = compute_production(state["buildings"])
    gains = {
        resource: math.floor(rate * hours) for resource, rate in production.items()
    }
    resources = state["resources"]
    for resource, gain in gains.items():
        resources[resource] = resources.get(resource, 0) + gain
    return OfflineResult(state=state, last_tick=isoformat(now), gains=gains)


# --- daily reward --------------------------------------------------------------


def _next_streak(claim_date: Optional[str], streak: int, now: datetime) -> int:
    yesterday = date_key(now - timedelta(days=1))
    if claim_date == yesterday:
        return clamp_day(streak + 1)
    return 1


def compute_daily_info(
    claim_date: Optional[str], streak: int, now: datetime
) -> Dict[str, Any]:
    claimed_today = claim_date == date_key(now)
    if claimed_today:
        next_day = clamp_day(streak)
    else:
        next_day = _next_streak(claim_date, streak, now)
    return {
        "available": not claimed_today,
        "streak": streak,
        "todayDay": next_day,
        "rewardCrystals": DAILY_CRYSTALS[next_day - 1],
    }


def claim_daily(
    state: Dict[str, Any], claim_date: Optional[str], streak: int, now: datetime
) -> DailyClaim:
    today = date_key(now)
    if claim_date == today:
        raise AlreadyClaimedError(today)
    new_streak = _next_streak(claim_date, streak, now)
    reward = DAILY_CRYSTALS[new_streak - 1]
    resources = state["resources"]
    resources["crystals"] = resources.get("crystals", 0) + reward
    return DailyClaim(state=state, claim_date=today, streak=new_streak, reward=reward)
