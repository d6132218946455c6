from __future__ import annotations

import datetime as dt
from typing import Dict, Optional

from .models import DriverRating, Race, Registration

PRIMARY_CATEGORY_ID = 5
PRIMARY_CATEGORY_NAME = "sports car"

# Race duration (minutes) -> default drivers per team.
AUTO_MAX_DRIVERS: Dict[int, int] = {
    120: 2,
    160: 3,
    180: 3,
    360: 4,
    720: 5,
    1440: 7,
}


def preferred_rating(registration: Registration) -> Optional[DriverRating]:
    for stat in registration.ratings:
        if stat.category_id == PRIMARY_CATEGORY_ID or (stat.category or "").lower() == PRIMARY_CATEGORY_NAME:
            return stat
    return registration.ratings[0] if registration.ratings else None


def resolve_rating(registration: Registration) -> int:
    """Single comparable skill number: primary category, first stat, manual entry, else 0."""

    preferred = preferred_rating(registration)
    if preferred is not None:
        return preferred.rating
    if registration.manual_rating is not None:
        return registration.manual_rating
    return 0


def race_duration_minutes(start_time: str, end_time: str) -> Optional[int]:
    try:
        start = dt.datetime.fromisoformat(start_time.replace("Z", "+00:00"))
        end = dt.datetime.fromisoformat(end_time.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    return round((end - start).total_seconds() / 60)


def resolve_capacity(race: Race, override: Optional[int] = None) -> Optional[int]:
    """Drivers per team for a race; ``None`` means unconstrained."""

    if override is not None:
        return override
    if race.max_drivers_per_team is not None:
        return race.max_drivers_per_team
    duration = race_duration_minutes(race.start_time, race.end_time)
    if duration is None:
        return None
    return AUTO_MAX_DRIVERS.get(duration)
