from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence

from .errors import InputError
from .models import Registration, Team

if TYPE_CHECKING:  # pragma: no cover
    from .loader import DataStore


logger = logging.getLogger(__name__)


def sort_teams(teams: Iterable[Team]) -> List[Team]:
    return sorted(teams, key=lambda team: (team.name.lower(), team.name, team.id))


def signup_order(registrations: Iterable[Registration]) -> List[Registration]:
    return sorted(registrations, key=lambda reg: reg.sort_key())


def validate_capacity(capacity: Optional[int]) -> None:
    if capacity is None:
        return
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
        raise InputError("Drivers per team must be a positive whole number")


def class_registrations(
    registrations: Sequence[Registration],
    car_class_id: str,
    exclude_registration_id: Optional[str] = None,
) -> List[Registration]:
    return [
        reg
        for reg in signup_order(registrations)
        if reg.car_class_id == car_class_id and reg.id != exclude_registration_id
    ]


def required_team_count(driver_count: int, capacity: int) -> int:
    return math.ceil(driver_count / capacity) if driver_count else 0


def plan_team_pool(
    registrations: Sequence[Registration],
    teams: Sequence[Team],
    car_class_id: str,
    capacity: Optional[int],
    exclude_registration_id: Optional[str] = None,
    reserved_team_ids: Iterable[str] = (),
) -> List[str]:
    """Decide which teams carry ``car_class_id`` in a race.

    ``registrations`` is every registration of the race; teams already
    carrying another class are never candidates, neither are teams listed in
    ``reserved_team_ids`` (claimed by a class planned earlier in the same
    pass). Returns team ids in name order; an empty list means there is
    nothing to assign.
    """

    validate_capacity(capacity)
    if capacity is None:
        return []

    ordered_teams = sort_teams(teams)
    reserved = set(reserved_team_ids)
    own = class_registrations(registrations, car_class_id, exclude_registration_id)

    used_team_ids = {
        reg.team_id
        for reg in registrations
        if reg.team_id is not None and reg.car_class_id != car_class_id and reg.id != exclude_registration_id
    }
    blocked = used_team_ids | reserved

    own_team_ids = {reg.team_id for reg in own if reg.team_id is not None}
    candidates = [team.id for team in ordered_teams if team.id in own_team_ids and team.id not in blocked]
    if not candidates:
        seed = next((team.id for team in ordered_teams if team.id not in blocked), None)
        if seed is None:
            logger.debug("No free team to seed class %s", car_class_id)
            return []
        candidates = [seed]

    required = required_team_count(len(own), capacity)
    if required > len(candidates):
        for team in ordered_teams:
            if len(candidates) >= required:
                break
            if team.id in blocked or team.id in candidates:
                continue
            candidates.append(team.id)
        chosen = set(candidates)
        candidates = [team.id for team in ordered_teams if team.id in chosen]
    elif required < len(candidates):
        candidates = candidates[:required]

    return candidates


def compute_team_shortfall(
    registrations: Sequence[Registration],
    teams: Sequence[Team],
    capacity: Optional[int],
) -> int:
    """Number of teams missing from the global pool to seat every class of a race."""

    validate_capacity(capacity)
    if capacity is None:
        return 0

    reserved: List[str] = []
    shortfall = 0
    for car_class_id in class_order(registrations):
        required = required_team_count(len(class_registrations(registrations, car_class_id)), capacity)
        pool = plan_team_pool(registrations, teams, car_class_id, capacity, reserved_team_ids=reserved)
        reserved.extend(pool)
        if len(pool) < required:
            shortfall += required - len(pool)
    return shortfall


def class_order(registrations: Sequence[Registration]) -> List[str]:
    """Car class ids in order of their first signup."""

    seen: List[str] = []
    for reg in signup_order(registrations):
        if reg.car_class_id not in seen:
            seen.append(reg.car_class_id)
    return seen


class TeamPoolAllocator:
    """Reads the race state and plans the team pool for one car class."""

    def __init__(self, store: "DataStore") -> None:
        self.store = store

    async def allocate(
        self,
        race_id: str,
        car_class_id: str,
        capacity: Optional[int],
        exclude_registration_id: Optional[str] = None,
        reserved_team_ids: Iterable[str] = (),
    ) -> List[str]:
        validate_capacity(capacity)
        if not race_id or not car_class_id:
            raise InputError("Race and car class are required")
        if capacity is None:
            return []

        registrations = await self.store.fetch_registrations(race_id)
        teams = await self.store.fetch_teams()
        return plan_team_pool(
            registrations,
            teams,
            car_class_id,
            capacity,
            exclude_registration_id=exclude_registration_id,
            reserved_team_ids=reserved_team_ids,
        )
