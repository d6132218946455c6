from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .allocator import class_order, class_registrations, plan_team_pool, validate_capacity
from .errors import InputError
from .models import BALANCED_IRATING, ROUND_ROBIN, STRATEGIES, Registration, RegistrationUpdate, Team
from .optimizer import OptimizationResult, RatedDriver, balance
from .ratings import resolve_rating


logger = logging.getLogger(__name__)


@dataclass
class AssignmentPlan:
    assignments: Dict[str, str] = field(default_factory=dict)
    updates: List[RegistrationUpdate] = field(default_factory=list)
    team_pools: Dict[str, List[str]] = field(default_factory=dict)
    optimizations: Dict[str, OptimizationResult] = field(default_factory=dict)


def round_robin(registrations: Sequence[Registration], team_ids: Sequence[str]) -> Dict[str, str]:
    """Split registrations (signup order) into contiguous runs, one per team.

    Every team gets ``n // teams`` drivers; the first ``n % teams`` teams get
    one extra.
    """

    if not team_ids:
        return {}
    base, remainder = divmod(len(registrations), len(team_ids))
    assignments: Dict[str, str] = {}
    cursor = 0
    for index, team_id in enumerate(team_ids):
        size = base + (1 if index < remainder else 0)
        for reg in registrations[cursor : cursor + size]:
            assignments[reg.id] = team_id
        cursor += size
    return assignments


def balanced_rating(
    registrations: Sequence[Registration],
    team_ids: Sequence[str],
    capacity: int,
) -> OptimizationResult:
    drivers = [
        RatedDriver(registration_id=reg.id, rating=resolve_rating(reg), order=index)
        for index, reg in enumerate(registrations)
    ]
    return balance(drivers, team_ids, capacity)


def minimal_updates(registrations: Sequence[Registration], assignments: Dict[str, str]) -> List[RegistrationUpdate]:
    updates: List[RegistrationUpdate] = []
    for reg in registrations:
        target = assignments.get(reg.id)
        if target is None or target == reg.team_id:
            continue
        updates.append(RegistrationUpdate(registration_id=reg.id, team_id=target))
    return updates


def plan_race_assignments(
    registrations: Sequence[Registration],
    teams: Sequence[Team],
    capacity: Optional[int],
    strategy: str = ROUND_ROBIN,
    exclude_registration_id: Optional[str] = None,
) -> AssignmentPlan:
    """Allocate teams per car class and distribute the drivers of each class."""

    if strategy not in STRATEGIES:
        raise InputError(f"Unknown team assignment strategy '{strategy}'")
    validate_capacity(capacity)

    plan = AssignmentPlan()
    if capacity is None:
        return plan

    reserved: List[str] = []
    for car_class_id in class_order(registrations):
        pool = plan_team_pool(
            registrations,
            teams,
            car_class_id,
            capacity,
            exclude_registration_id=exclude_registration_id,
            reserved_team_ids=reserved,
        )
        if not pool:
            logger.debug("No teams available for class %s; leaving assignments untouched", car_class_id)
            continue
        reserved.extend(pool)
        plan.team_pools[car_class_id] = pool

        members = class_registrations(registrations, car_class_id, exclude_registration_id)
        if strategy == BALANCED_IRATING:
            result = balanced_rating(members, pool, capacity)
            plan.optimizations[car_class_id] = result
            assigned = result.assignments()
        else:
            assigned = round_robin(members, pool)

        for reg in members:
            # Last-resort bucket so no registration is left without a team.
            plan.assignments[reg.id] = assigned.get(reg.id, pool[0])

    plan.updates = minimal_updates(registrations, plan.assignments)
    return plan
