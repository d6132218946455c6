"""Balanced-rating team optimizer.

A greedy seed places drivers (strongest first) into the team with the lowest
running rating total that still has room. A bounded hill-climb then swaps
single driver pairs between teams while that narrows the spread between the
strongest and weakest team average by more than ``MIN_GAP_IMPROVEMENT``.
Given the same input order the result is always the same.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

MAX_SWAP_ROUNDS = 50
MIN_GAP_IMPROVEMENT = 1


@dataclass
class RatedDriver:
    registration_id: str
    rating: int
    order: int  # signup position, breaks rating ties


@dataclass
class Bucket:
    team_id: str
    total: int = 0
    members: List[RatedDriver] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.members)

    @property
    def average(self) -> float:
        return self.total / self.count if self.count else 0.0

    def add(self, driver: RatedDriver) -> None:
        self.members.append(driver)
        self.total += driver.rating


@dataclass
class OptimizationResult:
    buckets: List[Bucket]
    seed_gap: float
    final_gap: float
    rounds: int
    swaps: int

    def assignments(self) -> dict[str, str]:
        return {member.registration_id: bucket.team_id for bucket in self.buckets for member in bucket.members}


def spread(averages: Sequence[float]) -> float:
    if not averages:
        return 0.0
    return max(averages) - min(averages)


def bucket_gap(buckets: Sequence[Bucket]) -> float:
    return spread([bucket.average for bucket in buckets])


def greedy_seed(drivers: Sequence[RatedDriver], team_ids: Sequence[str], capacity: int) -> List[Bucket]:
    buckets = [Bucket(team_id=team_id) for team_id in team_ids]
    if not buckets:
        return buckets

    ordered = sorted(drivers, key=lambda driver: (-driver.rating, driver.order))
    for driver in ordered:
        candidates = [bucket for bucket in buckets if bucket.count < capacity]
        if not candidates:
            # Sizing upstream should prevent this; keep every driver seated.
            candidates = buckets
        target = candidates[0]
        for bucket in candidates:
            if bucket.total < target.total:
                target = bucket
        target.add(driver)
    return buckets


def _best_swap(buckets: Sequence[Bucket], current_gap: float, min_improvement: float) -> Optional[Tuple[int, int, int, int]]:
    averages = [bucket.average for bucket in buckets]
    best: Optional[Tuple[int, int, int, int]] = None
    best_delta = 0.0

    for a in range(len(buckets)):
        team_a = buckets[a]
        for b in range(a + 1, len(buckets)):
            team_b = buckets[b]
            for i, driver_a in enumerate(team_a.members):
                for j, driver_b in enumerate(team_b.members):
                    next_a = (team_a.total - driver_a.rating + driver_b.rating) / team_a.count
                    next_b = (team_b.total - driver_b.rating + driver_a.rating) / team_b.count
                    trial = list(averages)
                    trial[a] = next_a
                    trial[b] = next_b
                    delta = current_gap - spread(trial)
                    if delta > min_improvement and (best is None or delta > best_delta):
                        best = (a, b, i, j)
                        best_delta = delta
    return best


def refine(
    buckets: List[Bucket],
    max_rounds: int = MAX_SWAP_ROUNDS,
    min_improvement: float = MIN_GAP_IMPROVEMENT,
) -> Tuple[int, int]:
    """Apply at most one best swap per round. Returns (rounds, swaps)."""

    rounds = 0
    swaps = 0
    while rounds < max_rounds:
        rounds += 1
        swap = _best_swap(buckets, bucket_gap(buckets), min_improvement)
        if swap is None:
            break
        a, b, i, j = swap
        team_a, team_b = buckets[a], buckets[b]
        driver_a, driver_b = team_a.members[i], team_b.members[j]
        team_a.members[i], team_b.members[j] = driver_b, driver_a
        team_a.total += driver_b.rating - driver_a.rating
        team_b.total += driver_a.rating - driver_b.rating
        swaps += 1
    return rounds, swaps


def balance(
    drivers: Sequence[RatedDriver],
    team_ids: Sequence[str],
    capacity: int,
    max_rounds: int = MAX_SWAP_ROUNDS,
    min_improvement: float = MIN_GAP_IMPROVEMENT,
) -> OptimizationResult:
    buckets = greedy_seed(drivers, team_ids, capacity)
    seed_gap = bucket_gap(buckets)
    rounds, swaps = refine(buckets, max_rounds=max_rounds, min_improvement=min_improvement)
    return OptimizationResult(
        buckets=buckets,
        seed_gap=seed_gap,
        final_gap=bucket_gap(buckets),
        rounds=rounds,
        swaps=swaps,
    )
