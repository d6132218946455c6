from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

ROUND_ROBIN = "ROUND_ROBIN"
BALANCED_IRATING = "BALANCED_IRATING"
STRATEGIES = (ROUND_ROBIN, BALANCED_IRATING)

ChangeType = Literal[
    "added",
    "moved",
    "dropped",
    "class_changed",
    "team_renamed",
    "team_class_changed",
]


@dataclass
class DriverRating:
    category_id: Optional[int]
    category: str
    rating: int


@dataclass
class Team:
    id: str
    name: str


@dataclass
class CarClass:
    id: str
    name: str


@dataclass
class Registration:
    """A driver's signup for one race in one car class.

    ``created_at`` is the signup timestamp and the canonical processing order
    for every allocation step. ``team_id`` is ``None`` while unassigned.
    """

    id: str
    race_id: str
    car_class_id: str
    car_class_name: str
    driver_name: str
    created_at: str
    team_id: Optional[str] = None
    user_id: Optional[str] = None
    manual_driver_id: Optional[str] = None
    discord_id: Optional[str] = None
    ratings: List[DriverRating] = field(default_factory=list)
    manual_rating: Optional[int] = None

    def sort_key(self) -> tuple[str, str]:
        return (self.created_at, self.id)


@dataclass
class Race:
    id: str
    event_id: str
    event_name: str
    start_time: str
    end_time: str
    max_drivers_per_team: Optional[int] = None
    strategy: str = ROUND_ROBIN
    teams_assigned: bool = False
    snapshot: Any = None  # raw persisted JSON, see snapshot.parse_snapshot
    thread_map: Dict[str, str] = field(default_factory=dict)
    event_thread_id: Optional[str] = None


@dataclass(frozen=True)
class SnapshotRecord:
    team_id: Optional[str]
    driver_name: str
    car_class_id: str
    car_class_name: str
    team_name: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "teamId": self.team_id,
            "teamName": self.team_name,
            "driverName": self.driver_name,
            "carClassId": self.car_class_id,
            "carClassName": self.car_class_name,
        }


@dataclass
class ChangeRecord:
    id: str
    driver_name: str
    team_id: Optional[str]
    car_class_name: str
    team_name: Optional[str] = None


@dataclass
class ChangeDetail:
    registration_id: str
    driver_name: str
    type: ChangeType
    from_team_id: Optional[str]
    to_team_id: Optional[str]
    from_team_name: str
    to_team_name: str
    line: str
    destructive: bool
    drivers: List[str] = field(default_factory=list)
    from_class: Optional[str] = None
    to_class: Optional[str] = None


@dataclass
class RegistrationUpdate:
    registration_id: str
    team_id: Optional[str]
    car_class_id: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.registration_id, "team_id": self.team_id}
        if self.car_class_id is not None:
            payload["car_class_id"] = self.car_class_id
        return payload
