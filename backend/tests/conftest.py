from __future__ import annotations

import json
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest

from paddock_core import DataStore
from paddock_core.chat import ChatMessage, extract_type_marker
from paddock_core.errors import ChatServiceError
from paddock_core.messages import STATUS_MARKER
from paddock_core.models import DriverRating, Registration, Team

ENV_VARS = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_SERVICE_KEY",
    "SUPABASE_ANON_KEY",
    "SUPABASE_SCHEMA",
    "DISCORD_BOT_TOKEN",
    "DISCORD_GUILD_ID",
    "DISCORD_NOTIFICATIONS_CHANNEL_ID",
    "DISCORD_EVENTS_FORUM_ID",
    "APP_BASE_URL",
)


@pytest.fixture(autouse=True)
def reset_env(monkeypatch: pytest.MonkeyPatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def store(tmp_path) -> DataStore:
    return DataStore(data_dir=tmp_path)


@pytest.fixture
def seed_store(store: DataStore) -> Callable[..., DataStore]:
    def _seed(
        races: Optional[List[Dict[str, Any]]] = None,
        registrations: Optional[List[Dict[str, Any]]] = None,
        teams: Optional[List[Dict[str, Any]]] = None,
        car_classes: Optional[List[Dict[str, Any]]] = None,
    ) -> DataStore:
        store.local_path.write_text(
            json.dumps(
                {
                    "races": races or [],
                    "registrations": registrations or [],
                    "teams": teams or [],
                    "car_classes": car_classes or [],
                }
            ),
            encoding="utf-8",
        )
        return store

    return _seed


def read_local(store: DataStore) -> Dict[str, Any]:
    return json.loads(store.local_path.read_text(encoding="utf-8"))


def make_registration(
    reg_id: str,
    car_class_id: str = "gt3",
    team_id: Optional[str] = None,
    rating: Optional[int] = None,
    minute: int = 0,
    driver_name: Optional[str] = None,
    car_class_name: Optional[str] = None,
    discord_id: Optional[str] = None,
) -> Registration:
    return Registration(
        id=reg_id,
        race_id="race-1",
        car_class_id=car_class_id,
        car_class_name=car_class_name or car_class_id.upper(),
        driver_name=driver_name or f"Driver {reg_id}",
        created_at=f"2026-03-01T10:{minute:02d}:00Z",
        team_id=team_id,
        discord_id=discord_id,
        ratings=[DriverRating(category_id=5, category="Sports Car", rating=rating)] if rating is not None else [],
    )


def make_teams(count: int) -> List[Team]:
    return [Team(id=f"t{index}", name=f"Team {index:02d}") for index in range(1, count + 1)]


class FakeChat:
    """In-memory stand-in for the Discord client."""

    def __init__(self, existing: Iterable[str] = ()) -> None:
        self.configured = True
        self.existing = set(existing)
        self.messages: Dict[str, List[ChatMessage]] = {handle: [] for handle in self.existing}
        self.calls: List[tuple] = []
        self.participants: Dict[str, List[str]] = {}
        self._next = 0

    async def resource_exists(self, handle: str) -> bool:
        self.calls.append(("exists", handle))
        return handle in self.existing

    async def create_resource(self, parent_id: str, title: str, initial_content: Dict[str, Any], forum: bool = False) -> str:
        self._next += 1
        handle = f"new-{self._next}"
        self.calls.append(("create", parent_id, title))
        self.existing.add(handle)
        self.messages[handle] = [ChatMessage(id=f"{handle}-m0", author_is_automation=True, type_marker=STATUS_MARKER)]
        return handle

    async def list_recent_messages(self, handle: str, limit: int = 50) -> List[ChatMessage]:
        self.calls.append(("list", handle))
        if handle not in self.existing:
            raise ChatServiceError("Unknown Channel", 404)
        return list(reversed(self.messages[handle]))

    async def edit_message(self, handle: str, message_id: str, content: Dict[str, Any]) -> str:
        self.calls.append(("edit", handle, message_id))
        if handle in self.existing and any(message.id == message_id for message in self.messages[handle]):
            return "ok"
        return "not_found"

    async def post_message(self, handle: str, content: Dict[str, Any]) -> str:
        self.calls.append(("post", handle))
        if handle not in self.existing:
            return "not_found"
        marker = extract_type_marker(content)
        self.messages[handle].append(
            ChatMessage(id=f"{handle}-m{len(self.messages[handle]) + 1}", author_is_automation=True, type_marker=marker)
        )
        return "ok"

    async def add_participants(self, handle: str, participant_ids: Iterable[Optional[str]]) -> None:
        self.participants.setdefault(handle, []).extend(item for item in participant_ids if item)

    def actions(self, kind: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == kind]
