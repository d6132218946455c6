from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import httpx
import pytest

from conftest import FakeChat, read_local
from paddock_core import TeamAssignmentService
from paddock_core.chat import DiscordClient
from paddock_core.errors import (
    AuthorizationError,
    ChatServiceError,
    InputError,
    TeamClassConflictError,
    TeamLockedError,
)
from paddock_core.models import RegistrationUpdate, Team
from paddock_core.service import actor_role, next_placeholder_names

ADMIN = {"id": "admin-1", "app_metadata": {"role": "ADMIN"}, "user_metadata": {"full_name": "Race Control"}}
DRIVER = {"id": "user-1", "user_metadata": {"role": "USER"}}


def _registration(reg_id: str, name: str, minute: int, car_class_id: str = "gt3", team_id=None) -> Dict[str, Any]:
    return {
        "id": reg_id,
        "race_id": "race-1",
        "car_class_id": car_class_id,
        "team_id": team_id,
        "driver_name": name,
        "discord_id": f"d-{reg_id}",
        "created_at": f"2026-02-01T10:{minute:02d}:00Z",
    }


def _race(**overrides: Any) -> Dict[str, Any]:
    race = {
        "id": "race-1",
        "event_id": "ev-1",
        "event_name": "Spa 6h",
        "start_time": "2026-03-01T12:00:00Z",
        "end_time": "2026-03-01T14:00:00Z",
        "team_assignment_strategy": "ROUND_ROBIN",
        "teams_assigned": False,
    }
    race.update(overrides)
    return race


@pytest.fixture
def league(seed_store):
    return seed_store(
        races=[_race()],
        registrations=[
            _registration("r1", "Ann", 0),
            _registration("r2", "Ben", 1),
            _registration("r3", "Cat", 2),
            _registration("r4", "Dan", 3),
            _registration("r5", "Eve", 4, car_class_id="lmp2"),
        ],
        teams=[{"id": "t1", "name": "Alpha"}, {"id": "t2", "name": "Bravo"}, {"id": "t3", "name": "Charlie"}],
        car_classes=[{"id": "gt3", "name": "GT3"}, {"id": "lmp2", "name": "LMP2"}],
    )


def _service(store, chat=None) -> TeamAssignmentService:
    return TeamAssignmentService(
        store,
        chat,
        app_title="League",
        guild_id="guild",
        notifications_channel_id="channel",
        events_forum_id="",
        base_url="https://league.example",
    )


def _teams_by_registration(store) -> Dict[str, Any]:
    return {row["id"]: row.get("team_id") for row in read_local(store)["registrations"]}


def _race_row(store) -> Dict[str, Any]:
    return read_local(store)["races"][0]


def test_non_admin_is_rejected_before_any_read(store) -> None:
    with pytest.raises(AuthorizationError):
        asyncio.run(_service(store).assign_teams("race-1", DRIVER))
    assert not store.local_path.exists()


def test_invalid_capacity_is_rejected(league) -> None:
    with pytest.raises(InputError):
        asyncio.run(_service(league).assign_teams("race-1", ADMIN, max_drivers=0))
    with pytest.raises(InputError):
        asyncio.run(_service(league).assign_teams("race-1", ADMIN, strategy="RANDOM"))


def test_assign_teams_writes_class_isolated_teams(league) -> None:
    result = asyncio.run(_service(league).assign_teams("race-1", ADMIN, notify=False))

    assert _teams_by_registration(league) == {"r1": "t1", "r2": "t1", "r3": "t2", "r4": "t2", "r5": "t3"}
    assert _race_row(league)["teams_assigned"] is True
    assert len(result.updates) == 5
    assert [detail.type for detail in result.details] == ["added"] * 5
    assert result.created_teams == []
    assert result.notification is None


def test_rerun_writes_nothing(league) -> None:
    service = _service(league)
    asyncio.run(service.assign_teams("race-1", ADMIN, notify=False))

    second = asyncio.run(service.assign_teams("race-1", ADMIN, notify=False))

    assert second.updates == []
    assert second.details == []


def test_placeholder_teams_cover_the_shortfall(seed_store) -> None:
    store = seed_store(
        races=[_race()],
        registrations=[
            _registration("r1", "Ann", 0),
            _registration("r2", "Ben", 1),
            _registration("r3", "Cat", 2),
            _registration("r4", "Eve", 3, car_class_id="lmp2"),
        ],
        teams=[{"id": "t1", "name": "Team 1"}],
    )

    result = asyncio.run(_service(store).assign_teams("race-1", ADMIN, notify=False))

    assert [team.name for team in result.created_teams] == ["Team 2", "Team 3"]
    assigned = _teams_by_registration(store)
    assert len({assigned["r1"], assigned["r2"], assigned["r3"]}) == 2
    assert assigned["r4"] not in {assigned["r1"], assigned["r3"]}


def test_first_notification_creates_threads_and_stores_snapshot(league) -> None:
    chat = FakeChat()

    result = asyncio.run(_service(league, chat).assign_teams("race-1", ADMIN))

    notification = result.notification
    assert notification is not None
    assert notification.status == "sent"
    assert notification.status_action == "edited"
    assert len(notification.created_threads) == 4
    race = _race_row(league)
    assert race["event_thread_id"] == notification.event_thread_id
    assert set(race["discord_team_threads"]) == {"t1", "t2", "t3"}
    assert set(race["team_snapshot"]) == {"r1", "r2", "r3", "r4", "r5"}
    assert race["team_snapshot"]["r1"]["teamName"] == "Alpha"
    assert chat.participants[race["discord_team_threads"]["t1"]] == ["d-r1", "d-r2"]


def test_unchanged_roster_sends_nothing(league) -> None:
    chat = FakeChat()
    service = _service(league, chat)
    asyncio.run(service.assign_teams("race-1", ADMIN))
    chat.calls.clear()

    result = asyncio.run(service.notify_race_changes("race-1"))

    assert result.status == "unchanged"
    assert chat.calls == []


def test_move_posts_roster_change_to_event_and_team_threads(league) -> None:
    chat = FakeChat()
    service = _service(league, chat)
    asyncio.run(service.assign_teams("race-1", ADMIN))
    threads = _race_row(league)["discord_team_threads"]
    event_thread = _race_row(league)["event_thread_id"]

    result = asyncio.run(service.assign_registration_to_team("r2", "t2", ADMIN))

    assert [detail.line for detail in result.details] == ["Moved Ben from Alpha to Bravo."]
    notification = result.notification
    assert notification.status == "sent"
    assert notification.created_threads == []
    assert notification.delivered == [event_thread, threads["t1"], threads["t2"]]
    assert _race_row(league)["team_snapshot"]["r2"]["teamId"] == "t2"


def test_team_class_conflict_on_direct_assignment(league) -> None:
    service = _service(league)
    asyncio.run(service.assign_teams("race-1", ADMIN, notify=False))

    with pytest.raises(TeamClassConflictError, match="^Team Class Conflict"):
        asyncio.run(service.assign_registration_to_team("r5", "t1", ADMIN))
    assert _teams_by_registration(league)["r5"] == "t3"


def test_batch_save_applies_moves_drops_and_renames(league) -> None:
    service = _service(league)
    asyncio.run(service.assign_teams("race-1", ADMIN, notify=False))

    result = asyncio.run(
        service.save_registration_changes(
            "race-1",
            ADMIN,
            updates=[RegistrationUpdate(registration_id="r4", team_id=None)],
            deletes=["r3"],
            team_renames={"t3": "Charlie Racing"},
        )
    )

    data = read_local(league)
    assert {row["id"] for row in data["registrations"]} == {"r1", "r2", "r4", "r5"}
    assert _teams_by_registration(league)["r4"] is None
    assert {row["id"]: row["name"] for row in data["teams"]}["t3"] == "Charlie Racing"
    assert [detail.line for detail in result.details] == [
        "Charlie renamed to Charlie Racing.",
        "Dropped Cat from Bravo.",
        "Dropped Dan from Bravo.",
    ]


def test_batch_save_rejects_mixed_classes(league) -> None:
    service = _service(league)
    asyncio.run(service.assign_teams("race-1", ADMIN, notify=False))
    before = read_local(league)

    with pytest.raises(TeamClassConflictError):
        asyncio.run(
            service.save_registration_changes(
                "race-1", ADMIN, updates=[RegistrationUpdate(registration_id="r5", team_id="t1")]
            )
        )
    assert read_local(league) == before


def test_locked_team_cannot_be_renamed_or_reclassed(league) -> None:
    service = _service(league, FakeChat())
    asyncio.run(service.assign_teams("race-1", ADMIN))
    before = read_local(league)

    with pytest.raises(TeamLockedError):
        asyncio.run(
            service.save_registration_changes(
                "race-1",
                ADMIN,
                updates=[RegistrationUpdate(registration_id="r1", team_id="t1")],
                team_renames={"t1": "Renamed"},
            )
        )
    with pytest.raises(TeamLockedError):
        asyncio.run(
            service.save_registration_changes(
                "race-1", ADMIN, updates=[RegistrationUpdate(registration_id="r5", team_id="t3", car_class_id="gt3")]
            )
        )
    with pytest.raises(TeamLockedError):
        asyncio.run(service.rename_team("t2", "Bravo Two", ADMIN))
    assert read_local(league) == before


def test_rename_unlocked_team(league) -> None:
    team = asyncio.run(_service(league).rename_team("t1", "  Alpha Racing ", ADMIN))

    assert team.name == "Alpha Racing"
    with pytest.raises(InputError):
        asyncio.run(_service(league).rename_team("t1", " ", ADMIN))


class BrokenStatusChat(FakeChat):
    async def list_recent_messages(self, handle: str, limit: int = 50) -> List[Any]:
        raise ChatServiceError("Discord is down", 503)


def test_notification_failure_keeps_assignment_and_snapshot(league) -> None:
    result = asyncio.run(_service(league, BrokenStatusChat()).assign_teams("race-1", ADMIN))

    assert result.notification.status == "failed"
    assert "Discord is down" in result.notification.error
    assert _teams_by_registration(league)["r1"] == "t1"
    race = _race_row(league)
    assert race.get("team_snapshot") is None
    assert set(race["discord_team_threads"]) == {"t1", "t2", "t3"}


def test_notification_skipped_without_chat(league) -> None:
    result = asyncio.run(_service(league).assign_teams("race-1", ADMIN))

    assert result.notification.status == "skipped"


def test_preview_reports_first_notification(league) -> None:
    service = _service(league)
    asyncio.run(service.assign_teams("race-1", ADMIN, notify=False))

    preview = asyncio.run(service.preview_changes("race-1", ADMIN))

    assert preview.first_notification is True
    assert len(preview.details) == 5
    assert preview.summary.threads_to_create == ["Alpha", "Bravo", "Charlie"]
    assert preview.summary.team_changes[0] == "Added Ann and Ben to Alpha."


def test_place_registration_picks_least_filled_team(seed_store) -> None:
    store = seed_store(
        races=[_race(teams_assigned=True)],
        registrations=[
            _registration("r1", "Ann", 0, team_id="t1"),
            _registration("r2", "Ben", 1, team_id="t1"),
            _registration("r3", "Cat", 2, team_id="t2"),
            _registration("r4", "Dan", 3),
        ],
        teams=[{"id": "t1", "name": "Alpha"}, {"id": "t2", "name": "Bravo"}, {"id": "t3", "name": "Charlie"}],
    )

    result = asyncio.run(_service(store).place_registration("r4", ADMIN))

    assert result.updates == [RegistrationUpdate(registration_id="r4", team_id="t2")]
    assert _teams_by_registration(store)["r4"] == "t2"


def test_place_registration_grows_a_full_pool(seed_store) -> None:
    store = seed_store(
        races=[_race(teams_assigned=True)],
        registrations=[
            _registration("r1", "Ann", 0, team_id="t1"),
            _registration("r2", "Ben", 1, team_id="t1"),
            _registration("r3", "Cat", 2),
        ],
        teams=[{"id": "t1", "name": "Alpha"}, {"id": "t2", "name": "Bravo"}, {"id": "t3", "name": "Charlie"}],
    )

    result = asyncio.run(_service(store).place_registration("r3", ADMIN))

    assert result.updates == [RegistrationUpdate(registration_id="r3", team_id="t2")]
    seats = _teams_by_registration(store)
    assert seats == {"r1": "t1", "r2": "t1", "r3": "t2"}
    assert max(list(seats.values()).count(team_id) for team_id in ("t1", "t2", "t3")) <= 2


def test_second_race_of_an_event_reuses_the_event_thread(seed_store) -> None:
    race_two_entry = _registration("r9", "Zoe", 0, team_id="t1")
    race_two_entry["race_id"] = "race-2"
    store = seed_store(
        races=[
            _race(teams_assigned=True, event_thread_id="ev-thread"),
            _race(id="race-2", teams_assigned=True, start_time="2026-03-02T12:00:00Z", end_time="2026-03-02T14:00:00Z"),
        ],
        registrations=[race_two_entry],
        teams=[{"id": "t1", "name": "Alpha"}],
    )
    chat = FakeChat(existing=["ev-thread"])

    result = asyncio.run(_service(store, chat).notify_race_changes("race-2"))

    assert result.status == "sent"
    assert result.event_thread_id == "ev-thread"
    assert [call[2] for call in chat.actions("create")] == ["Alpha • Spa 6h"]
    races = {race["id"]: race for race in read_local(store)["races"]}
    assert races["race-1"]["event_thread_id"] == "ev-thread"
    assert races["race-2"]["event_thread_id"] == "ev-thread"


def test_malformed_chat_response_keeps_assignment(league) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    chat = DiscordClient(bot_token="token", transport=httpx.MockTransport(handler), retry_delay=0)

    result = asyncio.run(_service(league, chat).assign_teams("race-1", ADMIN))

    assert result.notification.status == "failed"
    assert "non-JSON" in result.notification.error
    assert _teams_by_registration(league)["r1"] == "t1"
    race = _race_row(league)
    assert race["teams_assigned"] is True
    assert race.get("team_snapshot") is None


def test_actor_role_reads_app_metadata_first() -> None:
    assert actor_role(ADMIN) == "ADMIN"
    assert actor_role({"app_metadata": {}, "user_metadata": {"role": "ADMIN"}}) == "ADMIN"
    assert actor_role(None) is None


def test_placeholder_names_continue_numbering() -> None:
    teams = [Team(id="a", name="Team 4"), Team(id="b", name="Rockets")]

    assert next_placeholder_names(teams, 2) == ["Team 5", "Team 6"]
