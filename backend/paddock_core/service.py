"""Admin-facing orchestration of team assignment and chat notifications.

Every mutating entry point validates its input and the acting user before any
state is read, commits its writes through a single
``DataStore.apply_registration_changes`` call, and only then runs the
best-effort notification cycle. Chat failures are logged and reported in the
result; they never undo a committed assignment.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Set

from .allocator import TeamPoolAllocator, compute_team_shortfall, validate_capacity
from .assignment import plan_race_assignments
from .chat import DiscordClient
from .differ import build_change_details
from .errors import (
    AuthorizationError,
    InputError,
    NotFoundError,
    TeamClassConflictError,
    TeamLockedError,
)
from .loader import DataStore
from .messages import (
    STATUS_MARKER,
    build_discord_web_link,
    build_roster_change_payload,
    build_status_payload,
    build_team_rosters,
    build_team_thread_payload,
)
from .models import STRATEGIES, ChangeDetail, Race, Registration, RegistrationUpdate, Team
from .ratings import resolve_capacity
from .reconciler import ThreadReconciler, ThreadSpec, affected_team_ids
from .snapshot import build_snapshot, change_records, load_snapshot, snapshot_to_json
from .summary import ChangeSummary, build_change_summary, compute_mention_registration_ids, roster_changes_from_details


logger = logging.getLogger(__name__)

ADMIN_ROLE = "ADMIN"
PLACEHOLDER_TEAM_PATTERN = re.compile(r"^Team (\d+)$")

NotificationStatus = Literal["skipped", "unchanged", "sent", "failed"]


@dataclass
class NotificationResult:
    race_id: str
    status: NotificationStatus
    event_thread_id: Optional[str] = None
    created_threads: List[str] = field(default_factory=list)
    status_action: Optional[str] = None
    delivered: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ChangeResult:
    race_id: str
    updates: List[RegistrationUpdate] = field(default_factory=list)
    details: List[ChangeDetail] = field(default_factory=list)
    created_teams: List[Team] = field(default_factory=list)
    notification: Optional[NotificationResult] = None


@dataclass
class ChangePreview:
    race_id: str
    details: List[ChangeDetail]
    summary: ChangeSummary
    first_notification: bool


def actor_role(actor: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not isinstance(actor, Mapping):
        return None
    for key in ("app_metadata", "user_metadata"):
        metadata = actor.get(key)
        if isinstance(metadata, Mapping) and metadata.get("role"):
            return str(metadata["role"])
    role = actor.get("role")
    return str(role) if role else None


def actor_name(actor: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not isinstance(actor, Mapping):
        return None
    metadata = actor.get("user_metadata")
    if isinstance(metadata, Mapping):
        for key in ("full_name", "name", "user_name"):
            if metadata.get(key):
                return str(metadata[key])
    return str(actor["email"]) if actor.get("email") else None


def next_placeholder_names(teams: Sequence[Team], count: int) -> List[str]:
    """``count`` unused names of the form ``Team N``, continuing the highest N."""

    highest = 0
    for team in teams:
        match = PLACEHOLDER_TEAM_PATTERN.match(team.name.strip())
        if match:
            highest = max(highest, int(match.group(1)))
    return [f"Team {highest + offset}" for offset in range(1, count + 1)]


def _require(value: Optional[str], label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise InputError(f"{label} is required")
    return cleaned


class TeamAssignmentService:
    def __init__(
        self,
        store: DataStore,
        chat: Optional[DiscordClient] = None,
        app_title: Optional[str] = None,
        guild_id: Optional[str] = None,
        notifications_channel_id: Optional[str] = None,
        events_forum_id: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self.store = store
        self.chat = chat
        self.app_title = app_title or os.getenv("APP_TITLE", "Paddock League")
        self.guild_id = guild_id if guild_id is not None else os.getenv("DISCORD_GUILD_ID", "")
        self.notifications_channel_id = (
            notifications_channel_id
            if notifications_channel_id is not None
            else os.getenv("DISCORD_NOTIFICATIONS_CHANNEL_ID", "")
        )
        self.events_forum_id = events_forum_id if events_forum_id is not None else os.getenv("DISCORD_EVENTS_FORUM_ID", "")
        self.base_url = (base_url if base_url is not None else os.getenv("APP_BASE_URL", "")).rstrip("/")
        self.allocator = TeamPoolAllocator(store)
        self.reconciler = ThreadReconciler(chat, store) if chat is not None else None

    @staticmethod
    def ensure_admin(actor: Optional[Mapping[str, Any]]) -> None:
        if actor_role(actor) != ADMIN_ROLE:
            raise AuthorizationError("Unauthorized")

    # ---- team assignment -----------------------------------------------------------

    async def assign_teams(
        self,
        race_id: str,
        actor: Optional[Mapping[str, Any]],
        strategy: Optional[str] = None,
        max_drivers: Optional[int] = None,
        create_missing_teams: bool = True,
        notify: bool = True,
    ) -> ChangeResult:
        self.ensure_admin(actor)
        race_id = _require(race_id, "Race id")
        validate_capacity(max_drivers)
        if strategy is not None and strategy not in STRATEGIES:
            raise InputError(f"Unknown team assignment strategy '{strategy}'")

        race, registrations, teams = await asyncio.gather(
            self.store.fetch_race(race_id),
            self.store.fetch_registrations(race_id),
            self.store.fetch_teams(),
        )
        capacity = resolve_capacity(race, max_drivers)
        chosen_strategy = strategy or race.strategy

        created: List[Team] = []
        if create_missing_teams:
            shortfall = compute_team_shortfall(registrations, teams, capacity)
            for name in next_placeholder_names(teams, shortfall):
                created.append(await self.store.create_team(name))
            if created:
                logger.info("Created %s placeholder team(s) for race %s", len(created), race_id)
                teams = [*teams, *created]

        plan = plan_race_assignments(registrations, teams, capacity, strategy=chosen_strategy)
        race_fields: Dict[str, Any] = {}
        if not race.teams_assigned:
            race_fields["teams_assigned"] = True
        if chosen_strategy != race.strategy:
            race_fields["team_assignment_strategy"] = chosen_strategy
        if max_drivers is not None and max_drivers != race.max_drivers_per_team:
            race_fields["max_drivers_per_team"] = max_drivers
        await self.store.apply_registration_changes(race_id, plan.updates, race_fields=race_fields)

        after = self._apply_updates(registrations, plan.updates)
        result = ChangeResult(
            race_id=race_id,
            updates=plan.updates,
            details=self._diff(registrations, after, teams),
            created_teams=created,
        )
        if notify:
            result.notification = await self._notify_after_commit(race_id, actor)
        return result

    async def place_registration(
        self,
        registration_id: str,
        actor: Optional[Mapping[str, Any]],
        notify: bool = True,
    ) -> ChangeResult:
        """Seat one registration in its class's team pool.

        The pool is sized with the registration counted, so a class that
        exactly fills its teams grows by one team. Picks the least-filled team
        under capacity, or the first team when the pool cannot grow.
        """

        self.ensure_admin(actor)
        registration = await self.store.fetch_registration(_require(registration_id, "Registration id"))
        race = await self.store.fetch_race(registration.race_id)
        capacity = resolve_capacity(race)
        pool = await self.allocator.allocate(race.id, registration.car_class_id, capacity)
        if not pool:
            logger.debug("No team pool for registration %s; leaving it unassigned", registration.id)
            return ChangeResult(race_id=race.id)

        registrations, teams = await asyncio.gather(
            self.store.fetch_registrations(race.id),
            self.store.fetch_teams(),
        )
        counts = {team_id: 0 for team_id in pool}
        for reg in registrations:
            if reg.id != registration.id and reg.team_id in counts:
                counts[reg.team_id] += 1
        open_teams = [team_id for team_id in pool if capacity is None or counts[team_id] < capacity]
        target = min(open_teams, key=lambda team_id: counts[team_id]) if open_teams else pool[0]
        if target == registration.team_id:
            return ChangeResult(race_id=race.id)

        update = RegistrationUpdate(registration_id=registration.id, team_id=target)
        await self.store.apply_registration_changes(race.id, [update])
        result = ChangeResult(
            race_id=race.id,
            updates=[update],
            details=self._diff(registrations, self._apply_updates(registrations, [update]), teams),
        )
        if notify and race.teams_assigned:
            result.notification = await self._notify_after_commit(race.id, actor)
        return result

    # ---- admin edits ---------------------------------------------------------------

    async def assign_registration_to_team(
        self,
        registration_id: str,
        team_id: Optional[str],
        actor: Optional[Mapping[str, Any]],
        notify: bool = True,
    ) -> ChangeResult:
        self.ensure_admin(actor)
        registration_id = _require(registration_id, "Registration id")
        if team_id is not None:
            team_id = _require(team_id, "Team id")

        registration = await self.store.fetch_registration(registration_id)
        race, registrations, teams = await asyncio.gather(
            self.store.fetch_race(registration.race_id),
            self.store.fetch_registrations(registration.race_id),
            self.store.fetch_teams(),
        )
        if team_id is not None:
            if team_id not in {team.id for team in teams}:
                raise NotFoundError("Team not found")
            conflict = next(
                (
                    reg
                    for reg in registrations
                    if reg.team_id == team_id and reg.id != registration_id and reg.car_class_id != registration.car_class_id
                ),
                None,
            )
            if conflict is not None:
                raise TeamClassConflictError(
                    f"Team Class Conflict: This team is already running the {conflict.car_class_name} class "
                    "in this race. All team members must use the same car class."
                )

        if team_id == registration.team_id:
            return ChangeResult(race_id=race.id)

        update = RegistrationUpdate(registration_id=registration_id, team_id=team_id)
        await self.store.apply_registration_changes(race.id, [update])
        result = ChangeResult(
            race_id=race.id,
            updates=[update],
            details=self._diff(registrations, self._apply_updates(registrations, [update]), teams),
        )
        if notify and race.teams_assigned:
            result.notification = await self._notify_after_commit(race.id, actor)
        return result

    async def save_registration_changes(
        self,
        race_id: str,
        actor: Optional[Mapping[str, Any]],
        updates: Sequence[RegistrationUpdate] = (),
        deletes: Sequence[str] = (),
        team_renames: Optional[Mapping[str, str]] = None,
        notify: bool = True,
    ) -> ChangeResult:
        """Validate and commit one admin save of a race roster as a single transaction.

        Raises ``TeamClassConflictError`` when a team would carry two classes
        and ``TeamLockedError`` when a team with a thread would be renamed or
        change class; nothing is written in either case.
        """

        self.ensure_admin(actor)
        race_id = _require(race_id, "Race id")
        for update in updates:
            _require(update.registration_id, "Registration id")
        delete_ids = {_require(reg_id, "Registration id") for reg_id in deletes}
        renames = {_require(team_id, "Team id"): _require(name, "Team name") for team_id, name in (team_renames or {}).items()}

        race, registrations, teams, car_classes = await asyncio.gather(
            self.store.fetch_race(race_id),
            self.store.fetch_registrations(race_id),
            self.store.fetch_teams(),
            self.store.fetch_car_classes(),
        )
        by_id = {reg.id: reg for reg in registrations}
        team_names = {team.id: team.name for team in teams}
        class_names = {car_class.id: car_class.name for car_class in car_classes}

        for reg_id in [update.registration_id for update in updates] + sorted(delete_ids):
            if reg_id not in by_id:
                raise NotFoundError(f"Registration {reg_id} not found")
        for update in updates:
            if update.team_id is not None and update.team_id not in team_names:
                raise NotFoundError(f"Team {update.team_id} not found")
            if update.car_class_id is not None and update.car_class_id not in class_names:
                raise NotFoundError(f"Car class {update.car_class_id} not found")
        for team_id in renames:
            if team_id not in team_names:
                raise NotFoundError(f"Team {team_id} not found")

        effective = [
            update
            for update in updates
            if update.registration_id not in delete_ids
            and (
                update.team_id != by_id[update.registration_id].team_id
                or (update.car_class_id is not None and update.car_class_id != by_id[update.registration_id].car_class_id)
            )
        ]
        renames = {team_id: name for team_id, name in renames.items() if team_names[team_id] != name}

        after = [reg for reg in self._apply_updates(registrations, effective, class_names) if reg.id not in delete_ids]
        self._check_class_isolation(after, team_names)
        await self._check_locked_teams(race, registrations, after, renames, team_names)

        await self.store.apply_registration_changes(race_id, effective, deletes=sorted(delete_ids), team_renames=renames)

        renamed = [Team(id=team.id, name=renames.get(team.id, team.name)) for team in teams]
        result = ChangeResult(race_id=race_id, updates=effective, details=self._diff(registrations, after, teams, renamed))
        if notify and race.teams_assigned:
            result.notification = await self._notify_after_commit(race_id, actor)
        return result

    async def rename_team(self, team_id: str, name: str, actor: Optional[Mapping[str, Any]]) -> Team:
        self.ensure_admin(actor)
        team_id = _require(team_id, "Team id")
        cleaned = _require(name, "Team name")
        if await self.store.team_has_thread(team_id):
            raise TeamLockedError("Team has an active Discord thread and cannot be renamed")
        return await self.store.rename_team(team_id, cleaned)

    @staticmethod
    def _check_class_isolation(registrations: Sequence[Registration], team_names: Mapping[str, str]) -> None:
        classes: Dict[str, Dict[str, str]] = {}
        for reg in registrations:
            if reg.team_id is not None:
                classes.setdefault(reg.team_id, {})[reg.car_class_id] = reg.car_class_name
        for team_id, team_classes in sorted(classes.items()):
            if len(team_classes) > 1:
                labels = ", ".join(sorted(team_classes.values()))
                raise TeamClassConflictError(
                    f"Team Class Conflict: {team_names.get(team_id, 'Team')} would run more than one car class "
                    f"({labels}). All team members must use the same car class."
                )

    async def _check_locked_teams(
        self,
        race: Race,
        before: Sequence[Registration],
        after: Sequence[Registration],
        renames: Mapping[str, str],
        team_names: Mapping[str, str],
    ) -> None:
        for team_id in sorted(renames):
            if race.thread_map.get(team_id) or await self.store.team_has_thread(team_id):
                raise TeamLockedError(
                    f"{team_names[team_id]} has an active Discord thread and cannot be renamed"
                )

        def team_classes(registrations: Sequence[Registration]) -> Dict[str, Set[str]]:
            classes: Dict[str, Set[str]] = {}
            for reg in registrations:
                if reg.team_id is not None:
                    classes.setdefault(reg.team_id, set()).add(reg.car_class_id)
            return classes

        old_classes = team_classes(before)
        new_classes = team_classes(after)
        for team_id, handle in sorted(race.thread_map.items()):
            if not handle:
                continue
            old, new = old_classes.get(team_id), new_classes.get(team_id)
            if old and new and old != new:
                raise TeamLockedError(
                    f"{team_names.get(team_id, 'Team')} has an active Discord thread and cannot change car class"
                )

    # ---- diffs and notifications ---------------------------------------------------

    @staticmethod
    def _apply_updates(
        registrations: Sequence[Registration],
        updates: Sequence[RegistrationUpdate],
        class_names: Optional[Mapping[str, str]] = None,
    ) -> List[Registration]:
        by_id = {update.registration_id: update for update in updates}
        result: List[Registration] = []
        for reg in registrations:
            update = by_id.get(reg.id)
            if update is None:
                result.append(reg)
                continue
            car_class_id = update.car_class_id or reg.car_class_id
            result.append(
                replace(
                    reg,
                    team_id=update.team_id,
                    car_class_id=car_class_id,
                    car_class_name=(class_names or {}).get(car_class_id, reg.car_class_name),
                )
            )
        return result

    @staticmethod
    def _diff(
        before: Sequence[Registration],
        after: Sequence[Registration],
        teams: Sequence[Team],
        teams_after: Optional[Sequence[Team]] = None,
    ) -> List[ChangeDetail]:
        old_names = {team.id: team.name for team in teams}
        new_names = {team.id: team.name for team in (teams_after if teams_after is not None else teams)}
        return build_change_details(
            change_records(build_snapshot(before, old_names)),
            change_records(build_snapshot(after, new_names)),
            new_names,
        )

    async def _notify_after_commit(self, race_id: str, actor: Optional[Mapping[str, Any]]) -> NotificationResult:
        try:
            return await self.notify_race_changes(race_id, admin_name=actor_name(actor))
        except Exception as exc:
            logger.exception("Notification for race %s failed after commit", race_id)
            return NotificationResult(race_id=race_id, status="failed", error=str(exc))

    async def preview_changes(self, race_id: str, actor: Optional[Mapping[str, Any]]) -> ChangePreview:
        """What the next notification cycle would report."""

        self.ensure_admin(actor)
        race_id = _require(race_id, "Race id")
        race, registrations, teams = await asyncio.gather(
            self.store.fetch_race(race_id),
            self.store.fetch_registrations(race_id),
            self.store.fetch_teams(),
        )
        names = {team.id: team.name for team in teams}
        previous = load_snapshot(race.snapshot, registrations)
        pending = change_records(build_snapshot(registrations, names))
        original = change_records(previous) if previous is not None else []
        details = build_change_details(original, pending, names)
        summary = build_change_summary(original, pending, race.thread_map, names)
        return ChangePreview(race_id=race_id, details=details, summary=summary, first_notification=previous is None)

    def _race_url(self, race: Race) -> Optional[str]:
        return f"{self.base_url}/events?eventId={race.event_id}" if self.base_url else None

    def _thread_url(self, handle: Optional[str]) -> Optional[str]:
        return build_discord_web_link(self.guild_id, handle) if self.guild_id and handle else None

    async def notify_race_changes(self, race_id: str, admin_name: Optional[str] = None) -> NotificationResult:
        """Run one reconciliation cycle for a race.

        The stored snapshot is replaced only when every chat step succeeded;
        thread handles created along the way are persisted regardless.
        """

        if self.reconciler is None or self.chat is None or not self.chat.configured:
            logger.debug("Chat notifications not configured; skipping race %s", race_id)
            return NotificationResult(race_id=race_id, status="skipped")
        parent_id = self.events_forum_id or self.notifications_channel_id
        if not (parent_id and self.notifications_channel_id):
            logger.warning("Discord channel ids are not configured; skipping race %s", race_id)
            return NotificationResult(race_id=race_id, status="skipped")

        race, registrations, teams = await asyncio.gather(
            self.store.fetch_race(race_id),
            self.store.fetch_registrations(race_id),
            self.store.fetch_teams(),
        )
        if not race.teams_assigned:
            logger.debug("Teams not assigned for race %s; nothing to announce", race_id)
            return NotificationResult(race_id=race_id, status="skipped")

        event_thread_id = race.event_thread_id
        if event_thread_id is None and race.event_id:
            siblings = await self.store.fetch_event_races(race.event_id)
            event_thread_id = next((other.event_thread_id for other in siblings if other.event_thread_id), None)

        names = {team.id: team.name for team in teams}
        previous = load_snapshot(race.snapshot, registrations)
        current = build_snapshot(registrations, names)
        details: List[ChangeDetail] = []
        if previous is not None:
            details = build_change_details(change_records(previous), change_records(current), names)
            teams_with_threads = all(race.thread_map.get(reg.team_id) for reg in registrations if reg.team_id)
            if not details and race.event_thread_id and teams_with_threads:
                return NotificationResult(race_id=race_id, status="unchanged", event_thread_id=race.event_thread_id)

        chat_ids = {reg.id: reg.discord_id for reg in registrations}
        mention_ids = [
            chat_ids[reg_id]
            for reg_id in compute_mention_registration_ids(previous, current, chat_ids)
            if chat_ids.get(reg_id)
        ]

        result = NotificationResult(race_id=race_id, status="sent", event_thread_id=event_thread_id)
        thread_map = dict(race.thread_map)
        try:
            await self._run_cycle(
                self.reconciler,
                race,
                event_thread_id,
                registrations,
                teams,
                thread_map,
                details,
                previous is None,
                mention_ids,
                admin_name,
                result,
            )
        except Exception as exc:
            logger.exception("Notification cycle for race %s failed", race_id)
            result.status = "failed"
            result.error = str(exc)
        finally:
            if thread_map != race.thread_map:
                await self.store.update_race_notification_state(race_id, thread_map=thread_map)

        if result.status == "sent":
            await self.store.update_race_notification_state(race_id, snapshot=snapshot_to_json(current))
        return result

    async def _run_cycle(
        self,
        reconciler: ThreadReconciler,
        race: Race,
        event_thread_id: Optional[str],
        registrations: Sequence[Registration],
        teams: Sequence[Team],
        thread_map: Dict[str, str],
        details: Sequence[ChangeDetail],
        first_cycle: bool,
        mention_ids: Sequence[str],
        admin_name: Optional[str],
        result: NotificationResult,
    ) -> None:
        rosters, unassigned = build_team_rosters(registrations, teams, thread_map, self.guild_id)
        status_payload = build_status_payload(
            race.event_name,
            race.start_time,
            rosters,
            unassigned,
            self.app_title,
            race_url=self._race_url(race),
            mention_discord_ids=mention_ids if first_cycle else (),
        )
        forum = bool(self.events_forum_id)
        event_spec = ThreadSpec(
            parent_id=self.events_forum_id or self.notifications_channel_id,
            title=race.event_name or "Race",
            initial_content=status_payload,
            event_id=race.event_id,
            forum=forum,
        )
        # Races of one event share the event thread; a race without one adopts its siblings'.
        event = await reconciler.ensure_thread(event_thread_id, event_spec)
        if event.created:
            result.created_threads.append(event.handle)
        if race.event_thread_id is None:
            await self.store.replace_thread_handle(race.event_id, None, event.handle)
        event_handle = event.handle
        result.event_thread_id = event_handle

        for roster in rosters:
            spec = ThreadSpec(
                parent_id=self.notifications_channel_id,
                title=f"{roster.name} • {race.event_name}",
                initial_content=build_team_thread_payload(
                    roster, race.event_name, race.start_time, self.app_title, self._thread_url(event_handle)
                ),
                event_id=race.event_id,
                participants=[member.discord_id for member in roster.members],
            )
            outcome = await reconciler.ensure_thread(thread_map.get(roster.team_id), spec)
            if outcome.created:
                thread_map[roster.team_id] = outcome.handle
                result.created_threads.append(outcome.handle)

        rosters, unassigned = build_team_rosters(registrations, teams, thread_map, self.guild_id)
        status_payload = build_status_payload(
            race.event_name,
            race.start_time,
            rosters,
            unassigned,
            self.app_title,
            race_url=self._race_url(race),
        )
        status = await reconciler.upsert_status_message(event_handle, event_spec, status_payload, STATUS_MARKER)
        result.status_action = status.action
        if status.handle != event_handle:
            result.created_threads.append(status.handle)
            event_handle = result.event_thread_id = status.handle

        if details:
            payload = build_roster_change_payload(
                roster_changes_from_details(details, [reg.id for reg in registrations]),
                self.app_title,
                admin_name=admin_name,
                mention_discord_ids=mention_ids,
            )
            handles = [event_handle] + [thread_map[team_id] for team_id in affected_team_ids(details, thread_map)]
            result.delivered = await reconciler.post_to_threads(handles, payload, skip=result.created_threads)
