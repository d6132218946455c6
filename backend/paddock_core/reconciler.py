from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence

from .errors import ChatServiceError

if TYPE_CHECKING:  # pragma: no cover
    from .chat import DiscordClient
    from .loader import DataStore


logger = logging.getLogger(__name__)

StatusAction = Literal["edited", "posted", "recreated"]


@dataclass
class ThreadSpec:
    """Everything needed to (re)create a thread."""

    parent_id: str
    title: str
    initial_content: Dict[str, Any]
    event_id: str
    forum: bool = False
    participants: Sequence[Optional[str]] = field(default_factory=list)


@dataclass
class ThreadOutcome:
    handle: str
    created: bool
    replaced_handle: Optional[str] = None


@dataclass
class StatusOutcome:
    handle: str
    action: StatusAction


class ThreadReconciler:
    """Keeps stored thread handles and status messages in step with the chat service."""

    def __init__(self, chat: "DiscordClient", store: "DataStore") -> None:
        self.chat = chat
        self.store = store

    async def ensure_thread(self, handle: Optional[str], spec: ThreadSpec) -> ThreadOutcome:
        if handle and await self.chat.resource_exists(handle):
            await self.chat.add_participants(handle, spec.participants)
            return ThreadOutcome(handle=handle, created=False)
        return await self._recreate(handle, spec, spec.initial_content)

    async def _recreate(self, handle: Optional[str], spec: ThreadSpec, content: Dict[str, Any]) -> ThreadOutcome:
        new_handle = await self.chat.create_resource(spec.parent_id, spec.title, content, forum=spec.forum)
        if handle:
            logger.info("Thread %s is gone; replaced with %s", handle, new_handle)
            await self.store.replace_thread_handle(spec.event_id, handle, new_handle)
        await self.chat.add_participants(new_handle, spec.participants)
        return ThreadOutcome(handle=new_handle, created=True, replaced_handle=handle)

    async def upsert_status_message(
        self,
        handle: str,
        spec: ThreadSpec,
        content: Dict[str, Any],
        marker: str,
    ) -> StatusOutcome:
        """Edit the previous status message carrying ``marker``, or post one.

        A thread that disappeared in the meantime is recreated with
        ``content`` as its opening message and the new handle propagated.
        """

        try:
            messages = await self.chat.list_recent_messages(handle)
        except ChatServiceError as exc:
            if exc.status_code != 404:
                raise
            outcome = await self._recreate(handle, spec, content)
            return StatusOutcome(handle=outcome.handle, action="recreated")

        existing = next(
            (message for message in messages if message.author_is_automation and message.type_marker == marker),
            None,
        )
        if existing is not None:
            if await self.chat.edit_message(handle, existing.id, content) == "ok":
                return StatusOutcome(handle=handle, action="edited")
            logger.info("Status message %s in thread %s vanished", existing.id, handle)
            if not await self.chat.resource_exists(handle):
                outcome = await self._recreate(handle, spec, content)
                return StatusOutcome(handle=outcome.handle, action="recreated")

        if await self.chat.post_message(handle, content) == "ok":
            return StatusOutcome(handle=handle, action="posted")
        outcome = await self._recreate(handle, spec, content)
        return StatusOutcome(handle=outcome.handle, action="recreated")

    async def post_to_threads(
        self,
        handles: Iterable[Optional[str]],
        content: Dict[str, Any],
        skip: Iterable[str] = (),
    ) -> List[str]:
        """Best-effort post to several threads; returns the handles that accepted it."""

        skipped = set(skip)
        delivered: List[str] = []
        seen: set[str] = set()
        for handle in handles:
            if not handle or handle in skipped or handle in seen:
                continue
            seen.add(handle)
            try:
                result = await self.chat.post_message(handle, content)
            except ChatServiceError:
                logger.exception("Failed to post roster changes to thread %s", handle)
                continue
            if result == "ok":
                delivered.append(handle)
            else:
                logger.warning("Thread %s missing while posting roster changes", handle)
        return delivered


def affected_team_ids(details: Iterable[Any], thread_map: Mapping[str, str]) -> List[str]:
    """Teams touched by a change that already have a thread."""

    teams: set[str] = set()
    for detail in details:
        for team_id in (detail.from_team_id, detail.to_team_id):
            if team_id is not None and thread_map.get(team_id):
                teams.add(team_id)
    return sorted(teams)
