"""Discord REST client used for team and event threads.

Only the behaviour the reconciler depends on is exposed: existence checks,
thread creation, recent-message lookup, edit/post and thread membership. A
404 is always reported distinctly (``False`` / ``"not_found"``); rate limits,
5xx responses and transport errors are retried before giving up.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Literal, Optional

import httpx

from .errors import ChatServiceError


logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"
MAX_RETRIES = 3
RECENT_MESSAGE_LIMIT = 50
THREAD_NAME_MAXLEN = 100
PUBLIC_THREAD = 11
ARCHIVE_AFTER_MINUTES = 10080

MARKER_PATTERN = re.compile(r"ref:([\w:-]+)")

SendResult = Literal["ok", "not_found"]


@dataclass
class ChatMessage:
    id: str
    author_is_automation: bool
    type_marker: Optional[str]


def extract_type_marker(message: Dict[str, Any]) -> Optional[str]:
    texts: List[str] = []
    for embed in message.get("embeds") or []:
        if isinstance(embed, dict):
            footer = embed.get("footer")
            if isinstance(footer, dict) and isinstance(footer.get("text"), str):
                texts.append(footer["text"])
    if isinstance(message.get("content"), str):
        texts.append(message["content"])
    for text in texts:
        match = MARKER_PATTERN.search(text)
        if match:
            return match.group(1)
    return None


class DiscordClient:
    def __init__(
        self,
        bot_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_delay: float = 0.5,
        base_url: str = DISCORD_API_BASE,
    ) -> None:
        self.bot_token = bot_token if bot_token is not None else os.getenv("DISCORD_BOT_TOKEN", "")
        self.base_url = base_url.rstrip("/")
        self.retry_delay = retry_delay
        self._transport = transport
        self._bot_user_id: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.bot_token)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=10.0,
            transport=self._transport,
            headers={"Authorization": f"Bot {self.bot_token}"},
        )

    async def _request(self, client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send with retries; returns the last response, whatever its status."""

        attempt = 0
        while True:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.TransportError as exc:
                if attempt >= MAX_RETRIES:
                    raise ChatServiceError(f"{method} {path} failed: {exc}") from exc
                logger.debug("Retrying %s %s after transport error: %s", method, path, exc)
            except httpx.HTTPError as exc:
                raise ChatServiceError(f"{method} {path} failed: {exc}") from exc
            else:
                if response.status_code != 429 and response.status_code < 500:
                    return response
                if attempt >= MAX_RETRIES:
                    return response
                logger.debug("Retrying %s %s after HTTP %s", method, path, response.status_code)
            await asyncio.sleep(self.retry_delay * (2**attempt))
            attempt += 1

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ChatServiceError(
                f"{operation} returned a non-JSON body ({response.status_code})", response.status_code
            ) from exc

    @staticmethod
    def _failure(message: str, response: httpx.Response) -> ChatServiceError:
        detail = (response.text or "").strip()
        suffix = f" - {detail}" if detail else ""
        return ChatServiceError(f"{message}: {response.status_code} {response.reason_phrase}{suffix}", response.status_code)

    async def resource_exists(self, handle: str) -> bool:
        """Only a definitive 404 counts as missing."""

        try:
            async with self._client() as client:
                response = await self._request(client, "GET", f"/channels/{handle}")
        except ChatServiceError as exc:
            logger.warning("Existence check for thread %s failed (%s); assuming it exists", handle, exc)
            return True
        if response.status_code == 404:
            return False
        if response.is_success:
            return True
        logger.warning(
            "Existence check for thread %s returned %s; assuming it exists",
            handle,
            response.status_code,
        )
        return True

    async def create_resource(
        self,
        parent_id: str,
        title: str,
        initial_content: Dict[str, Any],
        forum: bool = False,
    ) -> str:
        body: Dict[str, Any] = {
            "name": title[:THREAD_NAME_MAXLEN],
            "auto_archive_duration": ARCHIVE_AFTER_MINUTES,
        }
        if forum:
            body["message"] = initial_content
        else:
            body["type"] = PUBLIC_THREAD

        async with self._client() as client:
            response = await self._request(client, "POST", f"/channels/{parent_id}/threads", json=body)
            if not response.is_success:
                raise self._failure(f"Failed to create thread in {parent_id}", response)
            created = self._json(response, f"Thread creation in {parent_id}")
            handle = str(created.get("id") or "") if isinstance(created, dict) else ""
            if not handle:
                raise ChatServiceError(f"Thread creation in {parent_id} returned no id")
            if not forum:
                posted = await self._request(client, "POST", f"/channels/{handle}/messages", json=initial_content)
                if not posted.is_success:
                    raise self._failure(f"Failed to post opening message in thread {handle}", posted)
        logger.info("Created thread %s (%s) in %s", handle, title, parent_id)
        return handle

    async def bot_user_id(self) -> str:
        if self._bot_user_id:
            return self._bot_user_id
        async with self._client() as client:
            response = await self._request(client, "GET", "/users/@me")
        if not response.is_success:
            raise self._failure("Failed to get bot user ID", response)
        user = self._json(response, "Bot user lookup")
        self._bot_user_id = str(user.get("id") or "") if isinstance(user, dict) else ""
        return self._bot_user_id

    async def list_recent_messages(self, handle: str, limit: int = RECENT_MESSAGE_LIMIT) -> List[ChatMessage]:
        bot_id = await self.bot_user_id()
        async with self._client() as client:
            response = await self._request(client, "GET", f"/channels/{handle}/messages", params={"limit": limit})
        if not response.is_success:
            raise self._failure(f"Failed to fetch messages from thread {handle}", response)

        payload = self._json(response, f"Message listing for thread {handle}")
        if not isinstance(payload, list):
            logger.warning("Thread %s returned unexpected messages payload: %s", handle, type(payload))
            return []

        messages: List[ChatMessage] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            author = item.get("author") if isinstance(item.get("author"), dict) else {}
            messages.append(
                ChatMessage(
                    id=str(item.get("id") or ""),
                    author_is_automation=bool(bot_id) and str(author.get("id") or "") == bot_id,
                    type_marker=extract_type_marker(item),
                )
            )
        return messages

    async def edit_message(self, handle: str, message_id: str, content: Dict[str, Any]) -> SendResult:
        async with self._client() as client:
            response = await self._request(
                client, "PATCH", f"/channels/{handle}/messages/{message_id}", json=content
            )
        if response.status_code == 404:
            return "not_found"
        if not response.is_success:
            raise self._failure(f"Failed to edit message {message_id} in thread {handle}", response)
        return "ok"

    async def post_message(self, handle: str, content: Dict[str, Any]) -> SendResult:
        async with self._client() as client:
            response = await self._request(client, "POST", f"/channels/{handle}/messages", json=content)
        if response.status_code == 404:
            logger.warning("Failed to create message in thread %s: thread not found", handle)
            return "not_found"
        if not response.is_success:
            raise self._failure(f"Failed to create message in thread {handle}", response)
        return "ok"

    async def add_participants(self, handle: str, participant_ids: Iterable[Optional[str]]) -> None:
        unique: List[str] = []
        for participant in participant_ids:
            if participant and participant not in unique:
                unique.append(participant)
        if not unique:
            return

        async with self._client() as client:
            for user_id in unique:
                try:
                    response = await self._request(client, "PUT", f"/channels/{handle}/thread-members/{user_id}")
                except ChatServiceError as exc:
                    logger.error("Failed to add user %s to thread %s: %s", user_id, handle, exc)
                    continue
                if response.is_success or response.status_code == 409:
                    continue
                logger.error(
                    "Failed to add user %s to thread %s: %s %s",
                    user_id,
                    handle,
                    response.status_code,
                    (response.text or "").strip(),
                )
