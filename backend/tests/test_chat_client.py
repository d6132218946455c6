from __future__ import annotations

import asyncio
import json
from typing import Callable, List

import httpx
import pytest

from paddock_core.chat import DiscordClient, extract_type_marker
from paddock_core.errors import ChatServiceError
from paddock_core.messages import STATUS_MARKER, marker_footer


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> DiscordClient:
    return DiscordClient(bot_token="token", transport=httpx.MockTransport(handler), retry_delay=0)


def _path(request: httpx.Request) -> str:
    return request.url.path.replace("/api/v10", "", 1)


def test_resource_exists_distinguishes_not_found() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bot token"
        return httpx.Response(404 if _path(request) == "/channels/gone" else 200, json={})

    client = _client(handler)

    assert asyncio.run(client.resource_exists("gone")) is False
    assert asyncio.run(client.resource_exists("alive")) is True


def test_resource_exists_treats_failures_as_existing() -> None:
    calls: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(_path(request))
        return httpx.Response(503)

    assert asyncio.run(_client(handler).resource_exists("flaky")) is True
    assert len(calls) == 4


def test_transport_errors_are_retried_then_raised() -> None:
    calls: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(_path(request))
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)

    with pytest.raises(ChatServiceError):
        asyncio.run(client.post_message("thread", {"content": "hi"}))
    assert len(calls) == 4
    assert asyncio.run(client.resource_exists("thread")) is True


def test_rate_limit_is_retried() -> None:
    responses = [httpx.Response(429, json={"retry_after": 0}), httpx.Response(200, json={"id": "m1"})]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    assert asyncio.run(_client(handler).post_message("thread", {"content": "hi"})) == "ok"
    assert responses == []


def test_not_found_is_reported_without_retry() -> None:
    calls: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.method)
        return httpx.Response(404, json={"message": "Unknown Message"})

    client = _client(handler)

    assert asyncio.run(client.edit_message("thread", "m1", {"content": "x"})) == "not_found"
    assert asyncio.run(client.post_message("thread", {"content": "x"})) == "not_found"
    assert calls == ["PATCH", "POST"]


def test_client_errors_raise_with_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, text="Missing Access")

    with pytest.raises(ChatServiceError) as excinfo:
        asyncio.run(_client(handler).post_message("thread", {"content": "x"}))
    assert excinfo.value.status_code == 403
    assert "Missing Access" in str(excinfo.value)


def test_non_json_success_body_raises_chat_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(ChatServiceError, match="non-JSON"):
        asyncio.run(_client(handler).create_resource("channel", "Spa 6h", {"content": "x"}))


def test_list_recent_messages_flags_automation_and_markers() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if _path(request) == "/users/@me":
            return httpx.Response(200, json={"id": "bot"})
        assert request.url.params["limit"] == "50"
        return httpx.Response(
            200,
            json=[
                {"id": "m3", "author": {"id": "someone"}, "content": "nice"},
                {"id": "m2", "author": {"id": "bot"}, "embeds": [{"footer": marker_footer("League", STATUS_MARKER)}]},
                {"id": "m1", "author": {"id": "bot"}, "content": "plain"},
            ],
        )

    messages = asyncio.run(_client(handler).list_recent_messages("thread"))

    assert [(m.id, m.author_is_automation, m.type_marker) for m in messages] == [
        ("m3", False, None),
        ("m2", True, STATUS_MARKER),
        ("m1", True, None),
    ]


def test_create_text_channel_thread_posts_opening_message() -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if _path(request) == "/channels/parent/threads":
            return httpx.Response(201, json={"id": "new-thread"})
        return httpx.Response(200, json={"id": "m1"})

    handle = asyncio.run(_client(handler).create_resource("parent", "Spa 6h", {"content": "hello"}))

    assert handle == "new-thread"
    assert [_path(request) for request in requests] == ["/channels/parent/threads", "/channels/new-thread/messages"]
    body = json.loads(requests[0].content)
    assert body["type"] == 11
    assert json.loads(requests[1].content) == {"content": "hello"}


def test_create_forum_thread_carries_message() -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(201, json={"id": "forum-post"})

    handle = asyncio.run(_client(handler).create_resource("forum", "x" * 150, {"content": "hello"}, forum=True))

    assert handle == "forum-post"
    assert len(requests) == 1
    body = json.loads(requests[0].content)
    assert body["message"] == {"content": "hello"}
    assert len(body["name"]) == 100


def test_add_participants_dedupes_and_ignores_conflicts() -> None:
    paths: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(_path(request))
        return httpx.Response(409 if request.url.path.endswith("/u2") else 204)

    asyncio.run(_client(handler).add_participants("thread", ["u1", None, "", "u1", "u2"]))

    assert paths == ["/channels/thread/thread-members/u1", "/channels/thread/thread-members/u2"]


def test_extract_type_marker_reads_content_too() -> None:
    assert extract_type_marker({"content": "League • ref:roster-change"}) == "roster-change"
    assert extract_type_marker({"embeds": [{"footer": {"text": "no marker"}}]}) is None
