"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

API_URL = "https://api.test"

_ENV_NAMES = (
    "SPIKE_RELAY_API_URL",
    "SPIKE_RELAY_TOKEN",
    "SPIKE_RELAY_WORKSPACE_ID",
    "SPIKE_RELAY_HOME",
    "SPIKE_RELAY_REQUEST_TIMEOUT_SECONDS",
    "SPIKE_RELAY_IDLE_TIMEOUT_SECONDS",
    "SPIKE_RELAY_POLL_INTERVAL_SECONDS",
    "SPIKE_RELAY_POLL_MAX_ATTEMPTS",
    "SPIKE_RELAY_CONCURRENCY",
    "SPIKE_RELAY_STREAMING",
    "SPIKE_RELAY_DEBUG",
)

StreamReply = bytes | int | Callable[[], AsyncIterator[bytes]]


class FakeSpikeService:
    """Programmable stand-in for the remote API, served through httpx.MockTransport.

    Reply queues are consumed front to back; the last reply repeats once the
    queue is down to one entry. Integer replies become error responses and
    bytes replies are served verbatim as an application/json body.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.submit_replies: dict[str, dict[str, Any]] = {}
        self.status_replies: list[dict[str, Any] | int] = []
        self.create_replies: dict[str, list[dict[str, Any] | int | bytes]] = {}
        self.stream_replies: dict[str, list[StreamReply]] = {}
        self.prompt_replies: dict[str, Any] = {"prompts": []}

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def requests_to(self, prefix: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path.startswith(prefix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/add":
            url = request.url.params.get("url", "")
            return httpx.Response(200, json=self.submit_replies.get(url, {"id": "job-1"}))
        if path == "/v1/prompts":
            return httpx.Response(200, json=self.prompt_replies)
        if path.startswith("/v1/status/"):
            return _json_or_error(_next(self.status_replies))
        if path.startswith("/spikes/stream/"):
            handle = path.removeprefix("/spikes/stream/")
            reply = _next(self.stream_replies.get(handle, []))
            if isinstance(reply, int):
                return httpx.Response(reply, text="stream unavailable")
            content = reply if isinstance(reply, bytes) else reply()
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=content,
            )
        if path.startswith("/spikes/") and request.method == "POST":
            body = json.loads(request.content)
            return _json_or_error(_next(self.create_replies.get(body["promptId"], [])))
        return httpx.Response(404, json={"message": f"unknown path {path}"})


def _next(queue: list[Any]) -> Any:
    if not queue:
        return 404
    if len(queue) == 1:
        return queue[0]
    return queue.pop(0)


def _json_or_error(reply: dict[str, Any] | int | bytes) -> httpx.Response:
    if isinstance(reply, int):
        return httpx.Response(reply, json={"message": "service failure"})
    if isinstance(reply, bytes):
        return httpx.Response(200, headers={"content-type": "application/json"}, content=reply)
    return httpx.Response(200, json=reply)


def sse(*events: dict[str, str]) -> bytes:
    """Encode events as text/event-stream frames."""

    frames: list[str] = []
    for event in events:
        lines = [f"{name}: {value}" for name, value in event.items() if name != "data"]
        lines.extend(f"data: {line}" for line in event.get("data", "").split("\n"))
        frames.append("\n".join(lines) + "\n\n")
    return "".join(frames).encode("utf-8")


@pytest.fixture()
def spike_service() -> FakeSpikeService:
    return FakeSpikeService()


@pytest.fixture()
def spike_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolated home dir with a token and test API URL in the environment."""

    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    home = tmp_path / "home"
    monkeypatch.setenv("SPIKE_RELAY_HOME", str(home))
    monkeypatch.setenv("SPIKE_RELAY_API_URL", API_URL)
    monkeypatch.setenv("SPIKE_RELAY_TOKEN", "test-token")
    monkeypatch.setenv("SPIKE_RELAY_POLL_INTERVAL_SECONDS", "0")
    return home


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def encode_sse() -> Callable[..., bytes]:
    return sse
