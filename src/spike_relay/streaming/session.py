"""Stream session: idle watchdog, cancellation, and event-to-text accumulation."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from spike_relay.errors import (
    IdleTimeout,
    MalformedEvent,
    StreamCancelled,
    StreamError,
    TransportError,
)
from spike_relay.fields import pick_text
from spike_relay.http.client import ApiClient
from spike_relay.streaming.decoder import StreamEvent
from spike_relay.streaming.reader import COMPLETE_EVENT, iter_events

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT_SECONDS = 30.0
DONE_SENTINEL = "[DONE]"

COMPLETE_TEXT_KEYS = ("data", "content", "markdown")
CHUNK_TEXT_KEYS = ("text", "content", "chunk", "delta")
DONE_TEXT_KEYS = ("content", "text")

_INCREMENTAL_EVENTS = frozenset({"chunk", "delta", ""})
_TERMINAL_EVENTS = frozenset({"done", "end"})


@dataclass(slots=True)
class SessionResult:
    """Outcome of one session run, also attached to failures as partial output."""

    last_event_id: str | None
    content: str


class StreamSink(Protocol):
    """Receives live output while a session runs."""

    def on_event(self, event: StreamEvent) -> None: ...

    def on_text(self, text: str) -> None: ...

    def on_replace(self, content: str) -> None: ...

    def on_error(self, message: str) -> None: ...


class NullSink:
    """Sink that drops everything; content is still accumulated."""

    def on_event(self, event: StreamEvent) -> None:
        pass

    def on_text(self, text: str) -> None:
        pass

    def on_replace(self, content: str) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


class StreamSession:
    """Consume one event stream and assemble its text content.

    Every received event re-arms the idle deadline, so only producer silence
    (not overall duration) triggers :class:`IdleTimeout`. :meth:`cancel` aborts
    the in-flight read; the response is released on every exit path.
    """

    def __init__(
        self,
        client: ApiClient,
        *,
        idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
        sink: StreamSink | None = None,
    ) -> None:
        if idle_timeout_seconds <= 0:
            raise ValueError("idle_timeout_seconds must be > 0")
        self.client = client
        self.idle_timeout_seconds = idle_timeout_seconds
        self.sink: StreamSink = sink or NullSink()
        self._task: asyncio.Task[Any] | None = None
        self._cancel_requested = False
        self._last_event_id: str | None = None
        self._content = ""

    @property
    def partial(self) -> SessionResult:
        return SessionResult(last_event_id=self._last_event_id, content=self._content)

    def cancel(self) -> None:
        """Request prompt cancellation of a running session."""

        self._cancel_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def run(self, path: str, resume_cursor: str | None = None) -> SessionResult:
        """Stream ``path`` until it ends, times out, fails, or is cancelled."""

        if self._cancel_requested:
            raise StreamCancelled("Stream cancelled before start.", partial=self.partial)

        self._task = asyncio.current_task()
        self._last_event_id = resume_cursor
        self._content = ""
        logger.debug("Opening stream %s (resume cursor=%s)", path, resume_cursor or "-")
        loop = asyncio.get_running_loop()
        try:
            async with asyncio.timeout(self.idle_timeout_seconds) as idle:
                async with self.client.open_stream(path, last_event_id=resume_cursor) as response:
                    async with aclosing(iter_events(response)) as events:
                        async for event in events:
                            idle.reschedule(loop.time() + self.idle_timeout_seconds)
                            self._dispatch(event)
        except TimeoutError as error:
            logger.warning(
                "Stream %s idle for %.0fs; aborting",
                path,
                self.idle_timeout_seconds,
            )
            raise IdleTimeout(
                f"No events received for {self.idle_timeout_seconds:g}s.",
                partial=self.partial,
            ) from error
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            if self._task is not None:
                self._task.uncancel()
            raise StreamCancelled("Stream cancelled.", partial=self.partial) from None
        except TransportError as error:
            raise StreamError(str(error), partial=self.partial) from error
        except httpx.HTTPError as error:
            raise StreamError(f"Stream read failed: {error}", partial=self.partial) from error
        finally:
            self._task = None

        if self._content and not self._content.endswith("\n"):
            self._content += "\n"
            self.sink.on_text("\n")
        return self.partial

    def _dispatch(self, event: StreamEvent) -> None:
        if event.id:
            self._last_event_id = event.id
        self.sink.on_event(event)

        event_type = event.event_type or ""
        if event_type == COMPLETE_EVENT:
            self._content = _extract_text(event.data, COMPLETE_TEXT_KEYS, default="")
            self.sink.on_replace(self._content)
        elif event_type in _INCREMENTAL_EVENTS:
            text = _extract_text(event.data, CHUNK_TEXT_KEYS, default=event.data)
            self._content += text
            self.sink.on_text(text)
        elif event_type in _TERMINAL_EVENTS:
            if event.data and event.data != DONE_SENTINEL and not self._content:
                text = _extract_text(event.data, DONE_TEXT_KEYS, default="")
                if text:
                    self._content = text
                    self.sink.on_text(text)
        elif event_type == "error":
            logger.warning("Producer reported stream error: %s", event.data)
            self.sink.on_error(event.data)
        else:
            logger.debug("Ignoring stream event of type %r", event_type)


def decode_payload(data: str) -> Any:
    """Parse an event payload as JSON."""

    try:
        return json.loads(data)
    except ValueError as error:
        raise MalformedEvent(f"Event payload is not JSON: {data[:80]!r}") from error


def _extract_text(data: str, keys: tuple[str, ...], *, default: str) -> str:
    """Pull text out of a JSON payload, degrading to the verbatim payload."""

    try:
        payload = decode_payload(data)
    except MalformedEvent:
        return data
    if isinstance(payload, dict):
        text = pick_text(payload, keys)
        return default if text is None else text
    if isinstance(payload, str):
        return payload
    return data
