"""Incremental decoder for the text/event-stream framing.

The decoder is a pure function over an immutable state value: feeding the
same bytes yields the same events no matter how they were chunked.
"""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """One dispatched event."""

    data: str
    id: str | None = None
    event_type: str | None = None


@dataclass(frozen=True, slots=True)
class DecoderState:
    """Undispatched bytes plus the fields of the event being assembled."""

    buffer: bytes = b""
    pending_id: str | None = None
    pending_type: str | None = None
    pending_data: tuple[str, ...] = ()
    has_fields: bool = False


INITIAL_STATE = DecoderState()


def feed(state: DecoderState, chunk: bytes) -> tuple[list[StreamEvent], DecoderState]:
    """Append ``chunk`` and process every complete line."""

    buffer = state.buffer + chunk
    *lines, remainder = buffer.split(b"\n")
    events: list[StreamEvent] = []
    state = replace(state, buffer=remainder)
    for raw_line in lines:
        state = _process_line(state, _decode_line(raw_line), events)
    return events, state


def flush(state: DecoderState) -> tuple[list[StreamEvent], DecoderState]:
    """Finish the stream: process a trailing partial line and emit the pending event."""

    events: list[StreamEvent] = []
    if state.buffer:
        state = _process_line(replace(state, buffer=b""), _decode_line(state.buffer), events)
    if state.has_fields:
        events.append(_build_event(state))
        state = INITIAL_STATE
    return events, state


def _decode_line(raw_line: bytes) -> str:
    if raw_line.endswith(b"\r"):
        raw_line = raw_line[:-1]
    return raw_line.decode("utf-8", errors="replace")


def _process_line(state: DecoderState, line: str, events: list[StreamEvent]) -> DecoderState:
    if line == "":
        if state.has_fields:
            events.append(_build_event(state))
        return DecoderState(buffer=state.buffer)

    if line.startswith(":"):
        return state

    field, colon, value = line.partition(":")
    if colon and value.startswith(" "):
        value = value[1:]

    if field == "id":
        return replace(state, pending_id=value, has_fields=True)
    if field == "event":
        return replace(state, pending_type=value, has_fields=True)
    if field == "data":
        return replace(state, pending_data=(*state.pending_data, value), has_fields=True)
    # retry and unknown fields
    return state


def _build_event(state: DecoderState) -> StreamEvent:
    return StreamEvent(
        data="\n".join(state.pending_data),
        id=state.pending_id,
        event_type=state.pending_type,
    )
