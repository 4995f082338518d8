"""Turn an HTTP response body into a lazy sequence of stream events."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

import httpx

from spike_relay.http.client import is_json_response
from spike_relay.streaming.decoder import INITIAL_STATE, StreamEvent, feed, flush

logger = logging.getLogger(__name__)

COMPLETE_EVENT = "complete"


async def iter_events(response: httpx.Response) -> AsyncIterator[StreamEvent]:
    """Yield events in arrival order until the body ends.

    A JSON body means the producer already finished: it is surfaced as one
    synthetic ``complete`` event wrapping the raw payload.
    """

    if is_json_response(response):
        body = await response.aread()
        logger.debug("Stream endpoint returned JSON; emitting one-shot complete event")
        yield StreamEvent(data=body.decode("utf-8", errors="replace"), event_type=COMPLETE_EVENT)
        return

    state = INITIAL_STATE
    async for chunk in response.aiter_bytes():
        events, state = feed(state, chunk)
        for event in events:
            yield event

    events, state = flush(state)
    for event in events:
        yield event
