"""Event-stream consumption: framing decoder, response reader, and session."""

from spike_relay.streaming.decoder import DecoderState, StreamEvent, feed, flush
from spike_relay.streaming.reader import iter_events
from spike_relay.streaming.session import NullSink, SessionResult, StreamSession, StreamSink

__all__ = [
    "DecoderState",
    "NullSink",
    "SessionResult",
    "StreamEvent",
    "StreamSession",
    "StreamSink",
    "feed",
    "flush",
    "iter_events",
]
