"""Exception taxonomy shared by the streaming, ledger, and orchestration layers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spike_relay.streaming.session import SessionResult


class SpikeRelayError(Exception):
    """Base class for all client errors."""


class ConfigError(SpikeRelayError, ValueError):
    """Settings or stored configuration are invalid."""


class TransportError(SpikeRelayError):
    """Network or HTTP failure talking to the remote service."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamError(SpikeRelayError):
    """A stream session ended abnormally.

    ``partial`` holds whatever content and resume cursor were accumulated
    before the failure, so callers can show it instead of discarding it.
    """

    def __init__(self, message: str, *, partial: SessionResult | None = None) -> None:
        super().__init__(message)
        self.partial = partial


class IdleTimeout(StreamError):
    """No event arrived within the idle window."""


class StreamCancelled(StreamError):
    """The session was cancelled by its caller."""


class MalformedEvent(SpikeRelayError):
    """Event payload could not be decoded; recovered as verbatim text."""


class LedgerIOError(SpikeRelayError):
    """Job ledger could not be read or written."""


class SubtaskError(SpikeRelayError):
    """One subtask failed; sibling subtasks keep running.

    ``detail`` is the message without the prompt kind prefix.
    """

    def __init__(
        self,
        prompt_kind: str,
        message: str,
        *,
        subtask_id: str | None = None,
        partial_content: str = "",
    ) -> None:
        super().__init__(f"{prompt_kind}: {message}")
        self.detail = message
        self.prompt_kind = prompt_kind
        self.subtask_id = subtask_id
        self.partial_content = partial_content


class PollTimeout(SpikeRelayError):
    """Poll policy ran out of attempts before the predicate held."""

    def __init__(self, attempts: int, last_value: object = None) -> None:
        super().__init__(f"Condition not met after {attempts} attempts.")
        self.attempts = attempts
        self.last_value = last_value
