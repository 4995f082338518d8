"""Domain models for locally tracked jobs and their subtasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from spike_relay.timeutil import from_iso, utc_now


class SubtaskStatus(str, Enum):
    """Durable subtask lifecycle states."""

    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"


_FORWARD_TRANSITIONS: dict[SubtaskStatus, frozenset[SubtaskStatus]] = {
    SubtaskStatus.PENDING: frozenset({SubtaskStatus.STREAMING, SubtaskStatus.COMPLETE}),
    SubtaskStatus.STREAMING: frozenset({SubtaskStatus.COMPLETE}),
    SubtaskStatus.COMPLETE: frozenset(),
    SubtaskStatus.ERROR: frozenset(),
}
_CURSOR_STATUSES = frozenset({SubtaskStatus.STREAMING, SubtaskStatus.COMPLETE})


class InvalidTransitionError(ValueError):
    """Raised when a status change would regress a subtask."""


@dataclass(slots=True)
class SubtaskRecord:
    """One spike tracked inside a job."""

    subtask_id: str
    prompt_kind: str
    status: SubtaskStatus = SubtaskStatus.PENDING
    last_event_id: str | None = None

    def advance(self, status: SubtaskStatus) -> None:
        """Move forward along pending -> streaming -> complete, or to error."""

        if status == self.status:
            return
        if status is SubtaskStatus.ERROR or status in _FORWARD_TRANSITIONS[self.status]:
            self.status = status
            return
        raise InvalidTransitionError(
            f"Subtask {self.prompt_kind!r} cannot move from {self.status.value} to {status.value}",
        )

    def reopen(self) -> None:
        """Start a fresh creation attempt for a pending or failed subtask."""

        if self.status not in (SubtaskStatus.PENDING, SubtaskStatus.ERROR):
            raise InvalidTransitionError(
                f"Subtask {self.prompt_kind!r} in state {self.status.value} cannot be reopened",
            )
        self.status = SubtaskStatus.PENDING

    def record_cursor(self, event_id: str | None) -> None:
        """Store the resume cursor; an empty id never clears a stored one."""

        if not event_id:
            return
        if self.status not in _CURSOR_STATUSES:
            raise InvalidTransitionError(
                f"Resume cursor can only be stored while streaming or complete, "
                f"not {self.status.value}",
            )
        self.last_event_id = event_id

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "subtaskId": self.subtask_id,
            "promptKind": self.prompt_kind,
            "status": self.status.value,
        }
        if self.last_event_id is not None:
            payload["lastEventId"] = self.last_event_id
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SubtaskRecord:
        subtask_id = raw.get("subtaskId", "")
        prompt_kind = raw.get("promptKind")
        last_event_id = raw.get("lastEventId")
        if not isinstance(subtask_id, str):
            raise TypeError("subtask.subtaskId must be a string")
        if not isinstance(prompt_kind, str) or not prompt_kind:
            raise ValueError("subtask.promptKind must be a non-empty string")
        if last_event_id is not None and not isinstance(last_event_id, str):
            raise TypeError("subtask.lastEventId must be a string when provided")
        return cls(
            subtask_id=subtask_id,
            prompt_kind=prompt_kind,
            status=SubtaskStatus(raw.get("status", SubtaskStatus.PENDING.value)),
            last_event_id=last_event_id,
        )


@dataclass(slots=True)
class JobRecord:
    """Durable record of one submitted job and its subtasks, in request order."""

    job_id: str
    source_ref: str
    language: str
    subtasks: list[SubtaskRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def find_subtask(self, prompt_kind: str) -> SubtaskRecord | None:
        for subtask in self.subtasks:
            if subtask.prompt_kind == prompt_kind:
                return subtask
        return None

    def append_subtask(self, subtask: SubtaskRecord) -> SubtaskRecord:
        if self.find_subtask(subtask.prompt_kind) is not None:
            raise ValueError(
                f"Job {self.job_id} already tracks prompt kind {subtask.prompt_kind!r}",
            )
        self.subtasks.append(subtask)
        return subtask

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "sourceRef": self.source_ref,
            "language": self.language,
            "subtasks": [subtask.to_dict() for subtask in self.subtasks],
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> JobRecord:
        job_id = raw.get("jobId")
        source_ref = raw.get("sourceRef", "")
        language = raw.get("language", "en")
        raw_subtasks = raw.get("subtasks", [])
        if not isinstance(job_id, str) or not job_id:
            raise ValueError("job.jobId must be a non-empty string")
        if not isinstance(source_ref, str):
            raise TypeError("job.sourceRef must be a string")
        if not isinstance(language, str):
            raise TypeError("job.language must be a string")
        if not isinstance(raw_subtasks, list):
            raise TypeError("job.subtasks must be an array")
        subtasks: list[SubtaskRecord] = []
        for item in raw_subtasks:
            if not isinstance(item, dict):
                raise TypeError("job.subtasks entry must be an object")
            subtasks.append(SubtaskRecord.from_dict(item))
        return cls(
            job_id=job_id,
            source_ref=source_ref,
            language=language,
            subtasks=subtasks,
            created_at=_timestamp(raw.get("createdAt")),
            updated_at=_timestamp(raw.get("updatedAt")),
        )


def _timestamp(value: object) -> datetime:
    if isinstance(value, str) and value:
        return from_iso(value)
    return utc_now()
