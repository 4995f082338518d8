"""Drive subtasks through create -> stream -> complete with durable state.

Every status change is persisted before the next network call, so a crash
always leaves the ledger at the last attempted stage and ``resume`` can pick
up from there. Subtasks of one job run sequentially to keep ledger writes
uncontended and terminal output ordered.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, NoReturn

from spike_relay.errors import (
    LedgerIOError,
    PollTimeout,
    StreamError,
    SubtaskError,
    TransportError,
)
from spike_relay.http.api import SpikesApi, SubtaskCreation
from spike_relay.jobs.ledger import JobLedger
from spike_relay.jobs.models import JobRecord, SubtaskRecord, SubtaskStatus
from spike_relay.jobs.polling import PollPolicy, poll_until
from spike_relay.streaming.session import StreamSession, StreamSink

logger = logging.getLogger(__name__)

SessionFactory = Callable[[StreamSink | None], StreamSession]
SinkFactory = Callable[[str], StreamSink | None]


@dataclass(slots=True)
class SubtaskOutcome:
    """What one subtask produced for the caller."""

    prompt_kind: str
    subtask_id: str
    status: SubtaskStatus
    content: str = ""
    error: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


class SubtaskOrchestrator:
    """Runs fresh and resumed subtasks against the idempotent spikes endpoint."""

    def __init__(
        self,
        *,
        api: SpikesApi,
        ledger: JobLedger,
        session_factory: SessionFactory,
        streaming_enabled: bool = True,
        poll_policy: PollPolicy | None = None,
    ) -> None:
        self.api = api
        self.ledger = ledger
        self.session_factory = session_factory
        self.streaming_enabled = streaming_enabled
        self.poll_policy = poll_policy or PollPolicy()

    def load_job(self, job_id: str) -> JobRecord | None:
        """Read prior state; an unreadable ledger counts as no prior state."""

        try:
            return self.ledger.load(job_id)
        except LedgerIOError as error:
            logger.warning("Ignoring unreadable ledger for job %s: %s", job_id, error)
            return None

    async def run_all(
        self,
        job: JobRecord,
        prompt_kinds: Sequence[str],
        sink_factory: SinkFactory | None = None,
    ) -> list[SubtaskOutcome]:
        """Run each prompt kind in order; one failure never stops its siblings."""

        outcomes: list[SubtaskOutcome] = []
        for prompt_kind in prompt_kinds:
            sink = sink_factory(prompt_kind) if sink_factory is not None else None
            try:
                outcomes.append(await self.run_subtask(job, prompt_kind, sink=sink))
            except SubtaskError as error:
                outcomes.append(_failed_outcome(job, prompt_kind, error))
        return outcomes

    async def resume_job(
        self,
        job: JobRecord,
        sink_factory: SinkFactory | None = None,
    ) -> list[SubtaskOutcome]:
        """Resume every tracked subtask of ``job`` in ledger order."""

        outcomes: list[SubtaskOutcome] = []
        for record in list(job.subtasks):
            sink = sink_factory(record.prompt_kind) if sink_factory is not None else None
            try:
                outcomes.append(await self.resume_subtask(job, record, sink=sink))
            except SubtaskError as error:
                outcomes.append(_failed_outcome(job, record.prompt_kind, error))
        return outcomes

    async def run_subtask(
        self,
        job: JobRecord,
        prompt_kind: str,
        *,
        sink: StreamSink | None = None,
    ) -> SubtaskOutcome:
        """Fresh path for a new prompt kind; resume path if the job already tracks it."""

        existing = job.find_subtask(prompt_kind)
        if existing is not None:
            return await self.resume_subtask(job, existing, sink=sink)

        creation = await self._create(job, prompt_kind)
        if creation.is_ready:
            record = job.append_subtask(
                SubtaskRecord(subtask_id=creation.handle or "", prompt_kind=prompt_kind),
            )
            record.advance(SubtaskStatus.COMPLETE)
            self._persist(job)
            logger.info("Subtask %s of job %s served from cache", prompt_kind, job.job_id)
            _deliver(sink, creation.content or "")
            return _outcome(record, creation.content or "", creation.payload)

        if not creation.handle:
            raise SubtaskError(
                prompt_kind,
                "API response carried neither content nor a subtask handle.",
            )

        record = job.append_subtask(
            SubtaskRecord(subtask_id=creation.handle, prompt_kind=prompt_kind),
        )
        self._persist(job)
        logger.info(
            "Subtask %s of job %s created as %s",
            prompt_kind,
            job.job_id,
            record.subtask_id,
        )
        return await self._drive(job, record, resume_cursor=None, sink=sink)

    async def resume_subtask(
        self,
        job: JobRecord,
        record: SubtaskRecord,
        *,
        sink: StreamSink | None = None,
    ) -> SubtaskOutcome:
        """Continue a subtask read back from the ledger according to its status."""

        if record.status is SubtaskStatus.COMPLETE:
            creation = await self._create(job, record.prompt_kind, record=record)
            if creation.content is None:
                logger.warning(
                    "Completed subtask %s of job %s returned no cached content",
                    record.prompt_kind,
                    job.job_id,
                )
            _deliver(sink, creation.content or "")
            return _outcome(record, creation.content or "", creation.payload)

        if record.status is SubtaskStatus.STREAMING and record.subtask_id:
            logger.info(
                "Reattaching to subtask %s of job %s from cursor %s",
                record.prompt_kind,
                job.job_id,
                record.last_event_id or "-",
            )
            return await self._drive(
                job,
                record,
                resume_cursor=record.last_event_id,
                sink=sink,
                reattach=True,
            )

        # pending, error, or a streaming record that never received a handle
        if record.status is SubtaskStatus.STREAMING:
            record.advance(SubtaskStatus.ERROR)
        record.reopen()
        self._persist(job)
        creation = await self._create(job, record.prompt_kind, record=record)
        if creation.handle:
            record.subtask_id = creation.handle
        if creation.is_ready:
            record.advance(SubtaskStatus.COMPLETE)
            self._persist(job)
            _deliver(sink, creation.content or "")
            return _outcome(record, creation.content or "", creation.payload)
        if not creation.handle:
            self._fail(job, record, "API response carried neither content nor a subtask handle.")
        self._persist(job)
        return await self._drive(job, record, resume_cursor=None, sink=sink)

    async def _create(
        self,
        job: JobRecord,
        prompt_kind: str,
        *,
        record: SubtaskRecord | None = None,
    ) -> SubtaskCreation:
        try:
            return await self.api.create_subtask(job.job_id, prompt_kind, job.language)
        except TransportError as error:
            if record is not None and record.status is not SubtaskStatus.COMPLETE:
                self._fail(job, record, str(error))
            raise SubtaskError(
                prompt_kind,
                str(error),
                subtask_id=record.subtask_id if record is not None else None,
            ) from error

    async def _drive(
        self,
        job: JobRecord,
        record: SubtaskRecord,
        *,
        resume_cursor: str | None,
        sink: StreamSink | None,
        reattach: bool = False,
    ) -> SubtaskOutcome:
        if not self.streaming_enabled and not reattach:
            return await self._poll(job, record, sink=sink)

        record.advance(SubtaskStatus.STREAMING)
        self._persist(job)
        session = self.session_factory(sink)
        try:
            result = await session.run(self.api.stream_path(record.subtask_id), resume_cursor)
        except StreamError as error:
            partial = error.partial.content if error.partial is not None else ""
            self._fail(job, record, str(error), partial_content=partial)
        except asyncio.CancelledError:
            record.advance(SubtaskStatus.ERROR)
            self._persist(job)
            logger.info("Subtask %s of job %s interrupted", record.prompt_kind, job.job_id)
            raise

        record.advance(SubtaskStatus.COMPLETE)
        record.record_cursor(result.last_event_id)
        self._persist(job)
        logger.info("Subtask %s of job %s complete", record.prompt_kind, job.job_id)
        return _outcome(
            record,
            result.content,
            {"spikeId": record.subtask_id, "promptId": record.prompt_kind},
        )

    async def _poll(
        self,
        job: JobRecord,
        record: SubtaskRecord,
        *,
        sink: StreamSink | None,
    ) -> SubtaskOutcome:
        try:
            creation = await poll_until(
                lambda: self.api.create_subtask(job.job_id, record.prompt_kind, job.language),
                lambda reply: reply.is_ready,
                self.poll_policy,
            )
        except PollTimeout as error:
            self._fail(job, record, f"Timed out waiting for content ({error.attempts} polls).")
        except TransportError as error:
            self._fail(job, record, str(error))

        record.advance(SubtaskStatus.COMPLETE)
        self._persist(job)
        _deliver(sink, creation.content or "")
        return _outcome(record, creation.content or "", creation.payload)

    def _fail(
        self,
        job: JobRecord,
        record: SubtaskRecord,
        message: str,
        *,
        partial_content: str = "",
    ) -> NoReturn:
        """Persist ``error`` for ``record`` and raise the matching SubtaskError."""

        record.advance(SubtaskStatus.ERROR)
        self._persist(job)
        logger.warning(
            "Subtask %s of job %s failed: %s",
            record.prompt_kind,
            job.job_id,
            message,
        )
        raise SubtaskError(
            record.prompt_kind,
            message,
            subtask_id=record.subtask_id or None,
            partial_content=partial_content,
        )

    def _persist(self, job: JobRecord) -> None:
        self.ledger.save(job)


def _deliver(sink: StreamSink | None, content: str) -> None:
    if sink is not None and content:
        sink.on_replace(content if content.endswith("\n") else content + "\n")


def _outcome(record: SubtaskRecord, content: str, payload: dict[str, Any]) -> SubtaskOutcome:
    return SubtaskOutcome(
        prompt_kind=record.prompt_kind,
        subtask_id=record.subtask_id,
        status=record.status,
        content=content,
        payload=payload,
    )


def _failed_outcome(job: JobRecord, prompt_kind: str, error: SubtaskError) -> SubtaskOutcome:
    record = job.find_subtask(prompt_kind)
    return SubtaskOutcome(
        prompt_kind=prompt_kind,
        subtask_id=record.subtask_id if record is not None else (error.subtask_id or ""),
        status=record.status if record is not None else SubtaskStatus.ERROR,
        content=error.partial_content,
        error=error.detail,
    )
