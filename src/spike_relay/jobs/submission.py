"""Per-source pipeline: submit a job, wait for it, then run its subtasks."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from spike_relay.errors import PollTimeout, SpikeRelayError
from spike_relay.fields import extract_status, pick_number
from spike_relay.http.api import SpikesApi
from spike_relay.jobs.ledger import JobLedger
from spike_relay.jobs.models import JobRecord
from spike_relay.jobs.orchestrator import SinkFactory, SubtaskOrchestrator, SubtaskOutcome
from spike_relay.jobs.polling import PollPolicy, poll_until

logger = logging.getLogger(__name__)

FAILED_MARKERS = ("error", "failed")


def is_terminal_status(status: str) -> bool:
    lowered = status.lower()
    return "complete" in lowered or any(marker in lowered for marker in FAILED_MARKERS)


def is_failed_status(status: str) -> bool:
    lowered = status.lower()
    return any(marker in lowered for marker in FAILED_MARKERS)


@dataclass(slots=True)
class SubmissionResult:
    """Outcome of one submitted source."""

    source_ref: str
    job_id: str
    status: str
    outcomes: list[SubtaskOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not is_failed_status(self.status) and all(item.ok for item in self.outcomes)


class SubmissionPipeline:
    """Runs submit -> wait -> subtasks for one source reference."""

    def __init__(
        self,
        *,
        api: SpikesApi,
        ledger: JobLedger,
        orchestrator: SubtaskOrchestrator,
        poll_policy: PollPolicy | None = None,
        on_status: Callable[[str, str], None] | None = None,
    ) -> None:
        self.api = api
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.poll_policy = poll_policy or PollPolicy()
        self.on_status = on_status

    async def run(
        self,
        source_ref: str,
        *,
        language: str,
        prompt_kinds: Sequence[str] = (),
        wait: bool = True,
        sink_factory: SinkFactory | None = None,
    ) -> SubmissionResult:
        submission = await self.api.submit(source_ref, language)
        if not submission.job_id:
            raise SpikeRelayError(f"No job id returned for {source_ref}.")

        job = JobRecord(job_id=submission.job_id, source_ref=source_ref, language=language)
        self.ledger.save(job)
        logger.info("Submitted %s as job %s (%s)", source_ref, job.job_id, submission.status)
        status = submission.status

        if wait or prompt_kinds:
            status = await self.wait_for_job(job.job_id, initial_status=status)
            if is_failed_status(status):
                logger.warning("Job %s finished with status %s", job.job_id, status)
                return SubmissionResult(source_ref=source_ref, job_id=job.job_id, status=status)

        outcomes: list[SubtaskOutcome] = []
        if prompt_kinds:
            outcomes = await self.orchestrator.run_all(job, prompt_kinds, sink_factory)
        return SubmissionResult(
            source_ref=source_ref,
            job_id=job.job_id,
            status=status,
            outcomes=outcomes,
        )

    async def wait_for_job(self, job_id: str, *, initial_status: str = "") -> str:
        """Poll the job status until it is terminal; returns the final status."""

        if initial_status and is_terminal_status(initial_status):
            return initial_status

        def _notify(attempt: int, payload: dict) -> None:
            status = extract_status(payload) or "pending"
            progress = pick_number(payload, "progress")
            logger.debug(
                "Job %s status after %d polls: %s (progress %s)",
                job_id,
                attempt,
                status,
                "-" if progress is None else f"{progress:g}%",
            )
            if self.on_status is not None:
                self.on_status(job_id, status)

        try:
            payload = await poll_until(
                lambda: self.api.job_status(job_id),
                lambda reply: is_terminal_status(extract_status(reply) or ""),
                self.poll_policy,
                on_attempt=_notify,
            )
        except PollTimeout as error:
            raise SpikeRelayError(
                f"Timed out waiting for job {job_id} after {error.attempts} polls.",
            ) from error
        return extract_status(payload) or "complete"
