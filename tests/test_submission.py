from __future__ import annotations

from pathlib import Path

import allure
import pytest

from spike_relay.errors import SpikeRelayError
from spike_relay.http.api import SpikesApi
from spike_relay.http.client import ApiClient
from spike_relay.jobs.ledger import JobLedger
from spike_relay.jobs.orchestrator import SubtaskOrchestrator
from spike_relay.jobs.polling import PollPolicy
from spike_relay.jobs.submission import (
    SubmissionPipeline,
    is_failed_status,
    is_terminal_status,
)
from spike_relay.streaming.session import StreamSession

pytestmark = [
    allure.epic("Job Tracking"),
    allure.feature("Submission Pipeline"),
]

URL = "https://example.com/talk"


def _pipeline(
    client: ApiClient,
    tmp_path: Path,
    statuses: list[tuple[str, str]] | None = None,
) -> SubmissionPipeline:
    api = SpikesApi(client)
    ledger = JobLedger(tmp_path)
    orchestrator = SubtaskOrchestrator(
        api=api,
        ledger=ledger,
        session_factory=lambda sink: StreamSession(client, sink=sink),
    )
    return SubmissionPipeline(
        api=api,
        ledger=ledger,
        orchestrator=orchestrator,
        poll_policy=PollPolicy(interval_seconds=0, max_attempts=3),
        on_status=None if statuses is None else lambda job, status: statuses.append((job, status)),
    )


@pytest.mark.parametrize(
    ("status", "terminal", "failed"),
    [
        ("complete", True, False),
        ("Completed", True, False),
        ("error", True, True),
        ("transcription_failed", True, True),
        ("processing", False, False),
    ],
)
def test_status_classification(status: str, terminal: bool, failed: bool) -> None:
    assert is_terminal_status(status) is terminal
    assert is_failed_status(status) is failed


@pytest.mark.asyncio
async def test_submit_records_job_then_waits_and_runs_spikes(tmp_path, spike_service) -> None:
    spike_service.submit_replies[URL] = {"id": "job-7", "status": "pending"}
    spike_service.status_replies = [
        {"status": "processing", "progress": "40"},
        {"status": "complete"},
    ]
    spike_service.create_replies["summary"] = [{"content": "tl;dr", "spikeId": "sp-1"}]
    statuses: list[tuple[str, str]] = []

    async with ApiClient(api_url="https://api.test", transport=spike_service.transport) as client:
        result = await _pipeline(client, tmp_path, statuses).run(
            URL,
            language="en",
            prompt_kinds=["summary"],
        )

    assert result.ok
    assert result.job_id == "job-7"
    assert result.status == "complete"
    assert [outcome.content for outcome in result.outcomes] == ["tl;dr"]
    assert statuses == [("job-7", "processing"), ("job-7", "complete")]
    stored = JobLedger(tmp_path).load("job-7")
    assert stored is not None
    assert stored.source_ref == URL
    assert [subtask.prompt_kind for subtask in stored.subtasks] == ["summary"]


@pytest.mark.asyncio
async def test_submit_without_wait_or_spikes_returns_immediately(tmp_path, spike_service) -> None:
    spike_service.submit_replies[URL] = {"id": "job-8", "status": "pending"}

    async with ApiClient(api_url="https://api.test", transport=spike_service.transport) as client:
        result = await _pipeline(client, tmp_path).run(URL, language="en", wait=False)

    assert result.status == "pending"
    assert spike_service.requests_to("/v1/status/") == []
    assert JobLedger(tmp_path).load("job-8") is not None


@pytest.mark.asyncio
async def test_failed_job_skips_spikes(tmp_path, spike_service) -> None:
    spike_service.submit_replies[URL] = {"id": "job-9"}
    spike_service.status_replies = [{"status": "failed"}]

    async with ApiClient(api_url="https://api.test", transport=spike_service.transport) as client:
        result = await _pipeline(client, tmp_path).run(URL, language="en", prompt_kinds=["x"])

    assert not result.ok
    assert result.outcomes == []
    assert spike_service.requests_to("/spikes/") == []


@pytest.mark.asyncio
async def test_wait_gives_up_after_poll_attempts(tmp_path, spike_service) -> None:
    spike_service.submit_replies[URL] = {"id": "job-10"}
    spike_service.status_replies = [{"status": "processing"}]

    async with ApiClient(api_url="https://api.test", transport=spike_service.transport) as client:
        with pytest.raises(SpikeRelayError, match="Timed out waiting for job job-10 after 3 polls"):
            await _pipeline(client, tmp_path).run(URL, language="en")


@pytest.mark.asyncio
async def test_missing_job_id_is_an_error(tmp_path, spike_service) -> None:
    spike_service.submit_replies[URL] = {"status": "accepted"}

    async with ApiClient(api_url="https://api.test", transport=spike_service.transport) as client:
        with pytest.raises(SpikeRelayError, match="No job id"):
            await _pipeline(client, tmp_path).run(URL, language="en")
