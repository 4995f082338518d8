from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from spike_relay import main
from spike_relay.config import ConfigStore, StoredConfig
from spike_relay.controllers import RelayCliController
from spike_relay.jobs.ledger import JobLedger
from spike_relay.jobs.models import JobRecord, SubtaskRecord, SubtaskStatus
from spike_relay.main import spike_relay

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Commands"),
]

URL = "https://example.com/talk"


@pytest.fixture()
def relay(spike_home: Path, spike_service, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(
        main,
        "RELAY_CONTROLLER",
        RelayCliController(transport=spike_service.transport),
    )
    return spike_service


def _seed_job(home: Path, *subtasks: SubtaskRecord) -> None:
    JobLedger(home / "jobs").save(
        JobRecord(job_id="job-1", source_ref=URL, language="en", subtasks=list(subtasks)),
    )


def test_login_then_logout(relay, spike_home: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(
        spike_relay,
        ["login", "--token", "abc", "--workspace-id", "ws-1", "--expires-at", "2999-01-01T00:00Z"],
    )
    assert result.exit_code == 0, result.output
    assert "Credentials saved" in result.output
    stored = ConfigStore(spike_home / "config.json").read()
    assert stored is not None
    assert stored.token == "abc"
    assert stored.workspace_id == "ws-1"

    assert "Logged out." in runner.invoke(spike_relay, ["logout"]).output
    assert "No stored credentials." in runner.invoke(spike_relay, ["logout"]).output


def test_login_rejects_bad_expiry(relay) -> None:
    result = CliRunner().invoke(
        spike_relay,
        ["login", "--token", "abc", "--expires-at", "tomorrow"],
    )

    assert result.exit_code == 1
    assert "Invalid --expires-at" in result.output


def test_add_streams_cached_spike_content_live(relay) -> None:
    relay.submit_replies[URL] = {"id": "job-1", "status": "complete"}
    relay.create_replies["summary"] = [{"content": "tl;dr", "spikeId": "sp-1"}]

    result = CliRunner().invoke(spike_relay, ["add", URL, "--spike", "summary"])

    assert result.exit_code == 0, result.output
    assert "--- summary ---" in result.output
    assert "tl;dr" in result.output
    assert f"{URL}: job job-1 (complete)" in result.output
    assert "summary: complete" in result.output


def test_add_json_output_reports_each_source_in_input_order(relay) -> None:
    other = "https://example.com/other"
    relay.submit_replies[URL] = {"id": "job-1", "status": "pending"}
    relay.submit_replies[other] = {"id": "job-2", "status": "pending"}

    result = CliRunner().invoke(spike_relay, ["add", URL, other, "--json", "--concurrency", "2"])

    assert result.exit_code == 0, result.output
    payloads = [json.loads(line) for line in result.output.splitlines() if line.startswith("{")]
    assert [payload["jobId"] for payload in payloads] == ["job-1", "job-2"]
    assert payloads[0]["url"] == URL


def test_add_without_token_fails(relay, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SPIKE_RELAY_TOKEN")

    result = CliRunner().invoke(spike_relay, ["add", URL])

    assert result.exit_code == 1
    assert "Not logged in" in result.output


def test_expired_stored_token_is_reported(relay, spike_home, monkeypatch) -> None:
    monkeypatch.delenv("SPIKE_RELAY_TOKEN")
    ConfigStore(spike_home / "config.json").write(
        StoredConfig(token="old", expires_at="2000-01-01T00:00:00Z"),
    )

    result = CliRunner().invoke(spike_relay, ["analyze", "job-1", "--spike", "summary"])

    assert result.exit_code == 1
    assert "expired" in result.output


def test_analyze_reports_failed_spike_with_nonzero_exit(relay) -> None:
    relay.create_replies["summary"] = [{"spikeId": "sp-1"}]
    relay.stream_replies["sp-1"] = [500]
    relay.create_replies["quotes"] = [{"content": "a quote", "spikeId": "sp-2"}]

    result = CliRunner().invoke(
        spike_relay,
        ["analyze", "job-1", "--spike", "summary", "--spike", "quotes"],
    )

    assert result.exit_code == 1
    assert "summary: failed" in result.output
    assert "quotes: complete" in result.output
    assert "One or more spikes failed." in result.output


def test_stream_json_prints_raw_events_and_cursor(relay, encode_sse) -> None:
    relay.stream_replies["sp-1"] = [
        encode_sse(
            {"id": "1", "event": "chunk", "data": '{"text": "a"}'},
            {"id": "2", "event": "chunk", "data": '{"text": "b"}'},
        ),
    ]

    result = CliRunner().invoke(spike_relay, ["stream", "sp-1", "--json"])

    assert result.exit_code == 0, result.output
    lines = [json.loads(line) for line in result.output.splitlines() if line.startswith("{")]
    assert lines[0] == {"id": "1", "event": "chunk", "data": '{"text": "a"}'}
    assert lines[-1] == {"lastEventId": "2"}


def test_stream_failure_suggests_resume_cursor(relay) -> None:
    relay.stream_replies["sp-1"] = [503]

    result = CliRunner().invoke(spike_relay, ["stream", "sp-1", "--last-event-id", "5"])

    assert result.exit_code == 1
    assert "Stream failed: SSE 503" in result.output
    assert "--last-event-id 5" in result.output


def test_resume_missing_job_fails(relay) -> None:
    result = CliRunner().invoke(spike_relay, ["resume", "nope"])

    assert result.exit_code == 1
    assert "No local state for job nope" in result.output


def test_resume_reattaches_streaming_subtask(relay, spike_home: Path, encode_sse) -> None:
    _seed_job(
        spike_home,
        SubtaskRecord(
            subtask_id="sp-1",
            prompt_kind="summary",
            status=SubtaskStatus.STREAMING,
            last_event_id="3",
        ),
    )
    relay.stream_replies["sp-1"] = [
        encode_sse({"id": "4", "event": "chunk", "data": '{"text": "rest"}'}),
    ]

    result = CliRunner().invoke(spike_relay, ["resume", "job-1"])

    assert result.exit_code == 0, result.output
    assert "rest" in result.output
    assert "summary: complete" in result.output
    stored = JobLedger(spike_home / "jobs").load("job-1")
    assert stored is not None
    assert stored.subtasks[0].last_event_id == "4"
    assert relay.requests_to("/spikes/stream/sp-1")[0].headers["Last-Event-ID"] == "3"


def test_jobs_lists_tracked_jobs(relay, spike_home: Path) -> None:
    _seed_job(
        spike_home,
        SubtaskRecord(subtask_id="sp-1", prompt_kind="summary", status=SubtaskStatus.ERROR),
    )

    result = CliRunner().invoke(spike_relay, ["jobs"])

    assert result.exit_code == 0, result.output
    assert "job-1" in result.output
    assert "summary=error" in result.output


def test_jobs_without_ledgers(relay) -> None:
    result = CliRunner().invoke(spike_relay, ["jobs"])

    assert "No tracked jobs." in result.output


def test_batch_output_shows_partial_content_of_failed_spikes(
    relay,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def _stalling() -> AsyncIterator[bytes]:
        yield b'id: 1\nevent: chunk\ndata: {"text": "PARTIAL-TEXT"}\n\n'
        await asyncio.sleep(5)

    other = "https://example.com/other"
    monkeypatch.setenv("SPIKE_RELAY_IDLE_TIMEOUT_SECONDS", "0.2")
    relay.submit_replies[URL] = {"id": "job-a", "status": "complete"}
    relay.submit_replies[other] = {"id": "job-b", "status": "complete"}
    relay.create_replies["summary"] = [{"spikeId": "sp-1"}]
    relay.stream_replies["sp-1"] = [_stalling]

    result = CliRunner().invoke(
        spike_relay,
        ["add", URL, other, "--spike", "summary", "--concurrency", "2"],
    )

    assert result.exit_code == 1
    assert "summary: failed: No events received for 0.2s." in result.output
    assert "summary: failed: summary:" not in result.output
    assert result.output.count("PARTIAL-TEXT") == 2


def test_prompts_lists_ids_with_short_descriptions(relay) -> None:
    relay.prompt_replies = {
        "prompts": [
            {"id": "summary", "name": "Summary", "description": "Short\nsummary of the source"},
            {"id": "quotes", "description": "x" * 80},
            {"name": "no id"},
        ],
    }

    result = CliRunner().invoke(spike_relay, ["prompts"])

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0] == "summary  Short summary of the source"
    assert lines[1].startswith("quotes   xxx")
    assert lines[1].endswith("...")
    assert len(lines) == 2


def test_prompts_json_prints_raw_reply(relay) -> None:
    relay.prompt_replies = {"prompts": [{"id": "summary"}]}

    result = CliRunner().invoke(spike_relay, ["prompts", "--json"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {"prompts": [{"id": "summary"}]}


def test_config_set_get_and_list(relay, spike_home: Path) -> None:
    runner = CliRunner()

    assert runner.invoke(spike_relay, ["config", "list"]).output == "No config values set.\n"
    assert runner.invoke(spike_relay, ["config", "get", "default.lang"]).output == "(not set)\n"

    result = runner.invoke(spike_relay, ["config", "set", "default.lang", "de"])
    assert result.exit_code == 0, result.output
    assert result.output == "default.lang = de\n"
    runner.invoke(spike_relay, ["config", "set", "api.timeout", "12.5"])

    assert runner.invoke(spike_relay, ["config", "get", "default.lang"]).output == "de\n"
    assert runner.invoke(spike_relay, ["config", "list"]).output.splitlines() == [
        "default.lang = de",
        "api.timeout = 12.5",
    ]
    document = json.loads((spike_home / "config.json").read_text("utf-8"))
    assert document == {"default": {"lang": "de"}, "api": {"timeout": 12.5}}


@pytest.mark.parametrize(
    ("args", "message"),
    [
        (["config", "get", "nope"], "Unknown config key: nope"),
        (["config", "set", "default.limit", "0"], "default.limit must be a positive number"),
        (["config", "set", "apiUrl", "ftp://x"], "Invalid API URL"),
    ],
)
def test_config_rejects_bad_keys_and_values(relay, args: list[str], message: str) -> None:
    result = CliRunner().invoke(spike_relay, args)

    assert result.exit_code == 1
    assert message in result.output


def test_stored_default_language_feeds_add(relay) -> None:
    runner = CliRunner()
    runner.invoke(spike_relay, ["config", "set", "default.lang", "fr"])

    result = runner.invoke(spike_relay, ["add", URL])
    assert result.exit_code == 0, result.output
    assert relay.requests_to("/v1/add")[0].url.params["outputLang"] == "fr"

    runner.invoke(spike_relay, ["add", URL, "--lang", "es"])
    assert relay.requests_to("/v1/add")[1].url.params["outputLang"] == "es"


def test_stored_default_limit_feeds_jobs(relay, spike_home: Path) -> None:
    ledger = JobLedger(spike_home / "jobs")
    for job_id in ("job-1", "job-2", "job-3"):
        ledger.save(JobRecord(job_id=job_id, source_ref=URL, language="en"))
    runner = CliRunner()
    runner.invoke(spike_relay, ["config", "set", "default.limit", "2"])

    assert len(runner.invoke(spike_relay, ["jobs"]).output.splitlines()) == 2
    assert len(runner.invoke(spike_relay, ["jobs", "--limit", "3"]).output.splitlines()) == 3
