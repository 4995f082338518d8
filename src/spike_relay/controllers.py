"""Controllers for spike-relay CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import rich_click as click

from spike_relay.config import (
    CONFIG_KEYS,
    ConfigCache,
    ConfigStore,
    Settings,
    StoredConfig,
    resolve_home_dir,
    resolve_token,
)
from spike_relay.errors import ConfigError, LedgerIOError, StreamError
from spike_relay.http.api import PromptInfo, SpikesApi
from spike_relay.http.client import ApiClient
from spike_relay.jobs.batch import BatchItemResult, run_batch
from spike_relay.jobs.ledger import JobLedger
from spike_relay.jobs.models import JobRecord
from spike_relay.jobs.orchestrator import SinkFactory, SubtaskOrchestrator, SubtaskOutcome
from spike_relay.jobs.polling import PollPolicy
from spike_relay.jobs.submission import SubmissionPipeline, SubmissionResult
from spike_relay.streaming.decoder import StreamEvent
from spike_relay.streaming.session import SessionResult, StreamSession, StreamSink
from spike_relay.timeutil import from_iso

logger = logging.getLogger(__name__)

CONFIG_CACHE_TTL_SECONDS = 30.0
PROMPT_DESCRIPTION_WIDTH = 60


@dataclass(slots=True)
class AddCommand:
    """CLI input for submitting one or more sources."""

    urls: tuple[str, ...]
    language: str | None = None
    prompt_kinds: tuple[str, ...] = ()
    wait: bool = False
    concurrency: int | None = None
    json_output: bool = False
    streaming: bool | None = None
    api_url: str | None = None
    token: str | None = None


@dataclass(slots=True)
class AnalyzeCommand:
    """CLI input for running prompt kinds against an existing job."""

    job_id: str
    prompt_kinds: tuple[str, ...]
    language: str | None = None
    json_output: bool = False
    streaming: bool | None = None
    api_url: str | None = None
    token: str | None = None


@dataclass(slots=True)
class StreamCommand:
    """CLI input for attaching to a single subtask stream."""

    subtask_id: str
    last_event_id: str | None = None
    json_output: bool = False
    api_url: str | None = None
    token: str | None = None


@dataclass(slots=True)
class ResumeCommand:
    """CLI input for resuming a locally tracked job."""

    job_id: str
    json_output: bool = False
    api_url: str | None = None
    token: str | None = None


@dataclass(slots=True)
class JobsCommand:
    """CLI input for listing locally tracked jobs."""

    limit: int | None = None


@dataclass(slots=True)
class PromptsCommand:
    """CLI input for listing available prompt kinds."""

    json_output: bool = False
    api_url: str | None = None
    token: str | None = None


@dataclass(slots=True)
class ConfigSetCommand:
    """CLI input for storing one user default."""

    key: str
    value: str


@dataclass(slots=True)
class LoginCommand:
    """CLI input for storing credentials."""

    token: str
    api_url: str | None = None
    workspace_id: str | None = None
    expires_at: str | None = None
    email: str | None = None


@dataclass(slots=True)
class CommandResult:
    """Command output lines plus overall success flag."""

    lines: list[str]
    success: bool = True


class ConsoleSink:
    """Writes stream output to the terminal as it arrives."""

    def __init__(self, *, json_output: bool = False) -> None:
        self.json_output = json_output
        self._line_open = False

    def on_event(self, event: StreamEvent) -> None:
        if self.json_output:
            click.echo(
                json.dumps(
                    {"id": event.id, "event": event.event_type, "data": event.data},
                    ensure_ascii=False,
                ),
            )

    def on_text(self, text: str) -> None:
        if self.json_output or not text:
            return
        click.echo(text, nl=False)
        self._line_open = not text.endswith("\n")

    def on_replace(self, content: str) -> None:
        if self.json_output or not content:
            return
        if self._line_open:
            click.echo()
        click.echo(content, nl=False)
        self._line_open = not content.endswith("\n")

    def on_error(self, message: str) -> None:
        click.secho(f"Stream error: {message}", err=True, fg="red")


@dataclass(slots=True)
class _Runtime:
    settings: Settings
    client: ApiClient
    api: SpikesApi
    ledger: JobLedger
    orchestrator: SubtaskOrchestrator


class RelayCliController:
    """Builds runtime collaborators from settings and runs CLI commands."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.transport = transport
        self._config_cache: ConfigCache | None = None
        self._config_path: Path | None = None

    def add(self, command: AddCommand) -> CommandResult:
        settings = self._settings(
            api_url=command.api_url,
            token=command.token,
            concurrency=command.concurrency,
            streaming=command.streaming,
        )
        if not command.urls:
            return CommandResult(["No URLs given."], success=False)
        live = not command.json_output and (
            len(command.urls) == 1 or settings.batch.concurrency == 1
        )
        results = asyncio.run(self._add(settings, command, live=live))

        lines: list[str] = []
        success = True
        for item in results:
            if item.error is not None:
                success = False
                lines.append(
                    _json_line({"url": item.item, "error": str(item.error)})
                    if command.json_output
                    else f"{item.item}: failed: {item.error}",
                )
                continue
            result = item.value
            if result is None:
                continue
            success = success and result.ok
            if command.json_output:
                lines.append(_json_line(_submission_payload(result)))
            else:
                lines.extend(_submission_lines(result, with_content=not live))
        return CommandResult(lines, success=success)

    async def _add(
        self,
        settings: Settings,
        command: AddCommand,
        *,
        live: bool,
    ) -> list[BatchItemResult[str, SubmissionResult]]:
        async with self._runtime(settings) as runtime:
            pipeline = SubmissionPipeline(
                api=runtime.api,
                ledger=runtime.ledger,
                orchestrator=runtime.orchestrator,
                poll_policy=_poll_policy(settings),
            )

            async def _handle(url: str) -> SubmissionResult:
                return await pipeline.run(
                    url,
                    language=command.language or settings.defaults.language,
                    prompt_kinds=command.prompt_kinds,
                    wait=command.wait,
                    sink_factory=_console_sinks() if live else None,
                )

            return await run_batch(list(command.urls), _handle, settings.batch.concurrency)

    def analyze(self, command: AnalyzeCommand) -> CommandResult:
        settings = self._settings(
            api_url=command.api_url,
            token=command.token,
            streaming=command.streaming,
        )
        if not command.prompt_kinds:
            return CommandResult(["No prompt kinds given."], success=False)
        outcomes = asyncio.run(self._analyze(settings, command))
        return _outcome_result(command.job_id, outcomes, json_output=command.json_output)

    async def _analyze(self, settings: Settings, command: AnalyzeCommand) -> list[SubtaskOutcome]:
        async with self._runtime(settings) as runtime:
            language = command.language or settings.defaults.language
            job = runtime.orchestrator.load_job(command.job_id)
            if job is None:
                job = JobRecord(job_id=command.job_id, source_ref="", language=language)
            elif job.language != language:
                logger.info(
                    "Job %s is tracked with language %s; using it instead of %s",
                    job.job_id,
                    job.language,
                    language,
                )
            return await runtime.orchestrator.run_all(
                job,
                command.prompt_kinds,
                None if command.json_output else _console_sinks(),
            )

    def stream(self, command: StreamCommand) -> CommandResult:
        settings = self._settings(api_url=command.api_url, token=command.token)
        sink = ConsoleSink(json_output=command.json_output)
        try:
            result = asyncio.run(self._stream(settings, command, sink))
        except StreamError as error:
            lines = [f"Stream failed: {error}"]
            cursor = error.partial.last_event_id if error.partial is not None else None
            if cursor:
                lines.append(f"Resume with: --last-event-id {cursor}")
            return CommandResult(lines, success=False)
        if command.json_output:
            return CommandResult([_json_line({"lastEventId": result.last_event_id})])
        return CommandResult([])

    async def _stream(
        self,
        settings: Settings,
        command: StreamCommand,
        sink: StreamSink,
    ) -> SessionResult:
        async with self._runtime(settings) as runtime:
            session = StreamSession(
                runtime.client,
                idle_timeout_seconds=settings.streaming.idle_timeout_seconds,
                sink=sink,
            )
            return await session.run(
                SpikesApi.stream_path(command.subtask_id),
                command.last_event_id,
            )

    def resume(self, command: ResumeCommand) -> CommandResult:
        settings = self._settings(api_url=command.api_url, token=command.token)
        ledger = JobLedger(settings.jobs_dir)
        try:
            job = ledger.load(command.job_id)
        except LedgerIOError as error:
            return CommandResult([f"Cannot resume job {command.job_id}: {error}"], success=False)
        if job is None:
            return CommandResult(
                [f"No local state for job {command.job_id} in {settings.jobs_dir}."],
                success=False,
            )
        if not job.subtasks:
            return CommandResult([f"Job {job.job_id} has no tracked subtasks."])
        outcomes = asyncio.run(self._resume(settings, job, json_output=command.json_output))
        return _outcome_result(job.job_id, outcomes, json_output=command.json_output)

    async def _resume(
        self,
        settings: Settings,
        job: JobRecord,
        *,
        json_output: bool,
    ) -> list[SubtaskOutcome]:
        async with self._runtime(settings) as runtime:
            return await runtime.orchestrator.resume_job(
                job,
                None if json_output else _console_sinks(),
            )

    def jobs(self, command: JobsCommand) -> list[str]:
        settings = self._settings()
        ledger = JobLedger(settings.jobs_dir)
        job_ids = ledger.list_job_ids()
        if not job_ids:
            return ["No tracked jobs."]
        lines: list[str] = []
        for job_id in job_ids[: command.limit or settings.defaults.list_limit]:
            try:
                job = ledger.load(job_id)
            except LedgerIOError as error:
                logger.warning("Skipping unreadable ledger %s: %s", job_id, error)
                lines.append(f"{job_id} (unreadable)")
                continue
            if job is None:
                continue
            subtasks = (
                ", ".join(f"{item.prompt_kind}={item.status.value}" for item in job.subtasks)
                or "-"
            )
            lines.append(
                f"{job.job_id} updated={job.updated_at.isoformat(timespec='seconds')} "
                f"source={job.source_ref or '-'} subtasks={subtasks}",
            )
        return lines

    def login(self, command: LoginCommand) -> list[str]:
        token = command.token.strip()
        if not token:
            raise ConfigError("Token must not be empty.")
        if command.expires_at is not None:
            try:
                from_iso(command.expires_at)
            except ValueError as error:
                raise ConfigError(
                    f"Invalid --expires-at value: {command.expires_at!r}",
                ) from error
        store = self._store()
        store.update(
            token=token,
            api_url=command.api_url,
            workspace_id=command.workspace_id,
            expires_at=command.expires_at,
            email=command.email,
        )
        self._invalidate_config()
        return [f"Credentials saved to {store.path}"]

    def logout(self) -> list[str]:
        store = self._store()
        removed = store.clear()
        self._invalidate_config()
        return ["Logged out."] if removed else ["No stored credentials."]

    def prompts(self, command: PromptsCommand) -> list[str]:
        settings = self._settings(api_url=command.api_url, token=command.token)
        prompts, payload = asyncio.run(self._prompts(settings))
        if command.json_output:
            return [_json_line(payload)]
        if not prompts:
            return ["No prompts available."]
        width = max(len(prompt.prompt_id) for prompt in prompts)
        return [
            f"{prompt.prompt_id.ljust(width)}  "
            f"{_one_line(prompt.description or '-', PROMPT_DESCRIPTION_WIDTH)}"
            for prompt in prompts
        ]

    async def _prompts(self, settings: Settings) -> tuple[list[PromptInfo], dict[str, Any]]:
        async with self._runtime(settings) as runtime:
            return await runtime.api.list_prompts()

    def config_get(self, key: str) -> list[str]:
        value = (self._store().read() or StoredConfig()).get_setting(key)
        return ["(not set)"] if value is None else [str(value)]

    def config_set(self, command: ConfigSetCommand) -> list[str]:
        store = self._store()
        updated = (store.read() or StoredConfig()).with_setting(command.key, command.value)
        store.write(updated)
        self._invalidate_config()
        return [f"{command.key} = {updated.get_setting(command.key)}"]

    def config_list(self) -> list[str]:
        stored = self._store().read() or StoredConfig()
        lines: list[str] = []
        for key in CONFIG_KEYS:
            value = stored.get_setting(key)
            if value is not None:
                lines.append(f"{key} = {value}")
        return lines or ["No config values set."]

    def _settings(
        self,
        *,
        api_url: str | None = None,
        token: str | None = None,
        concurrency: int | None = None,
        streaming: bool | None = None,
    ) -> Settings:
        home_dir = resolve_home_dir()
        settings = Settings.from_env(
            stored=self._stored_config(home_dir),
            home_dir=home_dir,
        ).with_overrides(
            api_url=api_url,
            token=token,
            concurrency=concurrency,
            streaming=streaming,
        )
        settings.validate()
        return settings

    def _store(self) -> ConfigStore:
        return ConfigStore(resolve_home_dir() / "config.json")

    def _stored_config(self, home_dir: Path) -> StoredConfig | None:
        path = home_dir / "config.json"
        if self._config_cache is None or self._config_path != path:
            self._config_cache = ConfigCache(
                ConfigStore(path).read,
                ttl_seconds=CONFIG_CACHE_TTL_SECONDS,
            )
            self._config_path = path
        return self._config_cache.get()

    def _invalidate_config(self) -> None:
        if self._config_cache is not None:
            self._config_cache.invalidate()

    @asynccontextmanager
    async def _runtime(self, settings: Settings) -> AsyncIterator[_Runtime]:
        resolution = resolve_token(settings)
        if resolution.expired:
            raise ConfigError("Stored token has expired. Run `spike-relay login` again.")
        if resolution.token is None:
            raise ConfigError(
                "Not logged in. Run `spike-relay login --token ...` or set SPIKE_RELAY_TOKEN.",
            )
        async with ApiClient(
            api_url=settings.api.api_url,
            token=resolution.token,
            workspace_id=settings.api.workspace_id,
            timeout_seconds=settings.api.request_timeout_seconds,
            transport=self.transport,
        ) as client:
            api = SpikesApi(client)
            ledger = JobLedger(settings.jobs_dir)

            def _session(sink: StreamSink | None) -> StreamSession:
                return StreamSession(
                    client,
                    idle_timeout_seconds=settings.streaming.idle_timeout_seconds,
                    sink=sink,
                )

            yield _Runtime(
                settings=settings,
                client=client,
                api=api,
                ledger=ledger,
                orchestrator=SubtaskOrchestrator(
                    api=api,
                    ledger=ledger,
                    session_factory=_session,
                    streaming_enabled=settings.streaming.enabled,
                    poll_policy=_poll_policy(settings),
                ),
            )


def _console_sinks() -> SinkFactory:
    def _factory(prompt_kind: str) -> StreamSink:
        click.secho(f"--- {prompt_kind} ---", bold=True)
        return ConsoleSink()

    return _factory


def _poll_policy(settings: Settings) -> PollPolicy:
    return PollPolicy(
        interval_seconds=settings.polling.interval_seconds,
        max_attempts=settings.polling.max_attempts,
    )


def _outcome_result(
    job_id: str,
    outcomes: list[SubtaskOutcome],
    *,
    json_output: bool,
) -> CommandResult:
    success = all(outcome.ok for outcome in outcomes)
    if json_output:
        return CommandResult(
            [_json_line({"jobId": job_id, "subtasks": [_outcome_payload(o) for o in outcomes]})],
            success=success,
        )
    lines = [f"Job {job_id}:"]
    lines.extend(_outcome_lines(outcomes, with_content=False))
    return CommandResult(lines, success=success)


def _submission_lines(result: SubmissionResult, *, with_content: bool) -> list[str]:
    lines = [f"{result.source_ref}: job {result.job_id} ({result.status})"]
    lines.extend(_outcome_lines(result.outcomes, with_content=with_content))
    return lines


def _outcome_lines(outcomes: list[SubtaskOutcome], *, with_content: bool) -> list[str]:
    lines: list[str] = []
    for outcome in outcomes:
        if outcome.ok:
            lines.append(f"  {outcome.prompt_kind}: {outcome.status.value}")
        else:
            lines.append(f"  {outcome.prompt_kind}: failed: {outcome.error}")
            if with_content and outcome.content:
                lines.append("  partial output:")
        if with_content and outcome.content:
            lines.append(outcome.content.rstrip("\n"))
    return lines


def _submission_payload(result: SubmissionResult) -> dict[str, Any]:
    return {
        "url": result.source_ref,
        "jobId": result.job_id,
        "status": result.status,
        "subtasks": [_outcome_payload(outcome) for outcome in result.outcomes],
    }


def _outcome_payload(outcome: SubtaskOutcome) -> dict[str, Any]:
    return {
        "promptKind": outcome.prompt_kind,
        "subtaskId": outcome.subtask_id,
        "status": outcome.status.value,
        "content": outcome.content,
        "error": outcome.error,
    }


def _json_line(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)



def _one_line(text: str, width: int) -> str:
    collapsed = " ".join(text.split())
    return collapsed if len(collapsed) <= width else collapsed[: width - 3] + "..."
