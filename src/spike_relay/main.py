"""CLI entrypoint for spike-relay."""

import logging
from collections.abc import Callable
from typing import TypeVar

import rich_click as click

from spike_relay import __version__
from spike_relay.config import Settings
from spike_relay.controllers import (
    AddCommand,
    AnalyzeCommand,
    CommandResult,
    ConfigSetCommand,
    JobsCommand,
    LoginCommand,
    PromptsCommand,
    RelayCliController,
    ResumeCommand,
    StreamCommand,
)
from spike_relay.errors import SpikeRelayError

click.rich_click.USE_MARKDOWN = True
RELAY_CONTROLLER = RelayCliController()

T = TypeVar("T")

_api_url_option = click.option(
    "--api-url",
    default=None,
    help="API base URL. Overrides SPIKE_RELAY_API_URL and stored config.",
)
_token_option = click.option(
    "--token",
    default=None,
    help="Bearer token. Overrides SPIKE_RELAY_TOKEN and stored credentials.",
)
_json_option = click.option(
    "--json",
    "json_output",
    is_flag=True,
    default=False,
    help="Print raw JSON events and results instead of text.",
)
_lang_option = click.option(
    "--lang",
    "language",
    default=None,
    help="Output language for generated content. Defaults to `default.lang`, then en.",
)
_streaming_option = click.option(
    "--stream/--no-stream",
    "streaming",
    default=None,
    help="Stream subtask output live, or poll until it is ready.",
)


@click.group()
@click.version_option(version=__version__, prog_name="spike-relay")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def spike_relay(verbose: bool) -> None:
    """Submit jobs, stream their spikes, and resume interrupted runs."""

    _configure_logging(verbose)


@spike_relay.command("add")
@click.argument("urls", nargs=-1, required=True)
@_lang_option
@click.option(
    "--spike",
    "prompt_kinds",
    multiple=True,
    help="Prompt kind to generate once the job completes. Can be repeated.",
)
@click.option("--wait", is_flag=True, default=False, help="Wait for each job to finish.")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum number of sources processed at once.",
)
@_streaming_option
@_json_option
@_api_url_option
@_token_option
def add(  # noqa: PLR0913
    urls: tuple[str, ...],
    language: str | None,
    prompt_kinds: tuple[str, ...],
    wait: bool,
    concurrency: int | None,
    streaming: bool | None,
    json_output: bool,
    api_url: str | None,
    token: str | None,
) -> None:
    """Submit one or more source URLs as jobs."""

    _finish(
        _call(
            lambda: RELAY_CONTROLLER.add(
                AddCommand(
                    urls=urls,
                    language=language,
                    prompt_kinds=prompt_kinds,
                    wait=wait,
                    concurrency=concurrency,
                    json_output=json_output,
                    streaming=streaming,
                    api_url=api_url,
                    token=token,
                ),
            ),
        ),
        failure="One or more sources failed.",
    )


@spike_relay.command("analyze")
@click.argument("job_id")
@click.option(
    "--spike",
    "prompt_kinds",
    multiple=True,
    required=True,
    help="Prompt kind to generate. Can be repeated.",
)
@_lang_option
@_streaming_option
@_json_option
@_api_url_option
@_token_option
def analyze(  # noqa: PLR0913
    job_id: str,
    prompt_kinds: tuple[str, ...],
    language: str | None,
    streaming: bool | None,
    json_output: bool,
    api_url: str | None,
    token: str | None,
) -> None:
    """Generate spikes for an existing job."""

    _finish(
        _call(
            lambda: RELAY_CONTROLLER.analyze(
                AnalyzeCommand(
                    job_id=job_id,
                    prompt_kinds=prompt_kinds,
                    language=language,
                    json_output=json_output,
                    streaming=streaming,
                    api_url=api_url,
                    token=token,
                ),
            ),
        ),
        failure="One or more spikes failed.",
    )


@spike_relay.command("stream")
@click.argument("subtask_id")
@click.option(
    "--last-event-id",
    default=None,
    help="Resume cursor: replay events after this id.",
)
@_json_option
@_api_url_option
@_token_option
def stream(
    subtask_id: str,
    last_event_id: str | None,
    json_output: bool,
    api_url: str | None,
    token: str | None,
) -> None:
    """Attach to a single spike stream."""

    _finish(
        _call(
            lambda: RELAY_CONTROLLER.stream(
                StreamCommand(
                    subtask_id=subtask_id,
                    last_event_id=last_event_id,
                    json_output=json_output,
                    api_url=api_url,
                    token=token,
                ),
            ),
        ),
        failure="Stream did not complete.",
    )


@spike_relay.command("resume")
@click.argument("job_id")
@_json_option
@_api_url_option
@_token_option
def resume(job_id: str, json_output: bool, api_url: str | None, token: str | None) -> None:
    """Resume the tracked spikes of a job from its local ledger."""

    _finish(
        _call(
            lambda: RELAY_CONTROLLER.resume(
                ResumeCommand(
                    job_id=job_id,
                    json_output=json_output,
                    api_url=api_url,
                    token=token,
                ),
            ),
        ),
        failure="Resume did not complete.",
    )


@spike_relay.command("jobs")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=None,
    help="How many jobs to list, newest first. Defaults to `default.limit`, then 20.",
)
def jobs(limit: int | None) -> None:
    """List locally tracked jobs."""

    _emit_lines(_call(lambda: RELAY_CONTROLLER.jobs(JobsCommand(limit=limit))))


@spike_relay.command("login")
@click.option("--token", required=True, help="Bearer token to store.")
@click.option("--api-url", default=None, help="API base URL to store.")
@click.option("--workspace-id", default=None, help="Workspace id sent with every request.")
@click.option("--expires-at", default=None, help="Token expiry as an ISO-8601 timestamp.")
@click.option("--email", default=None, help="Account email, for display only.")
def login(
    token: str,
    api_url: str | None,
    workspace_id: str | None,
    expires_at: str | None,
    email: str | None,
) -> None:
    """Store credentials for later commands."""

    _emit_lines(
        _call(
            lambda: RELAY_CONTROLLER.login(
                LoginCommand(
                    token=token,
                    api_url=api_url,
                    workspace_id=workspace_id,
                    expires_at=expires_at,
                    email=email,
                ),
            ),
        ),
    )


@spike_relay.command("logout")
def logout() -> None:
    """Remove stored credentials."""

    _emit_lines(_call(RELAY_CONTROLLER.logout))


@spike_relay.command("prompts")
@_json_option
@_api_url_option
@_token_option
def prompts(json_output: bool, api_url: str | None, token: str | None) -> None:
    """List the prompt kinds accepted by `--spike`."""

    _emit_lines(
        _call(
            lambda: RELAY_CONTROLLER.prompts(
                PromptsCommand(json_output=json_output, api_url=api_url, token=token),
            ),
        ),
    )


@spike_relay.group("config")
def config() -> None:
    """Manage stored user defaults (`apiUrl`, `default.lang`, `default.limit`, `api.timeout`)."""


@config.command("get")
@click.argument("key")
def config_get(key: str) -> None:
    """Print one stored value."""

    _emit_lines(_call(lambda: RELAY_CONTROLLER.config_get(key)))


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Store one value."""

    _emit_lines(
        _call(lambda: RELAY_CONTROLLER.config_set(ConfigSetCommand(key=key, value=value))),
    )


@config.command("list")
def config_list() -> None:
    """Print every stored value."""

    _emit_lines(_call(RELAY_CONTROLLER.config_list))


def _call(action: Callable[[], T]) -> T:
    try:
        return action()
    except (SpikeRelayError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _finish(result: CommandResult, *, failure: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure)


def _configure_logging(verbose: bool) -> None:
    debug = verbose or _call(lambda: Settings.from_env().debug)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    spike_relay()
