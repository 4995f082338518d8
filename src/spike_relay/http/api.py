"""Endpoint wrappers for jobs and their spikes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from spike_relay.errors import TransportError
from spike_relay.fields import extract_id, extract_status, pick_value
from spike_relay.http.client import ApiClient

CONTENT_KEYS = ("content", "markdown")
HANDLE_KEYS = ("spikeId", "id")


@dataclass(slots=True)
class SubtaskCreation:
    """Normalized reply of the idempotent create-or-fetch endpoint."""

    content: str | None
    handle: str | None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_ready(self) -> bool:
        return self.content is not None


@dataclass(slots=True)
class JobSubmission:
    """Reply of a job submission."""

    job_id: str | None
    status: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PromptInfo:
    """One prompt kind accepted by the spikes endpoint."""

    prompt_id: str
    name: str | None = None
    description: str | None = None


class SpikesApi:
    """Remote operations used by the orchestrator and the submission pipeline."""

    def __init__(self, client: ApiClient) -> None:
        self.client = client

    async def submit(self, source_ref: str, language: str) -> JobSubmission:
        payload = _as_object(
            await self.client.request("/v1/add", query={"url": source_ref, "outputLang": language}),
        )
        return JobSubmission(
            job_id=extract_id(payload),
            status=extract_status(payload) or "pending",
            payload=payload,
        )

    async def job_status(self, job_id: str) -> dict[str, Any]:
        return _as_object(await self.client.request(f"/v1/status/{quote(job_id, safe='')}"))

    async def create_subtask(
        self,
        job_id: str,
        prompt_kind: str,
        language: str,
    ) -> SubtaskCreation:
        """Create the spike or fetch the cached one keyed by (job, prompt kind, language)."""

        payload = _as_object(
            await self.client.request(
                f"/spikes/{quote(job_id, safe='')}",
                method="POST",
                body={"promptId": prompt_kind, "outputLang": language},
            ),
        )
        return SubtaskCreation(
            content=pick_value(payload, CONTENT_KEYS),
            handle=pick_value(payload, HANDLE_KEYS),
            payload=payload,
        )

    async def list_prompts(self) -> tuple[list[PromptInfo], dict[str, Any]]:
        """Available prompt kinds, plus the raw reply for JSON output."""

        payload = _as_object(await self.client.request("/v1/prompts"))
        prompts: list[PromptInfo] = []
        items = payload.get("prompts")
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            prompt_id = pick_value(item, ("id",))
            if prompt_id:
                prompts.append(
                    PromptInfo(
                        prompt_id=prompt_id,
                        name=pick_value(item, ("name",)),
                        description=pick_value(item, ("description",)),
                    ),
                )
        return prompts, payload

    @staticmethod
    def stream_path(handle: str) -> str:
        return f"/spikes/stream/{quote(handle, safe='')}"


def _as_object(payload: Any) -> dict[str, Any]:
    if isinstance(payload, dict):
        return payload
    raise TransportError(f"Expected a JSON object from the API, got {type(payload).__name__}.")
