"""Async HTTP client for the remote API with bearer auth and error mapping."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urlsplit

import httpx

from spike_relay import __version__
from spike_relay.errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = f"spike-relay/{__version__}"

QueryValue = str | int | float | bool | None


class ApiClient:
    """Thin wrapper over ``httpx.AsyncClient`` shared by all commands.

    Streams opened through :meth:`open_stream` have no read timeout: producer
    silence is policed by the stream session's idle watchdog instead.
    """

    def __init__(
        self,
        *,
        api_url: str,
        token: str | None = None,
        workspace_id: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        headers = {"User-Agent": DEFAULT_USER_AGENT}
        normalized_token = token.strip() if token else ""
        if normalized_token:
            headers["Authorization"] = f"Bearer {normalized_token}"
        if workspace_id:
            headers["X-Workspace-Id"] = workspace_id
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
            follow_redirects=True,
        )

    @property
    def origin(self) -> str:
        parts = urlsplit(self.api_url)
        return f"{parts.scheme}://{parts.netloc}"

    async def request(
        self,
        path: str,
        *,
        method: str | None = None,
        query: Mapping[str, QueryValue] | None = None,
        body: Any = None,
    ) -> Any:
        """Send one request and return decoded JSON, or text for non-JSON bodies.

        The method defaults to GET without a body and POST with one.
        """

        resolved_method = method or ("GET" if body is None else "POST")
        params = {
            key: _query_value(value) for key, value in (query or {}).items() if value is not None
        }
        try:
            response = await self._client.request(
                resolved_method,
                path,
                params=params or None,
                json=body,
            )
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s %s", resolved_method, path)
            raise TransportError(
                f"Request timed out after {self._timeout_seconds:g}s. "
                f"Is the API at {self.origin} reachable?",
            ) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling %s %s: %s", resolved_method, path, error)
            raise TransportError(
                f"Network error: could not reach {self.origin}. "
                "Check your connection or API status.",
            ) from error

        if not response.is_success:
            details = _error_details(response)
            message = (
                f"API {response.status_code}: {details}"
                if details
                else f"API {response.status_code} {response.reason_phrase}"
            )
            raise TransportError(message, status_code=response.status_code)

        if not is_json_response(response):
            return response.text
        try:
            return response.json()
        except ValueError as error:
            logger.warning("Invalid JSON body from %s %s", resolved_method, path)
            raise TransportError(
                f"API returned invalid JSON for {resolved_method} {path}.",
                status_code=response.status_code,
            ) from error

    @asynccontextmanager
    async def open_stream(
        self,
        path: str,
        *,
        last_event_id: str | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a GET expecting an event stream; the response is closed on exit."""

        headers = {"Accept": "text/event-stream"}
        if last_event_id:
            headers["Last-Event-ID"] = last_event_id
        request = self._client.build_request(
            "GET",
            path,
            headers=headers,
            timeout=httpx.Timeout(self._timeout_seconds, read=None),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as error:
            raise TransportError(f"SSE connection to {self.origin} failed: {error}") from error

        try:
            if not response.is_success:
                text = ""
                try:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                except httpx.HTTPError:
                    logger.debug("Could not read SSE error body", exc_info=True)
                raise TransportError(
                    f"SSE {response.status_code}: {text or response.reason_phrase}",
                    status_code=response.status_code,
                )
            yield response
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


def is_json_response(response: httpx.Response) -> bool:
    return "application/json" in response.headers.get("content-type", "")


def _query_value(value: QueryValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _error_details(response: httpx.Response) -> str | None:
    try:
        if is_json_response(response):
            payload = response.json()
            if isinstance(payload, dict):
                for key in ("message", "error"):
                    value = payload.get(key)
                    if isinstance(value, str) and value:
                        return value
            return response.text
        return response.text or None
    except ValueError:
        return response.text or None
