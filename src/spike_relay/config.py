"""Runtime configuration: environment settings, stored credentials, and a TTL cache."""

from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from spike_relay.errors import ConfigError
from spike_relay.timeutil import from_iso, utc_now

DEFAULT_API_URL = "https://api.xevol.com"
DEFAULT_HOME_DIR = Path.home() / ".spike-relay"
CONFIG_FILE_MODE = 0o600

CONFIG_KEYS = {
    "apiUrl": "Base API URL",
    "default.lang": "Default output language for generated content",
    "default.limit": "Default number of jobs listed by `jobs`",
    "api.timeout": "API request timeout in seconds",
}

_STORED_KEYS = {
    "api_url": "apiUrl",
    "token": "token",
    "account_id": "accountId",
    "email": "email",
    "expires_at": "expiresAt",
    "workspace_id": "workspaceId",
    "default_lang": "default.lang",
    "default_limit": "default.limit",
    "api_timeout": "api.timeout",
}
_FIELDS_BY_KEY = {key: name for name, key in _STORED_KEYS.items()}


@dataclass(slots=True)
class ApiSettings:
    """Remote API access."""

    api_url: str = DEFAULT_API_URL
    token: str | None = None
    token_from_env: bool = False
    token_expires_at: datetime | None = None
    workspace_id: str | None = None
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class StreamingSettings:
    """Live streaming of subtask output."""

    enabled: bool = True
    idle_timeout_seconds: float = 30.0


@dataclass(slots=True)
class PollSettings:
    """Polling fallback used when streaming is off and while waiting for jobs."""

    interval_seconds: float = 5.0
    max_attempts: int = 120


@dataclass(slots=True)
class BatchSettings:
    """Batch submission settings."""

    concurrency: int = 3


@dataclass(slots=True)
class DefaultsSettings:
    """User defaults for command options left unset."""

    language: str = "en"
    list_limit: int = 20


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    home_dir: Path = DEFAULT_HOME_DIR
    api: ApiSettings = field(default_factory=ApiSettings)
    streaming: StreamingSettings = field(default_factory=StreamingSettings)
    polling: PollSettings = field(default_factory=PollSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    defaults: DefaultsSettings = field(default_factory=DefaultsSettings)
    debug: bool = False

    @property
    def jobs_dir(self) -> Path:
        return self.home_dir / "jobs"

    @property
    def config_path(self) -> Path:
        return self.home_dir / "config.json"

    @classmethod
    def from_env(
        cls,
        stored: StoredConfig | None = None,
        home_dir: Path | None = None,
    ) -> Settings:
        """Combine environment, stored config, and defaults (in that precedence)."""

        stored = stored or StoredConfig()
        env_token = os.getenv("SPIKE_RELAY_TOKEN", "").strip() or None
        return cls(
            home_dir=home_dir or resolve_home_dir(),
            api=ApiSettings(
                api_url=os.getenv("SPIKE_RELAY_API_URL") or stored.api_url or DEFAULT_API_URL,
                token=env_token or stored.token,
                token_from_env=env_token is not None,
                token_expires_at=_parse_expiry(stored.expires_at),
                workspace_id=os.getenv("SPIKE_RELAY_WORKSPACE_ID") or stored.workspace_id,
                request_timeout_seconds=_env_float(
                    "SPIKE_RELAY_REQUEST_TIMEOUT_SECONDS",
                    stored.api_timeout or 30.0,
                ),
            ),
            streaming=StreamingSettings(
                enabled=_env_bool("SPIKE_RELAY_STREAMING", default=True),
                idle_timeout_seconds=_env_float("SPIKE_RELAY_IDLE_TIMEOUT_SECONDS", 30.0),
            ),
            polling=PollSettings(
                interval_seconds=_env_float("SPIKE_RELAY_POLL_INTERVAL_SECONDS", 5.0),
                max_attempts=_env_int("SPIKE_RELAY_POLL_MAX_ATTEMPTS", 120),
            ),
            batch=BatchSettings(
                concurrency=_env_int("SPIKE_RELAY_CONCURRENCY", 3),
            ),
            defaults=DefaultsSettings(
                language=stored.default_lang or "en",
                list_limit=stored.default_limit or 20,
            ),
            debug=_env_bool("SPIKE_RELAY_DEBUG", default=False),
        )

    def with_overrides(
        self,
        *,
        api_url: str | None = None,
        token: str | None = None,
        concurrency: int | None = None,
        streaming: bool | None = None,
    ) -> Settings:
        """Apply command-line overrides on top of resolved settings."""

        api = self.api
        if api_url is not None:
            api = replace(api, api_url=api_url)
        if token is not None:
            api = replace(api, token=token, token_from_env=True, token_expires_at=None)
        result = replace(self, api=api)
        if concurrency is not None:
            result = replace(result, batch=replace(result.batch, concurrency=concurrency))
        if streaming is not None:
            result = replace(result, streaming=replace(result.streaming, enabled=streaming))
        return result

    def validate(self) -> None:
        """Raise ConfigError if any setting is out of range."""

        parsed = urlparse(self.api.api_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ConfigError(
                f"Invalid API URL: {self.api.api_url!r}. "
                "Expected an absolute URL with http:// or https:// scheme.",
            )
        if self.api.request_timeout_seconds <= 0:
            raise ConfigError("SPIKE_RELAY_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.streaming.idle_timeout_seconds <= 0:
            raise ConfigError("SPIKE_RELAY_IDLE_TIMEOUT_SECONDS must be > 0.")
        if self.polling.interval_seconds < 0:
            raise ConfigError("SPIKE_RELAY_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.polling.max_attempts < 1:
            raise ConfigError("SPIKE_RELAY_POLL_MAX_ATTEMPTS must be >= 1.")
        if self.batch.concurrency < 1:
            raise ConfigError("SPIKE_RELAY_CONCURRENCY must be >= 1.")
        if self.defaults.list_limit < 1:
            raise ConfigError("default.limit must be >= 1.")


@dataclass(slots=True)
class TokenResolution:
    """Bearer token lookup result."""

    token: str | None
    expired: bool = False


def resolve_token(settings: Settings, *, now: datetime | None = None) -> TokenResolution:
    """Return the usable token; a stored token past its expiry counts as absent."""

    token = settings.api.token
    if not token:
        return TokenResolution(token=None)
    expires_at = settings.api.token_expires_at
    if not settings.api.token_from_env and expires_at is not None:
        if (now or utc_now()) >= expires_at:
            return TokenResolution(token=None, expired=True)
    return TokenResolution(token=token.strip())


def resolve_home_dir() -> Path:
    raw = os.getenv("SPIKE_RELAY_HOME", "").strip()
    return Path(raw).expanduser() if raw else DEFAULT_HOME_DIR


@dataclass(slots=True)
class StoredConfig:
    """Credentials and user defaults persisted by ``login`` and ``config set``.

    Dotted keys such as ``default.lang`` are stored as nested JSON objects.
    """

    api_url: str | None = None
    token: str | None = None
    account_id: str | None = None
    email: str | None = None
    expires_at: str | None = None
    workspace_id: str | None = None
    default_lang: str | None = None
    default_limit: int | None = None
    api_timeout: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for name, value in asdict(self).items():
            if value is None:
                continue
            section, _, leaf = _STORED_KEYS[name].rpartition(".")
            target = payload.setdefault(section, {}) if section else payload
            target[leaf] = value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> StoredConfig:
        def _str(key: str) -> str | None:
            value = _nested(raw, key)
            return value if isinstance(value, str) and value else None

        def _positive(key: str) -> float | None:
            value = _nested(raw, key)
            if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
                return None
            return value

        limit = _positive("default.limit")
        timeout = _positive("api.timeout")
        return cls(
            api_url=_str("apiUrl"),
            token=_str("token"),
            account_id=_str("accountId"),
            email=_str("email"),
            expires_at=_str("expiresAt"),
            workspace_id=_str("workspaceId"),
            default_lang=_str("default.lang"),
            default_limit=int(limit) if limit is not None else None,
            api_timeout=float(timeout) if timeout is not None else None,
        )

    def get_setting(self, key: str) -> str | int | float | None:
        """Value of a user-settable key; ``None`` when unset."""

        return getattr(self, _setting_field(key))

    def with_setting(self, key: str, raw: str) -> StoredConfig:
        """Copy with ``key`` parsed from its command-line text."""

        name = _setting_field(key)
        return replace(self, **{name: _parse_setting(key, raw)})


class ConfigStore:
    """Reads and writes the stored config file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> StoredConfig | None:
        try:
            raw = json.loads(self.path.read_text("utf-8"))
        except FileNotFoundError:
            return None
        except ValueError as error:
            raise ConfigError(f"Stored config {self.path} is not valid JSON") from error
        if not isinstance(raw, dict):
            raise ConfigError(f"Expected JSON object in {self.path}")
        return StoredConfig.from_dict(raw)

    def write(self, config: StoredConfig) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(config.to_dict(), indent=2) + "\n"
        self.path.write_text(payload, "utf-8")
        os.chmod(self.path, CONFIG_FILE_MODE)

    def update(self, **changes: str | None) -> StoredConfig:
        merged = replace(self.read() or StoredConfig(), **changes)
        self.write(merged)
        return merged

    def clear(self) -> bool:
        """Delete the stored config; returns whether a file was removed."""

        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


class ConfigCache:
    """Keeps the stored config in memory for ``ttl_seconds`` after each load."""

    def __init__(
        self,
        loader: Callable[[], StoredConfig | None],
        *,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: StoredConfig | None = None
        self.last_loaded_at: float | None = None

    def get(self) -> StoredConfig | None:
        now = self._clock()
        if self.last_loaded_at is None or now - self.last_loaded_at >= self.ttl_seconds:
            self._value = self._loader()
            self.last_loaded_at = now
        return self._value

    def invalidate(self) -> None:
        self._value = None
        self.last_loaded_at = None


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return from_iso(value)
    except ValueError:
        return None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ConfigError(f"Invalid number for {name}: {raw!r}") from error


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ConfigError(f"Invalid integer for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {value!r}")


def _nested(raw: dict[str, Any], key: str) -> Any:
    current: Any = raw
    for part in key.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _setting_field(key: str) -> str:
    if key not in CONFIG_KEYS:
        raise ConfigError(
            f"Unknown config key: {key}. Allowed keys: {', '.join(CONFIG_KEYS)}",
        )
    return _FIELDS_BY_KEY[key]


def _parse_setting(key: str, raw: str) -> str | int | float:
    value = raw.strip()
    if not value:
        raise ConfigError(f"{key} must not be empty.")
    if key == "default.limit":
        try:
            number: int | float = int(value)
        except ValueError as error:
            raise ConfigError(f"{key} must be a positive integer.") from error
    elif key == "api.timeout":
        try:
            number = float(value)
        except ValueError as error:
            raise ConfigError(f"{key} must be a positive number.") from error
    elif key == "apiUrl":
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ConfigError(f"Invalid API URL: {value!r}.")
        return value
    else:
        return value
    if number <= 0:
        raise ConfigError(f"{key} must be a positive number.")
    return number
