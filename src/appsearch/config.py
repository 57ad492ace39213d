"""
Configuration for the App Search client.

All configuration is validated at construction time, not per-call.
Environment variables are read once via ``ClientConfig.from_env()`` and
the resulting object is immutable. Each client owns its own config, so
clients for different engines, keys or endpoints can coexist.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_API_PATH = "/api/as/v1/"
_DEFAULT_HOST_TEMPLATE = "https://{host_identifier}.api.swiftype.com"
_DEFAULT_TIMEOUT_CONNECT = 5.0
_DEFAULT_TIMEOUT_READ = 25.0
_DEFAULT_TIMEOUT_POOL = 10.0
_DEFAULT_RETRIES = 2


@dataclass(frozen=True)
class ClientConfig:
    """Validated, immutable configuration for one App Search engine.

    Args:
        host_identifier: Account host identifier (``host-xxxxxx``). Used to
            build the production endpoint; optional when *endpoint_base* is set.
        search_key: Public search key, sent as a bearer token.
        engine_name: Engine to query.
        endpoint_base: Override for the backend host, e.g.
            ``http://localhost:3002``. ``None`` uses the production host.
        cache_responses: Cache identical requests inside the transport.
        cache_ttl: Seconds a cached response stays valid (0 = until evicted).
        cache_max_entries: Max cached responses before the oldest is evicted.
        timeout_connect: TCP connect timeout in seconds.
        timeout_read: HTTP read timeout in seconds.
        timeout_pool: Connection pool acquisition timeout in seconds.
        retries: Transport-level retries on connection failure.
        retry_max_attempts: App-level retries for retryable HTTP errors
            (429/502/503/504). 0 = disabled.
        retry_backoff_base: Initial backoff in seconds for exponential delay.
        retry_backoff_max: Maximum backoff in seconds.
        circuit_failure_threshold: Consecutive failures before the circuit
            breaker opens (0 = disabled).
        circuit_reset_timeout: Seconds before an open circuit transitions
            to half-open.
        verify_ssl: TLS verification (True, False, or path to CA bundle).
        additional_headers: Extra headers sent with every request.
    """

    host_identifier: str = ""
    search_key: str = ""
    engine_name: str = ""
    endpoint_base: str | None = None
    cache_responses: bool = False
    cache_ttl: float = 0.0
    cache_max_entries: int = 256
    timeout_connect: float = _DEFAULT_TIMEOUT_CONNECT
    timeout_read: float = _DEFAULT_TIMEOUT_READ
    timeout_pool: float = _DEFAULT_TIMEOUT_POOL
    retries: int = _DEFAULT_RETRIES
    retry_max_attempts: int = 0
    retry_backoff_base: float = 0.5
    retry_backoff_max: float = 8.0
    circuit_failure_threshold: int = 0
    circuit_reset_timeout: float = 30.0
    verify_ssl: bool | str = True
    additional_headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.host_identifier and not self.endpoint_base:
            errors.append("host_identifier or endpoint_base must be set")
        if not self.search_key:
            errors.append("search_key must be a non-empty string")
        if not self.engine_name:
            errors.append("engine_name must be a non-empty string")
        if self.cache_ttl < 0:
            errors.append(f"cache_ttl must be >= 0, got {self.cache_ttl}")
        if self.cache_max_entries < 0:
            errors.append(f"cache_max_entries must be >= 0, got {self.cache_max_entries}")
        if self.timeout_connect <= 0:
            errors.append(f"timeout_connect must be > 0, got {self.timeout_connect}")
        if self.timeout_read <= 0:
            errors.append(f"timeout_read must be > 0, got {self.timeout_read}")
        if self.timeout_pool <= 0:
            errors.append(f"timeout_pool must be > 0, got {self.timeout_pool}")
        if self.retries < 0:
            errors.append(f"retries must be >= 0, got {self.retries}")
        if self.retry_max_attempts < 0:
            errors.append(f"retry_max_attempts must be >= 0, got {self.retry_max_attempts}")
        if self.retry_backoff_base <= 0:
            errors.append(f"retry_backoff_base must be > 0, got {self.retry_backoff_base}")
        if self.retry_backoff_max <= 0:
            errors.append(f"retry_backoff_max must be > 0, got {self.retry_backoff_max}")
        if self.circuit_failure_threshold < 0:
            errors.append(
                f"circuit_failure_threshold must be >= 0, got {self.circuit_failure_threshold}"
            )
        if self.circuit_reset_timeout <= 0:
            errors.append(f"circuit_reset_timeout must be > 0, got {self.circuit_reset_timeout}")

        if errors:
            raise ValueError("Invalid App Search configuration: " + "; ".join(errors))

    @property
    def api_base(self) -> str:
        """Root of the versioned API, always ending in ``/``."""
        if self.endpoint_base:
            host = self.endpoint_base.rstrip("/")
        else:
            host = _DEFAULT_HOST_TEMPLATE.format(host_identifier=self.host_identifier)
        return f"{host}{_API_PATH}"

    def engine_path(self, action: str) -> str:
        """Path of an engine endpoint relative to :attr:`api_base`."""
        return f"engines/{self.engine_name}/{action}"

    @classmethod
    def from_env(cls, **overrides: object) -> ClientConfig:
        """Build config from environment variables with optional overrides.

        Environment variables:
            APPSEARCH_HOST_IDENTIFIER       -- Account host identifier
            APPSEARCH_SEARCH_KEY            -- Public search key
            APPSEARCH_ENGINE_NAME           -- Engine name
            APPSEARCH_ENDPOINT_BASE         -- Backend host override
            APPSEARCH_CACHE_RESPONSES       -- "true"/"false" (default false)
            APPSEARCH_CACHE_TTL             -- Cache TTL seconds (default 0 = no expiry)
            APPSEARCH_TIMEOUT_CONNECT       -- Connect timeout seconds (default 5.0)
            APPSEARCH_TIMEOUT_READ          -- Read timeout seconds (default 25.0)
            APPSEARCH_RETRIES               -- Transport retries (default 2)
            APPSEARCH_RETRY_MAX_ATTEMPTS    -- App-level retries (default 0 = off)
            APPSEARCH_CIRCUIT_FAILURE_THRESHOLD -- Failures to open circuit (default 0 = off)
            APPSEARCH_VERIFY_SSL            -- "true", "false", or path to CA bundle

        Explicit keyword arguments override environment variables.
        """

        def _env(key: str, default: str) -> str:
            return os.environ.get(key, default)

        def _env_float(key: str, default: float) -> float:
            raw = os.environ.get(key)
            if raw is None:
                return default
            try:
                return float(raw)
            except ValueError:
                raise ValueError(f"Environment variable {key}={raw!r} is not a valid number")

        def _env_int(key: str, default: int) -> int:
            raw = os.environ.get(key)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                raise ValueError(f"Environment variable {key}={raw!r} is not a valid integer")

        def _env_bool(key: str, default: bool) -> bool:
            raw = os.environ.get(key)
            if raw is None:
                return default
            return raw.strip().lower() in ("true", "1", "yes")

        def _env_verify(key: str, default: bool | str) -> bool | str:
            raw = os.environ.get(key)
            if raw is None:
                return default
            low = raw.strip().lower()
            if low in ("true", "1", "yes"):
                return True
            if low in ("false", "0", "no"):
                return False
            return raw  # treat as CA bundle path

        kwargs: dict[str, object] = {
            "host_identifier": _env("APPSEARCH_HOST_IDENTIFIER", ""),
            "search_key": _env("APPSEARCH_SEARCH_KEY", ""),
            "engine_name": _env("APPSEARCH_ENGINE_NAME", ""),
            "endpoint_base": os.environ.get("APPSEARCH_ENDPOINT_BASE") or None,
            "cache_responses": _env_bool("APPSEARCH_CACHE_RESPONSES", False),
            "cache_ttl": _env_float("APPSEARCH_CACHE_TTL", 0.0),
            "cache_max_entries": _env_int("APPSEARCH_CACHE_MAX_ENTRIES", 256),
            "timeout_connect": _env_float("APPSEARCH_TIMEOUT_CONNECT", _DEFAULT_TIMEOUT_CONNECT),
            "timeout_read": _env_float("APPSEARCH_TIMEOUT_READ", _DEFAULT_TIMEOUT_READ),
            "timeout_pool": _env_float("APPSEARCH_TIMEOUT_POOL", _DEFAULT_TIMEOUT_POOL),
            "retries": _env_int("APPSEARCH_RETRIES", _DEFAULT_RETRIES),
            "retry_max_attempts": _env_int("APPSEARCH_RETRY_MAX_ATTEMPTS", 0),
            "retry_backoff_base": _env_float("APPSEARCH_RETRY_BACKOFF_BASE", 0.5),
            "retry_backoff_max": _env_float("APPSEARCH_RETRY_BACKOFF_MAX", 8.0),
            "circuit_failure_threshold": _env_int("APPSEARCH_CIRCUIT_FAILURE_THRESHOLD", 0),
            "circuit_reset_timeout": _env_float("APPSEARCH_CIRCUIT_RESET_TIMEOUT", 30.0),
            "verify_ssl": _env_verify("APPSEARCH_VERIFY_SSL", True),
        }
        kwargs.update({k: v for k, v in overrides.items() if v is not None})

        config = cls(**kwargs)  # type: ignore[arg-type]
        logger.info(
            "App Search config: api_base=%s engine=%s cache=%s timeout_read=%.1f retries=%d",
            config.api_base,
            config.engine_name,
            config.cache_responses,
            config.timeout_read,
            config.retries,
        )
        return config
