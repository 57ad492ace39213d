"""
HTTP transport for the App Search API.

The :class:`Transport` protocol is the seam between the search logic and the
network: it executes one request and returns parsed JSON, or raises one of
the client's exceptions. :class:`HTTPTransport` is the default implementation,
built on a persistent ``httpx.Client`` / ``httpx.AsyncClient`` pair, and owns
everything the search logic should not care about: authentication headers,
response caching, app-level retries and the circuit breaker.
"""

from __future__ import annotations

import asyncio
import copy
import importlib.metadata
import json
import logging
import time
from typing import Any, Protocol, runtime_checkable

import httpx

from appsearch.config import ClientConfig
from appsearch.models import NetworkError, ResponseError, TransportError

logger = logging.getLogger(__name__)

try:
    _PKG_VERSION = importlib.metadata.version("appsearch-client")
except importlib.metadata.PackageNotFoundError:
    _PKG_VERSION = "dev"

_USER_AGENT = f"appsearch-python/{_PKG_VERSION}"
_CLIENT_NAME = "appsearch-python"

_RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


@runtime_checkable
class Transport(Protocol):
    """Executes one API call relative to the engine API base.

    Implementations return the parsed JSON body and raise
    :class:`~appsearch.models.TransportError` for non-2xx statuses and
    :class:`~appsearch.models.NetworkError` when no status was received.
    Requests flagged *cacheable* may be served from a response cache; callers
    only flag read-only queries.
    """

    def request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        cacheable: bool = False,
    ) -> Any: ...

    async def arequest(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        cacheable: bool = False,
    ) -> Any: ...


def _backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Compute exponential backoff delay for the given attempt (0-indexed)."""
    return min(base * (2**attempt), maximum)


def _elapsed_ms(t0: float) -> float:
    return (time.monotonic() - t0) * 1000


class _CircuitBreaker:
    """Three-state circuit breaker: CLOSED -> OPEN -> HALF_OPEN -> CLOSED."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int, reset_timeout: float) -> None:
        self._threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._state = self.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._enabled = failure_threshold > 0

    @property
    def state(self) -> str:
        return self._state

    def check(self) -> None:
        """Raise NetworkError while the circuit is open."""
        if not self._enabled:
            return
        if self._state == self.OPEN:
            if time.monotonic() - self._last_failure_time >= self._reset_timeout:
                self._state = self.HALF_OPEN
            else:
                raise NetworkError(
                    "Circuit breaker is open: App Search has failed "
                    f"{self._failure_count} consecutive times"
                )

    def record_success(self) -> None:
        if not self._enabled:
            return
        prev = self._state
        self._failure_count = 0
        self._state = self.CLOSED
        if prev != self.CLOSED:
            logger.info("Circuit breaker %s -> %s after successful request", prev, self.CLOSED)

    def record_failure(self) -> None:
        if not self._enabled:
            return
        self._failure_count += 1
        self._last_failure_time = time.monotonic()
        if self._failure_count >= self._threshold and self._state != self.OPEN:
            prev = self._state
            self._state = self.OPEN
            logger.warning(
                "Circuit breaker %s -> %s after %d consecutive failures",
                prev,
                self.OPEN,
                self._failure_count,
            )


def _error_detail(response: httpx.Response) -> str:
    """Pull the backend's error message out of an error response, if any."""
    try:
        payload = response.json()
    except ValueError:
        return ""
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            return ", ".join(str(e) for e in errors)
        if isinstance(errors, str) and errors:
            return errors
        for key in ("error", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return ""


def _raise_for_error(exc: Exception, method: str, path: str, t0: float, base_url: str) -> None:
    """Map httpx exceptions to client exceptions. Always raises."""
    elapsed = _elapsed_ms(t0)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        logger.warning("App Search HTTP %d for %s %s (%.1fms)", status, method, path, elapsed)
        raise TransportError(status, _error_detail(exc.response)) from exc

    if isinstance(exc, httpx.ConnectError):
        logger.warning(
            "App Search connection failed for %s %s (%.1fms): %s", method, path, elapsed, exc
        )
        raise NetworkError(f"Cannot connect to App Search at {base_url}: {exc}") from exc

    if isinstance(exc, httpx.TimeoutException):
        logger.warning("App Search timeout for %s %s (%.1fms)", method, path, elapsed)
        raise NetworkError(f"Timeout connecting to App Search at {base_url}: {exc}") from exc

    logger.warning("App Search error for %s %s (%.1fms): %s", method, path, elapsed, exc)
    raise NetworkError(f"App Search request failed: {exc}") from exc


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise ResponseError(
            f"Failed to decode App Search response: {exc}", raw_body=response.text
        ) from exc


class HTTPTransport:
    """Default :class:`Transport` over httpx with connection pooling.

    Usable as both sync and async context manager.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        _sync_transport: httpx.BaseTransport | None = None,
        _async_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._base_url = config.api_base

        self._timeout = httpx.Timeout(
            connect=config.timeout_connect,
            read=config.timeout_read,
            pool=config.timeout_pool,
            write=config.timeout_read,
        )
        self._headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {config.search_key}",
            "User-Agent": _USER_AGENT,
            "X-Swiftype-Client": _CLIENT_NAME,
            "X-Swiftype-Client-Version": _PKG_VERSION,
        }
        self._headers.update(config.additional_headers)

        # Each client is opened on first use, so a sync-only caller never
        # holds an AsyncClient that close() cannot release.
        self._sync_transport = _sync_transport
        self._async_transport = _async_transport
        self._sync_client: httpx.Client | None = None
        self._async_client: httpx.AsyncClient | None = None

        self._breaker = _CircuitBreaker(
            config.circuit_failure_threshold,
            config.circuit_reset_timeout,
        )
        self._cache: dict[str, tuple[Any, float]] = {}

    def _sync(self) -> httpx.Client:
        if self._sync_client is None:
            transport = self._sync_transport or httpx.HTTPTransport(
                retries=self._config.retries,
                verify=self._config.verify_ssl,  # type: ignore[arg-type]
            )
            self._sync_client = httpx.Client(
                base_url=self._base_url,
                transport=transport,
                timeout=self._timeout,
                headers=self._headers,
            )
        return self._sync_client

    def _async(self) -> httpx.AsyncClient:
        if self._async_client is None:
            transport = self._async_transport or httpx.AsyncHTTPTransport(
                retries=self._config.retries,
                verify=self._config.verify_ssl,  # type: ignore[arg-type]
            )
            self._async_client = httpx.AsyncClient(
                base_url=self._base_url,
                transport=transport,
                timeout=self._timeout,
                headers=self._headers,
            )
        return self._async_client

    # -- Cache ---------------------------------------------------------------

    def _cache_key(self, method: str, path: str, body: dict[str, Any] | None) -> str:
        canonical = json.dumps(body, sort_keys=True, default=str) if body is not None else ""
        return f"{method.upper()}\x00{self._base_url}{path}\x00{canonical}"

    def _cache_get(self, key: str) -> Any | None:
        if not self._config.cache_responses:
            return None
        cached = self._cache.get(key)
        if cached is None:
            return None
        ttl = self._config.cache_ttl
        if ttl > 0 and (time.monotonic() - cached[1]) >= ttl:
            del self._cache[key]
            return None
        logger.debug("App Search cache hit for key=%r", key)
        return copy.deepcopy(cached[0])

    def _cache_put(self, key: str, payload: Any) -> None:
        if not self._config.cache_responses or self._config.cache_max_entries == 0:
            return
        if key not in self._cache and len(self._cache) >= self._config.cache_max_entries:
            oldest_key = min(self._cache, key=lambda k: self._cache[k][1])
            del self._cache[oldest_key]
        self._cache[key] = (copy.deepcopy(payload), time.monotonic())

    def clear_cache(self) -> None:
        """Remove all cached responses."""
        self._cache.clear()

    # -- Requests ------------------------------------------------------------

    def request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        cacheable: bool = False,
    ) -> Any:
        cache_k = self._cache_key(method, path, body)
        cached = self._cache_get(cache_k) if cacheable else None
        if cached is not None:
            return cached

        t0 = time.monotonic()
        last_exc: Exception | None = None
        for attempt in range(1 + self._config.retry_max_attempts):
            if attempt > 0:
                delay = self._retry_delay(attempt, method, path)
                time.sleep(delay)

            self._breaker.check()
            try:
                resp = self._sync().request(method, path, headers=headers, json=body)
                resp.raise_for_status()
                payload = _decode(resp)
            except httpx.HTTPStatusError as exc:
                self._breaker.record_failure()
                if exc.response.status_code not in _RETRYABLE_STATUS_CODES:
                    _raise_for_error(exc, method, path, t0, self._base_url)
                last_exc = exc
                continue
            except httpx.HTTPError as exc:
                self._breaker.record_failure()
                last_exc = exc
                continue

            self._breaker.record_success()
            logger.debug("App Search %s %s ok (%.1fms)", method, path, _elapsed_ms(t0))
            if cacheable:
                self._cache_put(cache_k, payload)
            return payload

        assert last_exc is not None
        _raise_for_error(last_exc, method, path, t0, self._base_url)
        raise last_exc  # unreachable

    async def arequest(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        cacheable: bool = False,
    ) -> Any:
        cache_k = self._cache_key(method, path, body)
        cached = self._cache_get(cache_k) if cacheable else None
        if cached is not None:
            return cached

        t0 = time.monotonic()
        last_exc: Exception | None = None
        for attempt in range(1 + self._config.retry_max_attempts):
            if attempt > 0:
                delay = self._retry_delay(attempt, method, path)
                await asyncio.sleep(delay)

            self._breaker.check()
            try:
                resp = await self._async().request(method, path, headers=headers, json=body)
                resp.raise_for_status()
                payload = _decode(resp)
            except httpx.HTTPStatusError as exc:
                self._breaker.record_failure()
                if exc.response.status_code not in _RETRYABLE_STATUS_CODES:
                    _raise_for_error(exc, method, path, t0, self._base_url)
                last_exc = exc
                continue
            except httpx.HTTPError as exc:
                self._breaker.record_failure()
                last_exc = exc
                continue

            self._breaker.record_success()
            logger.debug("App Search async %s %s ok (%.1fms)", method, path, _elapsed_ms(t0))
            if cacheable:
                self._cache_put(cache_k, payload)
            return payload

        assert last_exc is not None
        _raise_for_error(last_exc, method, path, t0, self._base_url)
        raise last_exc  # unreachable

    def _retry_delay(self, attempt: int, method: str, path: str) -> float:
        delay = _backoff_delay(
            attempt - 1,
            self._config.retry_backoff_base,
            self._config.retry_backoff_max,
        )
        logger.info(
            "App Search retry %d/%d after %.1fs for %s %s",
            attempt,
            self._config.retry_max_attempts,
            delay,
            method,
            path,
        )
        return delay

    # -- Lifecycle -----------------------------------------------------------

    def close(self) -> None:
        """Close the sync client.

        An AsyncClient opened by :meth:`arequest` needs :meth:`aclose`; it is
        reported and left for the garbage collector.
        """
        if self._sync_client is not None:
            self._sync_client.close()
        if self._async_client is not None and not self._async_client.is_closed:
            logger.warning(
                "HTTPTransport.close() called after async use; call aclose() to "
                "release the async connection pool"
            )

    async def aclose(self) -> None:
        if self._async_client is not None:
            await self._async_client.aclose()
        if self._sync_client is not None:
            self._sync_client.close()

    def __enter__(self) -> HTTPTransport:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    async def __aenter__(self) -> HTTPTransport:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()


__all__ = ["HTTPTransport", "Transport"]
