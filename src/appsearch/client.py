"""
App Search client: search with disjunctive facets, and click tracking.

Provides ``AppSearchClient`` for use in servers and pipelines (connection
pooling, validated config, context manager support) and module-level
convenience functions ``search()`` / ``asearch()`` for one-shot use.

Usage:
    # Persistent client (recommended):
    from appsearch import AppSearchClient, ClientConfig
    config = ClientConfig(
        host_identifier="host-2376rb",
        search_key="search-xxxxxxxx",
        engine_name="node-modules",
    )
    with AppSearchClient(config) as client:
        result = client.search(
            "cat",
            {
                "filters": {"all": [{"license": "BSD"}, {"dependencies": "socket.io"}]},
                "facets": {"license": {"type": "value", "size": 3}},
                "disjunctive_facets": ["license"],
            },
        )
        result.facets["license"][0]["data"]  # counts as if license were unfiltered

    # One-shot (config from APPSEARCH_* environment variables):
    from appsearch import search
    result = search("cat")
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from contextlib import nullcontext
from typing import Any

import httpx

from appsearch.config import ClientConfig
from appsearch.disjunctive import DisjunctiveFacetResolver
from appsearch.logging import request_scope
from appsearch.models import ClickEvent, SearchResult
from appsearch.request import (
    QueryDescriptor,
    SearchOptions,
    build_click_request,
    build_search_request,
    validate_query,
)
from appsearch.results import map_results
from appsearch.transport import HTTPTransport, Transport

logger = logging.getLogger(__name__)

_otel_tracer: Any = None
try:
    from opentelemetry import trace

    _otel_tracer = trace.get_tracer("appsearch")
except ImportError:
    pass


def _elapsed_ms(t0: float) -> float:
    return (time.monotonic() - t0) * 1000


def _otel_span(name: str, query: str, engine_name: str, disjunctive: int) -> Any:
    """Return an OTel span context manager, or nullcontext if OTel is absent."""
    if _otel_tracer is not None:
        return _otel_tracer.start_as_current_span(
            name,
            attributes={
                "appsearch.query": query,
                "appsearch.engine": engine_name,
                "appsearch.disjunctive_facets": disjunctive,
            },
        )
    return nullcontext()


def _finalize(
    query: str,
    payload: Mapping[str, Any],
    t0: float,
    disjunctive: int,
    span: Any,
) -> SearchResult:
    """Map the merged payload, log, set OTel attributes, and return the result."""
    elapsed = _elapsed_ms(t0)
    result = map_results(payload)

    logger.info(
        "App Search query=%r results=%d disjunctive_queries=%d elapsed_ms=%.1f",
        query,
        len(result.results),
        disjunctive,
        elapsed,
        extra={"backend_request_id": result.request_id or None},
    )
    if span is not None:
        span.set_attribute("appsearch.results_returned", len(result.results))
        span.set_attribute("appsearch.elapsed_ms", elapsed)
    return result


# ---------------------------------------------------------------------------
# AppSearchClient
# ---------------------------------------------------------------------------


class AppSearchClient:
    """Persistent App Search client for one engine.

    By default requests go through an :class:`~appsearch.transport.HTTPTransport`
    owned by the client; pass *transport* to supply any object satisfying the
    :class:`~appsearch.transport.Transport` protocol instead (it is then
    left open on :meth:`close`).

    Usage:
        with AppSearchClient(config) as client:
            result = client.search("cat", {"page": {"size": 10}})
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport: Transport | None = None,
        _sync_transport: httpx.BaseTransport | None = None,
        _async_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or ClientConfig.from_env()
        self._owns_transport = transport is None
        self._transport: Transport = transport or HTTPTransport(
            self._config,
            _sync_transport=_sync_transport,
            _async_transport=_async_transport,
        )
        self._resolver = DisjunctiveFacetResolver()
        self._search_path = self._config.engine_path("search.json")
        self._click_path = self._config.engine_path("click.json")
        self._closed = False

        logger.debug(
            "AppSearchClient created api_base=%s engine=%s cache=%s",
            self._config.api_base,
            self._config.engine_name,
            self._config.cache_responses,
        )

    @property
    def config(self) -> ClientConfig:
        return self._config

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("AppSearchClient is closed")

    def _prepare(
        self, query: Any, options: Mapping[str, Any] | None
    ) -> tuple[QueryDescriptor, SearchOptions]:
        query = validate_query(query)
        search_options = SearchOptions.from_mapping(options)
        primary = build_search_request(query, search_options)
        logger.debug(
            "App Search search start query=%r facets=%s disjunctive=%s",
            primary.query,
            sorted(search_options.facets),
            list(search_options.resolvable_disjunctive_facets),
        )
        return primary, search_options

    def _dispatch(self, descriptor: QueryDescriptor) -> Any:
        return self._transport.request(
            "POST", self._search_path, body=descriptor.to_body(), cacheable=True
        )

    async def _adispatch(self, descriptor: QueryDescriptor) -> Any:
        return await self._transport.arequest(
            "POST", self._search_path, body=descriptor.to_body(), cacheable=True
        )

    def clear_cache(self) -> None:
        """Remove all cached responses (no-op for transports without a cache)."""
        clear = getattr(self._transport, "clear_cache", None)
        if clear is not None:
            clear()

    def search(
        self,
        query: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> SearchResult:
        """Search the engine.

        The primary query and one auxiliary query per disjunctive facet are
        sent one after another on this blocking path, so latency grows with
        the number of disjunctive facets; use :meth:`asearch` to send them
        concurrently. All of them log under one ``request_id``.

        Args:
            query: Search query string (must be non-empty).
            options: Backend search parameters (``page``, ``filters``,
                ``facets``, ``group``, ``sort`` ...) plus the client-side
                ``disjunctive_facets`` list and
                ``disjunctive_facets_analytics_tags``.

        Returns:
            SearchResult whose facets for every disjunctive field ignore that
            field's own filters.

        Raises:
            ValidationError: Missing query or malformed options.
            TransportError: The backend answered non-2xx (primary or auxiliary query).
            NetworkError: The backend could not be reached.
            ResponseError: The backend returned unparseable data.
        """
        self._check_open()
        primary, search_options = self._prepare(query, options)
        disjunctive = len(search_options.resolvable_disjunctive_facets)

        span_cm = _otel_span(
            "appsearch.search", primary.query, self._config.engine_name, disjunctive
        )
        with request_scope(), span_cm as span:
            t0 = time.monotonic()
            payload = self._resolver.resolve(primary, search_options, self._dispatch)
            return _finalize(primary.query, payload, t0, disjunctive, span)

    async def asearch(
        self,
        query: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> SearchResult:
        """Async variant of search(); auxiliary queries run concurrently."""
        self._check_open()
        primary, search_options = self._prepare(query, options)
        disjunctive = len(search_options.resolvable_disjunctive_facets)

        span_cm = _otel_span(
            "appsearch.asearch", primary.query, self._config.engine_name, disjunctive
        )
        with request_scope(), span_cm as span:
            t0 = time.monotonic()
            payload = await self._resolver.aresolve(primary, search_options, self._adispatch)
            return _finalize(primary.query, payload, t0, disjunctive, span)

    def click(self, event: ClickEvent | Mapping[str, Any] | None = None) -> Any:
        """Record a click-through for a document returned by a search.

        Raises:
            ValidationError: ``query``, ``documentId`` or ``requestId`` is missing.
        """
        self._check_open()
        body = build_click_request(event)
        with request_scope():
            t0 = time.monotonic()
            ack = self._transport.request("POST", self._click_path, body=body)
            logger.info(
                "App Search click query=%r document_id=%s elapsed_ms=%.1f",
                body["query"],
                body["document_id"],
                _elapsed_ms(t0),
            )
        return ack

    async def aclick(self, event: ClickEvent | Mapping[str, Any] | None = None) -> Any:
        """Async variant of click()."""
        self._check_open()
        body = build_click_request(event)
        with request_scope():
            t0 = time.monotonic()
            ack = await self._transport.arequest("POST", self._click_path, body=body)
            logger.info(
                "App Search click query=%r document_id=%s elapsed_ms=%.1f",
                body["query"],
                body["document_id"],
                _elapsed_ms(t0),
            )
        return ack

    def close(self) -> None:
        """Close the underlying HTTP clients."""
        if not self._closed:
            if self._owns_transport and isinstance(self._transport, HTTPTransport):
                self._transport.close()
            self._closed = True
            logger.debug("AppSearchClient closed engine=%s", self._config.engine_name)

    async def aclose(self) -> None:
        """Close the underlying HTTP clients, including the async one."""
        if not self._closed:
            if self._owns_transport and isinstance(self._transport, HTTPTransport):
                await self._transport.aclose()
            self._closed = True
            logger.debug("AppSearchClient closed (async) engine=%s", self._config.engine_name)

    def __enter__(self) -> AppSearchClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    async def __aenter__(self) -> AppSearchClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------


def search(
    query: str | None = None,
    options: Mapping[str, Any] | None = None,
    *,
    host_identifier: str | None = None,
    search_key: str | None = None,
    engine_name: str | None = None,
    endpoint_base: str | None = None,
    _transport_override: httpx.BaseTransport | None = None,
) -> SearchResult:
    """Search once with a temporary client (one-shot convenience).

    Connection settings fall back to the ``APPSEARCH_*`` environment
    variables. For repeated use, prefer ``AppSearchClient`` which keeps a
    connection pool.
    """
    config = ClientConfig.from_env(
        host_identifier=host_identifier,
        search_key=search_key,
        engine_name=engine_name,
        endpoint_base=endpoint_base,
    )
    with AppSearchClient(config, _sync_transport=_transport_override) as client:
        return client.search(query, options)


async def asearch(
    query: str | None = None,
    options: Mapping[str, Any] | None = None,
    *,
    host_identifier: str | None = None,
    search_key: str | None = None,
    engine_name: str | None = None,
    endpoint_base: str | None = None,
    _transport_override: httpx.AsyncBaseTransport | None = None,
) -> SearchResult:
    """Async variant of search() (one-shot convenience)."""
    config = ClientConfig.from_env(
        host_identifier=host_identifier,
        search_key=search_key,
        engine_name=engine_name,
        endpoint_base=endpoint_base,
    )
    async with AppSearchClient(config, _async_transport=_transport_override) as client:
        return await client.asearch(query, options)
