"""Tests for appsearch.transport -- HTTPTransport over httpx MockTransport.

No real App Search or network is required.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx
import pytest

from appsearch.models import NetworkError, ResponseError, TransportError
from appsearch.transport import HTTPTransport, Transport, _backoff_delay, _CircuitBreaker
from conftest import make_config

SEARCH_PATH = "engines/node-modules/search.json"
OK_BODY = {"results": [], "info": {"facets": {}}, "meta": {"request_id": "r1"}}


def _recording(
    responder: Any = None,
) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if responder is not None:
            return responder(request)
        return httpx.Response(200, json=OK_BODY)

    return httpx.MockTransport(handler), seen


def _transport(responder: Any = None, **config: Any) -> tuple[HTTPTransport, list[httpx.Request]]:
    mock, seen = _recording(responder)
    return HTTPTransport(make_config(**config), _sync_transport=mock), seen


class TestRequestShape:
    def test_satisfies_protocol(self) -> None:
        transport, _ = _transport()
        assert isinstance(transport, Transport)

    def test_url_and_body(self) -> None:
        transport, seen = _transport()
        with transport:
            payload = transport.request("POST", SEARCH_PATH, body={"query": "cat"})
        assert payload == OK_BODY
        assert str(seen[0].url) == (
            "https://host-2376rb.api.swiftype.com/api/as/v1/engines/node-modules/search.json"
        )
        assert seen[0].method == "POST"
        assert json.loads(seen[0].content) == {"query": "cat"}

    def test_auth_and_client_headers(self) -> None:
        transport, seen = _transport()
        with transport:
            transport.request("POST", SEARCH_PATH, body={"query": "cat"})
        headers = seen[0].headers
        assert headers["Authorization"] == "Bearer search-hean6g8dmxnm2shqqiag757a"
        assert headers["Content-Type"] == "application/json"
        assert headers["X-Swiftype-Client"] == "appsearch-python"
        assert "X-Swiftype-Client-Version" in headers
        assert headers["User-Agent"].startswith("appsearch-python/")

    def test_additional_headers(self) -> None:
        transport, seen = _transport(additional_headers={"X-Tenant": "acme"})
        with transport:
            transport.request("POST", SEARCH_PATH, body={"query": "cat"})
        assert seen[0].headers["X-Tenant"] == "acme"

    def test_per_request_headers(self) -> None:
        transport, seen = _transport()
        with transport:
            transport.request(
                "POST", SEARCH_PATH, headers={"X-Trace": "t1"}, body={"query": "cat"}
            )
        assert seen[0].headers["X-Trace"] == "t1"

    def test_endpoint_base_override(self) -> None:
        transport, seen = _transport(endpoint_base="http://localhost:3002/")
        with transport:
            transport.request("POST", SEARCH_PATH, body={"query": "cat"})
        assert str(seen[0].url) == (
            "http://localhost:3002/api/as/v1/engines/node-modules/search.json"
        )

    def test_empty_body_decodes_to_empty_object(self) -> None:
        transport, _ = _transport(lambda request: httpx.Response(200))
        with transport:
            assert transport.request("POST", "engines/node-modules/click.json", body={}) == {}


class TestErrors:
    def test_404_without_body(self) -> None:
        transport, _ = _transport(lambda request: httpx.Response(404))
        with transport, pytest.raises(TransportError) as exc_info:
            transport.request("POST", SEARCH_PATH, body={"query": "cat"})
        assert str(exc_info.value) == "[404]"
        assert exc_info.value.status_code == 404

    def test_backend_errors_list(self) -> None:
        transport, _ = _transport(
            lambda request: httpx.Response(
                400, json={"errors": ["Missing required parameter: query"]}
            )
        )
        with transport, pytest.raises(TransportError) as exc_info:
            transport.request("POST", SEARCH_PATH, body={})
        assert str(exc_info.value) == "[400] Missing required parameter: query"

    def test_multiple_errors_joined(self) -> None:
        transport, _ = _transport(
            lambda request: httpx.Response(400, json={"errors": ["first", "second"]})
        )
        with transport, pytest.raises(TransportError, match=r"^\[400\] first, second$"):
            transport.request("POST", SEARCH_PATH, body={})

    def test_error_key(self) -> None:
        transport, _ = _transport(
            lambda request: httpx.Response(401, json={"error": "Invalid authentication token"})
        )
        with transport, pytest.raises(TransportError) as exc_info:
            transport.request("POST", SEARCH_PATH, body={})
        assert str(exc_info.value) == "[401] Invalid authentication token"

    def test_non_json_error_body(self) -> None:
        transport, _ = _transport(lambda request: httpx.Response(500, text="<html>oops</html>"))
        with transport, pytest.raises(TransportError) as exc_info:
            transport.request("POST", SEARCH_PATH, body={})
        assert str(exc_info.value) == "[500]"

    def test_connection_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        transport, _ = _transport(refuse)
        with transport, pytest.raises(NetworkError, match="Cannot connect"):
            transport.request("POST", SEARCH_PATH, body={})

    def test_timeout(self) -> None:
        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        transport, _ = _transport(slow)
        with transport, pytest.raises(NetworkError, match="Timeout"):
            transport.request("POST", SEARCH_PATH, body={})

    def test_invalid_json(self) -> None:
        transport, _ = _transport(lambda request: httpx.Response(200, text="not json"))
        with transport, pytest.raises(ResponseError, match="decode") as exc_info:
            transport.request("POST", SEARCH_PATH, body={})
        assert exc_info.value.raw_body == "not json"

    async def test_async_404(self) -> None:
        mock, _ = _recording(lambda request: httpx.Response(404))
        async with HTTPTransport(make_config(), _async_transport=mock) as transport:
            with pytest.raises(TransportError) as exc_info:
                await transport.arequest("POST", SEARCH_PATH, body={"query": "cat"})
        assert str(exc_info.value) == "[404]"


class TestResponseCache:
    def test_disabled_by_default(self) -> None:
        transport, seen = _transport()
        with transport:
            transport.request("POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True)
            transport.request("POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True)
        assert len(seen) == 2

    def test_cache_hit(self) -> None:
        transport, seen = _transport(cache_responses=True)
        with transport:
            first = transport.request("POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True)
            second = transport.request(
                "POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True
            )
        assert len(seen) == 1
        assert first == second

    def test_key_ignores_body_key_order(self) -> None:
        transport, seen = _transport(cache_responses=True)
        with transport:
            transport.request(
                "POST", SEARCH_PATH, body={"query": "cat", "page": {"size": 1}}, cacheable=True
            )
            transport.request(
                "POST", SEARCH_PATH, body={"page": {"size": 1}, "query": "cat"}, cacheable=True
            )
        assert len(seen) == 1

    def test_cache_miss_different_body(self) -> None:
        transport, seen = _transport(cache_responses=True)
        with transport:
            transport.request("POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True)
            transport.request("POST", SEARCH_PATH, body={"query": "dog"}, cacheable=True)
        assert len(seen) == 2

    def test_non_cacheable_requests_always_sent(self) -> None:
        transport, seen = _transport(cache_responses=True)
        with transport:
            transport.request("POST", SEARCH_PATH, body={"query": "cat"})
            transport.request("POST", SEARCH_PATH, body={"query": "cat"})
        assert len(seen) == 2

    def test_cached_payload_is_a_copy(self) -> None:
        transport, _ = _transport(cache_responses=True)
        with transport:
            first = transport.request("POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True)
            first["info"]["facets"]["license"] = "tampered"
            second = transport.request(
                "POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True
            )
        assert second == OK_BODY

    def test_cache_expiry(self) -> None:
        transport, seen = _transport(cache_responses=True, cache_ttl=0.01)
        with transport:
            transport.request("POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True)
            time.sleep(0.02)
            transport.request("POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True)
        assert len(seen) == 2

    def test_cache_eviction(self) -> None:
        transport, seen = _transport(cache_responses=True, cache_max_entries=2)
        with transport:
            for query in ("a", "b", "c", "a"):
                transport.request("POST", SEARCH_PATH, body={"query": query}, cacheable=True)
        assert len(seen) == 4

    def test_errors_not_cached(self) -> None:
        calls = 0

        def flaky(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(404)
            return httpx.Response(200, json=OK_BODY)

        transport, seen = _transport(flaky, cache_responses=True)
        with transport:
            with pytest.raises(TransportError):
                transport.request("POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True)
            assert transport.request(
                "POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True
            ) == OK_BODY
        assert len(seen) == 2

    def test_clear_cache(self) -> None:
        transport, seen = _transport(cache_responses=True)
        with transport:
            transport.request("POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True)
            transport.clear_cache()
            transport.request("POST", SEARCH_PATH, body={"query": "cat"}, cacheable=True)
        assert len(seen) == 2


class TestCircuitBreaker:
    def test_closed_by_default(self) -> None:
        cb = _CircuitBreaker(failure_threshold=3, reset_timeout=30.0)
        assert cb.state == _CircuitBreaker.CLOSED
        cb.check()

    def test_opens_after_threshold(self) -> None:
        cb = _CircuitBreaker(failure_threshold=2, reset_timeout=30.0)
        cb.record_failure()
        cb.check()
        cb.record_failure()
        with pytest.raises(NetworkError, match="Circuit breaker is open"):
            cb.check()

    def test_half_open_after_timeout(self) -> None:
        cb = _CircuitBreaker(failure_threshold=1, reset_timeout=0.01)
        cb.record_failure()
        assert cb.state == _CircuitBreaker.OPEN
        time.sleep(0.02)
        cb.check()
        assert cb.state == _CircuitBreaker.HALF_OPEN

    def test_success_resets_to_closed(self) -> None:
        cb = _CircuitBreaker(failure_threshold=1, reset_timeout=0.01)
        cb.record_failure()
        time.sleep(0.02)
        cb.check()
        cb.record_success()
        assert cb.state == _CircuitBreaker.CLOSED

    def test_disabled_when_threshold_zero(self) -> None:
        cb = _CircuitBreaker(failure_threshold=0, reset_timeout=30.0)
        for _ in range(100):
            cb.record_failure()
        cb.check()

    def test_transport_fails_fast_when_open(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        transport, seen = _transport(
            refuse, circuit_failure_threshold=2, circuit_reset_timeout=60.0
        )
        with transport:
            for _ in range(2):
                with pytest.raises(NetworkError, match="Cannot connect"):
                    transport.request("POST", SEARCH_PATH, body={})
            with pytest.raises(NetworkError, match="Circuit breaker"):
                transport.request("POST", SEARCH_PATH, body={})
        assert len(seen) == 2


class TestRetries:
    def test_backoff_delay_formula(self) -> None:
        assert _backoff_delay(0, 0.5, 8.0) == 0.5
        assert _backoff_delay(1, 0.5, 8.0) == 1.0
        assert _backoff_delay(3, 0.5, 8.0) == 4.0
        assert _backoff_delay(5, 0.5, 8.0) == 8.0

    def test_retry_on_503(self) -> None:
        calls = 0

        def overloaded(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls < 3:
                return httpx.Response(503, json={"error": "overloaded"})
            return httpx.Response(200, json=OK_BODY)

        transport, seen = _transport(
            overloaded, retry_max_attempts=3, retry_backoff_base=0.001, retry_backoff_max=0.002
        )
        with transport:
            assert transport.request("POST", SEARCH_PATH, body={}) == OK_BODY
        assert len(seen) == 3

    def test_no_retry_on_400(self) -> None:
        transport, seen = _transport(
            lambda request: httpx.Response(400, json={"errors": ["bad"]}),
            retry_max_attempts=3,
            retry_backoff_base=0.001,
        )
        with transport, pytest.raises(TransportError, match=r"\[400\] bad"):
            transport.request("POST", SEARCH_PATH, body={})
        assert len(seen) == 1

    def test_retry_exhaustion(self) -> None:
        transport, seen = _transport(
            lambda request: httpx.Response(429, json={"error": "rate limited"}),
            retry_max_attempts=2,
            retry_backoff_base=0.001,
            retry_backoff_max=0.002,
        )
        with transport, pytest.raises(TransportError, match=r"\[429\] rate limited"):
            transport.request("POST", SEARCH_PATH, body={})
        assert len(seen) == 3

    async def test_async_retry_on_502(self) -> None:
        calls = 0

        def bad_gateway(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(502)
            return httpx.Response(200, json=OK_BODY)

        mock, seen = _recording(bad_gateway)
        config = make_config(retry_max_attempts=1, retry_backoff_base=0.001)
        async with HTTPTransport(config, _async_transport=mock) as transport:
            assert await transport.arequest("POST", SEARCH_PATH, body={}) == OK_BODY
        assert len(seen) == 2


class TestLifecycle:
    def test_sync_use_opens_no_async_client(self) -> None:
        transport, _ = _transport()
        with transport:
            transport.request("POST", SEARCH_PATH, body={})
        assert transport._sync_client is not None
        assert transport._sync_client.is_closed
        assert transport._async_client is None

    def test_close_before_use(self) -> None:
        transport, seen = _transport()
        transport.close()
        assert transport._sync_client is None
        assert seen == []

    async def test_aclose_releases_both_clients(self) -> None:
        mock, _ = _recording()
        transport = HTTPTransport(make_config(), _sync_transport=mock, _async_transport=mock)
        transport.request("POST", SEARCH_PATH, body={})
        await transport.arequest("POST", SEARCH_PATH, body={})
        await transport.aclose()
        assert transport._sync_client.is_closed
        assert transport._async_client.is_closed

    async def test_sync_close_after_async_use_warns(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        mock, _ = _recording()
        transport = HTTPTransport(make_config(), _async_transport=mock)
        await transport.arequest("POST", SEARCH_PATH, body={})
        with caplog.at_level(logging.WARNING, logger="appsearch.transport"):
            transport.close()
        assert "aclose()" in caplog.text
        await transport.aclose()
