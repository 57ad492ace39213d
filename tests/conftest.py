"""
Pytest configuration and shared fixtures.

``FakeEngine`` is an ``httpx.MockTransport`` handler that answers App Search
``search.json`` and ``click.json`` calls from a tiny in-memory package index.
It evaluates ``all``/``any``/``none`` filters and computes value facets, so the
disjunctive tests check real counts rather than canned fixtures.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from appsearch.client import AppSearchClient
from appsearch.config import ClientConfig

PACKAGES: list[dict[str, Any]] = [
    {"id": "rex-cli", "license": "MIT", "dependencies": ["express", "request"]},
    {"id": "pkg-a", "license": "BSD", "dependencies": ["socket.io", "express"]},
    {"id": "pkg-b", "license": "BSD", "dependencies": ["socket.io", "request"]},
    {"id": "pkg-c", "license": "BSD", "dependencies": ["underscore"]},
    {"id": "pkg-d", "license": "MIT", "dependencies": ["socket.io"]},
    {"id": "pkg-e", "license": "GPL", "dependencies": ["socket.io", "underscore"]},
    {"id": "pkg-f", "license": "MIT", "dependencies": ["underscore", "express"]},
]


def _leaf_matches(doc: dict[str, Any], field: str, value: Any) -> bool:
    have = doc.get(field)
    have = have if isinstance(have, list) else [have]
    wanted = value if isinstance(value, list) else [value]
    return any(v in have for v in wanted)


def matches(doc: dict[str, Any], filters: dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key == "all":
            ok = all(matches(doc, child) for child in value)
        elif key == "any":
            ok = any(matches(doc, child) for child in value)
        elif key == "none":
            ok = not any(matches(doc, child) for child in value)
        else:
            ok = _leaf_matches(doc, key, value)
        if not ok:
            return False
    return True


def value_facet(docs: list[dict[str, Any]], field: str, size: int) -> list[dict[str, Any]]:
    counts: Counter[str] = Counter()
    for doc in docs:
        values = doc[field] if isinstance(doc[field], list) else [doc[field]]
        counts.update(values)
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:size]
    return [{"value": value, "count": count} for value, count in ranked]


class FakeEngine:
    """Callable handler for ``httpx.MockTransport``."""

    def __init__(self, docs: list[dict[str, Any]] | None = None) -> None:
        self.docs = docs if docs is not None else PACKAGES
        self.requests: list[httpx.Request] = []
        self._failures: list[tuple[Callable[[dict[str, Any]], bool], int, Any]] = []

    def fail_when(
        self, predicate: Callable[[dict[str, Any]], bool], status: int, body: Any = None
    ) -> None:
        """Answer requests whose JSON body satisfies *predicate* with *status*."""
        self._failures.append((predicate, status, body))

    @property
    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) if r.content else {} for r in self.requests]

    @property
    def search_bodies(self) -> list[dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.url.path.endswith("/search.json")
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content) if request.content else {}

        for predicate, status, error_body in self._failures:
            if predicate(body):
                if error_body is None:
                    return httpx.Response(status)
                return httpx.Response(status, json=error_body)

        if request.url.path.endswith("/click.json"):
            return httpx.Response(200)

        docs = [doc for doc in self.docs if matches(doc, body.get("filters", {}))]
        facets = {
            name: [
                {
                    "type": spec.get("type", "value"),
                    "data": value_facet(docs, name, spec.get("size", 10)),
                }
                for spec in specs
            ]
            for name, specs in body.get("facets", {}).items()
        }
        page = body.get("page", {})
        size = page.get("size", 10)
        current = page.get("current", 1)
        window = docs[(current - 1) * size : current * size]
        results = [
            {
                "id": {"raw": doc["id"]},
                "license": {"raw": doc["license"], "snippet": f"<em>{doc['license']}</em>"},
                "dependencies": {"raw": doc["dependencies"]},
            }
            for doc in window
        ]
        return httpx.Response(
            200,
            json={
                "results": results,
                "info": {"facets": facets},
                "meta": {
                    "page": {"current": current, "size": size, "total_results": len(docs)},
                    "request_id": f"req-{len(self.requests)}",
                },
            },
        )


def make_config(**overrides: Any) -> ClientConfig:
    values: dict[str, Any] = {
        "host_identifier": "host-2376rb",
        "search_key": "search-hean6g8dmxnm2shqqiag757a",
        "engine_name": "node-modules",
    }
    values.update(overrides)
    return ClientConfig(**values)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def config() -> ClientConfig:
    return make_config()


@pytest.fixture
def client(engine: FakeEngine, config: ClientConfig):
    with AppSearchClient(config, _sync_transport=httpx.MockTransport(engine)) as c:
        yield c


@pytest.fixture
async def aclient(engine: FakeEngine, config: ClientConfig):
    async with AppSearchClient(config, _async_transport=httpx.MockTransport(engine)) as c:
        yield c


@pytest.fixture(autouse=True)
def _reset_appsearch_logger():
    logger = logging.getLogger("appsearch")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate
