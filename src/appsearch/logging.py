"""
Structured logging for appsearch with request-id correlation.

The ``appsearch`` logger hierarchy stays silent until the application opts
in with :func:`configure_logging`. Each ``AppSearchClient.search`` and
``click`` call runs inside :func:`request_scope`, so every record of one
search (primary query, auxiliary facet queries, retries and the completion
line) carries the same ``request_id``. Bind your own id with
:func:`bind_request_id` to correlate with an upstream request instead.

Usage::

    from appsearch.logging import configure_logging, bind_request_id
    configure_logging()            # JSON to stderr, INFO level
    bind_request_id("req-abc123")
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone

_request_id_var: ContextVar[str] = ContextVar("appsearch_request_id", default="")

_STDLIB_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys())


def bind_request_id(request_id: str | None = None) -> str:
    """Set the request-id for the current context; generate one if *request_id* is None."""
    rid = request_id or uuid.uuid4().hex[:12]
    _request_id_var.set(rid)
    return rid


def get_request_id() -> str:
    return _request_id_var.get()


@contextmanager
def request_scope(request_id: str | None = None) -> Iterator[str]:
    """Correlate every record logged inside the block under one request-id.

    An id already bound by the caller is reused unless *request_id* is given;
    otherwise a fresh one is generated. The previous binding is restored on
    exit. Tasks started inside the block inherit the id, so the concurrent
    auxiliary queries of one search log under the same id as its primary.
    """
    current = _request_id_var.get()
    if current and request_id is None:
        yield current
        return
    token = _request_id_var.set(request_id or uuid.uuid4().hex[:12])
    try:
        yield _request_id_var.get()
    finally:
        _request_id_var.reset(token)


class _RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id_var.get()  # type: ignore[attr-defined]
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Core keys are ``timestamp``, ``level``, ``logger`` and ``message``, plus
    ``request_id`` when one is bound. Values passed through ``extra=`` land at
    the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        rid = getattr(record, "request_id", "") or _request_id_var.get()
        if rid:
            entry["request_id"] = rid

        entry.update(
            (key, val)
            for key, val in record.__dict__.items()
            if key not in _STDLIB_ATTRS and key != "request_id"
        )

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_logging(
    level: int = logging.INFO,
    json_format: bool = True,
) -> None:
    """Attach a single stderr handler to the ``appsearch`` logger.

    Calling it again replaces the previous handler rather than stacking
    another one.
    """
    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-5s [%(request_id)s] %(name)s - %(message)s",
                defaults={"request_id": ""},
            )
        )
    handler.addFilter(_RequestIdFilter())

    root = logging.getLogger("appsearch")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
