"""Map raw search payloads onto :class:`~appsearch.models.SearchResult`."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from appsearch.models import GROUP_KEY, ResponseError, ResultItem, SearchResult

logger = logging.getLogger(__name__)


def wrap_result(record: Mapping[str, Any]) -> ResultItem:
    """Wrap one record, and each member of its ``_group`` list, recursively."""
    members = record.get(GROUP_KEY)
    if isinstance(members, list):
        data = dict(record)
        data[GROUP_KEY] = tuple(
            wrap_result(member) if isinstance(member, Mapping) else member for member in members
        )
        return ResultItem(data=data)
    return ResultItem(data=record)


def map_results(payload: Mapping[str, Any]) -> SearchResult:
    """Build a :class:`SearchResult` over a (possibly merged) search payload.

    Field values, ordering, facets and meta are passed through as the backend
    sent them.

    Raises:
        ResponseError: If the payload has no ``results`` list.
    """
    if not isinstance(payload, Mapping):
        raise ResponseError(
            f"Expected a JSON object from search, got {type(payload).__name__}",
            raw_body=str(payload),
        )
    records = payload.get("results")
    if not isinstance(records, list):
        raise ResponseError(
            f"Expected 'results' list in search response, got {type(records).__name__}",
            raw_body=str(payload),
        )

    items: list[ResultItem] = []
    for record in records:
        if not isinstance(record, Mapping):
            logger.warning("Skipping non-object result in search response")
            continue
        items.append(wrap_result(record))

    info = payload.get("info")
    meta = payload.get("meta")
    return SearchResult(
        results=items,
        info=info if isinstance(info, Mapping) else {},
        meta=meta if isinstance(meta, Mapping) else {},
    )
