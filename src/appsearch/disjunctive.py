"""
Disjunctive facet resolution.

A disjunctive facet reports its value counts as if the filters on its own
field were not applied, so a UI can offer "BSD or MIT" after the user already
picked "BSD". The backend only computes counts for the filters it is given,
so for every disjunctive field the resolver sends one auxiliary facet-only
query whose filter tree lacks that field's constraints, then swaps the
auxiliary facet data into the primary response.

Auxiliary queries never contribute results, paging or meta; they are
requested with a page size of 1 and tagged for analytics so they can be told
apart from real searches.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from appsearch.filters import referenced_fields, remove_field_constraints
from appsearch.models import ResponseError
from appsearch.request import QueryDescriptor, SearchOptions

logger = logging.getLogger(__name__)

Dispatch = Callable[[QueryDescriptor], Mapping[str, Any]]
AsyncDispatch = Callable[[QueryDescriptor], Awaitable[Mapping[str, Any]]]


def plan_auxiliary_queries(
    primary: QueryDescriptor,
    options: SearchOptions,
) -> dict[str, QueryDescriptor]:
    """Build one auxiliary query per resolvable disjunctive field.

    Each auxiliary query keeps the primary's query and passthrough
    parameters, drops the field's own filter constraints (wherever they
    sit in the tree), requests only that field's facets and a single result.
    Fields that are not filtered at all still get a query.
    """
    planned: dict[str, QueryDescriptor] = {}
    filtered = referenced_fields(primary.filters)
    for name in options.resolvable_disjunctive_facets:
        passthrough = dict(primary.passthrough)
        passthrough["analytics"] = {"tags": list(options.disjunctive_facets_analytics_tags)}
        page = dict(primary.page) if primary.page is not None else {}
        page["size"] = 1

        planned[name] = primary.with_changes(
            filters=remove_field_constraints(primary.filters, name),
            raw_filters=None,
            facets={name: primary.facets[name]},
            page=page,
            passthrough=passthrough,
        )
        logger.debug(
            "Disjunctive facet %r planned (own filter present=%s)",
            name,
            name in filtered,
        )
    return planned


def merge_facets(
    primary: Mapping[str, Any],
    auxiliary: Mapping[str, Mapping[str, Any]],
) -> dict[str, Any]:
    """Replace the primary's facet list for each field with the auxiliary one.

    The whole facet list for a field is replaced, keeping the backend's
    per-value order. Everything else in *primary* is left alone.

    Raises:
        ResponseError: If an auxiliary response carries no facets for its field.
    """
    merged = dict(primary)
    info = dict(merged.get("info") or {})
    facets = dict(info.get("facets") or {})

    for name, response in auxiliary.items():
        aux_facets = (response.get("info") or {}).get("facets") or {}
        if name not in aux_facets:
            raise ResponseError(
                f"Disjunctive query for facet {name!r} returned no facet data",
                raw_body=str(response),
            )
        facets[name] = aux_facets[name]

    info["facets"] = facets
    merged["info"] = info
    return merged


class DisjunctiveFacetResolver:
    """Runs a primary query plus its auxiliary disjunctive queries.

    Both entry points take a dispatch callable that executes one
    :class:`QueryDescriptor` against the backend and returns the parsed
    payload; any exception it raises fails the whole resolution.
    """

    def resolve(
        self,
        primary: QueryDescriptor,
        options: SearchOptions,
        dispatch: Dispatch,
    ) -> Mapping[str, Any]:
        """Dispatch sequentially: primary first, then each auxiliary query."""
        planned = plan_auxiliary_queries(primary, options)
        primary_response = dispatch(primary)
        if not planned:
            return primary_response

        auxiliary = {name: dispatch(descriptor) for name, descriptor in planned.items()}
        return merge_facets(_copy_payload(primary_response), auxiliary)

    async def aresolve(
        self,
        primary: QueryDescriptor,
        options: SearchOptions,
        dispatch: AsyncDispatch,
    ) -> Mapping[str, Any]:
        """Dispatch all queries concurrently; the first failure cancels the rest."""
        planned = plan_auxiliary_queries(primary, options)
        if not planned:
            return await dispatch(primary)

        names = list(planned)
        tasks = [asyncio.ensure_future(dispatch(primary))]
        tasks.extend(asyncio.ensure_future(dispatch(planned[name])) for name in names)
        try:
            primary_response, *responses = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        return merge_facets(_copy_payload(primary_response), dict(zip(names, responses)))


def _copy_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    return copy.deepcopy(dict(payload))
