"""
Request building: caller options in, backend-ready query descriptors out.

Everything here is a pure transformation. Caller mappings are read, never
modified, and the resulting :class:`QueryDescriptor` is frozen so the
disjunctive resolver can derive auxiliary queries from it with
:func:`dataclasses.replace`.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from appsearch.filters import FilterTree, filters_to_json, parse_filters
from appsearch.models import ClickEvent, ValidationError, missing_parameter

DEFAULT_ANALYTICS_TAGS: tuple[str, ...] = ("Facet-Only",)

FacetSpecs = Mapping[str, tuple[Mapping[str, Any], ...]]

# camelCase spellings accepted for client-side keys
_OPTION_ALIASES = {
    "disjunctiveFacets": "disjunctive_facets",
    "disjunctiveFacetsAnalyticsTags": "disjunctive_facets_analytics_tags",
}

_CLIENT_ONLY_KEYS = frozenset(
    {"page", "filters", "facets", "disjunctive_facets", "disjunctive_facets_analytics_tags"}
)


def normalize_facets(raw: Mapping[str, Any] | None) -> dict[str, tuple[Mapping[str, Any], ...]]:
    """Wrap every bare facet spec into a one-element tuple.

    ``{"license": {"type": "value"}}`` and ``{"license": [{"type": "value"}]}``
    both become ``{"license": ({"type": "value"},)}``.
    """
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Invalid facets: expected an object, got {type(raw).__name__}")

    facets: dict[str, tuple[Mapping[str, Any], ...]] = {}
    for name, specs in raw.items():
        members = [specs] if isinstance(specs, Mapping) else specs
        if not isinstance(members, (list, tuple)) or not all(
            isinstance(spec, Mapping) for spec in members
        ):
            raise ValidationError(
                f"Invalid facets: '{name}' must be a facet object or a list of facet objects"
            )
        facets[name] = tuple(copy.deepcopy(dict(spec)) for spec in members)
    return facets


def _names(value: Any, option: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ValidationError(f"Invalid {option}: expected a list of strings")
    seen: dict[str, None] = {}
    for name in value:
        if not isinstance(name, str):
            raise ValidationError(f"Invalid {option}: expected a list of strings")
        seen.setdefault(name, None)
    return tuple(seen)


@dataclass(frozen=True)
class SearchOptions:
    """Validated search options.

    Args:
        page: ``{"size": ..., "current": ...}`` paging, or ``None``.
        filters: Parsed filter tree, or ``None`` for no constraint.
        raw_filters: The caller's filter object exactly as given (deep copy),
            or ``None`` when none was passed.
        facets: Field name to facet specs, always tuples.
        disjunctive_facets: Facet fields whose counts ignore their own filters.
            Names without an entry in *facets* are ignored.
        disjunctive_facets_analytics_tags: Analytics tags attached to the
            auxiliary facet-only queries.
        passthrough: Any other backend parameter (``group``, ``sort``,
            ``result_fields`` ...), sent verbatim.
    """

    page: Mapping[str, Any] | None = None
    filters: FilterTree | None = None
    raw_filters: Mapping[str, Any] | None = None
    facets: FacetSpecs = field(default_factory=dict)
    disjunctive_facets: tuple[str, ...] = ()
    disjunctive_facets_analytics_tags: tuple[str, ...] = DEFAULT_ANALYTICS_TAGS
    passthrough: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any] | None) -> SearchOptions:
        if options is None:
            return cls()
        if not isinstance(options, Mapping):
            raise ValidationError(
                f"Invalid options: expected an object, got {type(options).__name__}"
            )

        opts = {_OPTION_ALIASES.get(key, key): value for key, value in options.items()}

        page = opts.get("page")
        if page is not None and not isinstance(page, Mapping):
            raise ValidationError("Invalid page: expected an object with size and current")

        raw_filters = opts.get("filters")
        tags = opts.get("disjunctive_facets_analytics_tags")
        return cls(
            page=copy.deepcopy(dict(page)) if page is not None else None,
            filters=parse_filters(raw_filters),
            raw_filters=copy.deepcopy(dict(raw_filters)) if raw_filters is not None else None,
            facets=normalize_facets(opts.get("facets")),
            disjunctive_facets=_names(opts.get("disjunctive_facets"), "disjunctive_facets"),
            disjunctive_facets_analytics_tags=(
                _names(tags, "disjunctive_facets_analytics_tags")
                if tags is not None
                else DEFAULT_ANALYTICS_TAGS
            ),
            passthrough={
                key: copy.deepcopy(value)
                for key, value in opts.items()
                if key not in _CLIENT_ONLY_KEYS
            },
        )

    @property
    def resolvable_disjunctive_facets(self) -> tuple[str, ...]:
        """Disjunctive fields that also have facet specs, in request order."""
        return tuple(name for name in self.disjunctive_facets if name in self.facets)


@dataclass(frozen=True)
class QueryDescriptor:
    """One backend search request, ready to serialize.

    When *raw_filters* is set it is sent as-is and *filters* only serves
    analysis; auxiliary queries clear it and send their pruned tree instead.
    """

    query: str
    page: Mapping[str, Any] | None = None
    filters: FilterTree | None = None
    facets: FacetSpecs = field(default_factory=dict)
    passthrough: Mapping[str, Any] = field(default_factory=dict)
    raw_filters: Mapping[str, Any] | None = None

    def to_body(self) -> dict[str, Any]:
        """Build the JSON body for ``engines/<engine>/search.json``."""
        body: dict[str, Any] = {"query": self.query}
        body.update(copy.deepcopy(dict(self.passthrough)))
        if self.page is not None:
            body["page"] = dict(self.page)
        if self.raw_filters is not None:
            body["filters"] = copy.deepcopy(dict(self.raw_filters))
        elif self.filters is not None:
            body["filters"] = filters_to_json(self.filters)
        if self.facets:
            body["facets"] = {
                name: [dict(spec) for spec in specs] for name, specs in self.facets.items()
            }
        return body

    def with_changes(self, **changes: Any) -> QueryDescriptor:
        return replace(self, **changes)


def validate_query(query: Any) -> str:
    """Return *query* unchanged, or raise the missing-query ValidationError."""
    if not isinstance(query, str) or not query.strip():
        raise missing_parameter("query")
    return query


def build_search_request(
    query: Any,
    options: SearchOptions | Mapping[str, Any] | None = None,
) -> QueryDescriptor:
    """Build the primary query for a search call.

    Filters go through untouched; only auxiliary disjunctive queries have
    constraints removed.

    Raises:
        ValidationError: ``[400] Missing required parameter: query`` when the
            query is missing, empty or not a string, or a message naming the
            malformed option.
    """
    query = validate_query(query)
    if not isinstance(options, SearchOptions):
        options = SearchOptions.from_mapping(options)
    return QueryDescriptor(
        query=query,
        page=options.page,
        filters=options.filters,
        facets=options.facets,
        passthrough=options.passthrough,
        raw_filters=options.raw_filters,
    )


def build_click_request(event: ClickEvent | Mapping[str, Any] | None) -> dict[str, Any]:
    """Validate a click event and build the body for ``engines/<engine>/click.json``."""
    if event is None:
        event = ClickEvent()
    elif not isinstance(event, ClickEvent):
        event = ClickEvent.from_mapping(event)

    if not event.query:
        raise missing_parameter("query")
    if not event.document_id:
        raise missing_parameter("documentId")
    if not event.request_id:
        raise missing_parameter("requestId")

    tags = [event.tags] if isinstance(event.tags, str) else list(event.tags)
    return {
        "query": event.query,
        "document_id": event.document_id,
        "request_id": event.request_id,
        "tags": tags,
    }
