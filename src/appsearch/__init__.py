"""appsearch: App Search client with disjunctive facet support."""

from appsearch.client import AppSearchClient, asearch, search
from appsearch.config import ClientConfig
from appsearch.filters import parse_filters, remove_field_constraints
from appsearch.logging import bind_request_id, configure_logging, get_request_id, request_scope
from appsearch.models import (
    AppSearchError,
    ClickEvent,
    NetworkError,
    ResponseError,
    ResultItem,
    SearchResult,
    TransportError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "AppSearchClient",
    "AppSearchError",
    "ClickEvent",
    "ClientConfig",
    "NetworkError",
    "ResponseError",
    "ResultItem",
    "SearchResult",
    "TransportError",
    "ValidationError",
    "__version__",
    "asearch",
    "bind_request_id",
    "configure_logging",
    "get_request_id",
    "parse_filters",
    "remove_field_constraints",
    "request_scope",
    "search",
]
