"""
Data models and exception hierarchy for the App Search client.

All public types used by the appsearch library are defined here. Models are
frozen dataclasses so a result can be handed across threads and tasks
without anyone patching it behind the caller's back.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

GROUP_KEY = "_group"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AppSearchError(Exception):
    """Base exception for all App Search client errors."""


class ValidationError(AppSearchError, ValueError):
    """The caller supplied an incomplete or invalid request.

    Raised before any network call. Rendered the same way the backend
    renders its own 400 responses, e.g. ``[400] Missing required parameter: query``.
    """

    status_code = 400

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"[{self.status_code}] {detail}")


class TransportError(AppSearchError):
    """The backend answered with a non-2xx status."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"[{status_code}]"
        if detail:
            message += f" {detail}"
        super().__init__(message)


class NetworkError(AppSearchError):
    """No HTTP status was received (DNS, TCP, TLS, timeout, open circuit)."""


class ResponseError(AppSearchError):
    """The backend returned a payload that could not be decoded or has the wrong shape."""

    def __init__(self, message: str, raw_body: str = "") -> None:
        self.raw_body = raw_body[:2000]
        super().__init__(message)


def missing_parameter(name: str) -> ValidationError:
    return ValidationError(f"Missing required parameter: {name}")


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResultItem:
    """A single search hit.

    App Search returns each field as ``{"raw": ..., "snippet": ...}``; the
    record is kept as-is in :attr:`data` except that grouped hits under
    ``_group`` are themselves wrapped as :class:`ResultItem` objects.
    The record is exposed through a read-only mapping.
    """

    data: Mapping[str, Any]

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __contains__(self, key: object) -> bool:
        return key in self.data

    def get_raw(self, key: str) -> Any:
        value = self.data.get(key)
        if isinstance(value, Mapping):
            return value.get("raw")
        return None

    def get_snippet(self, key: str) -> Any:
        value = self.data.get(key)
        if isinstance(value, Mapping):
            return value.get("snippet")
        return None

    @property
    def group(self) -> tuple[ResultItem, ...]:
        members = self.data.get(GROUP_KEY, ())
        return tuple(members) if isinstance(members, tuple) else ()

    def to_dict(self) -> dict[str, Any]:
        """Unwrap back into the plain record shape the backend returned."""
        out: dict[str, Any] = {}
        for key, value in self.data.items():
            if key == GROUP_KEY and isinstance(value, tuple):
                out[key] = [member.to_dict() for member in value]
            else:
                out[key] = value
        return out


@dataclass(frozen=True)
class SearchResult:
    """Typed result of a search call.

    ``info`` carries the (possibly disjunctively merged) facets under
    ``info["facets"]``; ``meta`` carries paging and the request id. Results
    are stored as a tuple and both mappings are read-only views.
    """

    results: tuple[ResultItem, ...]
    info: Mapping[str, Any] = field(default_factory=dict)
    meta: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "results", tuple(self.results))
        object.__setattr__(self, "info", MappingProxyType(dict(self.info)))
        object.__setattr__(self, "meta", MappingProxyType(dict(self.meta)))

    @property
    def facets(self) -> Mapping[str, Any]:
        facets = self.info.get("facets")
        return facets if isinstance(facets, Mapping) else {}

    @property
    def request_id(self) -> str:
        return str(self.meta.get("request_id", "") or "")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict (e.g. for JSON output)."""
        return {
            "results": [item.to_dict() for item in self.results],
            "info": dict(self.info),
            "meta": dict(self.meta),
        }


@dataclass(frozen=True)
class ClickEvent:
    """A click-through to record against a query.

    ``request_id`` is the ``meta.request_id`` of the search that produced
    the clicked document.
    """

    query: str | None = None
    document_id: str | None = None
    request_id: str | None = None
    tags: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ClickEvent:
        """Build an event from snake_case or camelCase keys.

        ``tags`` may be omitted, a single string, or a sequence of strings.
        """
        tags = data.get("tags")
        if tags is None:
            tags = ()
        elif isinstance(tags, str):
            tags = (tags,)
        else:
            tags = tuple(tags)
        return cls(
            query=data.get("query"),
            document_id=data.get("document_id", data.get("documentId")),
            request_id=data.get("request_id", data.get("requestId")),
            tags=tags,
        )
