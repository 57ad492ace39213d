"""
Filter trees and per-field constraint removal.

App Search filters are JSON objects whose keys are either field names
(leaf constraints) or one of the combinators ``all``, ``any`` and ``none``
holding a list of nested filter objects::

    {"all": [{"license": "BSD"}, {"any": [{"dependencies": "socket.io"}]}]}

They are parsed once into an immutable tree of :class:`Leaf`, :class:`AllOf`,
:class:`AnyOf` and :class:`NoneOf` nodes. A filter object maps to a tuple of
nodes, one per key, and ``None`` stands for "no constraint". Disjunctive facet
resolution relies on :func:`remove_field_constraints`, which builds a new tree
without one field's leaves and leaves the original tree intact for the next
field.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from appsearch.models import ValidationError


@dataclass(frozen=True)
class Leaf:
    """A constraint on one field: a value, list of values, range or geo filter."""

    field: str
    value: Any


@dataclass(frozen=True)
class AllOf:
    children: tuple[FilterTree, ...]

    key = "all"


@dataclass(frozen=True)
class AnyOf:
    children: tuple[FilterTree, ...]

    key = "any"


@dataclass(frozen=True)
class NoneOf:
    children: tuple[FilterTree, ...]

    key = "none"


Compound = Union[AllOf, AnyOf, NoneOf]
FilterNode = Union[Leaf, AllOf, AnyOf, NoneOf]
FilterTree = tuple[FilterNode, ...]

_COMBINATORS: dict[str, type[AllOf] | type[AnyOf] | type[NoneOf]] = {
    "all": AllOf,
    "any": AnyOf,
    "none": NoneOf,
}


# ---------------------------------------------------------------------------
# JSON <-> tree
# ---------------------------------------------------------------------------


def parse_filters(raw: Mapping[str, Any] | None) -> FilterTree | None:
    """Parse a JSON filter object into a tree.

    Returns ``None`` for a missing or empty object. Leaf values are
    deep-copied so the tree never shares mutable state with the caller.

    Raises:
        ValidationError: If the object or a combinator's value is malformed.
    """
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Invalid filters: expected an object, got {type(raw).__name__}")

    nodes: list[FilterNode] = []
    for key, value in raw.items():
        combinator = _COMBINATORS.get(key)
        if combinator is None:
            nodes.append(Leaf(field=key, value=copy.deepcopy(value)))
            continue

        # A single object is accepted where a list of objects is expected.
        members = [value] if isinstance(value, Mapping) else value
        if not isinstance(members, (list, tuple)):
            raise ValidationError(
                f"Invalid filters: '{key}' must be a list of filter objects, "
                f"got {type(value).__name__}"
            )
        children: list[FilterTree] = []
        for member in members:
            if not isinstance(member, Mapping):
                raise ValidationError(
                    f"Invalid filters: '{key}' entries must be objects, "
                    f"got {type(member).__name__}"
                )
            child = parse_filters(member)
            if child is not None:
                children.append(child)
        nodes.append(combinator(children=tuple(children)))

    return tuple(nodes) or None


def filters_to_json(tree: FilterTree | None) -> dict[str, Any]:
    """Serialize a tree back into the JSON object the backend expects."""
    if tree is None:
        return {}
    out: dict[str, Any] = {}
    for node in tree:
        if isinstance(node, Leaf):
            out[node.field] = copy.deepcopy(node.value)
        else:
            out[node.key] = [filters_to_json(child) for child in node.children]
    return out


def referenced_fields(tree: FilterTree | None) -> frozenset[str]:
    """Every field name constrained anywhere in *tree*."""
    if tree is None:
        return frozenset()
    names: set[str] = set()
    for node in tree:
        if isinstance(node, Leaf):
            names.add(node.field)
        else:
            for child in node.children:
                names |= referenced_fields(child)
    return frozenset(names)


# ---------------------------------------------------------------------------
# Field removal
# ---------------------------------------------------------------------------


def _remove_from_node(node: FilterNode, field: str) -> FilterNode | None:
    if isinstance(node, Leaf):
        return None if node.field == field else node

    children = tuple(
        pruned
        for pruned in (remove_field_constraints(child, field) for child in node.children)
        if pruned is not None
    )
    if not children:
        return None
    return type(node)(children=children)


def remove_field_constraints(
    tree: FilterTree | Mapping[str, Any] | None,
    field: str,
) -> FilterTree | None:
    """Return a copy of *tree* with every constraint on *field* removed.

    Leaves on *field* are dropped at any depth. Combinators are rebuilt over
    their remaining children, and a combinator left with no children
    disappears too. Returns ``None`` when nothing is left.

    A raw JSON filter object is accepted as well and parsed first. The input
    is never modified.
    """
    if tree is None:
        return None
    if isinstance(tree, Mapping):
        tree = parse_filters(tree)
        if tree is None:
            return None

    nodes = tuple(
        pruned for pruned in (_remove_from_node(node, field) for node in tree) if pruned is not None
    )
    return nodes or None
