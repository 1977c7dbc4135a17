"""Two-pass reconciliation of provider message graphs.

Provider documents are a superset tree: alongside the messages a person saw
they carry system scaffolding, tool calls, hidden context carriers and
speculative nodes. Flattening them naively leaves children pointing at
parents that were dropped.

Pass 1 (:func:`index_nodes`) indexes every raw node, hidden or not, with
children ordered by creation time. Pass 2 (:func:`reconcile`) walks the index
from its roots and, for each node, records the nearest *emitted* ancestor, so
emitted descendants of a filtered node are re-linked above the gap.

Both passes are pure functions over immutable input.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Iterable, List, Mapping, Optional, Tuple, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RawNode(Generic[T]):
    id: str
    parent_id: Optional[str]
    created_at: Optional[float]
    payload: T


@dataclass(frozen=True)
class RawIndex(Generic[T]):
    nodes: Mapping[str, RawNode[T]]
    children: Mapping[str, Tuple[str, ...]]
    roots: Tuple[str, ...]
    order: Tuple[str, ...]

    def parent_of(self, node_id: str) -> Optional[str]:
        node = self.nodes.get(node_id)
        if node is None or node.parent_id not in self.nodes:
            return None
        return node.parent_id


@dataclass(frozen=True)
class Placement(Generic[T]):
    node: RawNode[T]
    parent_id: Optional[str]
    emitted: bool


def _sort_key(node: RawNode[T]) -> float:
    return node.created_at if node.created_at is not None else 0.0


def index_nodes(nodes: Iterable[RawNode[T]]) -> RawIndex[T]:
    """Pass 1: index all nodes and order each child list by creation time."""
    by_id: dict[str, RawNode[T]] = {}
    order: List[str] = []
    for node in nodes:
        if node.id in by_id:
            continue
        by_id[node.id] = node
        order.append(node.id)

    children: dict[str, List[str]] = {}
    roots: List[str] = []
    for node_id in order:
        parent_id = by_id[node_id].parent_id
        if parent_id is None or parent_id not in by_id or parent_id == node_id:
            roots.append(node_id)
        else:
            children.setdefault(parent_id, []).append(node_id)

    frozen_children = {
        parent_id: tuple(sorted(child_ids, key=lambda cid: _sort_key(by_id[cid])))
        for parent_id, child_ids in children.items()
    }
    return RawIndex(nodes=by_id, children=frozen_children, roots=tuple(roots), order=tuple(order))


def reconcile(index: RawIndex[T], is_visible: Callable[[RawNode[T]], bool]) -> List[Placement[T]]:
    """Pass 2: depth-first walk placing every node under its nearest emitted ancestor.

    Returns one placement per reachable node in pre-order. Nodes stuck in a
    parent cycle (no root leads to them) are walked afterwards as extra roots.
    """
    placements: List[Placement[T]] = []
    visited: set[str] = set()

    def _walk(start: str) -> None:
        stack: List[Tuple[str, Optional[str]]] = [(start, None)]
        while stack:
            node_id, ancestor = stack.pop()
            if node_id in visited:
                continue
            visited.add(node_id)
            node = index.nodes[node_id]
            emitted = is_visible(node)
            placements.append(Placement(node=node, parent_id=ancestor, emitted=emitted))
            next_ancestor = node_id if emitted else ancestor
            for child_id in reversed(index.children.get(node_id, ())):
                if child_id not in visited:
                    stack.append((child_id, next_ancestor))

    for root_id in index.roots:
        _walk(root_id)
    for node_id in index.order:
        if node_id not in visited:
            _walk(node_id)
    return placements


def descendants(index: RawIndex[T], node_id: str) -> List[str]:
    """All descendants of node_id in depth-first pre-order (children by time)."""
    result: List[str] = []
    seen = {node_id}
    stack = list(reversed(index.children.get(node_id, ())))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        result.append(current)
        stack.extend(reversed(index.children.get(current, ())))
    return result


def ancestors(index: RawIndex[T], node_id: str) -> List[str]:
    """Raw ancestors of node_id, nearest first."""
    result: List[str] = []
    seen = {node_id}
    current = index.parent_of(node_id)
    while current is not None and current not in seen:
        seen.add(current)
        result.append(current)
        current = index.parent_of(current)
    return result


def resolve_current_node(
    index: RawIndex[T],
    requested: Optional[str],
    kept: set[str],
    fallback: Optional[str],
) -> Optional[str]:
    """Validate a provider-reported tip against the nodes that survived filtering.

    Walks up from ``requested`` to the first kept node; otherwise ``fallback``
    (normally the chronologically last kept message).
    """
    if requested:
        if requested in kept:
            return requested
        if requested in index.nodes:
            for ancestor_id in ancestors(index, requested):
                if ancestor_id in kept:
                    return ancestor_id
    return fallback


__all__ = [
    "RawNode",
    "RawIndex",
    "Placement",
    "index_nodes",
    "reconcile",
    "descendants",
    "ancestors",
    "resolve_current_node",
]
