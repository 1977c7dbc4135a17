"""Message tree construction and branch navigation.

Works on anything shaped like a message (``id``, ``parent_id``,
``created_at``) so the same code serves freshly parsed provider documents
and rows loaded back from the store.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Generic, Iterable, List, Mapping, Optional, Protocol, Tuple, TypeVar, Union

ROOT_KEY = "__root__"


class TreeNode(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def parent_id(self) -> Optional[str]: ...

    @property
    def created_at(self) -> Union[datetime, float, None]: ...


N = TypeVar("N", bound=TreeNode)


def _time_value(value: Union[datetime, float, None]) -> float:
    if value is None:
        return float("-inf")
    if isinstance(value, datetime):
        return value.timestamp()
    return float(value)


@dataclass
class MessageTree(Generic[N]):
    index: Dict[str, N]
    parents: Dict[str, Optional[str]]
    children: Dict[str, List[str]]
    roots: List[str]
    order: List[str] = field(default_factory=list)

    def parent_of(self, node_id: str) -> Optional[str]:
        return self.parents.get(node_id)

    def children_of(self, node_id: str) -> List[str]:
        return self.children.get(node_id, [])

    def siblings_of(self, node_id: str) -> List[str]:
        parent_id = self.parents.get(node_id)
        if parent_id is None:
            return self.sorted_roots()
        return self.children_of(parent_id)

    def sorted_roots(self) -> List[str]:
        return self._sort_by_time(self.roots)

    def _sort_by_time(self, ids: Iterable[str]) -> List[str]:
        return sorted(ids, key=lambda mid: _time_value(self.index[mid].created_at))


def _break_cycles(parents: Dict[str, Optional[str]], order: List[str]) -> None:
    """Cut one link per parent cycle so the graph is a forest.

    The cut falls on the cycle member that appeared first in the input.
    """
    position = {node_id: pos for pos, node_id in enumerate(order)}
    state: Dict[str, int] = {}  # 1 = on current walk, 2 = finished
    for start in order:
        path: List[str] = []
        node: Optional[str] = start
        while node is not None and node not in state:
            state[node] = 1
            path.append(node)
            node = parents[node]
        if node is not None and state[node] == 1:
            cycle = path[path.index(node):]
            parents[min(cycle, key=position.__getitem__)] = None
        for visited in path:
            state[visited] = 2


def build_tree(messages: Iterable[N]) -> MessageTree[N]:
    """Index messages by id and derive children lists, roots and sibling order.

    A message is a root when it has no parent or its parent is not among the
    messages (a hidden or filtered ancestor). Children are sorted by creation
    time; ties keep encounter order.
    """
    index: Dict[str, N] = {}
    order: List[str] = []
    for message in messages:
        if message.id in index:
            continue
        index[message.id] = message
        order.append(message.id)

    parents: Dict[str, Optional[str]] = {}
    for node_id in order:
        parent_id = index[node_id].parent_id
        parents[node_id] = parent_id if parent_id in index and parent_id != node_id else None
    _break_cycles(parents, order)

    children: Dict[str, List[str]] = {}
    roots: List[str] = []
    for node_id in order:
        parent_id = parents[node_id]
        if parent_id is None:
            roots.append(node_id)
        else:
            children.setdefault(parent_id, []).append(node_id)

    tree = MessageTree(index=index, parents=parents, children=children, roots=roots, order=order)
    for parent_id, child_ids in children.items():
        children[parent_id] = tree._sort_by_time(child_ids)
    return tree


def path_to_node(tree: MessageTree[N], target_id: str) -> List[N]:
    """Root-to-target list of messages; empty when the target is unknown."""
    path: List[N] = []
    seen: set[str] = set()
    current: Optional[str] = target_id
    while current is not None and current in tree.index and current not in seen:
        seen.add(current)
        path.append(tree.index[current])
        current = tree.parents.get(current)
    path.reverse()
    return path


def default_path(tree: MessageTree[N], current_node_id: Optional[str]) -> List[N]:
    """The default branch ending at ``current_node_id``.

    Falls back to every message in original order when there is no usable
    current node; that fallback is not a linear transcript for branching data.
    """
    if current_node_id and current_node_id in tree.index:
        return path_to_node(tree, current_node_id)
    return [tree.index[node_id] for node_id in tree.order]


def sibling_positions(tree: MessageTree[N]) -> Dict[str, Tuple[List[str], int]]:
    """Map each message id to (sibling ids in time order, own position)."""
    positions: Dict[str, Tuple[List[str], int]] = {}
    for node_id in tree.order:
        siblings = tree.siblings_of(node_id)
        positions[node_id] = (list(siblings), siblings.index(node_id))
    return positions


def display_path(
    tree: MessageTree[N],
    selections: Mapping[str, str],
    default_leaf: Optional[str] = None,
) -> List[N]:
    """Walk from a root following branch selections (``parent id -> chosen child``).

    Without a selection at a branch point the walk prefers the child leading
    to ``default_leaf``, then the newest child. A root choice is stored under
    ``ROOT_KEY``.
    """
    if not selections and default_leaf and default_leaf in tree.index:
        return path_to_node(tree, default_leaf)
    if not tree.roots:
        return []

    on_default = {node.id for node in path_to_node(tree, default_leaf)} if default_leaf else set()

    def _choose(options: List[str], key: str) -> str:
        selected = selections.get(key)
        if selected in options:
            return selected
        for option in options:
            if option in on_default:
                return option
        return options[-1]

    path: List[N] = []
    current: Optional[str] = _choose(tree.sorted_roots(), ROOT_KEY)
    seen: set[str] = set()
    while current is not None and current not in seen:
        seen.add(current)
        path.append(tree.index[current])
        options = tree.children_of(current)
        current = _choose(options, current) if options else None
    return path


def update_branch_selection(
    tree: MessageTree[N],
    selections: Mapping[str, str],
    parent_id: str,
    child_id: str,
) -> Dict[str, str]:
    """Record a branch choice and drop selections below the previously chosen branch."""
    updated = dict(selections)
    previous = updated.get(parent_id)
    updated[parent_id] = child_id
    if previous is None or previous == child_id:
        return updated

    queue = deque([previous])
    seen: set[str] = set()
    while queue:
        node_id = queue.popleft()
        if node_id in seen:
            continue
        seen.add(node_id)
        updated.pop(node_id, None)
        queue.extend(tree.children_of(node_id))
    return updated


def transcript(tree: MessageTree[N], current_node_id: Optional[str]) -> List[Tuple[str, str]]:
    """``(role, text)`` pairs along the default path, for downstream analysis."""
    lines: List[Tuple[str, str]] = []
    for node in default_path(tree, current_node_id):
        role = getattr(node, "role", "unknown")
        text = getattr(node, "text", "")
        lines.append((str(role), text))
    return lines


__all__ = [
    "ROOT_KEY",
    "MessageTree",
    "build_tree",
    "path_to_node",
    "default_path",
    "sibling_positions",
    "display_path",
    "update_branch_selection",
    "transcript",
]
