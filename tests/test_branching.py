"""Tree building, path resolution and branch selection."""

from dataclasses import dataclass
from typing import Optional

from hypothesis import given
from hypothesis import strategies as st

from chatkeep.branching import (
    ROOT_KEY,
    build_tree,
    default_path,
    display_path,
    path_to_node,
    sibling_positions,
    transcript,
    update_branch_selection,
)


@dataclass
class Node:
    id: str
    parent_id: Optional[str]
    created_at: Optional[float]
    role: str = "user"
    text: str = ""


@st.composite
def node_lists(draw):
    """Arbitrary parent links: dangling parents, self links and cycles included."""
    size = draw(st.integers(min_value=0, max_value=25))
    ids = [f"n{i}" for i in range(size)]
    pool = ids + ["ghost", None]
    nodes = []
    for node_id in ids:
        parent = draw(st.sampled_from(pool)) if pool else None
        created = draw(st.one_of(st.none(), st.floats(min_value=0, max_value=1e6, allow_nan=False)))
        nodes.append(Node(node_id, parent, created))
    return nodes


def _chain(n: int):
    return [Node(f"m{i}", f"m{i - 1}" if i else None, float(i)) for i in range(n)]


@given(node_lists())
def test_build_produces_a_forest(nodes):
    tree = build_tree(nodes)
    for node_id in tree.index:
        seen = set()
        current = node_id
        while current is not None:
            assert current not in seen
            seen.add(current)
            current = tree.parent_of(current)


@given(node_lists())
def test_every_node_is_a_root_or_a_child(nodes):
    tree = build_tree(nodes)
    children = {cid for ids in tree.children.values() for cid in ids}
    assert set(tree.roots) | children == set(tree.index)
    assert not set(tree.roots) & children


@given(node_lists(), st.data())
def test_path_to_node_links_consecutive_parents(nodes, data):
    tree = build_tree(nodes)
    if not tree.index:
        return
    target = data.draw(st.sampled_from(sorted(tree.index)))
    path = path_to_node(tree, target)

    assert path[-1].id == target
    assert tree.parent_of(path[0].id) is None
    for previous, current in zip(path, path[1:]):
        assert tree.parent_of(current.id) == previous.id


def test_dangling_parent_makes_a_root():
    tree = build_tree([Node("a", "hidden", 1.0), Node("b", "a", 2.0)])
    assert tree.roots == ["a"]


def test_children_are_sorted_by_creation_time():
    tree = build_tree([Node("p", None, 0.0), Node("late", "p", 9.0), Node("early", "p", 1.0)])
    assert tree.children_of("p") == ["early", "late"]
    siblings, position = sibling_positions(tree)["late"]
    assert siblings == ["early", "late"]
    assert position == 1
    assert tree.siblings_of("early") == ["early", "late"]
    assert tree.siblings_of("p") == ["p"]


def test_default_path_follows_current_node():
    nodes = _chain(3) + [Node("alt", "m0", 5.0)]
    tree = build_tree(nodes)

    assert [n.id for n in default_path(tree, "alt")] == ["m0", "alt"]


def test_default_path_without_current_node_keeps_original_order():
    nodes = [Node("b", None, 2.0), Node("a", None, 1.0)]
    assert [n.id for n in default_path(build_tree(nodes), None)] == ["b", "a"]
    assert [n.id for n in default_path(build_tree(nodes), "unknown")] == ["b", "a"]


def test_path_to_unknown_node_is_empty():
    assert path_to_node(build_tree(_chain(2)), "zzz") == []


def test_display_path_prefers_selection_then_default_leaf_then_newest():
    nodes = [
        Node("q", None, 0.0),
        Node("a1", "q", 1.0),
        Node("a2", "q", 2.0),
        Node("f1", "a1", 3.0),
    ]
    tree = build_tree(nodes)

    assert [n.id for n in display_path(tree, {}, "f1")] == ["q", "a1", "f1"]
    assert [n.id for n in display_path(tree, {}, None)] == ["q", "a2"]
    assert [n.id for n in display_path(tree, {"q": "a1"}, None)] == ["q", "a1", "f1"]


def test_update_branch_selection_clears_choices_below_old_branch():
    nodes = [
        Node("q", None, 0.0),
        Node("a1", "q", 1.0),
        Node("a2", "q", 2.0),
        Node("f1", "a1", 3.0),
        Node("g1", "f1", 4.0),
        Node("g2", "f1", 5.0),
    ]
    tree = build_tree(nodes)
    selections = {"q": "a1", "f1": "g1", ROOT_KEY: "q"}

    updated = update_branch_selection(tree, selections, "q", "a2")

    assert updated == {"q": "a2", ROOT_KEY: "q"}
    assert selections["f1"] == "g1"


def test_transcript_is_role_tagged_default_path():
    nodes = [
        Node("q", None, 0.0, role="user", text="hi"),
        Node("a", "q", 1.0, role="assistant", text="hello"),
    ]
    assert transcript(build_tree(nodes), "a") == [("user", "hi"), ("assistant", "hello")]
