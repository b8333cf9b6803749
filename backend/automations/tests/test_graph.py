import pytest

from automations.exceptions import GraphValidationError
from automations.graph import Graph, edge_handle, is_start_node, validate_graph

from .factories import edge, node


def _branching_graph():
    nodes = [
        node("t1", "trigger_tag_added", start=True),
        node("c1", "condition", field="email", operator="is_not_empty"),
        node("s1", "ab_split", splitPercentage=30),
        node("a1", "notify_team", message="A"),
        node("a2", "notify_team", message="B"),
    ]
    edges = [
        edge("t1", "c1"),
        edge("c1", "s1", "true"),
        edge("c1", "a2", "false"),
        edge("s1", "a1", "A"),
        edge("s1", "a2", "B"),
    ]
    return nodes, edges


def test_next_node_follows_branch_labels():
    g = Graph(*_branching_graph())
    assert g.next_node_id("t1") == "c1"
    assert g.next_node_id("c1", "true") == "s1"
    assert g.next_node_id("c1", "false") == "a2"
    assert g.next_node_id("s1", "a") == "a1"
    assert g.next_node_id("s1", "B") == "a2"
    assert g.next_node_id("a1") is None


def test_missing_branch_edge_ends_walk():
    g = Graph([node("c1", "condition", field="x")], [])
    assert g.next_node_id("c1", "false") is None


def test_handle_aliases():
    assert edge_handle({"sourceHandle": "Yes"}) == "true"
    assert edge_handle({"sourceHandle": "no"}) == "false"
    assert edge_handle({}) == ""


def test_start_node_detection():
    assert is_start_node(node("t", "trigger_contact_created"))
    assert is_start_node(node("x", "notify_team", start=True))
    assert not is_start_node(node("y", "notify_team"))
    assert not is_start_node(node("z", "mystery"))
    assert Graph(*_branching_graph()).start_node()["id"] == "t1"


def test_valid_graph_passes_strict():
    validate_graph(*_branching_graph(), strict=True)


def test_unknown_node_type_rejected_even_for_drafts():
    nodes = [node("t1", "trigger", start=True), node("x", "teleport")]
    with pytest.raises(GraphValidationError) as exc:
        validate_graph(nodes, [edge("t1", "x")], strict=False)
    assert any("teleport" in e for e in exc.value.errors)


def test_structural_errors():
    nodes = [node("t1", "trigger", start=True), node("t1", "notify_team", message="x"), {"type": "delay"}]
    edges = [edge("t1", "ghost"), edge("t1", "t1"), edge("t1", "t1")]
    errors = Graph(nodes, edges).errors(strict=False)
    assert "duplicate node id 't1'" in errors
    assert "node #2 has no id" in errors
    assert "edge target 'ghost' does not exist" in errors
    assert any("more than one edge" in e for e in errors)


def test_strict_checks_start_reachability_and_branches():
    nodes, edges = _branching_graph()
    nodes.append(node("orphan", "notify_team", message="x"))
    edges = [e for e in edges if e.get("sourceHandle") != "false"]
    errors = Graph(nodes, edges).errors(strict=True)
    assert "node 'orphan' is not reachable from the start node" in errors
    assert "condition node 'c1' is missing an edge for branch 'false'" in errors

    two_starts = [node("t1", "trigger", start=True), node("t2", "trigger_manual")]
    assert "automation must have exactly one start node, found 2" in Graph(two_starts, []).errors()

    # drafts only get structural checks
    assert Graph(two_starts, []).errors(strict=False) == []
