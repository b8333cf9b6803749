"""
Node/edge helpers over the JSON graph stored on `Automation`.

Nodes look like ``{"id": "n1", "type": "logic_condition", "data": {"config": {...}}}``
and edges like ``{"source": "n1", "target": "n2", "sourceHandle": "true"}``.
"""
from __future__ import annotations

from collections import deque
from typing import Any, Dict, List, Optional

from .exceptions import GraphValidationError, UnknownNodeType
from .executors import get_node_spec

HANDLE_ALIASES = {"yes": "true", "no": "false"}


def node_type(node: Dict[str, Any]) -> str:
    data = node.get("data") or {}
    return str(node.get("type") or data.get("type") or "")


def node_config(node: Dict[str, Any]) -> Dict[str, Any]:
    data = node.get("data") or {}
    config = data.get("config")
    return dict(config) if isinstance(config, dict) else {}


def edge_handle(edge: Dict[str, Any]) -> str:
    handle = str(edge.get("sourceHandle") or "").strip().lower()
    return HANDLE_ALIASES.get(handle, handle)


def is_start_node(node: Dict[str, Any]) -> bool:
    data = node.get("data") or {}
    if data.get("isStart") or node.get("start"):
        return True
    try:
        return get_node_spec(node_type(node)).kind == "trigger"
    except UnknownNodeType:
        return False


class Graph:
    def __init__(self, nodes, edges):
        self.nodes: List[Dict[str, Any]] = [n for n in (nodes or []) if isinstance(n, dict)]
        self.edges: List[Dict[str, Any]] = [e for e in (edges or []) if isinstance(e, dict)]
        self._by_id = {str(n.get("id")): n for n in self.nodes if n.get("id") not in (None, "")}

    @classmethod
    def from_automation(cls, automation) -> "Graph":
        return cls(automation.nodes, automation.edges)

    def node(self, node_id) -> Optional[Dict[str, Any]]:
        if node_id in (None, ""):
            return None
        return self._by_id.get(str(node_id))

    def outgoing(self, node_id) -> List[Dict[str, Any]]:
        return [e for e in self.edges if str(e.get("source")) == str(node_id)]

    def start_nodes(self) -> List[Dict[str, Any]]:
        return [n for n in self.nodes if is_start_node(n)]

    def start_node(self) -> Optional[Dict[str, Any]]:
        starts = self.start_nodes()
        return starts[0] if len(starts) == 1 else None

    def next_node_id(self, node_id, handle: Optional[str] = None) -> Optional[str]:
        """
        Branching nodes pass the label they resolved (`true`, `a`, ...); every
        other node follows its single unconditional edge.
        """
        edges = self.outgoing(node_id)
        if handle is None:
            plain = [e for e in edges if not edge_handle(e)]
            chosen = (plain or edges)[:1]
        else:
            wanted = HANDLE_ALIASES.get(handle.lower(), handle.lower())
            chosen = [e for e in edges if edge_handle(e) == wanted][:1]
        if not chosen or chosen[0].get("target") in (None, ""):
            return None
        return str(chosen[0]["target"])

    # ---- validation ----
    def errors(self, strict: bool = True) -> List[str]:
        errors: List[str] = []
        seen = set()
        for index, node in enumerate(self.nodes):
            nid = node.get("id")
            if nid in (None, ""):
                errors.append(f"node #{index} has no id")
                continue
            if str(nid) in seen:
                errors.append(f"duplicate node id {nid!r}")
            seen.add(str(nid))
            try:
                get_node_spec(node_type(node))
            except UnknownNodeType as e:
                errors.append(f"node {nid!r}: {e}")

        handles = set()
        for edge in self.edges:
            source, target = str(edge.get("source")), str(edge.get("target"))
            if source not in self._by_id:
                errors.append(f"edge source {source!r} does not exist")
            if target not in self._by_id:
                errors.append(f"edge target {target!r} does not exist")
            key = (source, edge_handle(edge))
            if key in handles:
                errors.append(f"node {source!r} has more than one edge for branch {key[1] or '(default)'!r}")
            handles.add(key)

        if not strict:
            return errors

        starts = self.start_nodes()
        if len(starts) != 1:
            errors.append(f"automation must have exactly one start node, found {len(starts)}")
            return errors

        reachable = self._reachable_from(str(starts[0]["id"]))
        for nid in self._by_id:
            if nid not in reachable:
                errors.append(f"node {nid!r} is not reachable from the start node")

        for nid, node in self._by_id.items():
            try:
                node_spec = get_node_spec(node_type(node))
            except UnknownNodeType:
                continue
            labels = {edge_handle(e) for e in self.outgoing(nid)}
            for branch in node_spec.branches:
                if branch.lower() not in labels:
                    errors.append(f"{node_spec.name} node {nid!r} is missing an edge for branch {branch!r}")
        return errors

    def _reachable_from(self, start_id: str) -> set:
        seen = {start_id}
        todo = deque([start_id])
        while todo:
            current = todo.popleft()
            for edge in self.outgoing(current):
                target = str(edge.get("target"))
                if target in self._by_id and target not in seen:
                    seen.add(target)
                    todo.append(target)
        return seen


def validate_graph(nodes, edges, strict: bool = True) -> None:
    errors = Graph(nodes, edges).errors(strict=strict)
    if errors:
        raise GraphValidationError(errors)
