"""Visibility resolution with ancestor rerouting for buried interface nodes."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from .model import ChildRef, FlowscopeError, GraphModel, Node, highest_scoring, normalize_scores
from .scope import Scope
from .view import HANDLE_IN, HANDLE_OUT, Handle, ViewEdge, ViewNode

logger = logging.getLogger(__name__)

DEFAULT_MAX_HOPS = 3
DEFAULT_LABEL_MAX_LENGTH = 20


@dataclass(frozen=True)
class ResolverOptions:
    max_hops: int = DEFAULT_MAX_HOPS
    label_max_length: Optional[int] = DEFAULT_LABEL_MAX_LENGTH

    def __post_init__(self) -> None:
        if self.max_hops < 1:
            raise FlowscopeError("E_OPTIONS", f"max_hops must be >= 1 (got {self.max_hops!r})")
        if self.label_max_length is not None and self.label_max_length < 1:
            raise FlowscopeError(
                "E_OPTIONS",
                f"label_max_length must be >= 1 (got {self.label_max_length!r})",
            )


@dataclass
class VisibleGraph:
    nodes: List[ViewNode]
    edges: List[ViewEdge]
    handles: Dict[str, List[Handle]] = field(default_factory=dict)
    ports: Dict[str, List[ChildRef]] = field(default_factory=dict)

    @property
    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]

    def node(self, node_id: str) -> Optional[ViewNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


class _HandleRegistry:
    def __init__(self, visible_ids: Set[str]) -> None:
        self._visible = visible_ids
        self._handles: Dict[str, List[Handle]] = {}
        self._ids: Set[str] = set()

    def add(self, owner_id: str, direction: str, buried: Node) -> Optional[Handle]:
        if owner_id not in self._visible:
            logger.warning("refusing handle for %r on hidden group %r", buried.id, owner_id)
            return None
        handle = Handle(
            owner_id=owner_id,
            direction=direction,
            buried_id=buried.id,
            name=buried.name,
            tags=buried.container.tags,
        )
        if handle.id not in self._ids:
            self._ids.add(handle.id)
            self._handles.setdefault(owner_id, []).append(handle)
        return handle

    def for_owner(self, owner_id: str) -> List[Handle]:
        return list(self._handles.get(owner_id, []))

    def as_dict(self) -> Dict[str, List[Handle]]:
        return {owner: list(handles) for owner, handles in self._handles.items()}


class _EdgeCollector:
    def __init__(self) -> None:
        self._edges: List[ViewEdge] = []
        self._ids: Set[str] = set()

    def __contains__(self, edge_id: object) -> bool:
        return edge_id in self._ids

    def add(self, edge: ViewEdge) -> bool:
        if edge.id in self._ids:
            return False
        self._ids.add(edge.id)
        self._edges.append(edge)
        return True

    @property
    def edges(self) -> List[ViewEdge]:
        return list(self._edges)


def find_visible_ancestor(
    graph: GraphModel,
    node_id: str,
    visible_ids: Iterable[str],
    max_hops: int = DEFAULT_MAX_HOPS,
) -> Optional[str]:
    """Return the nearest visible group above `node_id`, or None.

    Walks parent links breadth-first for at most `max_hops` levels, never
    revisiting a node, so cyclic containment data terminates.
    """
    visible = visible_ids if isinstance(visible_ids, (set, frozenset)) else set(visible_ids)
    visited: Set[str] = {node_id}
    frontier: List[str] = [node_id]
    for _hop in range(max_hops):
        next_frontier: List[str] = []
        for current in frontier:
            for parent in graph.parents_of(current):
                if parent.id in visited:
                    continue
                visited.add(parent.id)
                candidate = graph.node(parent.id)
                if candidate is not None and candidate.role.is_group and parent.id in visible:
                    return parent.id
                next_frontier.append(parent.id)
        if not next_frontier:
            return None
        frontier = next_frontier
    return None


def resolve_visibility(
    graph: GraphModel,
    scope: Optional[Scope] = None,
    options: Optional[ResolverOptions] = None,
    *,
    scores: Optional[Mapping[str, Any]] = None,
) -> VisibleGraph:
    """Compute the nodes and edges shown at `scope`.

    The graph is never mutated; every call builds fresh view records.
    """
    scope = scope or Scope.top()
    options = options or ResolverOptions()
    scope.validate(graph)

    visible_ids = _suppress_nested(graph, scope, _scope_filter(graph, scope))
    visible_set = set(visible_ids)
    edges = _EdgeCollector()
    handles = _HandleRegistry(visible_set)

    def _ancestor(node_id: str) -> Optional[str]:
        return find_visible_ancestor(graph, node_id, visible_set, options.max_hops)

    # visible parents: direct edges and buried children
    for parent_id in visible_ids:
        for child in graph.children_of(parent_id):
            if child.id in visible_set:
                edges.add(
                    ViewEdge(
                        id=_edge_id(parent_id, child.id),
                        source=parent_id,
                        target=child.id,
                        data=_edge_data(graph, parent_id, child, options),
                    )
                )
                continue
            if not child.is_interface:
                continue
            ancestor = _ancestor(child.id)
            if ancestor is None or ancestor == parent_id:
                continue
            edge_id = _edge_id(parent_id, ancestor, via_in=child.id)
            if edge_id in edges:
                continue
            buried = graph.node(child.id)
            handle = handles.add(ancestor, HANDLE_IN, buried) if buried is not None else None
            if handle is None:
                continue
            edges.add(
                ViewEdge(
                    id=edge_id,
                    source=parent_id,
                    target=ancestor,
                    data=_edge_data(graph, parent_id, child, options),
                    target_handle=handle.id,
                )
            )

    # buried parents: reroute the source end (and the target end when it is buried too)
    for node in graph.nodes:
        if node.id in visible_set or not node.role.is_interface:
            continue
        source_ancestor: Optional[str] = None
        for child in node.children:
            target_id: Optional[str] = None
            via_in: Optional[str] = None
            if child.id in visible_set:
                target_id = child.id
            elif child.is_interface:
                target_id = _ancestor(child.id)
                via_in = child.id
            if target_id is None:
                continue
            if source_ancestor is None:
                source_ancestor = _ancestor(node.id)
                if source_ancestor is None:
                    break
            if source_ancestor == target_id:
                continue
            edge_id = _edge_id(source_ancestor, target_id, via_out=node.id, via_in=via_in)
            if edge_id in edges:
                continue
            out_handle = handles.add(source_ancestor, HANDLE_OUT, node)
            in_handle: Optional[Handle] = None
            if via_in is not None:
                buried_child = graph.node(via_in)
                if buried_child is not None:
                    in_handle = handles.add(target_id, HANDLE_IN, buried_child)
            if out_handle is None or (via_in is not None and in_handle is None):
                continue
            edges.add(
                ViewEdge(
                    id=edge_id,
                    source=source_ancestor,
                    target=target_id,
                    data=_edge_data(graph, node.id, child, options),
                    source_handle=out_handle.id,
                    target_handle=in_handle.id if in_handle is not None else None,
                )
            )

    ports: Dict[str, List[ChildRef]] = {}
    normalized = normalize_scores(scores)
    best = highest_scoring(scores)
    view_nodes: List[ViewNode] = []
    for node_id in visible_ids:
        node = graph.node(node_id)
        assert node is not None
        if node.role.is_group:
            ports[node_id] = _group_ports(graph, node, handles.for_owner(node_id))
        view_nodes.append(
            _view_node(node, ports.get(node_id), scores, normalized, best)
        )

    result = VisibleGraph(
        nodes=view_nodes,
        edges=edges.edges,
        handles=handles.as_dict(),
        ports=ports,
    )
    logger.debug(
        "scope %r: %d visible nodes, %d edges",
        scope.active_group,
        len(result.nodes),
        len(result.edges),
    )
    return result


def _scope_filter(graph: GraphModel, scope: Scope) -> List[str]:
    if scope.active_group is not None:
        members = set(graph.members_of(scope.active_group))
        members.discard(scope.active_group)
        return [node.id for node in graph.nodes if node.id in members]
    return [
        node.id
        for node in graph.nodes
        if node.role.is_group or not graph.is_grouped(node.id)
    ]


def _suppress_nested(graph: GraphModel, scope: Scope, candidate_ids: List[str]) -> List[str]:
    visible_groups: Set[str] = set()
    for node_id in candidate_ids:
        node = graph.node(node_id)
        if node is not None and node.role.is_group:
            visible_groups.add(node_id)
    kept: List[str] = []
    for node_id in candidate_ids:
        has_group_parent = any(
            parent.id in visible_groups and parent.id != node_id
            for parent in graph.parents_of(node_id)
        )
        if not has_group_parent:
            kept.append(node_id)
        elif scope.is_top and graph.is_successor(node_id):
            kept.append(node_id)
    return kept


def _group_ports(graph: GraphModel, node: Node, injected: List[Handle]) -> List[ChildRef]:
    ports: List[ChildRef] = []
    seen: Set[str] = set()
    for handle in injected:
        if handle.buried_id in seen:
            continue
        seen.add(handle.buried_id)
        ports.append(ChildRef(id=handle.buried_id, name=handle.name, tags=handle.tags))
    for child in node.children:
        if child.id in seen:
            continue
        seen.add(child.id)
        ports.append(child)
    return ports


def _view_node(
    node: Node,
    ports: Optional[List[ChildRef]],
    scores: Optional[Mapping[str, Any]],
    normalized: Mapping[str, float],
    best: Optional[str],
) -> ViewNode:
    container = node.container
    data: Dict[str, Any] = dict(container.extra)
    data.update(
        {
            "id": container.id,
            "Name": container.name,
            "Description": container.description,
            "Tags": ", ".join(container.tags),
            "children": [child.to_dict() for child in (ports if ports is not None else node.children)],
            "parents": [{"id": parent.id, "name": parent.name} for parent in node.parents],
            "isHighestScoring": best == container.id,
        }
    )
    if container.horizon is not None:
        data["Horizon"] = container.horizon
    score = (scores or {}).get(container.id)
    if isinstance(score, (int, float)) and not isinstance(score, bool):
        data["score"] = score
        data["normalizedScore"] = normalized.get(container.id)
    return ViewNode(
        id=container.id,
        type="group" if node.role.is_group else "leaf",
        position=container.position or (0.0, 0.0),
        data=data,
    )


def _edge_id(
    source: str,
    target: str,
    *,
    via_out: Optional[str] = None,
    via_in: Optional[str] = None,
) -> str:
    edge_id = f"{source}-to-{target}"
    if via_out is not None:
        edge_id += f"-out-{via_out}"
    if via_in is not None:
        edge_id += f"-in-{via_in}"
    return edge_id


def _edge_data(
    graph: GraphModel, parent_id: str, child: ChildRef, options: ResolverOptions
) -> Dict[str, Any]:
    label = child.label
    limit = options.label_max_length
    if limit is not None and len(label) > limit:
        label = label[:limit] + "..."
    parent = graph.node(parent_id)
    data: Dict[str, Any] = {
        "label": label,
        "isSourceGroup": bool(parent is not None and parent.role.is_group),
    }
    if child.label and label != child.label:
        data["fullLabel"] = child.label
    if child.description:
        data["description"] = child.description
    return data
