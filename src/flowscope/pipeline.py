"""One-call view construction: layers, graph, visibility, handles, layout."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .handles import HandleLayout, HandleOptions, allocate_all
from .layout import LayoutOptions, layout_graph
from .model import Container, GraphModel, build_graph, filter_by_layers
from .scope import Scope
from .summary import serialize_summary, serialize_summary_json
from .svg_export import render_svg
from .text import TextMeasurer
from .view import ViewEdge, ViewNode
from .visibility import ResolverOptions, resolve_visibility

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlowSnapshot:
    """The raw records a view is built from."""

    containers: Tuple[Container, ...]
    children_table: Tuple[Mapping[str, Any], ...] = ()
    relationships: Optional[Mapping[str, Any]] = None
    scores: Optional[Mapping[str, Any]] = None

    @classmethod
    def from_records(
        cls,
        containers: Iterable[Mapping[str, Any]],
        children_table: Iterable[Mapping[str, Any]] = (),
        relationships: Optional[Mapping[str, Any]] = None,
        scores: Optional[Mapping[str, Any]] = None,
    ) -> "FlowSnapshot":
        return cls(
            containers=tuple(Container.from_record(record) for record in containers),
            children_table=tuple(children_table),
            relationships=relationships,
            scores=scores,
        )


@dataclass(frozen=True)
class ViewOptions:
    resolver: ResolverOptions = field(default_factory=ResolverOptions)
    handles: HandleOptions = field(default_factory=HandleOptions)
    layout: LayoutOptions = field(default_factory=LayoutOptions)
    selected_layer: Optional[str] = None
    hidden_layers: Tuple[str, ...] = ()
    layer_options: Optional[Tuple[str, ...]] = None


@dataclass
class FlowView:
    nodes: List[ViewNode]
    edges: List[ViewEdge]
    handle_layouts: Dict[str, HandleLayout]
    positions: Dict[str, Tuple[float, float]]
    scope: Scope
    engine: str = "layered"
    graph: Optional[GraphModel] = None
    measurer: Optional[TextMeasurer] = None

    def to_svg(self, **kwargs: Any) -> str:
        kwargs.setdefault("handle_layouts", self.handle_layouts)
        kwargs.setdefault("measurer", self.measurer)
        return render_svg(self.nodes, self.edges, **kwargs)

    def to_summary(self, format: str = "text", **kwargs: Any) -> str:
        if format == "json":
            return serialize_summary_json(self.nodes, self.edges, **kwargs)
        if format == "text":
            return serialize_summary(self.nodes, self.edges, **kwargs)
        raise ValueError(f'unknown summary format "{format}" (expected "text" or "json")')

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope.active_group,
            "engine": self.engine,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "handles": {
                group_id: {
                    "inputs": [_port_dict(port) for port in layout.inputs],
                    "outputs": [_port_dict(port) for port in layout.outputs],
                }
                for group_id, layout in self.handle_layouts.items()
            },
        }


def build_view(
    snapshot: FlowSnapshot,
    scope: Optional[Scope] = None,
    options: Optional[ViewOptions] = None,
    recorded_positions: Optional[Mapping[str, Tuple[float, float]]] = None,
    measurer: Optional[TextMeasurer] = None,
) -> FlowView:
    """Run every stage for `scope` and return the laid-out view.

    `measurer` sizes node text during layout and is reused by `to_svg`.

    Raises `ScopeError` when the scope names a missing or non-group node.
    """
    scope = scope or Scope.top()
    options = options or ViewOptions()

    containers = filter_by_layers(
        snapshot.containers,
        selected_layer=options.selected_layer,
        hidden_layers=options.hidden_layers,
        layer_options=options.layer_options,
    )
    kept = {container.id for container in containers}
    excluded = [container.id for container in snapshot.containers if container.id not in kept]
    if excluded:
        logger.debug("layer filter excluded %d containers", len(excluded))

    graph = build_graph(
        containers,
        snapshot.children_table,
        snapshot.relationships,
        excluded_ids=excluded,
    )
    scope.validate(graph)
    visible = resolve_visibility(graph, scope, options.resolver, scores=snapshot.scores)
    handle_layouts = allocate_all(visible.ports, visible.handles, options.handles)

    if recorded_positions is None and options.layout.keep_layout:
        recorded_positions = {
            container.id: container.position
            for container in containers
            if container.position is not None
        }
    measurer = measurer or TextMeasurer()
    result = layout_graph(visible.nodes, visible.edges, options.layout, recorded_positions, measurer)
    return FlowView(
        nodes=result.nodes,
        edges=visible.edges,
        handle_layouts=handle_layouts,
        positions=result.positions,
        scope=scope,
        engine=result.engine,
        graph=graph,
        measurer=measurer,
    )


def _port_dict(port: Any) -> Dict[str, Any]:
    return {"id": port.id, "buriedId": port.buried_id, "label": port.label, "top": port.top}
