"""Public API for flowscope."""
from .handles import HandleLayout, HandleOptions, PortPosition, allocate_all, allocate_handles
from .layout import LayoutOptions, LayoutResult, estimate_node_height, layout_graph
from .model import (
    ChildRef,
    Container,
    FlowscopeError,
    GraphModel,
    Node,
    ParentRef,
    Relationship,
    Role,
    build_graph,
    filter_by_layers,
    highest_scoring,
    normalize_scores,
    parse_tags,
)
from .pipeline import FlowSnapshot, FlowView, ViewOptions, build_view
from .scope import Navigator, Scope, ScopeChange, ScopeError
from .summary import extract_node_title, resolve_edge_label, serialize_summary, serialize_summary_json
from .svg_export import RenderOptions, render_svg
from .text import TextBox, TextMeasurer, TextSegment, layout_box, node_segments, wrap_text
from .view import Handle, ViewEdge, ViewNode
from .visibility import ResolverOptions, VisibleGraph, find_visible_ancestor, resolve_visibility

__all__ = [
    "ChildRef",
    "Container",
    "FlowSnapshot",
    "FlowView",
    "FlowscopeError",
    "GraphModel",
    "Handle",
    "HandleLayout",
    "HandleOptions",
    "LayoutOptions",
    "LayoutResult",
    "Navigator",
    "Node",
    "ParentRef",
    "PortPosition",
    "Relationship",
    "RenderOptions",
    "ResolverOptions",
    "Role",
    "Scope",
    "ScopeChange",
    "ScopeError",
    "TextBox",
    "TextMeasurer",
    "TextSegment",
    "ViewEdge",
    "ViewNode",
    "ViewOptions",
    "VisibleGraph",
    "allocate_all",
    "allocate_handles",
    "build_graph",
    "build_view",
    "estimate_node_height",
    "extract_node_title",
    "filter_by_layers",
    "find_visible_ancestor",
    "highest_scoring",
    "layout_box",
    "layout_graph",
    "node_segments",
    "normalize_scores",
    "parse_tags",
    "render_svg",
    "resolve_edge_label",
    "resolve_visibility",
    "serialize_summary",
    "serialize_summary_json",
    "wrap_text",
]
