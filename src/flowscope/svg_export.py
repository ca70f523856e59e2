"""Self-contained SVG export of a laid-out view."""
from __future__ import annotations

import logging
import math
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .handles import HandleLayout
from .model import FlowscopeError
from .summary import EdgeLike, NodeLike, _as_edge, _as_node, resolve_edge_label
from .text import TextBox, TextMeasurer, layout_box, node_segments, wrap_text
from .view import ViewEdge, ViewNode, _number

logger = logging.getLogger(__name__)

SVG_NS = "http://www.w3.org/2000/svg"
ET.register_namespace("", SVG_NS)

ARROW_MARKER_ID = "flow-arrow"
BACKGROUND = "#f8fafc"
NODE_STROKE = "#1e293b"
EDGE_STROKE = "#334155"
TEXT_FILL = "#0f172a"

Point = Tuple[float, float]
Box = Tuple[float, float, float, float]


@dataclass(frozen=True)
class RenderOptions:
    margin: float = 32.0
    node_min_width: float = 120.0
    node_max_width: float = 240.0
    node_min_height: float = 48.0
    node_padding: float = 12.0
    lane_spacing: float = 14.0
    lane_margin: float = 8.0
    elbow_spacing: float = 12.0
    arrow_size: float = 8.0
    halo_width: float = 6.0
    stroke_width: float = 2.0
    label_font_size: float = 11.0
    label_max_width: float = 160.0
    label_padding: float = 4.0
    port_radius: float = 4.0

    def __post_init__(self) -> None:
        for name in ("margin", "node_padding", "lane_spacing", "lane_margin", "elbow_spacing", "arrow_size"):
            if getattr(self, name) < 0:
                raise FlowscopeError("E_OPTIONS", f"{name} must be >= 0 (got {getattr(self, name)!r})")
        if self.node_min_width > self.node_max_width:
            raise FlowscopeError("E_OPTIONS", "node_min_width must not exceed node_max_width")


class _Bounds:
    """Running union of everything drawn."""

    def __init__(self) -> None:
        self.box: Optional[Box] = None

    def add(self, x: float, y: float, width: float = 0.0, height: float = 0.0) -> None:
        if not (math.isfinite(x) and math.isfinite(y)):
            return
        width = width if math.isfinite(width) else 0.0
        height = height if math.isfinite(height) else 0.0
        self.box = _merge_bbox(self.box, (x, y, x + width, y + height))

    def add_points(self, points: Sequence[Point]) -> None:
        for x, y in points:
            self.add(x, y)


def _q(tag: str) -> str:
    return f"{{{SVG_NS}}}{tag}"


def render_svg(
    nodes: Sequence[NodeLike],
    edges: Sequence[EdgeLike],
    *,
    grid: Optional[Mapping[str, Any]] = None,
    viewport: Optional[Mapping[str, Any]] = None,
    include_rows: bool = True,
    include_columns: bool = True,
    handle_layouts: Optional[Mapping[str, HandleLayout]] = None,
    options: Optional[RenderOptions] = None,
    measurer: Optional[TextMeasurer] = None,
) -> str:
    """Render nodes, bands, routed edges and label chips to an SVG string.

    The viewport transform (`x`, `y`, `zoom`) applies to every coordinate
    and font size. The viewBox is the union of everything drawn plus the
    margin, so nothing is clipped.
    """
    options = options or RenderOptions()
    measurer = measurer or TextMeasurer()
    grid = grid or {}
    viewport = viewport or {}
    zoom = _number(viewport.get("zoom"), 1.0) or 1.0
    tx = _number(viewport.get("x"))
    ty = _number(viewport.get("y"))
    handle_layouts = handle_layouts or {}

    view_nodes = [_as_node(node) for node in nodes]
    view_edges = [_as_edge(edge) for edge in edges]
    bounds = _Bounds()

    svg_root = ET.Element(
        _q("svg"),
        {
            "font-family": "Inter, Arial, sans-serif",
            "font-size": _fmt(12 * zoom),
            "fill": TEXT_FILL,
        },
    )
    defs = ET.SubElement(svg_root, _q("defs"))
    _add_arrow_marker(defs, options.arrow_size * zoom)

    bands = ET.SubElement(svg_root, _q("g"), {"class": "flow-bands"})
    _emit_bands(bands, grid, zoom, tx, ty, include_rows, include_columns, bounds)

    boxes: Dict[str, Box] = {}
    text_boxes: Dict[str, TextBox] = {}
    for node in view_nodes:
        # boxes keep their laid-out size
        sized = bool(node.width) and bool(node.height)
        text_box = layout_box(
            node_segments(node),
            measurer,
            min_width=node.width if sized else options.node_min_width,
            max_width=node.width if sized else options.node_max_width,
            min_height=node.height if sized else options.node_min_height,
            padding=options.node_padding,
        )
        box_width = node.width if sized else text_box.width
        box_height = node.height if sized else text_box.height
        x = tx + node.position[0] * zoom
        y = ty + node.position[1] * zoom
        boxes[node.id] = (x, y, box_width * zoom, box_height * zoom)
        text_boxes[node.id] = text_box

    edge_layer = ET.SubElement(svg_root, _q("g"), {"class": "flow-edges"})
    routes = route_edges(view_edges, boxes, handle_layouts, options, zoom)
    edge_ids: Set[str] = set()
    for edge, points in routes:
        element_id = _reserve_unique_id(edge_ids, f"edge-{edge.id}")
        _emit_edge(edge_layer, element_id, points, options, zoom, bounds)

    node_layer = ET.SubElement(svg_root, _q("g"), {"class": "flow-nodes"})
    for node in view_nodes:
        _emit_node(node_layer, node, boxes[node.id], text_boxes[node.id], options.node_padding, zoom, bounds)
        layout = handle_layouts.get(node.id)
        if layout is not None and node.is_group:
            _emit_ports(node_layer, layout, boxes[node.id], options, zoom, bounds)

    label_layer = ET.SubElement(svg_root, _q("g"), {"class": "flow-labels"})
    for edge, points in routes:
        label = resolve_edge_label(edge)
        if label:
            _emit_label(label_layer, label, points, options, measurer, zoom, bounds)

    if bounds.box is None:
        bounds_spec = grid.get("bounds") or {}
        min_x, min_y = 0.0, 0.0
        max_x = _number(bounds_spec.get("width"))
        max_y = _number(bounds_spec.get("height"))
    else:
        min_x, min_y, max_x, max_y = bounds.box
    width = max(1.0, max_x - min_x) + 2 * options.margin
    height = max(1.0, max_y - min_y) + 2 * options.margin
    view_x = min_x - options.margin
    view_y = min_y - options.margin
    svg_root.set("width", _fmt(width))
    svg_root.set("height", _fmt(height))
    svg_root.set("viewBox", f"{_fmt(view_x)} {_fmt(view_y)} {_fmt(width)} {_fmt(height)}")
    svg_root.insert(
        1,
        ET.Element(
            _q("rect"),
            {
                "x": _fmt(view_x),
                "y": _fmt(view_y),
                "width": _fmt(width),
                "height": _fmt(height),
                "fill": BACKGROUND,
            },
        ),
    )
    logger.debug("exported svg with %d nodes and %d edges", len(view_nodes), len(routes))
    return _pretty_xml(svg_root)


def route_edges(
    edges: Sequence[ViewEdge],
    boxes: Mapping[str, Box],
    handle_layouts: Optional[Mapping[str, HandleLayout]] = None,
    options: Optional[RenderOptions] = None,
    zoom: float = 1.0,
) -> List[Tuple[ViewEdge, List[Point]]]:
    """Orthogonal polylines for every edge whose endpoints have boxes.

    Edges sharing a (source, target) pair fan out on symmetric lanes; edges
    sharing a source stagger their elbow.
    """
    options = options or RenderOptions()
    handle_layouts = handle_layouts or {}
    drawable = [edge for edge in edges if edge.source in boxes and edge.target in boxes]

    # slots are positional: parallel edges may share an id
    pair_counts: Dict[Tuple[str, str], int] = {}
    source_counts: Dict[str, int] = {}
    slots: List[Tuple[int, int]] = []
    for edge in drawable:
        pair = (edge.source, edge.target)
        slots.append((pair_counts.get(pair, 0), source_counts.get(edge.source, 0)))
        pair_counts[pair] = pair_counts.get(pair, 0) + 1
        source_counts[edge.source] = source_counts.get(edge.source, 0) + 1

    routes: List[Tuple[ViewEdge, List[Point]]] = []
    for edge, (pair_index, sibling_index) in zip(drawable, slots):
        pair_total = pair_counts[(edge.source, edge.target)]
        sibling_total = source_counts[edge.source]
        source_box = boxes[edge.source]
        target_box = boxes[edge.target]
        horizontal = _is_horizontal(source_box, target_box)
        extent = min(source_box[3], target_box[3]) if horizontal else min(source_box[2], target_box[2])
        lane = lane_offset(
            pair_index,
            pair_total,
            options.lane_spacing * zoom,
            extent / 2.0 - options.lane_margin * zoom,
        )
        elbow = (sibling_index - (sibling_total - 1) / 2.0) * options.elbow_spacing * zoom
        source_y = _handle_y(handle_layouts.get(edge.source), edge.source_handle, source_box)
        target_y = _handle_y(handle_layouts.get(edge.target), edge.target_handle, target_box)
        points = orthogonal_route(
            source_box,
            target_box,
            lane=lane,
            elbow=elbow,
            guard=options.arrow_size * zoom,
            source_y=source_y,
            target_y=target_y,
        )
        routes.append((edge, points))
    return routes


def lane_offset(index: int, count: int, spacing: float, limit: float) -> float:
    """Perpendicular offset of lane `index` of `count`, centred on zero."""
    if count <= 1:
        return 0.0
    offset = (index - (count - 1) / 2.0) * spacing
    limit = max(0.0, limit)
    return max(-limit, min(limit, offset))


def orthogonal_route(
    source: Box,
    target: Box,
    *,
    lane: float = 0.0,
    elbow: float = 0.0,
    guard: float = 0.0,
    source_y: Optional[float] = None,
    target_y: Optional[float] = None,
) -> List[Point]:
    """Exit `source`, bend once at an elbow, and stop `guard` short of `target`."""
    sx, sy, sw, sh = source
    tx, ty, tw, th = target
    scx, scy = sx + sw / 2.0, sy + sh / 2.0
    tcx, tcy = tx + tw / 2.0, ty + th / 2.0

    if _is_horizontal(source, target):
        sign = 1.0 if tcx >= scx else -1.0
        start_y = source_y if source_y is not None else scy + lane
        end_y = target_y if target_y is not None else tcy + lane
        start_x = sx + sw if sign > 0 else sx
        edge_x = tx if sign > 0 else tx + tw
        end_x = edge_x - sign * guard
        mid_x = _clamp_between((start_x + end_x) / 2.0 + elbow * sign, start_x, end_x)
        points = [(start_x, start_y), (mid_x, start_y), (mid_x, end_y), (end_x, end_y)]
    else:
        sign = 1.0 if tcy >= scy else -1.0
        start_x = scx + lane
        end_x = tcx + lane
        start_y = sy + sh if sign > 0 else sy
        edge_y = ty if sign > 0 else ty + th
        end_y = edge_y - sign * guard
        mid_y = _clamp_between((start_y + end_y) / 2.0 + elbow * sign, start_y, end_y)
        points = [(start_x, start_y), (start_x, mid_y), (end_x, mid_y), (end_x, end_y)]
    return collapse_points(points)


def collapse_points(points: Sequence[Point], tolerance: float = 0.5) -> List[Point]:
    """Drop repeated points and interior points on a straight run."""
    deduped: List[Point] = []
    for point in points:
        if deduped and abs(deduped[-1][0] - point[0]) < tolerance and abs(deduped[-1][1] - point[1]) < tolerance:
            continue
        deduped.append(point)
    if len(deduped) <= 2:
        return deduped
    result = [deduped[0]]
    for i in range(1, len(deduped) - 1):
        px, py = result[-1]
        cx, cy = deduped[i]
        nx, ny = deduped[i + 1]
        same_x = abs(px - cx) < tolerance and abs(cx - nx) < tolerance
        same_y = abs(py - cy) < tolerance and abs(cy - ny) < tolerance
        if not same_x and not same_y:
            result.append((cx, cy))
    result.append(deduped[-1])
    return result


def polyline_midpoint(points: Sequence[Point]) -> Point:
    """Point halfway along the polyline by arc length."""
    if not points:
        return (0.0, 0.0)
    lengths = [math.hypot(b[0] - a[0], b[1] - a[1]) for a, b in zip(points, points[1:])]
    total = sum(lengths)
    if total <= 0:
        return points[0]
    remaining = total / 2.0
    for (a, b), length in zip(zip(points, points[1:]), lengths):
        if remaining <= length and length > 0:
            t = remaining / length
            return (a[0] + (b[0] - a[0]) * t, a[1] + (b[1] - a[1]) * t)
        remaining -= length
    return points[-1]


def _is_horizontal(source: Box, target: Box) -> bool:
    dx = (target[0] + target[2] / 2.0) - (source[0] + source[2] / 2.0)
    dy = (target[1] + target[3] / 2.0) - (source[1] + source[3] / 2.0)
    return abs(dx) >= abs(dy)


def _clamp_between(value: float, a: float, b: float) -> float:
    low, high = min(a, b), max(a, b)
    return max(low, min(high, value))


def _handle_y(layout: Optional[HandleLayout], handle: Optional[str], box: Box) -> Optional[float]:
    if layout is None or not handle:
        return None
    offset = layout.offset_for(handle, box[3])
    if offset is None:
        return None
    return box[1] + offset


def _emit_bands(
    parent: ET.Element,
    grid: Mapping[str, Any],
    zoom: float,
    tx: float,
    ty: float,
    include_rows: bool,
    include_columns: bool,
    bounds: _Bounds,
) -> None:
    grid_bounds = grid.get("bounds") or {}
    if include_rows:
        band_width = _number(grid_bounds.get("width")) * zoom
        for row in grid.get("rows") or []:
            y = _number(row.get("top")) * zoom + ty
            height = _number(row.get("height")) * zoom
            ET.SubElement(
                parent,
                _q("rect"),
                {
                    "x": _fmt(tx),
                    "y": _fmt(y),
                    "width": _fmt(band_width),
                    "height": _fmt(height),
                    "fill": "rgba(148,163,184,0.08)",
                    "stroke": "rgba(148,163,184,0.5)",
                },
            )
            bounds.add(tx, y, band_width, height)
            label = str(row.get("label") or "")
            if label:
                text = ET.SubElement(
                    parent,
                    _q("text"),
                    {"x": _fmt(tx + 6 * zoom), "y": _fmt(y + height / 2.0 + 4 * zoom), "fill": TEXT_FILL},
                )
                text.text = label
    if include_columns:
        band_height = _number(grid_bounds.get("height")) * zoom
        for column in grid.get("columns") or []:
            x = _number(column.get("left")) * zoom + tx
            width = _number(column.get("width")) * zoom
            ET.SubElement(
                parent,
                _q("rect"),
                {
                    "x": _fmt(x),
                    "y": _fmt(ty),
                    "width": _fmt(width),
                    "height": _fmt(band_height),
                    "fill": "rgba(16,185,129,0.08)",
                    "stroke": "rgba(16,185,129,0.4)",
                },
            )
            bounds.add(x, ty, width, band_height)
            label = str(column.get("label") or "")
            if label:
                text = ET.SubElement(
                    parent,
                    _q("text"),
                    {
                        "x": _fmt(x + width / 2.0),
                        "y": _fmt(ty + 18 * zoom),
                        "text-anchor": "middle",
                        "fill": TEXT_FILL,
                    },
                )
                text.text = label


def _group_fill(node: ViewNode) -> Tuple[str, float]:
    count = len(node.data.get("children") or [])
    return "#e0e7ff", min(0.9, 0.25 + 0.08 * count)


def _emit_node(
    parent: ET.Element,
    node: ViewNode,
    box: Box,
    text_box: TextBox,
    padding: float,
    zoom: float,
    bounds: _Bounds,
) -> None:
    x, y, width, height = box
    attrs = {
        "x": _fmt(x),
        "y": _fmt(y),
        "width": _fmt(width),
        "height": _fmt(height),
        "rx": _fmt(12 * zoom),
        "ry": _fmt(12 * zoom),
        "fill": "#ffffff",
        "stroke": NODE_STROKE,
        "stroke-width": "1.5",
    }
    if node.is_group:
        fill, opacity = _group_fill(node)
        attrs["fill"] = fill
        attrs["fill-opacity"] = _fmt(opacity)
    group = ET.SubElement(parent, _q("g"), {"id": f"node-{node.id}", "class": f"flow-node flow-node-{node.type}"})
    ET.SubElement(group, _q("rect"), attrs)
    bounds.add(x, y, width, height)
    for line in text_box.lines:
        segment = line.segment
        text = ET.SubElement(
            group,
            _q("text"),
            {
                "class": f"flow-node-{segment.kind}",
                "x": _fmt(x + padding * zoom),
                "y": _fmt(y + line.baseline * zoom),
                "font-size": _fmt(segment.font_size * zoom),
                "font-weight": segment.font_weight,
                "fill": segment.color,
            },
        )
        text.text = line.text


def _emit_ports(
    parent: ET.Element,
    layout: HandleLayout,
    box: Box,
    options: RenderOptions,
    zoom: float,
    bounds: _Bounds,
) -> None:
    x, y, width, height = box
    radius = options.port_radius * zoom
    lanes = [(port, x) for port in [*layout.inputs, layout.group_input]]
    lanes += [(port, x + width) for port in [*layout.outputs, layout.group_output]]
    for port, cx in lanes:
        cy = y + height * port.top / 100.0
        circle = ET.SubElement(
            parent,
            _q("circle"),
            {
                "class": "flow-port",
                "cx": _fmt(cx),
                "cy": _fmt(cy),
                "r": _fmt(radius),
                "fill": "#64748b" if port.buried_id else NODE_STROKE,
            },
        )
        title = ET.SubElement(circle, _q("title"))
        title.text = port.label or port.id
        bounds.add(cx - radius, cy - radius, 2 * radius, 2 * radius)


def _emit_edge(
    parent: ET.Element,
    element_id: str,
    points: List[Point],
    options: RenderOptions,
    zoom: float,
    bounds: _Bounds,
) -> None:
    if len(points) < 2:
        return
    d = _points_to_path_d(points)
    group = ET.SubElement(parent, _q("g"), {"id": element_id, "class": "flow-edge"})
    ET.SubElement(
        group,
        _q("path"),
        {
            "d": d,
            "stroke": BACKGROUND,
            "stroke-width": _fmt(options.halo_width * zoom),
            "stroke-opacity": "0.9",
            "stroke-linejoin": "round",
            "fill": "none",
        },
    )
    ET.SubElement(
        group,
        _q("path"),
        {
            "d": d,
            "stroke": EDGE_STROKE,
            "stroke-width": _fmt(options.stroke_width * zoom),
            "stroke-linejoin": "round",
            "fill": "none",
            "marker-end": f"url(#{ARROW_MARKER_ID})",
        },
    )
    bounds.add_points(points)
    (ax, ay), (bx, by) = points[-2], points[-1]
    length = math.hypot(bx - ax, by - ay)
    if length > 0:
        tip = options.arrow_size * zoom
        bounds.add(bx + (bx - ax) / length * tip, by + (by - ay) / length * tip)


def _emit_label(
    parent: ET.Element,
    label: str,
    points: List[Point],
    options: RenderOptions,
    measurer: TextMeasurer,
    zoom: float,
    bounds: _Bounds,
) -> None:
    font_size = options.label_font_size
    lines = wrap_text(
        label,
        options.label_max_width,
        lambda value: measurer.measure(value, font_size),
    )
    ascent, _descent, line_height = measurer.metrics(font_size)
    widest = max((measurer.measure(line, font_size) for line in lines), default=0.0)
    pad = options.label_padding
    width = (widest + 2 * pad) * zoom
    height = (len(lines) * line_height + 2 * pad) * zoom
    cx, cy = polyline_midpoint(points)
    x = cx - width / 2.0
    y = cy - height / 2.0
    ET.SubElement(
        parent,
        _q("rect"),
        {
            "class": "flow-label",
            "x": _fmt(x),
            "y": _fmt(y),
            "width": _fmt(width),
            "height": _fmt(height),
            "rx": _fmt(6 * zoom),
            "ry": _fmt(6 * zoom),
            "fill": "#ffffff",
            "stroke": "#cbd5e1",
        },
    )
    for index, line in enumerate(lines):
        text = ET.SubElement(
            parent,
            _q("text"),
            {
                "class": "flow-label-text",
                "x": _fmt(cx),
                "y": _fmt(y + (pad + ascent + index * line_height) * zoom),
                "text-anchor": "middle",
                "font-size": _fmt(font_size * zoom),
                "fill": EDGE_STROKE,
            },
        )
        text.text = line
    bounds.add(x, y, width, height)


def _add_arrow_marker(defs: ET.Element, size: float) -> None:
    # tip extends `size` past the path end, which stops that far short of the box
    marker = ET.SubElement(
        defs,
        _q("marker"),
        {
            "id": ARROW_MARKER_ID,
            "viewBox": "0 0 10 10",
            "refX": "0",
            "refY": "5",
            "markerWidth": _fmt(size),
            "markerHeight": _fmt(size),
            "markerUnits": "userSpaceOnUse",
            "orient": "auto",
        },
    )
    ET.SubElement(marker, _q("path"), {"d": "M 0 0 L 10 5 L 0 10 z", "fill": EDGE_STROKE})


def _points_to_path_d(points: Sequence[Point]) -> str:
    head, *rest = points
    parts = [f"M {_fmt(head[0])} {_fmt(head[1])}"]
    parts.extend(f"L {_fmt(x)} {_fmt(y)}" for x, y in rest)
    return " ".join(parts)


def _reserve_unique_id(existing: Set[str], base: str) -> str:
    if base not in existing:
        existing.add(base)
        return base
    idx = 1
    while True:
        candidate = f"{base}-{idx}"
        if candidate not in existing:
            existing.add(candidate)
            return candidate
        idx += 1


def _merge_bbox(current: Optional[Box], new: Optional[Box]) -> Optional[Box]:
    if new is None:
        return current
    if current is None:
        return new
    return (
        min(current[0], new[0]),
        min(current[1], new[1]),
        max(current[2], new[2]),
        max(current[3], new[3]),
    )


def _pretty_xml(element: ET.Element) -> str:
    for text_node in element.iter(_q("text")):
        if text_node.text:
            text_node.text = text_node.text.strip()
    ET.indent(element, space="  ")
    return ET.tostring(element, encoding="unicode")


def _fmt(value: float) -> str:
    if math.isclose(value, round(value), abs_tol=1e-9):
        return str(int(round(value)))
    return f"{value:.3f}".rstrip("0").rstrip(".")
