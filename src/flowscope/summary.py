"""Plain-text and JSON summaries of an exported view."""
from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from .view import ViewEdge, ViewNode, _optional_number

MAX_STRING_LENGTH = 160
MAX_ARRAY_ITEMS = 5
MAX_METADATA_ENTRIES = 8

_BAND_ID_RE = re.compile(r"^(row|column)-\d+-")

NodeLike = Union[ViewNode, Mapping[str, Any]]
EdgeLike = Union[ViewEdge, Mapping[str, Any]]


def resolve_edge_label(edge: EdgeLike) -> str:
    """First non-empty label among the edge and its data payload."""
    edge = _as_edge(edge)
    data = edge.data or {}
    position = data.get("position") if isinstance(data.get("position"), Mapping) else {}
    candidates = [
        edge.label,
        data.get("fullLabel"),
        data.get("label"),
        position.get("label"),
        data.get("positionLabel"),
        data.get("position_label"),
    ]
    for candidate in candidates:
        if candidate is None:
            continue
        if isinstance(candidate, bool):
            return "true" if candidate else "false"
        if isinstance(candidate, (int, float)):
            return str(candidate)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return ""


def extract_node_title(node: NodeLike, index: int = 0) -> str:
    node = _as_node(node)
    data = node.data or {}
    for candidate in (data.get("Name"), data.get("title"), data.get("label"), data.get("id"), node.id):
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text:
            return text
    return f"Node {index + 1}"


def format_number(value: Any, decimals: int = 1) -> str:
    number = _optional_number(value)
    if number is None:
        return "n/a"
    text = f"{number:.{decimals}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return "0" if text == "-0" else text


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return _truncate(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format_number(value, 6) if isinstance(value, float) else str(value)
    if isinstance(value, (list, tuple)):
        formatted = [format_value(entry) for entry in value[:MAX_ARRAY_ITEMS]]
        suffix = ", ..." if len(value) > MAX_ARRAY_ITEMS else ""
        return ", ".join(entry for entry in formatted if entry) + suffix
    if isinstance(value, Mapping):
        try:
            return _truncate(json.dumps(_strip_z(value), separators=(",", ":"), default=str))
        except (TypeError, ValueError):
            return "[unserializable object]"
    return str(value)


def metadata_lines(payload: Optional[Mapping[str, Any]], indent: str = "      ") -> List[str]:
    if not payload:
        return []
    entries = [(key, value) for key, value in payload.items() if key != "z" and value is not None]
    lines = [f"{indent}- {key}: {format_value(value)}" for key, value in entries[:MAX_METADATA_ENTRIES]]
    if len(entries) > MAX_METADATA_ENTRIES:
        lines.append(f"{indent}- ...and {len(entries) - MAX_METADATA_ENTRIES} more")
    return lines


def serialize_summary(
    nodes: Sequence[NodeLike],
    edges: Sequence[EdgeLike],
    grid: Optional[Mapping[str, Any]] = None,
    viewport: Optional[Mapping[str, Any]] = None,
    *,
    include_rows: bool = True,
    include_columns: bool = True,
    filter_edges_by_direction: bool = False,
) -> str:
    """Deterministic plain-text description of the diagram."""
    grid = grid or {}
    viewport = viewport or {}
    view_nodes = [_as_node(node) for node in nodes]
    view_edges = [_as_edge(edge) for edge in edges]
    rows = list(grid.get("rows") or []) if include_rows else []
    columns = list(grid.get("columns") or []) if include_columns else []
    lookup = grid.get("lookup") or {}
    row_lookup = lookup.get("rowsByNodeId") or {}
    column_lookup = lookup.get("columnsByNodeId") or {}

    lines: List[str] = ["Flow Diagram Summary", "================================"]
    lines.append(
        "Viewport origin: ({}, {}) | zoom {}".format(
            format_number(viewport.get("x", 0)),
            format_number(viewport.get("y", 0)),
            format_number(viewport.get("zoom", 1), 2),
        )
    )
    bounds_line = _bounds_line(grid.get("bounds") or {})
    if bounds_line:
        lines.append(bounds_line)
    settings_line = _cell_options_line(grid.get("cellOptions") or {})
    if settings_line:
        lines.append(settings_line)

    lines.append("")
    if include_rows:
        lines.append(f"Rows ({len(rows)} total)")
        if not rows:
            lines.append("  - No row grid segments available.")
        for index, row in enumerate(rows):
            lines.append(_describe_band(row, index, "row"))
    else:
        lines.append("Rows: (excluded from export)")

    lines.append("")
    if include_columns:
        lines.append(f"Columns ({len(columns)} total)")
        if not columns:
            lines.append("  - No column grid segments available.")
        for index, column in enumerate(columns):
            lines.append(_describe_band(column, index, "column"))
    else:
        lines.append("Columns: (excluded from export)")

    lines.append("")
    lines.append(f"Nodes ({len(view_nodes)} total)")
    if not view_nodes:
        lines.append("  - No nodes available in this view.")
    titles: Dict[str, str] = {}
    for index, node in enumerate(view_nodes):
        title = extract_node_title(node, index)
        titles[node.id] = title
        row_summary = ", ".join(_assignments(row_lookup, node.id, "row")) or "unassigned"
        column_summary = ", ".join(_assignments(column_lookup, node.id, "column")) or "unassigned"
        details = [
            f"id: {node.id}",
            f"x={format_number(node.position[0])}",
            f"y={format_number(node.position[1])}",
            f"rows: {row_summary}",
            f"cols: {column_summary}",
        ]
        lines.append(f"  {index + 1}. {title} ({', '.join(details)})")
        meta = metadata_lines(node.data)
        if meta:
            lines.append("      metadata:")
            lines.extend(meta)

    included = _filter_edges(view_nodes, view_edges, filter_edges_by_direction)
    lines.append("")
    lines.append(f"Edges ({len(included)} total)")
    if not included:
        lines.append("  - No edges available with the current filters.")
    for index, edge in enumerate(included):
        source_title = titles.get(edge.source) or edge.source or "(unknown source)"
        target_title = titles.get(edge.target) or edge.target or "(unknown target)"
        details = []
        if edge.id:
            details.append(f"id: {edge.id}")
        label = resolve_edge_label(edge)
        if label:
            details.append(f"label: {label}")
        detail_text = f" ({', '.join(details)})" if details else ""
        lines.append(f"  {index + 1}. {source_title} -> {target_title}{detail_text}")
        meta = metadata_lines(edge.data)
        if meta:
            lines.append("      metadata:")
            lines.extend(meta)

    return "\n".join(lines).strip()


def serialize_summary_json(
    nodes: Sequence[NodeLike],
    edges: Sequence[EdgeLike],
    grid: Optional[Mapping[str, Any]] = None,
    *,
    selected_ids: Optional[Iterable[str]] = None,
    filter_edges_by_direction: bool = False,
    indent: Optional[int] = 2,
) -> str:
    """Semantic JSON: rows, columns, nodes sorted by name, and edges.

    With `selected_ids` (or host records flagged `selected`), only selected
    nodes plus grid band nodes are exported and children and edges are
    pruned to them.
    """
    grid = grid or {}
    view_nodes = [_as_node(node) for node in nodes]
    view_edges = [_as_edge(edge) for edge in edges]
    selection: Optional[Set[str]] = set(selected_ids) if selected_ids is not None else None
    if selection is None:
        flagged = {
            str(node.get("id"))
            for node in nodes
            if isinstance(node, Mapping) and node.get("selected")
        }
        selection = flagged or None

    if selection is not None:
        view_nodes = [node for node in view_nodes if node.id in selection or _is_band_id(node.id)]
    kept_ids = {node.id for node in view_nodes}

    payload: Dict[str, Any] = {
        "rows": [_band_entry(row) for row in grid.get("rows") or []],
        "columns": [_band_entry(column) for column in grid.get("columns") or []],
    }

    entries: List[Dict[str, Any]] = []
    for index, node in enumerate(view_nodes):
        data = node.data or {}
        entry: Dict[str, Any] = {"id": node.id, "name": _clean_name(extract_node_title(node, index))}
        band = _is_band_id(node.id)
        tags = [] if band else _clean_tags(data)
        if tags:
            entry["tags"] = tags
        if not band:
            assignment = data.get("gridAssignment") or {}
            entry["row"] = _strip_band_prefix(assignment.get("rowId"))
            entry["column"] = _strip_band_prefix(assignment.get("columnId"))
        children = _child_ids(data.get("children"))
        if selection is not None:
            children = [child for child in children if child in kept_ids]
        entry["children"] = children
        entries.append(entry)
    entries.sort(key=lambda entry: entry["name"].lower())
    payload["nodes"] = entries

    edge_entries: List[Dict[str, Any]] = []
    for edge in _filter_edges(view_nodes, view_edges, filter_edges_by_direction):
        if edge.source not in kept_ids or edge.target not in kept_ids:
            continue
        item: Dict[str, Any] = {"from": edge.source, "to": edge.target}
        label = resolve_edge_label(edge)
        if label and label.lower() != "none":
            item["label"] = label
        edge_entries.append(item)
    payload["edges"] = edge_entries
    return json.dumps(payload, indent=indent, ensure_ascii=False)


def _as_node(node: NodeLike) -> ViewNode:
    return node if isinstance(node, ViewNode) else ViewNode.from_dict(node)


def _as_edge(edge: EdgeLike) -> ViewEdge:
    return edge if isinstance(edge, ViewEdge) else ViewEdge.from_dict(edge)


def _filter_edges(
    nodes: Sequence[ViewNode], edges: Sequence[ViewEdge], by_direction: bool
) -> List[ViewEdge]:
    positions = {node.id: node.position for node in nodes}
    kept: List[ViewEdge] = []
    for edge in edges:
        if not edge.source or not edge.target:
            continue
        if by_direction:
            source = positions.get(edge.source)
            target = positions.get(edge.target)
            if source is None or target is None or target[0] - source[0] <= 0:
                continue
        kept.append(edge)
    return kept


def _truncate(text: str) -> str:
    trimmed = text.strip()
    if len(trimmed) <= MAX_STRING_LENGTH:
        return trimmed
    return trimmed[: MAX_STRING_LENGTH - 3] + "..."


def _strip_z(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _strip_z(entry) for key, entry in value.items() if key != "z"}
    if isinstance(value, (list, tuple)):
        return [_strip_z(entry) for entry in value]
    return value


def _describe_segment(segment: Any, fallback: str, axis: str) -> str:
    if segment is None:
        return fallback
    if isinstance(segment, (str, int, float)) and not isinstance(segment, bool):
        text = str(segment).strip()
        return text or fallback
    if not isinstance(segment, Mapping):
        return fallback
    for key in ("label", "name", "id", "key"):
        candidate = segment.get(key)
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text:
            return text
    start = _optional_number(segment.get("top" if axis == "row" else "left"))
    end = _optional_number(segment.get("bottom" if axis == "row" else "right"))
    if start is not None and end is not None:
        return f"{fallback} ({format_value(start)}-{format_value(end)})"
    return fallback


def _describe_band(band: Mapping[str, Any], index: int, axis: str) -> str:
    fallback = f"{'Row' if axis == 'row' else 'Column'} {index + 1}"
    label = _describe_segment(band, fallback, axis)
    keys = ("top", "bottom", "height") if axis == "row" else ("left", "right", "width")
    details = []
    for key in keys:
        number = _optional_number(band.get(key)) if isinstance(band, Mapping) else None
        if number is not None:
            details.append(f"{key} {format_value(band.get(key))}")
    line = f"  {index + 1}. {label}" + (f" ({', '.join(details)})" if details else "")
    node_ids = band.get("nodeIds") if axis == "row" and isinstance(band, Mapping) else None
    if node_ids:
        line += "\n    nodes: " + ", ".join(str(node_id) for node_id in node_ids)
    return line


def _assignments(lookup: Mapping[str, Any], node_id: str, axis: str) -> List[str]:
    raw = lookup.get(node_id)
    if not raw:
        return []
    segments = raw if isinstance(raw, (list, tuple)) else [raw]
    label = "Row" if axis == "row" else "Column"
    return [
        _describe_segment(segment, f"{label} {index + 1}", axis)
        for index, segment in enumerate(segment for segment in segments if segment)
    ]


def _bounds_line(bounds: Mapping[str, Any]) -> Optional[str]:
    width = _optional_number(bounds.get("width"))
    height = _optional_number(bounds.get("height"))
    if width is None and height is None:
        return None
    return "Grid bounds: {} x {}".format(
        format_value(bounds.get("width")) if width is not None else "?",
        format_value(bounds.get("height")) if height is not None else "?",
    )


def _cell_options_line(options: Mapping[str, Any]) -> Optional[str]:
    labels = (
        ("width", "cell width"),
        ("height", "cell height"),
        ("adjustedWidth", "adjusted width"),
        ("adjustedHeight", "adjusted height"),
    )
    parts = [
        f"{label} {format_value(options.get(key))}"
        for key, label in labels
        if _optional_number(options.get(key)) is not None
    ]
    if not parts:
        return None
    return "Grid settings: " + ", ".join(parts)


def _is_band_id(node_id: str) -> bool:
    return bool(_BAND_ID_RE.match(node_id or ""))


def _strip_band_prefix(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return _BAND_ID_RE.sub("", str(value))


def _band_entry(band: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": _strip_band_prefix(band.get("id")),
        "name": str(band.get("label") or band.get("name") or "").strip(),
    }


def _clean_name(name: str) -> str:
    return name.lstrip("*").strip()


def _clean_tags(data: Mapping[str, Any]) -> List[str]:
    raw = data.get("tags")
    if raw is None:
        raw = data.get("Tags")
    if isinstance(raw, str):
        values = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        values = [str(value) for value in raw if value is not None]
    else:
        values = []
    tags: List[str] = []
    for value in values:
        tag = value.strip().lower()
        if tag and tag != "group" and tag not in tags:
            tags.append(tag)
    return tags


def _child_ids(children: Any) -> List[str]:
    ids: List[str] = []
    for child in children or []:
        child_id = child.get("id") if isinstance(child, Mapping) else child
        if child_id is None:
            continue
        child_id = str(child_id)
        if child_id not in ids:
            ids.append(child_id)
    return ids
