"""Rank-based node placement: Graphviz `dot` when available, a layered fallback otherwise."""
from __future__ import annotations

import logging
import math
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .model import FlowscopeError
from .text import TextMeasurer, layout_box, node_segments
from .view import ViewEdge, ViewNode

logger = logging.getLogger(__name__)

DEFAULT_NODE_WIDTH = 320.0
DEFAULT_NODE_GAP = 35.0
DEFAULT_RANK_GAP = 100.0
DEFAULT_FONT_SIZE = 16.0
DEFAULT_PADDING_Y = 16.0
DEFAULT_TEXT_PADDING = 12.0
MIN_NODE_HEIGHT = 48.0
GRAPHVIZ_TIMEOUT = 5.0
DISABLE_GRAPHVIZ_ENV = "FLOWSCOPE_DISABLE_GRAPHVIZ"

_DIRECTIONS = {"LR", "RL", "TB", "BT"}


class LayoutError(FlowscopeError):
    """Graphviz could not produce a usable layout."""


@dataclass(frozen=True)
class LayoutOptions:
    node_width: float = DEFAULT_NODE_WIDTH
    node_gap: float = DEFAULT_NODE_GAP
    rank_gap: float = DEFAULT_RANK_GAP
    direction: str = "LR"
    font_size: float = DEFAULT_FONT_SIZE
    padding_y: float = DEFAULT_PADDING_Y
    min_height: float = MIN_NODE_HEIGHT
    text_padding: float = DEFAULT_TEXT_PADDING
    use_graphviz: bool = True
    keep_layout: bool = False

    def __post_init__(self) -> None:
        if self.direction not in _DIRECTIONS:
            raise FlowscopeError(
                "E_OPTIONS",
                f'layout direction must be one of {sorted(_DIRECTIONS)} (got {self.direction!r})',
            )
        for name in ("node_width", "font_size"):
            if getattr(self, name) <= 0:
                raise FlowscopeError("E_OPTIONS", f"{name} must be > 0 (got {getattr(self, name)!r})")
        for name in ("node_gap", "rank_gap", "padding_y", "min_height", "text_padding"):
            if getattr(self, name) < 0:
                raise FlowscopeError("E_OPTIONS", f"{name} must be >= 0 (got {getattr(self, name)!r})")


@dataclass
class LayoutResult:
    nodes: List[ViewNode]
    positions: Dict[str, Tuple[float, float]] = field(default_factory=dict)
    engine: str = "layered"


def estimate_node_height(
    label: str,
    width: float,
    font_size: float = DEFAULT_FONT_SIZE,
    padding_y: float = DEFAULT_PADDING_Y,
    min_height: float = MIN_NODE_HEIGHT,
) -> float:
    """Rough box height for `label` wrapped at `width`."""
    chars_per_line = max(1, int(math.floor(width / (font_size * 0.6))))
    lines = math.ceil(len(label or "") / chars_per_line)
    height = lines * font_size * 1.25 + padding_y
    return max(min_height, height)


def layout_graph(
    nodes: Sequence[ViewNode],
    edges: Sequence[ViewEdge],
    options: Optional[LayoutOptions] = None,
    recorded_positions: Optional[Mapping[str, Tuple[float, float]]] = None,
    measurer: Optional[TextMeasurer] = None,
) -> LayoutResult:
    """Assign sizes and top-left positions to `nodes`.

    A node is as tall as the larger of its label estimate and its wrapped
    display text at `node_width`, so exported boxes fit their slot. With
    `keep_layout`, a recorded position wins over the computed one; nodes
    without a record still get a computed position.
    """
    options = options or LayoutOptions()
    if not nodes:
        return LayoutResult(nodes=[], positions={}, engine="none")
    measurer = measurer or TextMeasurer()

    sizes: Dict[str, Tuple[float, float]] = {}
    for node in nodes:
        label = str(node.data.get("Name") or node.id)
        estimated = estimate_node_height(
            label,
            options.node_width,
            options.font_size,
            options.padding_y,
            options.min_height,
        )
        text_box = layout_box(
            node_segments(node),
            measurer,
            min_width=options.node_width,
            max_width=options.node_width,
            min_height=options.min_height,
            padding=options.text_padding,
        )
        sizes[node.id] = (options.node_width, max(estimated, text_box.height))
    node_ids = [node.id for node in nodes]
    known = set(node_ids)
    links = [(edge.source, edge.target) for edge in edges if edge.source in known and edge.target in known]

    positions: Optional[Dict[str, Tuple[float, float]]] = None
    engine = "layered"
    if _graphviz_enabled(options):
        try:
            positions = _layout_with_graphviz(node_ids, sizes, links, options)
        except LayoutError as exc:
            logger.warning("graphviz layout failed, using built-in layout: %s", exc.message)
            positions = None
        if positions is not None:
            engine = "graphviz"
    if positions is None:
        positions = _layered_layout(node_ids, sizes, links, options)
    logger.debug("laid out %d nodes with %s engine", len(node_ids), engine)

    if options.keep_layout and recorded_positions:
        for node_id in node_ids:
            recorded = recorded_positions.get(node_id)
            if recorded is not None:
                positions[node_id] = (float(recorded[0]), float(recorded[1]))

    placed: List[ViewNode] = []
    for node in nodes:
        x, y = positions[node.id]
        width, height = sizes[node.id]
        placed.append(
            ViewNode(
                id=node.id,
                type=node.type,
                position=(x, y),
                data=node.data,
                width=width,
                height=height,
            )
        )
    return LayoutResult(nodes=placed, positions=dict(positions), engine=engine)


def _graphviz_enabled(options: LayoutOptions) -> bool:
    if not options.use_graphviz:
        return False
    return os.environ.get(DISABLE_GRAPHVIZ_ENV, "").strip() not in {"1", "true", "yes"}


def _layout_with_graphviz(
    node_ids: List[str],
    sizes: Mapping[str, Tuple[float, float]],
    links: List[Tuple[str, str]],
    options: LayoutOptions,
) -> Optional[Dict[str, Tuple[float, float]]]:
    dot_path = shutil.which("dot")
    if not dot_path:
        return None
    dot_text = build_graphviz_dot(node_ids, sizes, links, options)
    try:
        proc = subprocess.run(
            [dot_path, "-Kdot", "-Tplain"],
            input=dot_text,
            text=True,
            capture_output=True,
            check=False,
            timeout=GRAPHVIZ_TIMEOUT,
        )
    except subprocess.TimeoutExpired as exc:
        raise LayoutError("E_LAYOUT_FAILED", "graphviz layout timed out") from exc
    except OSError as exc:
        raise LayoutError("E_LAYOUT_FAILED", f"failed to execute graphviz: {exc}") from exc
    if proc.returncode != 0:
        detail = (proc.stderr or "").strip()
        if len(detail) > 240:
            detail = detail[:240] + "..."
        raise LayoutError("E_LAYOUT_FAILED", f"graphviz failed: {detail or 'unknown error'}")
    return parse_graphviz_plain(proc.stdout, node_ids)


def build_graphviz_dot(
    node_ids: Sequence[str],
    sizes: Mapping[str, Tuple[float, float]],
    links: Sequence[Tuple[str, str]],
    options: LayoutOptions,
) -> str:
    nodesep_in = max(0.02, options.node_gap / 96.0)
    ranksep_in = max(0.02, options.rank_gap / 96.0)
    lines: List[str] = ["digraph G {"]
    lines.append(
        f'  graph [rankdir="{options.direction}", nodesep="{nodesep_in:.4f}", ranksep="{ranksep_in:.4f}"];'
    )
    lines.append('  node [shape="box", fixedsize="true", margin="0"];')
    for node_id in node_ids:
        width, height = sizes[node_id]
        lines.append(
            f'  {_dot_quote(node_id)} [width="{max(0.01, width / 96.0):.4f}", height="{max(0.01, height / 96.0):.4f}"];'
        )
    for source, target in links:
        lines.append(f"  {_dot_quote(source)} -> {_dot_quote(target)};")
    lines.append("}")
    return "\n".join(lines)


def _dot_quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_graphviz_plain(plain_text: str, node_ids: Sequence[str]) -> Dict[str, Tuple[float, float]]:
    """Read node centres from `dot -Tplain` output as top-left pixel positions.

    Graphviz measures in inches from the bottom-left corner; positions are
    flipped to a top-down axis and shifted so nothing lies above or left of
    the origin.
    """
    lines = [ln.strip() for ln in plain_text.splitlines() if ln.strip()]
    if not lines or not lines[0].startswith("graph "):
        raise LayoutError("E_LAYOUT_PARSE", "unexpected graphviz plain output: missing graph header")
    header = shlex.split(lines[0])
    if len(header) < 4:
        raise LayoutError("E_LAYOUT_PARSE", "unexpected graphviz plain output: malformed graph header")
    try:
        graph_height_in = float(header[3])
    except ValueError as exc:
        raise LayoutError("E_LAYOUT_PARSE", "unexpected graphviz plain output: invalid graph dimensions") from exc

    centres: Dict[str, Tuple[float, float, float, float]] = {}
    for line in lines[1:]:
        if line == "stop":
            break
        parts = shlex.split(line)
        if not parts or parts[0] != "node":
            continue
        if len(parts) < 6:
            raise LayoutError("E_LAYOUT_PARSE", "unexpected graphviz plain output: malformed node line")
        try:
            centres[parts[1]] = tuple(float(value) for value in parts[2:6])  # type: ignore[assignment]
        except ValueError as exc:
            raise LayoutError(
                "E_LAYOUT_PARSE",
                f'unexpected graphviz plain output: invalid numeric node data for "{parts[1]}"',
            ) from exc

    top_left: Dict[str, Tuple[float, float]] = {}
    for node_id in node_ids:
        if node_id not in centres:
            raise LayoutError("E_LAYOUT_PARSE", f'graphviz output missing node "{node_id}"')
        x_in, y_in, w_in, h_in = centres[node_id]
        cx = x_in * 96.0
        cy = (graph_height_in - y_in) * 96.0
        top_left[node_id] = (cx - w_in * 96.0 / 2.0, cy - h_in * 96.0 / 2.0)

    min_x = min((x for x, _ in top_left.values()), default=0.0)
    min_y = min((y for _, y in top_left.values()), default=0.0)
    shift_x = -min_x if min_x < 0 else 0.0
    shift_y = -min_y if min_y < 0 else 0.0
    if shift_x or shift_y:
        top_left = {node_id: (x + shift_x, y + shift_y) for node_id, (x, y) in top_left.items()}
    return top_left


def _layered_layout(
    node_ids: List[str],
    sizes: Mapping[str, Tuple[float, float]],
    links: List[Tuple[str, str]],
    options: LayoutOptions,
) -> Dict[str, Tuple[float, float]]:
    order_index = {node_id: idx for idx, node_id in enumerate(node_ids)}
    ranks = _assign_ranks(node_ids, links)
    dag_links = [
        (u, v) if ranks[u] <= ranks[v] else (v, u) for (u, v) in links if u != v
    ]

    rank_to_nodes: Dict[int, List[str]] = {}
    for node_id in node_ids:
        rank_to_nodes.setdefault(ranks[node_id], []).append(node_id)
    max_rank = max(rank_to_nodes.keys(), default=0)

    for r in range(1, max_rank + 1):
        current = rank_to_nodes.get(r, [])
        if not current:
            continue
        prev_pos: Dict[str, int] = {}
        for pr in range(0, r):
            for idx, node_id in enumerate(rank_to_nodes.get(pr, [])):
                prev_pos.setdefault(node_id, idx)
        medians: Dict[str, float] = {}
        for node_id in current:
            preds = sorted(
                prev_pos.get(u, order_index[u]) for (u, v) in dag_links if v == node_id and ranks[u] < r
            )
            if not preds:
                medians[node_id] = float("inf")
                continue
            mid = len(preds) // 2
            medians[node_id] = float(preds[mid]) if len(preds) % 2 else 0.5 * (preds[mid - 1] + preds[mid])
        rank_to_nodes[r] = sorted(current, key=lambda node_id: (medians[node_id], order_index[node_id]))

    vertical = options.direction in {"TB", "BT"}
    cross_span: Dict[int, float] = {}
    main_size: Dict[int, float] = {}
    for r in range(0, max_rank + 1):
        members = rank_to_nodes.get(r, [])
        cross = [sizes[n][0] if vertical else sizes[n][1] for n in members]
        main = [sizes[n][1] if vertical else sizes[n][0] for n in members]
        cross_span[r] = sum(cross) + options.node_gap * max(0, len(members) - 1)
        main_size[r] = max(main, default=0.0)

    widest = max(cross_span.values(), default=0.0)
    origin: Dict[int, float] = {}
    cursor = 0.0
    for r in range(0, max_rank + 1):
        origin[r] = cursor
        cursor += main_size.get(r, 0.0) + options.rank_gap
    total_main = cursor - options.rank_gap

    positions: Dict[str, Tuple[float, float]] = {}
    for r in range(0, max_rank + 1):
        cross_cursor = (widest - cross_span.get(r, 0.0)) / 2.0
        for node_id in rank_to_nodes.get(r, []):
            width, height = sizes[node_id]
            if vertical:
                y = origin[r] if options.direction == "TB" else total_main - origin[r] - height
                positions[node_id] = (cross_cursor, y)
                cross_cursor += width + options.node_gap
            else:
                x = origin[r] if options.direction == "LR" else total_main - origin[r] - width
                positions[node_id] = (x, cross_cursor)
                cross_cursor += height + options.node_gap
    return positions


def _assign_ranks(node_ids: List[str], links: List[Tuple[str, str]]) -> Dict[str, int]:
    """Longest-path ranks after breaking cycles with a depth-first search."""
    outgoing: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    for source, target in links:
        if source != target:
            outgoing[source].append(target)

    reversed_links: Set[Tuple[str, str]] = set()
    state: Dict[str, int] = {node_id: 0 for node_id in node_ids}
    for root in node_ids:
        if state[root]:
            continue
        state[root] = 1
        stack: List[Tuple[str, int]] = [(root, 0)]
        while stack:
            node_id, idx = stack[-1]
            targets = outgoing[node_id]
            if idx >= len(targets):
                state[node_id] = 2
                stack.pop()
                continue
            stack[-1] = (node_id, idx + 1)
            target = targets[idx]
            if state[target] == 0:
                state[target] = 1
                stack.append((target, 0))
            elif state[target] == 1:
                reversed_links.add((node_id, target))

    dag_out: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    indegree: Dict[str, int] = {node_id: 0 for node_id in node_ids}
    for source, targets in outgoing.items():
        for target in targets:
            u, v = (target, source) if (source, target) in reversed_links else (source, target)
            dag_out[u].append(v)
            indegree[v] += 1

    queue = [node_id for node_id in node_ids if indegree[node_id] == 0]
    topo: List[str] = []
    cursor = 0
    while cursor < len(queue):
        u = queue[cursor]
        cursor += 1
        topo.append(u)
        for v in dag_out[u]:
            indegree[v] -= 1
            if indegree[v] == 0:
                queue.append(v)
    if len(topo) != len(node_ids):
        topo = list(node_ids)

    ranks = {node_id: 0 for node_id in node_ids}
    for u in topo:
        for v in dag_out[u]:
            if ranks[v] < ranks[u] + 1:
                ranks[v] = ranks[u] + 1
    return ranks
