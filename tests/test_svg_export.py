from __future__ import annotations

import sys
import unittest
import xml.etree.ElementTree as ET
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from flowscope.handles import allocate_handles
from flowscope.model import ChildRef, FlowscopeError
from flowscope.svg_export import (
    SVG_NS,
    RenderOptions,
    collapse_points,
    lane_offset,
    orthogonal_route,
    polyline_midpoint,
    render_svg,
    route_edges,
)
from flowscope.text import TextMeasurer
from flowscope.view import ViewEdge, ViewNode

PLAIN = TextMeasurer(use_fonts=False)


def _q(tag: str) -> str:
    return f"{{{SVG_NS}}}{tag}"


def _render(nodes, edges, **kwargs) -> ET.Element:
    kwargs.setdefault("measurer", PLAIN)
    return ET.fromstring(render_svg(nodes, edges, **kwargs))


def _view_box(root: ET.Element):
    x, y, w, h = (float(v) for v in root.get("viewBox").split())
    return x, y, x + w, y + h


def _node(node_id: str, x: float, y: float, node_type: str = "leaf", **data) -> ViewNode:
    data.setdefault("Name", node_id)
    return ViewNode(id=node_id, type=node_type, position=(x, y), data=data)


def _path_points(d: str):
    tokens = d.replace("M", " ").replace("L", " ").split()
    values = [float(token) for token in tokens]
    return list(zip(values[0::2], values[1::2]))


class LaneTests(unittest.TestCase):
    def test_lane_offsets_are_symmetric(self) -> None:
        self.assertEqual(lane_offset(0, 1, 14, 100), 0.0)
        self.assertEqual([lane_offset(i, 3, 14, 100) for i in range(3)], [-14.0, 0.0, 14.0])
        self.assertEqual([lane_offset(i, 2, 14, 100) for i in range(2)], [-7.0, 7.0])

    def test_lane_offsets_are_clamped(self) -> None:
        self.assertEqual([lane_offset(i, 3, 14, 10) for i in range(3)], [-10.0, 0.0, 10.0])
        self.assertEqual(lane_offset(0, 2, 14, -5), 0.0)

    def test_parallel_edges_get_distinct_lanes(self) -> None:
        boxes = {"X": (0.0, 0.0, 120.0, 48.0), "Y": (300.0, 0.0, 120.0, 48.0)}
        edges = [ViewEdge(f"X-to-Y-{i}", "X", "Y") for i in range(3)]
        routes = route_edges(edges, boxes)
        self.assertEqual([edge.id for edge, _ in routes], ["X-to-Y-0", "X-to-Y-1", "X-to-Y-2"])
        start_ys = [points[0][1] for _, points in routes]
        self.assertEqual(start_ys, [10.0, 24.0, 38.0])
        for _, points in routes:
            self.assertEqual(points[0][0], 120.0)
            # path stops one arrow length short of the target box
            self.assertEqual(points[-1][0], 292.0)

    def test_parallel_edges_with_derived_ids_get_distinct_lanes(self) -> None:
        boxes = {"X": (0.0, 0.0, 120.0, 48.0), "Y": (300.0, 0.0, 120.0, 48.0)}
        edges = [ViewEdge.from_dict({"source": "X", "target": "Y", "label": f"r{i}"}) for i in range(3)]
        self.assertEqual({edge.id for edge in edges}, {"X-to-Y"})
        routes = route_edges(edges, boxes)
        self.assertEqual([points[0][1] for _, points in routes], [10.0, 24.0, 38.0])

    def test_edges_without_boxes_are_skipped(self) -> None:
        routes = route_edges([ViewEdge("a-to-ghost", "a", "ghost")], {"a": (0, 0, 10, 10)})
        self.assertEqual(routes, [])


class RouteGeometryTests(unittest.TestCase):
    def test_offset_boxes_bend_once(self) -> None:
        points = orthogonal_route((0, 0, 100, 40), (200, 100, 100, 40), guard=8)
        self.assertEqual(points, [(100, 20), (146.0, 20), (146.0, 120), (192, 120)])

    def test_stacked_boxes_route_vertically(self) -> None:
        points = orthogonal_route((0, 0, 100, 40), (0, 200, 100, 40), guard=8)
        self.assertEqual(points, [(50.0, 40), (50.0, 192)])

    def test_collapse_points(self) -> None:
        points = [(0, 0), (0, 0), (5, 0), (10, 0), (10, 5)]
        self.assertEqual(collapse_points(points), [(0, 0), (10, 0), (10, 5)])
        self.assertEqual(collapse_points([(1, 1)]), [(1, 1)])

    def test_polyline_midpoint(self) -> None:
        self.assertEqual(polyline_midpoint([]), (0.0, 0.0))
        self.assertEqual(polyline_midpoint([(0, 0), (10, 0)]), (5.0, 0.0))
        self.assertEqual(polyline_midpoint([(0, 0), (10, 0), (10, 10)]), (10.0, 0.0))
        self.assertEqual(polyline_midpoint([(3, 3), (3, 3)]), (3, 3))


class RenderSvgTests(unittest.TestCase):
    def test_empty_export_is_a_valid_document(self) -> None:
        root = _render([], [])
        self.assertEqual(root.tag, _q("svg"))
        self.assertEqual(root.get("width"), "65")
        self.assertEqual(root.get("viewBox"), "-32 -32 65 65")
        self.assertIsNotNone(root.find(_q("defs")))

    def test_columns_only_export_uses_band_extent(self) -> None:
        grid = {
            "columns": [{"id": "column-0-a", "left": 0, "width": 200, "label": "Q1"}],
            "bounds": {"width": 200, "height": 200},
        }
        root = _render([], [], grid=grid)
        self.assertEqual(root.get("width"), "264")
        self.assertEqual(root.get("height"), "264")
        texts = [text.text for text in root.iter(_q("text"))]
        self.assertIn("Q1", texts)

    def test_excluded_bands_are_not_drawn(self) -> None:
        grid = {"rows": [{"top": 0, "height": 50, "label": "Lane"}], "bounds": {"width": 300, "height": 50}}
        root = _render([], [], grid=grid, include_rows=False)
        self.assertNotIn("Lane", [text.text for text in root.iter(_q("text"))])

    def test_view_box_contains_everything_drawn(self) -> None:
        nodes = [_node("A", -50, -20), _node("B", 400, 300, Description="A much longer description line")]
        edges = [ViewEdge("A-to-B", "A", "B", data={"fullLabel": "hands over the paperwork"})]
        root = _render(nodes, edges)
        min_x, min_y, max_x, max_y = _view_box(root)

        rects = [
            rect
            for group in root.iter(_q("g"))
            if (group.get("id") or "").startswith("node-")
            for rect in group.findall(_q("rect"))
        ]
        self.assertEqual(len(rects), 2)
        for rect in rects:
            x, y = float(rect.get("x")), float(rect.get("y"))
            self.assertGreaterEqual(x, min_x)
            self.assertGreaterEqual(y, min_y)
            self.assertLessEqual(x + float(rect.get("width")), max_x)
            self.assertLessEqual(y + float(rect.get("height")), max_y)
        for path in root.iter(_q("path")):
            if path.get("marker-end") is None:
                continue
            for x, y in _path_points(path.get("d")):
                self.assertTrue(min_x <= x <= max_x and min_y <= y <= max_y)
        for chip in root.iter(_q("rect")):
            if chip.get("class") == "flow-label":
                self.assertGreaterEqual(float(chip.get("x")), min_x)
                self.assertLessEqual(float(chip.get("x")) + float(chip.get("width")), max_x)

    def test_edge_labels_come_from_any_label_field(self) -> None:
        nodes = [_node("A", 0, 0), _node("B", 400, 0), _node("C", 400, 300)]
        edges = [
            ViewEdge("e1", "A", "B", data={"fullLabel": "full label", "label": "full..."}),
            {"id": "e2", "source": "A", "target": "C", "data": {"position": {"label": "from position"}}},
            ViewEdge("e3", "B", "C"),
        ]
        root = _render(nodes, edges)
        labels = [text.text for text in root.iter(_q("text")) if text.get("class") == "flow-label-text"]
        self.assertEqual(labels, ["full label", "from position"])
        self.assertEqual(len([g for g in root.iter(_q("g")) if g.get("class") == "flow-edge"]), 3)

    def test_edges_use_the_arrow_marker(self) -> None:
        root = _render([_node("A", 0, 0), _node("B", 400, 0)], [ViewEdge("A-to-B", "A", "B")])
        marker = root.find(f"{_q('defs')}/{_q('marker')}")
        self.assertEqual(marker.get("id"), "flow-arrow")
        solid = [p for p in root.iter(_q("path")) if p.get("marker-end") == "url(#flow-arrow)"]
        self.assertEqual(len(solid), 1)
        end_x, _ = _path_points(solid[0].get("d"))[-1]
        self.assertEqual(end_x, 400 - 8)

    def test_parallel_edges_sharing_an_id_are_drawn_apart(self) -> None:
        nodes = [_node("X", 0, 0), _node("Y", 300, 0)]
        edges = [{"source": "X", "target": "Y", "label": f"r{i}"} for i in range(3)]
        root = _render(nodes, edges)
        groups = [g for g in root.iter(_q("g")) if g.get("class") == "flow-edge"]
        self.assertEqual([g.get("id") for g in groups], ["edge-X-to-Y", "edge-X-to-Y-1", "edge-X-to-Y-2"])
        paths = {group.findall(_q("path"))[1].get("d") for group in groups}
        self.assertEqual(len(paths), 3)

    def test_laid_out_sizes_are_kept(self) -> None:
        node = ViewNode(id="A", type="leaf", position=(0, 0), data={"Name": "A"}, width=320.0, height=100.0)
        root = _render([node], [])
        rect = next(g for g in root.iter(_q("g")) if g.get("id") == "node-A").find(_q("rect"))
        self.assertEqual((rect.get("width"), rect.get("height")), ("320", "100"))

    def test_zoom_scales_geometry(self) -> None:
        root = _render([_node("A", 10, 10)], [], viewport={"x": 5, "y": 0, "zoom": 2})
        group = next(g for g in root.iter(_q("g")) if g.get("id") == "node-A")
        rect = group.find(_q("rect"))
        self.assertEqual(rect.get("x"), "25")
        self.assertEqual(rect.get("width"), "240")
        self.assertEqual(rect.get("height"), "96")

    def test_group_nodes_show_ports(self) -> None:
        group = _node("G", 0, 0, node_type="group", children=[{"id": "c"}])
        layout = allocate_handles("G", [ChildRef("c", "Intake", ("input",))])
        root = _render([group], [], handle_layouts={"G": layout})
        ports = [circle for circle in root.iter(_q("circle")) if circle.get("class") == "flow-port"]
        self.assertEqual(len(ports), 3)
        rect = next(g for g in root.iter(_q("g")) if g.get("id") == "node-G").find(_q("rect"))
        self.assertEqual(rect.get("fill"), "#e0e7ff")
        self.assertIn("1 item", [text.text for text in root.iter(_q("text"))])

    def test_options_are_validated(self) -> None:
        with self.assertRaises(FlowscopeError):
            RenderOptions(margin=-1)
        with self.assertRaises(FlowscopeError):
            RenderOptions(node_min_width=300)


if __name__ == "__main__":
    unittest.main()
