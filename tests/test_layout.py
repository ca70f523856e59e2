from __future__ import annotations

import os
import sys
import unittest
from pathlib import Path
from unittest import mock

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from flowscope import layout as layout_module
from flowscope.layout import (
    LayoutError,
    LayoutOptions,
    build_graphviz_dot,
    estimate_node_height,
    layout_graph,
    parse_graphviz_plain,
)
from flowscope.model import FlowscopeError
from flowscope.text import TextMeasurer, layout_box, node_segments
from flowscope.view import ViewEdge, ViewNode

BUILTIN = LayoutOptions(use_graphviz=False)


def _nodes(*ids: str) -> list:
    return [ViewNode(id=node_id, type="leaf", data={"Name": f"Node {node_id}"}) for node_id in ids]


def _edges(*pairs: str) -> list:
    return [ViewEdge(id=f"{s}-to-{t}", source=s, target=t) for s, t in (pair.split(">") for pair in pairs)]


class EstimateHeightTests(unittest.TestCase):
    def test_short_and_empty_labels_use_the_floor(self) -> None:
        self.assertEqual(estimate_node_height("", 320), 48.0)
        self.assertEqual(estimate_node_height("Short", 320), 48.0)

    def test_long_labels_grow_by_line(self) -> None:
        # 320 / 9.6 -> 33 characters per line
        self.assertEqual(estimate_node_height("x" * 34, 320), 2 * 20 + 16)
        self.assertEqual(estimate_node_height("x" * 100, 320), 4 * 20 + 16)

    def test_layout_height_fits_display_text(self) -> None:
        plain = TextMeasurer(use_fonts=False)
        node = ViewNode(id="n", type="leaf", data={"Name": "N", "Description": "checks every signed form " * 6})
        result = layout_graph([node], [], BUILTIN, measurer=plain)
        expected = layout_box(node_segments(node), plain, min_width=320, max_width=320, min_height=48, padding=12)
        self.assertGreater(expected.height, 48.0)
        self.assertEqual(result.nodes[0].height, expected.height)


class BuiltinLayoutTests(unittest.TestCase):
    def test_chain_ranks_left_to_right(self) -> None:
        result = layout_graph(_nodes("a", "b", "c"), _edges("a>b", "b>c"), BUILTIN)
        self.assertEqual(result.engine, "layered")
        xs = [result.positions[node_id][0] for node_id in ("a", "b", "c")]
        self.assertEqual(xs, [0.0, 420.0, 840.0])
        for node in result.nodes:
            self.assertEqual(node.width, 320.0)
            self.assertEqual(node.height, 48.0)

    def test_siblings_share_a_rank_without_overlap(self) -> None:
        result = layout_graph(_nodes("root", "x", "y"), _edges("root>x", "root>y"), BUILTIN)
        x_pos = result.positions["x"]
        y_pos = result.positions["y"]
        self.assertEqual(x_pos[0], y_pos[0])
        self.assertGreaterEqual(abs(x_pos[1] - y_pos[1]), 48.0 + 35.0)

    def test_cycles_still_lay_out(self) -> None:
        result = layout_graph(_nodes("a", "b", "c"), _edges("a>b", "b>c", "c>a"), BUILTIN)
        self.assertEqual(sorted(result.positions), ["a", "b", "c"])
        self.assertEqual(len({pos for pos in result.positions.values()}), 3)

    def test_top_to_bottom_direction(self) -> None:
        options = LayoutOptions(use_graphviz=False, direction="TB")
        result = layout_graph(_nodes("a", "b"), _edges("a>b"), options)
        self.assertEqual(result.positions["a"][1], 0.0)
        self.assertEqual(result.positions["b"][1], 148.0)

    def test_keep_layout_uses_recorded_positions(self) -> None:
        options = LayoutOptions(use_graphviz=False, keep_layout=True)
        result = layout_graph(_nodes("a", "b"), _edges("a>b"), options, {"a": (500, 600)})
        self.assertEqual(result.positions["a"], (500.0, 600.0))
        self.assertEqual(result.positions["b"], (420.0, 0.0))
        self.assertEqual(result.nodes[0].position, (500.0, 600.0))

    def test_recorded_positions_ignored_without_keep_layout(self) -> None:
        result = layout_graph(_nodes("a"), [], BUILTIN, {"a": (500, 600)})
        self.assertEqual(result.positions["a"], (0.0, 0.0))

    def test_empty_input(self) -> None:
        result = layout_graph([], [], BUILTIN)
        self.assertEqual(result.nodes, [])

    def test_invalid_options(self) -> None:
        with self.assertRaises(FlowscopeError):
            LayoutOptions(direction="XY")
        with self.assertRaises(FlowscopeError):
            LayoutOptions(node_width=0)


class GraphvizTests(unittest.TestCase):
    def test_dot_source_carries_sizes_and_spacing(self) -> None:
        dot = build_graphviz_dot(["a", 'b"q'], {"a": (96.0, 48.0), 'b"q': (192.0, 96.0)}, [("a", 'b"q')], LayoutOptions())
        self.assertIn('rankdir="LR"', dot)
        self.assertIn('"a" [width="1.0000", height="0.5000"];', dot)
        self.assertIn('"a" -> "b\\"q";', dot)

    def test_plain_output_is_converted_to_top_left(self) -> None:
        plain = "\n".join(
            [
                "graph 1 5 2",
                "node a 1 1.5 2 1 a box black lightgrey",
                "node b 4 0.5 1 0.5 b box black lightgrey",
                "edge a b 4 2 1.5 3 1.5 3 0.5 3.5 0.5 solid black",
                "stop",
            ]
        )
        positions = parse_graphviz_plain(plain, ["a", "b"])
        self.assertEqual(positions["a"], (0.0, 0.0))
        self.assertEqual(positions["b"], (336.0, 120.0))

    def test_plain_output_missing_node_is_an_error(self) -> None:
        with self.assertRaises(LayoutError):
            parse_graphviz_plain("graph 1 2 2\nstop", ["a"])
        with self.assertRaises(LayoutError):
            parse_graphviz_plain("nonsense", ["a"])

    def test_failed_graphviz_falls_back_with_warning(self) -> None:
        failing = mock.Mock(returncode=1, stdout="", stderr="boom")
        with mock.patch.dict(os.environ, {}, clear=False), mock.patch.object(
            layout_module.shutil, "which", return_value="/usr/bin/dot"
        ), mock.patch.object(layout_module.subprocess, "run", return_value=failing):
            os.environ.pop("FLOWSCOPE_DISABLE_GRAPHVIZ", None)
            with self.assertLogs("flowscope.layout", level="WARNING") as logs:
                result = layout_graph(_nodes("a", "b"), _edges("a>b"), LayoutOptions())
        self.assertEqual(result.engine, "layered")
        self.assertIn("boom", "\n".join(logs.output))

    def test_environment_switch_disables_graphviz(self) -> None:
        with mock.patch.dict(os.environ, {"FLOWSCOPE_DISABLE_GRAPHVIZ": "1"}), mock.patch.object(
            layout_module.shutil, "which"
        ) as which:
            result = layout_graph(_nodes("a"), [], LayoutOptions())
        which.assert_not_called()
        self.assertEqual(result.engine, "layered")

    def test_graphviz_positions_are_used_when_available(self) -> None:
        plain = "graph 1 4 1\nnode a 0.5 0.5 1 0.5 a box black lightgrey\nnode b 3.5 0.5 1 0.5 b box black lightgrey\nstop\n"
        ok = mock.Mock(returncode=0, stdout=plain, stderr="")
        with mock.patch.dict(os.environ, {}, clear=False), mock.patch.object(
            layout_module.shutil, "which", return_value="/usr/bin/dot"
        ), mock.patch.object(layout_module.subprocess, "run", return_value=ok):
            os.environ.pop("FLOWSCOPE_DISABLE_GRAPHVIZ", None)
            result = layout_graph(_nodes("a", "b"), _edges("a>b"), LayoutOptions())
        self.assertEqual(result.engine, "graphviz")
        self.assertEqual(result.positions["b"], (288.0, 24.0))


if __name__ == "__main__":
    unittest.main()
