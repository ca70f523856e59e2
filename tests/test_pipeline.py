from __future__ import annotations

import json
import sys
import unittest
import xml.etree.ElementTree as ET
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from flowscope import FlowSnapshot, LayoutOptions, Scope, ScopeError, ViewOptions, build_view
from flowscope.svg_export import SVG_NS
from flowscope.text import TextMeasurer

BUILTIN = ViewOptions(layout=LayoutOptions(use_graphviz=False))


def _two_groups(**extra_a) -> FlowSnapshot:
    group_a = {"id": "A", "name": "Group A", "tags": "group"}
    group_a.update(extra_a)
    return FlowSnapshot.from_records(
        [
            group_a,
            {"id": "B", "name": "Group B", "tags": "group"},
            {"id": "C", "name": "Sender", "tags": "output"},
            {"id": "D", "name": "Receiver", "tags": "input"},
        ],
        relationships={"A--C": "contains", "B--D": "contains", "C--D": "sends"},
    )


class BuildViewTests(unittest.TestCase):
    def test_group_interfaces_end_to_end(self) -> None:
        view = build_view(_two_groups(), options=BUILTIN)

        self.assertEqual(view.engine, "layered")
        self.assertEqual([node.id for node in view.nodes], ["A", "B"])
        self.assertEqual([(e.source, e.target) for e in view.edges], [("A", "B")])
        self.assertEqual(view.positions["A"], (0.0, 0.0))
        self.assertEqual(view.positions["B"], (420.0, 0.0))
        self.assertEqual([port.id for port in view.handle_layouts["A"].outputs], ["out-child-C-on-A"])
        self.assertEqual([port.id for port in view.handle_layouts["B"].inputs], ["in-child-D-on-B"])

    def test_to_dict_exposes_handles(self) -> None:
        payload = build_view(_two_groups(), options=BUILTIN).to_dict()
        self.assertIsNone(payload["scope"])
        self.assertEqual(payload["handles"]["A"]["outputs"][0]["buriedId"], "C")
        self.assertEqual(payload["handles"]["A"]["outputs"][0]["top"], 40.0)
        self.assertEqual(payload["edges"][0]["sourceHandle"], "out-child-C-on-A")
        self.assertEqual(payload["nodes"][0]["width"], 320.0)

    def test_exports(self) -> None:
        view = build_view(_two_groups(), options=BUILTIN)

        root = ET.fromstring(view.to_svg(measurer=TextMeasurer(use_fonts=False)))
        self.assertEqual(root.tag, f"{{{SVG_NS}}}svg")
        edge_groups = [g for g in root.iter(f"{{{SVG_NS}}}g") if g.get("class") == "flow-edge"]
        self.assertEqual(len(edge_groups), 1)

        parsed = json.loads(view.to_summary("json"))
        self.assertEqual([node["name"] for node in parsed["nodes"]], ["Group A", "Group B"])
        self.assertEqual(parsed["edges"], [{"from": "A", "to": "B", "label": "sends"}])

        self.assertTrue(view.to_summary().startswith("Flow Diagram Summary"))
        with self.assertRaises(ValueError):
            view.to_summary("xml")

    def test_drill_in(self) -> None:
        view = build_view(_two_groups(), Scope.top().enter("A"), BUILTIN)
        self.assertEqual([node.id for node in view.nodes], ["C"])
        self.assertEqual(view.scope.active_group, "A")

    def test_invalid_scope_is_rejected(self) -> None:
        with self.assertRaises(ScopeError):
            build_view(_two_groups(), Scope(active_group="C"), BUILTIN)
        with self.assertRaises(ScopeError):
            build_view(_two_groups(), Scope(active_group="missing"), BUILTIN)

    def test_hidden_layers_drop_containers(self) -> None:
        snapshot = FlowSnapshot.from_records(
            [
                {"id": "a", "name": "A", "tags": "ops"},
                {"id": "b", "name": "B", "tags": "finance"},
                {"id": "c", "name": "C"},
            ],
            relationships={"a--b": "x", "b--c": "y"},
        )
        options = ViewOptions(layout=LayoutOptions(use_graphviz=False), hidden_layers=("ops",))
        view = build_view(snapshot, options=options)
        self.assertEqual(sorted(node.id for node in view.nodes), ["b", "c"])
        self.assertEqual([edge.id for edge in view.edges], ["b-to-c"])

    def test_keep_layout_uses_container_positions(self) -> None:
        options = ViewOptions(layout=LayoutOptions(use_graphviz=False, keep_layout=True))
        view = build_view(_two_groups(position={"x": 7, "y": 9}), options=options)
        self.assertEqual(view.positions["A"], (7.0, 9.0))
        self.assertEqual(view.positions["B"], (420.0, 0.0))

    def test_scores_reach_node_data(self) -> None:
        snapshot = FlowSnapshot.from_records(
            [{"id": "a", "name": "A"}, {"id": "b", "name": "B"}],
            scores={"a": 1, "b": 4},
        )
        view = build_view(snapshot, options=BUILTIN)
        data = {node.id: node.data for node in view.nodes}
        self.assertTrue(data["b"]["isHighestScoring"])
        self.assertEqual(data["b"]["normalizedScore"], 1.0)


class ExportGeometryTests(unittest.TestCase):
    def _node_rects(self, svg_text: str) -> dict:
        root = ET.fromstring(svg_text)
        rects = {}
        for group in root.iter(f"{{{SVG_NS}}}g"):
            group_id = group.get("id") or ""
            if not group_id.startswith("node-"):
                continue
            rect = group.find(f"{{{SVG_NS}}}rect")
            rects[group_id[len("node-"):]] = tuple(
                float(rect.get(key)) for key in ("x", "y", "width", "height")
            )
        return rects

    def test_described_siblings_do_not_overlap(self) -> None:
        description = "Collects the signed forms and checks them against the intake register."
        snapshot = FlowSnapshot.from_records(
            [
                {"id": "root", "name": "Root"},
                {"id": "a", "name": "Alpha", "description": description},
                {"id": "b", "name": "Beta", "description": description},
            ],
            relationships={"root--a": "first", "root--b": "second"},
        )
        view = build_view(snapshot, options=BUILTIN, measurer=TextMeasurer(use_fonts=False))
        rects = self._node_rects(view.to_svg())

        self.assertEqual(sorted(rects), ["a", "b", "root"])
        for node in view.nodes:
            self.assertAlmostEqual(rects[node.id][2], node.width, places=3)
            self.assertAlmostEqual(rects[node.id][3], node.height, places=3)
        self.assertGreater(rects["a"][3], 48.0)
        ids = sorted(rects)
        for i, first in enumerate(ids):
            for second in ids[i + 1 :]:
                ax, ay, aw, ah = rects[first]
                bx, by, bw, bh = rects[second]
                overlap = ax < bx + bw and bx < ax + aw and ay < by + bh and by < ay + ah
                self.assertFalse(overlap, f"{first} and {second} overlap")


if __name__ == "__main__":
    unittest.main()
