import json
import tempfile
import unittest
from dataclasses import replace
from pathlib import Path
from unittest import mock

from stemflow.core.models import (
    Citation,
    Direction,
    GenerationError,
    GhostProposal,
    GraphEdge,
    GraphNode,
    Position,
)
from stemflow.graph.ancestry import (
    EMPTY_CONTENT_FALLBACK,
    MAX_ANCESTRY_DEPTH,
    build_node_suggestion_context,
    format_ancestry_for_prompt,
    get_ancestry,
)
from stemflow.graph.store import GraphState, InMemoryGraphStore, JsonFileGraphStore


def _node(node_id: str, node_type: str = "OBSERVATION", x: float = 0, text: str = "", grade=None) -> GraphNode:
    return GraphNode(id=node_id, type=node_type, text=text, position=Position(x=x, y=0), grade=grade)


def _edge(source: str, target: str) -> GraphEdge:
    return GraphEdge(id=f"edge-{source}-{target}", source=source, target=target)


def _ghost(ghost_id: str, parent_id: str, status: str = "proposed") -> GhostProposal:
    direction = Direction(
        id=f"planner-{ghost_id}",
        summary_title="Root exudates",
        suggested_type="MECHANISM",
        search_query="root exudates drought",
        source_node_id=parent_id,
    )
    return GhostProposal(
        id=ghost_id,
        parent_id=parent_id,
        suggested_type="MECHANISM",
        planner_direction=direction,
        status=status,
        position=Position(x=220, y=250),
    )


class AncestryTests(unittest.TestCase):
    def test_bfs_order_with_multiple_parents(self) -> None:
        nodes = [
            _node("parent-left", "OBSERVATION", 0),
            _node("parent-right", "MECHANISM", 200),
            _node("middle", "VALIDATION", 100),
            _node("root", "OBSERVATION", 50),
        ]
        edges = [_edge("parent-left", "root"), _edge("parent-right", "root"), _edge("middle", "parent-right")]

        ids = [node.id for node in get_ancestry("root", nodes, edges)]
        self.assertEqual(ids, ["middle", "parent-right", "parent-left", "root"])

    def test_linear_chain(self) -> None:
        nodes = [_node("a"), _node("b", "MECHANISM"), _node("c", "VALIDATION")]
        ids = [node.id for node in get_ancestry("c", nodes, [_edge("a", "b"), _edge("b", "c")])]
        self.assertEqual(ids, ["a", "b", "c"])

    def test_cycle_terminates(self) -> None:
        nodes = [_node("node-a"), _node("node-b", "MECHANISM", 10)]
        edges = [_edge("node-a", "node-b"), _edge("node-b", "node-a")]
        ids = [node.id for node in get_ancestry("node-a", nodes, edges)]
        self.assertEqual(ids, ["node-b", "node-a"])

    def test_unknown_node_returns_empty(self) -> None:
        self.assertEqual(get_ancestry("missing", [_node("a")], []), [])

    def test_depth_ceiling(self) -> None:
        count = MAX_ANCESTRY_DEPTH + 10
        nodes = [_node(f"n{i}") for i in range(count)]
        edges = [_edge(f"n{i}", f"n{i + 1}") for i in range(count - 1)]
        ancestry = get_ancestry(f"n{count - 1}", nodes, edges)
        self.assertEqual(len(ancestry), MAX_ANCESTRY_DEPTH + 1)
        self.assertEqual(ancestry[-1].id, f"n{count - 1}")

    def test_format_for_prompt(self) -> None:
        formatted = format_ancestry_for_prompt(
            [_node("a", "OBSERVATION", text="Observation text"), _node("b", "MECHANISM", text=" Mechanism text ")]
        )
        self.assertEqual(
            formatted,
            "[OBSERVATION] Node #1:\nObservation text\n\n[MECHANISM] Node #2:\nMechanism text\n\n",
        )


class SuggestionContextTests(unittest.TestCase):
    def test_only_graded_nodes_are_included(self) -> None:
        nodes = [
            _node("mechanism-1", "MECHANISM", text="Mechanism text", grade=5),
            _node("validation-1", "VALIDATION", text="Validation text", grade=2),
            _node("observation-1", "OBSERVATION", text="Observation text"),
        ]
        context = build_node_suggestion_context(nodes)
        self.assertEqual([(c.id, c.grade) for c in context], [("mechanism-1", 5), ("validation-1", 2)])

    def test_grades_are_normalized(self) -> None:
        nodes = [
            _node("n1", text="A", grade=10),
            _node("n2", text="B", grade=0),
            _node("n3", text="", grade=3),
            _node("n4", text="D", grade=2.5),
            _node("n5", text="E", grade=float("nan")),
            _node("n6", text="F", grade=-4),
        ]
        context = {c.id: c for c in build_node_suggestion_context(nodes)}
        self.assertEqual(context["n1"].grade, 5)
        self.assertEqual(context["n2"].grade, 3)
        self.assertEqual(context["n3"].content, EMPTY_CONTENT_FALLBACK)
        self.assertEqual(context["n4"].grade, 3)
        self.assertEqual(context["n5"].grade, 3)
        self.assertEqual(context["n6"].grade, 1)


class InMemoryGraphStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryGraphStore()
        self.store.add_node(_node("root"))

    def test_set_ghost_proposals_replaces_batch(self) -> None:
        self.store.set_ghost_proposals([_ghost("g1", "root"), _ghost("g2", "root")])
        self.store.set_ghost_proposals([_ghost("g3", "root")])
        self.assertEqual([g.id for g in self.store.snapshot().ghosts], ["g3"])

    def test_set_ghost_proposals_rejects_unknown_parent_atomically(self) -> None:
        self.store.set_ghost_proposals([_ghost("g1", "root")])
        before = self.store.snapshot()
        with self.assertRaises(ValueError):
            self.store.set_ghost_proposals([_ghost("g2", "root"), _ghost("g3", "missing")])
        self.assertIs(self.store.snapshot(), before)

    def test_promote_ghost_adds_node_and_edge_together(self) -> None:
        self.store.set_ghost_proposals([_ghost("g1", "root"), _ghost("g2", "root")])
        node = _node("child", "MECHANISM")
        self.assertTrue(self.store.promote_ghost("g1", node, _edge("root", "child")))

        state = self.store.snapshot()
        self.assertEqual([n.id for n in state.nodes], ["root", "child"])
        self.assertEqual([(e.source, e.target) for e in state.edges], [("root", "child")])
        self.assertEqual([g.id for g in state.ghosts], ["g2"])

    def test_mutating_missing_ghost_reports_false(self) -> None:
        self.assertFalse(self.store.update_ghost(_ghost("nope", "root")))
        self.assertFalse(self.store.remove_ghost("nope"))
        self.assertFalse(self.store.promote_ghost("nope", _node("x"), _edge("root", "x")))

    def test_add_edge_requires_endpoints(self) -> None:
        with self.assertRaises(ValueError):
            self.store.add_edge(_edge("root", "missing"))


class JsonFileGraphStoreTests(unittest.TestCase):
    def test_state_survives_reload(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "graph" / "graph.json"
            store = JsonFileGraphStore(path)
            store.add_node(
                GraphNode(
                    id="root",
                    type="OBSERVATION",
                    text="Wheat roots",
                    grade=4,
                    citations=(Citation(index=1, title="Paper", url="https://example.com"),),
                )
            )
            error = GenerationError(message="busy", retryable=True, code="upstream", provider="openai")
            store.set_ghost_proposals([_ghost("g1", "root", status="pending"), _ghost("g2", "root")])
            store.update_ghost(replace(_ghost("g2", "root"), status="error", error=error))

            reloaded = JsonFileGraphStore(path)
            state = reloaded.snapshot()
            self.assertEqual(state.nodes[0].citations[0].url, "https://example.com")
            self.assertEqual(state.nodes[0].grade, 4)
            ghosts = {g.id: g for g in state.ghosts}
            self.assertEqual(ghosts["g1"].status, "proposed")
            self.assertEqual(ghosts["g2"].status, "error")
            self.assertEqual(ghosts["g2"].error, error)

            payload = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(payload["schema_version"], 1)
            self.assertFalse(path.with_suffix(".json.tmp").exists())

    def test_failed_write_leaves_memory_unchanged(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "graph.json"
            store = JsonFileGraphStore(path)
            store.add_node(_node("root"))
            before = store.snapshot()

            with mock.patch("stemflow.graph.store._atomic_write_json", side_effect=OSError("disk full")):
                with self.assertRaises(OSError):
                    store.add_node(_node("child"))

            self.assertIs(store.snapshot(), before)
            self.assertEqual([n.id for n in JsonFileGraphStore(path).snapshot().nodes], ["root"])

    def test_missing_file_starts_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = JsonFileGraphStore(Path(tmp) / "graph.json")
            self.assertEqual(store.snapshot(), GraphState())


if __name__ == "__main__":
    unittest.main()
