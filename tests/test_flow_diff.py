"""Tests for applying assistant flow diffs to the graph."""

import json
import random

import pytest

from flowstate.flow_diff import (
    RANDOM_X_RANGE,
    RANDOM_Y_RANGE,
    apply_flow_diff,
    describe_flow_diff,
    generate_node_id,
    parse_flow_diff,
)
from flowstate.graph_manager import GraphManager
from flowstate.visual_base_models import FlowDiff, FlowDiffBatch


def diff(**fields):
    return parse_flow_diff(fields)


def batch(*operations, explanation=None):
    payload = {"operations": list(operations)}
    if explanation:
        payload["explanation"] = explanation
    return parse_flow_diff(payload)


class TestParseFlowDiff:

    def test_single_operation(self):
        parsed = parse_flow_diff({"action": "add_node", "nodeLabel": "GPT-4", "nodePosition": {"x": 1, "y": 2}})
        assert isinstance(parsed, FlowDiff)
        assert parsed.action == "add_node"
        assert parsed.nodePosition.x == 1

    def test_batch(self):
        parsed = parse_flow_diff({"operations": [{"action": "clear_all"}]})
        assert isinstance(parsed, FlowDiffBatch)
        assert len(parsed.operations) == 1

    def test_json_text_and_assistant_envelope(self):
        text = json.dumps({"response": "I'll connect the nodes for you.", "flowDiff": {"action": "add_edge", "sourceId": "A", "targetId": "B"}})
        parsed = parse_flow_diff(text)
        assert parsed.action == "add_edge"
        assert parsed.sourceId == "A"

    @pytest.mark.parametrize("payload", [
        "not json",
        "[1]",
        42,
        None,
        {},
        {"action": "teleport_node"},
        {"operations": "nope"},
        {"operations": [{"action": "bogus"}]},
        {"flowDiff": None},
        {"action": "add_node", "nodePosition": {"x": "left"}},
        pytest.param("[" * 100000, id="deeply-nested"),
        '{"action": "add_node", "nodePosition": {"x": 1e999, "y": 0}}',
        '{"action": "add_node", "nodePosition": {"x": NaN, "y": 0}}',
    ])
    def test_malformed_returns_none(self, payload):
        assert parse_flow_diff(payload) is None


class TestNodeIds:

    def test_lowercase_and_hyphenate(self):
        assert generate_node_id("My  Big\tNode", set()) == "action-my-big-node"

    def test_suffix_on_collision(self):
        taken = {"action-reader", "action-reader-1"}
        assert generate_node_id("Reader", taken) == "action-reader-2"

    def test_requested_type_prefixes_id(self):
        assert generate_node_id("Reader", set(), "dataSource") == "dataSource-reader"


class TestSingleOperations:

    def setup_method(self):
        self.graph = GraphManager()
        self.rng = random.Random(7)

    def apply(self, **fields):
        return apply_flow_diff(self.graph, diff(**fields), rng=self.rng)

    def seed(self):
        self.graph.set_nodes([
            {"id": "src", "data": {"label": "Data Source"}},
            {"id": "llm", "data": {"label": "GPT-4"}},
        ])

    def test_add_node_with_position(self):
        result = self.apply(action="add_node", nodeLabel="Data Source", nodeType="dataSource", nodePosition={"x": 200, "y": 150})
        assert result.applied == 1
        added = self.graph.nodes[0]
        assert added.id == "dataSource-data-source"
        assert added.type == "action"
        assert (added.position.x, added.position.y) == (200, 150)
        assert added.data.label == "Data Source"

    def test_add_node_defaults(self):
        self.apply(action="add_node")
        added = self.graph.nodes[0]
        assert added.id == "action-new-node"
        assert added.data.label == "New Node"
        assert RANDOM_X_RANGE[0] <= added.position.x < RANDOM_X_RANGE[1]
        assert RANDOM_Y_RANGE[0] <= added.position.y < RANDOM_Y_RANGE[1]

    def test_add_node_avoids_live_id_collision(self):
        self.apply(action="add_node", nodeLabel="Reader")
        self.apply(action="add_node", nodeLabel="Reader")
        assert [n.id for n in self.graph.nodes] == ["action-reader", "action-reader-1"]

    def test_update_node_merges_only_present_fields(self):
        self.graph.set_nodes([{"id": "n1", "position": {"x": 5, "y": 6}, "data": {"label": "Old", "icon": "db"}}])
        result = self.apply(action="update_node", nodeId="old", nodeLabel="New")
        assert result.applied == 1
        updated = self.graph.get_node("n1")
        assert updated.data.label == "New"
        assert updated.model_dump()["data"]["icon"] == "db"
        assert (updated.position.x, updated.position.y) == (5, 6)

    def test_update_node_position_only(self):
        self.seed()
        self.apply(action="update_node", nodeId="llm", nodePosition={"x": 40, "y": 50})
        updated = self.graph.get_node("llm")
        assert (updated.position.x, updated.position.y) == (40, 50)
        assert updated.data.label == "GPT-4"

    def test_update_unresolved_is_skipped(self):
        self.seed()
        before = self.graph.snapshot()
        result = self.apply(action="update_node", nodeId="nowhere", nodeLabel="X")
        assert result.applied == 0
        assert result.skipped == 1
        assert self.graph.snapshot().matches(before)

    def test_delete_node_by_label_cascades(self):
        self.seed()
        self.apply(action="add_edge", sourceId="Data Source", targetId="GPT-4")
        self.apply(action="delete_node", nodeId="gpt-4")
        assert [n.id for n in self.graph.nodes] == ["src"]
        assert self.graph.edges == []

    def test_add_edge_resolves_references(self):
        self.seed()
        self.apply(action="add_edge", sourceId="data", targetId="llm")
        edge = self.graph.edges[0]
        assert (edge.id, edge.source, edge.target, edge.type) == ("edge-src-llm", "src", "llm", "custom")

    def test_add_edge_dedup(self):
        """Adding the same resolved pair twice leaves exactly one edge."""
        self.seed()
        first = self.apply(action="add_edge", sourceId="src", targetId="llm")
        second = self.apply(action="add_edge", sourceId="Data Source", targetId="GPT-4")
        assert first.applied == 1
        assert second.applied == 0
        assert len([e for e in self.graph.edges if e.source == "src" and e.target == "llm"]) == 1

    def test_add_edge_reverse_direction_is_distinct(self):
        self.seed()
        self.apply(action="add_edge", sourceId="src", targetId="llm")
        self.apply(action="add_edge", sourceId="llm", targetId="src")
        assert len(self.graph.edges) == 2

    def test_add_edge_unresolved_endpoint_skipped(self):
        self.seed()
        result = self.apply(action="add_edge", sourceId="src", targetId="ghost")
        assert result.skipped == 1
        assert self.graph.edges == []

    def test_delete_edge_by_id(self):
        self.seed()
        self.apply(action="add_edge", sourceId="src", targetId="llm")
        result = self.apply(action="delete_edge", edgeId="edge-src-llm")
        assert result.applied == 1
        assert self.graph.edges == []

    def test_delete_edge_by_references_removes_all_matches(self):
        self.seed()
        self.graph.set_edges([
            {"id": "e1", "source": "src", "target": "llm"},
            {"id": "e2", "source": "src", "target": "llm"},
            {"id": "e3", "source": "llm", "target": "src"},
        ])
        self.apply(action="delete_edge", sourceId="Data Source", targetId="GPT-4")
        assert [e.id for e in self.graph.edges] == ["e3"]

    def test_delete_edge_unknown_is_skipped(self):
        self.seed()
        assert self.apply(action="delete_edge", edgeId="missing").applied == 0
        assert self.apply(action="delete_edge", sourceId="src", targetId="llm").applied == 0

    def test_clear_all(self):
        self.seed()
        self.apply(action="add_edge", sourceId="src", targetId="llm")
        self.apply(action="clear_all")
        assert self.graph.nodes == []
        assert self.graph.edges == []

    def test_explain_does_not_mutate(self):
        self.seed()
        before = self.graph.snapshot()
        history_len = len(self.graph.history)

        result = self.apply(action="explain", explanation="Data flows from the source into GPT-4.")
        assert result.mode == "explain"
        assert result.applied == 0
        assert result.message == "Data flows from the source into GPT-4."
        assert self.graph.snapshot().matches(before)
        assert len(self.graph.history) == history_len

    def test_each_single_operation_is_one_undo_step(self):
        self.seed()
        self.apply(action="add_edge", sourceId="src", targetId="llm")
        self.apply(action="delete_node", nodeId="src")
        self.graph.undo()
        assert [e.id for e in self.graph.edges] == ["edge-src-llm"]
        assert len(self.graph.nodes) == 2


class TestBatchOperations:

    def setup_method(self):
        self.graph = GraphManager()
        self.rng = random.Random(3)

    def test_batch_references_nodes_added_earlier_in_batch(self):
        result = apply_flow_diff(self.graph, batch(
            {"action": "add_node", "nodeLabel": "A"},
            {"action": "add_node", "nodeLabel": "B"},
            {"action": "add_edge", "sourceId": "A", "targetId": "B"},
        ), rng=self.rng)

        assert result.mode == "batch"
        assert result.applied == 3
        assert len(self.graph.nodes) == 2
        assert len(self.graph.edges) == 1
        edge = self.graph.edges[0]
        assert (edge.source, edge.target) == ("action-a", "action-b")

    def test_batch_is_a_single_undo_step(self):
        self.graph.add_node({"id": "existing", "data": {"label": "Existing"}})
        apply_flow_diff(self.graph, batch(
            {"action": "add_node", "nodeLabel": "A"},
            {"action": "add_node", "nodeLabel": "B"},
            {"action": "add_edge", "sourceId": "A", "targetId": "B"},
        ), rng=self.rng)

        assert self.graph.undo()
        assert [n.id for n in self.graph.nodes] == ["existing"]
        assert self.graph.edges == []

    def test_batch_ids_avoid_live_and_in_batch_collisions(self):
        self.graph.add_node({"id": "action-reader", "data": {"label": "Reader"}})
        apply_flow_diff(self.graph, batch(
            {"action": "add_node", "nodeLabel": "Reader"},
            {"action": "add_node", "nodeLabel": "Reader"},
        ), rng=self.rng)
        assert [n.id for n in self.graph.nodes] == ["action-reader", "action-reader-1", "action-reader-2"]

    def test_batch_ids_use_requested_type(self):
        apply_flow_diff(self.graph, batch(
            {"action": "add_node", "nodeLabel": "Reader", "nodeType": "dataSource"},
            {"action": "add_node", "nodeLabel": "Reader", "nodeType": "dataSource"},
        ), rng=self.rng)
        assert [(n.id, n.type) for n in self.graph.nodes] == [
            ("dataSource-reader", "action"),
            ("dataSource-reader-1", "action"),
        ]

    def test_batch_id_not_reused_after_in_batch_delete(self):
        self.graph.add_node({"id": "action-reader", "data": {"label": "Reader"}})
        apply_flow_diff(self.graph, batch(
            {"action": "delete_node", "nodeId": "action-reader"},
            {"action": "add_node", "nodeLabel": "Reader"},
        ), rng=self.rng)
        assert [n.id for n in self.graph.nodes] == ["action-reader-1"]

    def test_batch_applies_in_order(self):
        apply_flow_diff(self.graph, batch(
            {"action": "add_node", "nodeLabel": "A"},
            {"action": "update_node", "nodeId": "A", "nodeLabel": "Renamed"},
            {"action": "add_node", "nodeLabel": "A"},
        ), rng=self.rng)
        # The renamed node still owns "action-a"
        assert [(n.id, n.data.label) for n in self.graph.nodes] == [
            ("action-a", "Renamed"),
            ("action-a-1", "A"),
        ]

    def test_batch_delete_cascades_within_working_copy(self):
        apply_flow_diff(self.graph, batch(
            {"action": "add_node", "nodeLabel": "A"},
            {"action": "add_node", "nodeLabel": "B"},
            {"action": "add_edge", "sourceId": "A", "targetId": "B"},
            {"action": "delete_node", "nodeId": "B"},
        ), rng=self.rng)
        assert [n.id for n in self.graph.nodes] == ["action-a"]
        assert self.graph.edges == []

    def test_batch_dedups_edges(self):
        apply_flow_diff(self.graph, batch(
            {"action": "add_node", "nodeLabel": "A"},
            {"action": "add_node", "nodeLabel": "B"},
            {"action": "add_edge", "sourceId": "A", "targetId": "B"},
            {"action": "add_edge", "sourceId": "action-a", "targetId": "action-b"},
        ), rng=self.rng)
        assert len(self.graph.edges) == 1

    def test_batch_skips_unresolvable_and_keeps_going(self):
        result = apply_flow_diff(self.graph, batch(
            {"action": "delete_node", "nodeId": "ghost"},
            {"action": "add_node", "nodeLabel": "A"},
            {"action": "explain", "explanation": "ignored"},
        ), rng=self.rng)
        assert result.applied == 1
        assert result.skipped == 1
        assert [n.id for n in self.graph.nodes] == ["action-a"]

    def test_batch_with_nothing_applied_commits_nothing(self):
        history_len = len(self.graph.history)
        result = apply_flow_diff(self.graph, batch({"action": "delete_node", "nodeId": "ghost"}), rng=self.rng)
        assert result.applied == 0
        assert len(self.graph.history) == history_len

    def test_batch_clear_then_rebuild(self):
        self.graph.set_nodes([{"id": "old", "data": {"label": "Old"}}])
        apply_flow_diff(self.graph, batch(
            {"action": "clear_all"},
            {"action": "add_node", "nodeLabel": "Fresh"},
        ), rng=self.rng)
        assert [n.id for n in self.graph.nodes] == ["action-fresh"]

    def test_batch_explanation_becomes_message(self):
        result = apply_flow_diff(self.graph, batch({"action": "add_node"}, explanation="Added a starting node."), rng=self.rng)
        assert result.message == "Added a starting node."


class TestArrivalOrder:
    """
    Assistant requests are not cancelled: two replies computed against the same
    graph apply one after the other, in the order they arrive.
    """

    def test_two_replies_both_apply_in_arrival_order(self):
        graph = GraphManager()
        first = parse_flow_diff({"response": "ok", "flowDiff": {"action": "add_node", "nodeLabel": "Reader"}})
        second = parse_flow_diff({"response": "ok", "flowDiff": {"action": "add_node", "nodeLabel": "Reader"}})

        apply_flow_diff(graph, first)
        apply_flow_diff(graph, second)
        assert [n.id for n in graph.nodes] == ["action-reader", "action-reader-1"]

    def test_later_reply_sees_earlier_reply_effects(self):
        graph = GraphManager()
        apply_flow_diff(graph, diff(action="add_node", nodeLabel="Reader"))
        apply_flow_diff(graph, diff(action="clear_all"))
        result = apply_flow_diff(graph, diff(action="delete_node", nodeId="Reader"))
        assert result.skipped == 1
        assert graph.nodes == []


class TestDescribeFlowDiff:

    @pytest.mark.parametrize("fields,expected", [
        ({"action": "add_node", "nodeLabel": "GPT-4"}, 'I\'ll add a node labeled "GPT-4" to your flow.'),
        ({"action": "delete_node", "nodeId": "x"}, "I'll delete the node from your flow."),
        ({"action": "add_edge"}, "I'll connect the nodes for you."),
        ({"action": "clear_all"}, "I'll clear all nodes and connections from your flow."),
        ({"action": "explain"}, "This flow processes data through various stages."),
        ({"action": "update_node"}, "I'll update node as requested."),
        ({"action": "delete_edge"}, "I'll delete edge as requested."),
    ])
    def test_messages(self, fields, expected):
        assert describe_flow_diff(diff(**fields)) == expected

    def test_batch_default_message(self):
        assert describe_flow_diff(batch({"action": "clear_all"}, {"action": "clear_all"})) == "I'll apply 2 changes to your flow."
