"""Tests for delta parsing and the mutation engine invariants."""

import pytest

from conftest import build_graph, delta_payload, node, signup_graph

from services.errors import GraphValidationError, ProposalError
from services.graph import Delta, Graph, MutationEngine, TopologicalScheduler


@pytest.fixture
def engine():
    return MutationEngine()


def empty_graph() -> Graph:
    return Graph(workflow_id="wf-1", owner_id="owner-1")


def response_fields(body):
    return {"status": 200, "body": body}


def structure(graph: Graph):
    """Graph shape without the transient isNew flag."""
    nodes = [(n.id, n.type, n.label, n.fields) for n in graph.nodes]
    edges = [(e.id, e.source, e.target) for e in graph.edges]
    return nodes, edges


class TestDeltaParsing:

    def test_canvas_and_flat_nodes(self):
        delta = Delta.from_dict({
            "nodes": [
                {"id": "a", "type": "delay", "data": {"label": "A", "fields": {"seconds": 1}}},
                {"id": "b", "type": "delay", "label": "B", "fields": {"seconds": 2}},
            ],
            "edges": [{"source": "a", "target": "b"}],
        })
        assert [(n.id, n.label, n.fields) for n in delta.nodes] == [
            ("a", "A", {"seconds": 1}), ("b", "B", {"seconds": 2})]
        assert delta.edges[0].id == "e-a-b"

    def test_alternate_list_keys(self):
        delta = Delta.from_dict({"addedNodes": [{"id": "a", "type": "delay"}], "newEdges": []})
        assert [n.id for n in delta.nodes] == ["a"]

    def test_malformed_entries_are_all_reported(self):
        with pytest.raises(ProposalError) as exc_info:
            Delta.from_dict({
                "nodes": [{"type": "delay"}, {"id": "b", "type": "delay", "fields": "oops"}],
                "edges": [{"source": "a"}],
            })
        codes = [v.code for v in exc_info.value.violations]
        assert codes == ["malformed_node", "malformed_node", "malformed_edge"]

    def test_non_object_proposal(self):
        with pytest.raises(ProposalError):
            Delta.from_dict(["not", "a", "delta"])


class TestResponseInvariants:

    def test_response_is_moved_last_with_fan_in(self, engine):
        delta = Delta.from_dict(delta_payload(
            [("respond", "response", response_fields({"ok": True})),
             ("a", "delay", {"seconds": 0}),
             ("b", "delay", {"seconds": 0})],
            [("a", "b")],
        ))
        graph = engine.merge(empty_graph(), delta).graph

        assert [n.id for n in graph.nodes] == ["a", "b", "respond"]
        assert ("b", "respond") in [e.key for e in graph.edges]
        assert TopologicalScheduler().order(graph)[-1] == "respond"

    def test_every_sink_feeds_the_response(self, engine):
        delta = Delta.from_dict(delta_payload(
            [("a", "delay", {}), ("b", "delay", {}),
             ("respond", "response", response_fields({}))],
            [],
        ))
        graph = engine.merge(empty_graph(), delta).graph
        assert sorted(e.key for e in graph.edges) == [("a", "respond"), ("b", "respond")]

    def test_edges_out_of_response_are_dropped(self, engine):
        delta = Delta.from_dict(delta_payload(
            [("a", "delay", {}), ("respond", "response", response_fields({}))],
            [("respond", "a")],
        ))
        result = engine.merge(empty_graph(), delta)
        assert [e.key for e in result.graph.edges] == [("a", "respond")]
        assert [e.key for e in result.dropped_edges] == [("respond", "a")]

    def test_repeated_response_proposals_keep_the_last(self, engine):
        graph = build_graph([node("input", "input", variables=[])], edges=[])
        for index, message in enumerate(["first", "second", "third"], start=1):
            delta = Delta.from_dict(delta_payload(
                [(f"respond-{index}", "response", response_fields({"message": message}))],
                [],
            ))
            graph = engine.merge(graph, delta).graph

        responses = [n for n in graph.nodes if n.type == "response"]
        assert len(responses) == 1
        assert responses[0].id == "respond-3"
        assert responses[0].fields["body"] == {"message": "third"}
        assert graph.nodes[-1] is responses[0]
        assert [e.key for e in graph.edges] == [("input", "respond-3")]

    def test_replacement_response_is_not_counted_as_new(self, engine):
        graph = engine.merge(empty_graph(), Delta.from_dict(delta_payload(
            [("r1", "response", response_fields({}))], []))).graph
        result = engine.merge(graph, Delta.from_dict(delta_payload(
            [("r2", "response", response_fields({"v": 2}))], [])))
        assert result.nodes_added == 0
        assert result.graph.nodes[-1].is_new is False

    def test_response_fields_merge_across_replacements(self, engine):
        graph = engine.merge(empty_graph(), Delta.from_dict(delta_payload(
            [("r1", "response", {"status": 201, "body": {}, "headers": {"x": "1"}})], []))).graph
        graph = engine.merge(graph, Delta.from_dict(delta_payload(
            [("r2", "response", {"status": 200, "body": {"done": True}})], []))).graph
        assert graph.nodes[-1].fields == {"status": 200, "body": {"done": True},
                                          "headers": {"x": "1"}}


class TestMerge:

    def test_validation_step_inserted_between_input_and_insert(self, engine):
        graph = signup_graph()
        delta = Delta.from_dict(delta_payload(
            [("validate", "inputValidation",
              {"rules": [{"field": "email", "required": True, "type": "email"}]})],
            [("input", "validate"), ("validate", "insert")],
        ))
        result = engine.merge(graph, delta)

        assert len(result.graph.nodes) == 4
        assert result.graph.nodes[-1].id == "respond"
        order = TopologicalScheduler().order(result.graph)
        assert order.index("validate") < order.index("insert")
        assert order[-1] == "respond"
        assert result.nodes_added == 1
        assert result.edges_added == 2

    def test_existing_node_fields_are_shallow_merged(self, engine):
        graph = signup_graph()
        delta = Delta.from_dict({"nodes": [
            {"id": "insert", "type": "dbInsert", "data": {"fields": {"collection": "members"}}},
        ]})
        merged = engine.merge(graph, delta).graph.get_node("insert")
        assert merged.fields["collection"] == "members"
        assert merged.fields["data"] == graph.get_node("insert").fields["data"]
        assert merged.label == "insert"
        assert merged.is_new is False

    def test_type_change_is_rejected(self, engine):
        delta = Delta.from_dict({"nodes": [{"id": "insert", "type": "dbFind",
                                            "fields": {"collection": "users"}}]})
        with pytest.raises(ProposalError) as exc_info:
            engine.merge(signup_graph(), delta)
        assert exc_info.value.violations[0].code == "type_mismatch"

    def test_idempotent(self, engine):
        payload = delta_payload(
            [("input", "input", {"variables": [{"name": "email"}]}),
             ("wait", "delay", {"seconds": 1}),
             ("respond", "response", response_fields({"email": "{{email}}"}))],
            [("input", "wait")],
        )
        once = engine.merge(empty_graph(), Delta.from_dict(payload)).graph
        twice = engine.merge(once, Delta.from_dict(payload)).graph
        assert structure(twice) == structure(once)

    def test_new_nodes_are_flagged_and_flags_reset(self, engine):
        first = engine.merge(empty_graph(), Delta.from_dict(delta_payload(
            [("a", "delay", {})], []))).graph
        assert first.get_node("a").is_new is True

        second = engine.merge(first, Delta.from_dict(delta_payload(
            [("b", "delay", {})], [("a", "b")]))).graph
        assert second.get_node("a").is_new is False
        assert second.get_node("b").is_new is True

    def test_duplicate_edges_are_skipped(self, engine):
        graph = signup_graph()
        delta = Delta.from_dict(delta_payload([], [("input", "insert")]))
        result = engine.merge(graph, delta)
        assert len(result.graph.edges) == len(graph.edges)
        assert result.edges_added == 0

    def test_edge_with_unknown_endpoint_is_dropped(self, engine):
        delta = Delta.from_dict(delta_payload([], [("insert", "ghost")]))
        result = engine.merge(signup_graph(), delta)
        assert [e.key for e in result.dropped_edges] == [("insert", "ghost")]
        assert result.graph.validate().is_valid

    def test_cycle_is_rejected_and_graph_unchanged(self, engine):
        graph = build_graph([node("a", "delay"), node("b", "delay")])
        before = graph.to_dict()
        delta = Delta.from_dict(delta_payload([], [("b", "a")]))

        with pytest.raises(GraphValidationError) as exc_info:
            engine.merge(graph, delta)

        assert "cycle" in [v.code for v in exc_info.value.violations]
        assert graph.to_dict() == before

    def test_invalid_fields_are_rejected(self, engine):
        delta = Delta.from_dict(delta_payload(
            [("mail", "emailSend", {"subject": "Hi", "body": "Hello"})], []))
        with pytest.raises(GraphValidationError) as exc_info:
            engine.merge(empty_graph(), delta)
        assert exc_info.value.violations[0].code == "invalid_fields"
