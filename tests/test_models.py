"""Tests for the workflow graph model."""

import pytest

from rpa_engine.core.errors import GraphStructureError, UnsupportedNodeTypeError
from rpa_engine.engine.models import (
    ApiCallNode,
    BrowserActionNode,
    BrowserActionType,
    ExecutionOutcome,
    ExecutionStatus,
    NodeType,
    Workflow,
    WorkflowEdge,
    parse_edge,
    parse_node,
)


def _workflow(nodes, edges):
    return Workflow.model_validate({"id": "wf", "nodes": nodes, "edges": edges})


class TestNodeParsing:
    """Test raw node records -> typed nodes."""

    def test_parse_browser_action(self):
        node = parse_node({
            "id": "open",
            "type": "browser_action",
            "actionType": "navigate",
            "url": "example.com",
            "timeout": 5000,
        })

        assert isinstance(node, BrowserActionNode)
        assert node.action_type == BrowserActionType.NAVIGATE
        assert node.name == "open"

        spec = node.to_action_spec()
        assert spec.url == "example.com"
        assert spec.timeout == 5000

    def test_action_type_spellings(self):
        for spelling in ("waitForSelector", "WAIT_FOR_SELECTOR", "wait_for_selector"):
            assert BrowserActionType(spelling) == BrowserActionType.WAIT_FOR_SELECTOR

    def test_api_call_method_upper_cased(self):
        node = parse_node({"id": "call", "type": "api_call", "url": "https://x.test", "method": "post"})

        assert isinstance(node, ApiCallNode)
        assert node.method == "POST"

    def test_unknown_type(self):
        with pytest.raises(UnsupportedNodeTypeError) as exc_info:
            parse_node({"id": "x", "type": "teleport"})

        assert exc_info.value.context["node_type"] == "teleport"
        assert exc_info.value.context["node_id"] == "x"

    def test_malformed_node(self):
        with pytest.raises(GraphStructureError):
            parse_node({"id": "call", "type": "api_call"})

    def test_negative_delay_rejected(self):
        with pytest.raises(GraphStructureError):
            parse_node({"id": "wait", "type": "delay", "milliseconds": -5})

    def test_blank_condition_is_default(self):
        edge = parse_edge({"source": "a", "target": "b", "condition": "   "})

        assert isinstance(edge, WorkflowEdge)
        assert edge.condition is None

    def test_wire_format(self):
        outcome = ExecutionOutcome(
            execution_id="e1",
            workflow_id="wf",
            status=ExecutionStatus.COMPLETED,
            results={"start": {"success": True}},
        )

        wire = outcome.to_wire()
        assert wire["executionId"] == "e1"
        assert wire["status"] == "completed"
        assert "error" not in wire


class TestGraphValidation:
    """Test Workflow.validate_graph."""

    def test_valid_graph(self):
        workflow = _workflow(
            [{"id": "s", "type": "start"}, {"id": "e", "type": "end"}],
            [{"source": "s", "target": "e"}],
        )

        assert workflow.validate_graph() == []
        assert workflow.nodes[0].type == NodeType.START

    def test_missing_start(self):
        workflow = _workflow([{"id": "e", "type": "end"}], [])

        with pytest.raises(GraphStructureError):
            workflow.validate_graph()

    def test_duplicate_ids(self):
        workflow = _workflow(
            [{"id": "s", "type": "start"}, {"id": "s", "type": "end"}],
            [],
        )

        with pytest.raises(GraphStructureError):
            workflow.validate_graph()

    def test_reserved_input_id(self):
        workflow = _workflow(
            [{"id": "s", "type": "start"}, {"id": "input", "type": "task"}],
            [{"source": "s", "target": "input"}],
        )

        with pytest.raises(GraphStructureError):
            workflow.validate_graph()

    def test_dangling_edge(self):
        workflow = _workflow(
            [{"id": "s", "type": "start"}],
            [{"source": "s", "target": "ghost"}],
        )

        with pytest.raises(GraphStructureError):
            workflow.validate_graph()

    def test_warnings(self):
        workflow = _workflow(
            [
                {"id": "s1", "type": "start"},
                {"id": "s2", "type": "start"},
                {"id": "d", "type": "decision"},
                {"id": "a", "type": "task"},
                {"id": "e", "type": "end"},
            ],
            [
                {"source": "s1", "target": "d", "condition": "x > 1"},
                {"source": "s2", "target": "d"},
                {"source": "d", "target": "a", "condition": "x > 1"},
                {"source": "a", "target": "e"},
                {"source": "a", "target": "d"},
            ],
        )

        warnings = workflow.validate_graph()

        assert any("Multiple start nodes" in w for w in warnings)
        assert any("no default edge" in w for w in warnings)
        assert any("non-decision node s1" in w for w in warnings)
        assert any("only the first is followed" in w for w in warnings)
