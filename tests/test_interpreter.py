"""Tests for workflow graph interpretation."""

import asyncio

import pytest

from rpa_engine.core.config import InterpreterConfig
from rpa_engine.engine.dispatcher import NodeDispatcher
from rpa_engine.engine.interpreter import WorkflowInterpreter
from rpa_engine.engine.models import INPUT_KEY, ExecutionStatus


class RecordingReporter:
    """Collects lifecycle transitions."""

    def __init__(self):
        self.events = []

    async def report_started(self, execution_id):
        self.events.append(("started", execution_id))

    async def report_completed(self, execution_id, results):
        self.events.append(("completed", execution_id, results))

    async def report_failed(self, execution_id, error, partial_results):
        self.events.append(("failed", execution_id, error, partial_results))


class BrokenReporter:

    async def report_started(self, execution_id):
        raise ConnectionError("status sink down")

    async def report_completed(self, execution_id, results):
        raise ConnectionError("status sink down")

    async def report_failed(self, execution_id, error, partial_results):
        raise ConnectionError("status sink down")


def node(node_id, node_type, **fields):
    return {"id": node_id, "type": node_type, **fields}


def edge(source, target, condition=None):
    data = {"source": source, "target": target}
    if condition is not None:
        data["condition"] = condition
    return data


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def interpreter(reporter):
    return WorkflowInterpreter(NodeDispatcher().execute, reporter=reporter)


class TestLinearWorkflows:

    @pytest.mark.asyncio
    async def test_results_in_visit_order(self, interpreter, reporter):
        outcome = await interpreter.run(
            [
                node("start", "start"),
                node("calc", "script", code="result = amount + 1"),
                node("end", "end"),
            ],
            [edge("start", "calc"), edge("calc", "end")],
            input={"amount": 41},
            execution_id="exec-1",
            workflow_id="wf-1",
        )

        assert outcome.status == ExecutionStatus.COMPLETED
        assert outcome.execution_id == "exec-1"
        assert list(outcome.results) == [INPUT_KEY, "start", "calc", "end"]
        assert outcome.results[INPUT_KEY] == {"amount": 41}
        assert outcome.results["calc"] == {"success": True, "result": 42}
        assert reporter.events[0] == ("started", "exec-1")
        assert reporter.events[-1][0] == "completed"

    @pytest.mark.asyncio
    async def test_later_nodes_see_earlier_results(self, interpreter):
        outcome = await interpreter.run(
            [
                node("start", "start"),
                node("first", "script", code="result = {'token': 'abc'}"),
                node("second", "script", code="result = first['result']['token'].upper()"),
                node("end", "end"),
            ],
            [edge("start", "first"), edge("first", "second"), edge("second", "end")],
        )

        assert outcome.results["second"]["result"] == "ABC"

    @pytest.mark.asyncio
    async def test_node_failure_result_does_not_stop_run(self, interpreter):
        outcome = await interpreter.run(
            [
                node("start", "start"),
                node("calc", "script", code="result = 1 / 0"),
                node("end", "end"),
            ],
            [edge("start", "calc"), edge("calc", "end")],
        )

        assert outcome.status == ExecutionStatus.COMPLETED
        assert outcome.results["calc"]["success"] is False

    @pytest.mark.asyncio
    async def test_request_dict(self, interpreter):
        outcome = await interpreter.run_request({
            "workflowId": "wf-2",
            "executionId": "exec-2",
            "nodes": [node("s", "start"), node("e", "end")],
            "edges": [edge("s", "e")],
            "input": {"x": 1},
        })

        assert outcome.status == ExecutionStatus.COMPLETED
        assert outcome.workflow_id == "wf-2"

    @pytest.mark.asyncio
    async def test_multiple_starts_uses_first(self, interpreter):
        outcome = await interpreter.run(
            [node("s1", "start"), node("s2", "start"), node("e", "end")],
            [edge("s1", "e"), edge("s2", "e")],
        )

        assert outcome.status == ExecutionStatus.COMPLETED
        assert "s1" in outcome.results
        assert "s2" not in outcome.results


class TestDecisions:

    @pytest.fixture
    def graph(self):
        nodes = [
            node("start", "start"),
            node("check", "decision"),
            node("big", "task"),
            node("medium", "task"),
            node("small", "task"),
            node("end", "end"),
        ]
        edges = [
            edge("start", "check"),
            edge("check", "big", "amount > 1000"),
            edge("check", "medium", "amount > 100"),
            edge("check", "small"),
            edge("big", "end"),
            edge("medium", "end"),
            edge("small", "end"),
        ]
        return nodes, edges

    @pytest.mark.asyncio
    async def test_first_true_branch(self, interpreter, graph):
        outcome = await interpreter.run(*graph, input={"amount": 500})

        assert "medium" in outcome.results
        assert "big" not in outcome.results
        assert "small" not in outcome.results

    @pytest.mark.asyncio
    async def test_default_branch(self, interpreter, graph):
        outcome = await interpreter.run(*graph, input={"amount": 5})

        assert "small" in outcome.results

    @pytest.mark.asyncio
    async def test_condition_on_result(self, interpreter):
        outcome = await interpreter.run(
            [
                node("start", "start"),
                node("calc", "script", code="result = {'ok': True}"),
                node("check", "decision"),
                node("yes", "end"),
                node("no", "end"),
            ],
            [
                edge("start", "calc"),
                edge("calc", "check"),
                edge("check", "yes", "calc.result.ok === true"),
                edge("check", "no"),
            ],
        )

        assert "yes" in outcome.results

    @pytest.mark.asyncio
    async def test_unmatched_decision_fails(self, interpreter, reporter):
        outcome = await interpreter.run(
            [node("start", "start"), node("check", "decision"), node("end", "end")],
            [edge("start", "check"), edge("check", "end", "amount > 10")],
            input={"amount": 1},
        )

        assert outcome.status == ExecutionStatus.FAILED
        assert "no matching condition" in outcome.error
        assert "check" in outcome.results
        assert reporter.events[-1][0] == "failed"
        assert reporter.events[-1][3] == outcome.results


class TestStructuralFailures:

    @pytest.mark.asyncio
    async def test_no_start_node(self, interpreter):
        outcome = await interpreter.run([node("end", "end")], [])

        assert outcome.status == ExecutionStatus.FAILED
        assert outcome.results == {INPUT_KEY: {}}

    @pytest.mark.asyncio
    async def test_no_outgoing_edge_keeps_partial_results(self, interpreter):
        outcome = await interpreter.run(
            [node("start", "start"), node("work", "task"), node("end", "end")],
            [edge("start", "work")],
        )

        assert outcome.status == ExecutionStatus.FAILED
        assert "work" in outcome.error
        assert list(outcome.results) == [INPUT_KEY, "start", "work"]

    @pytest.mark.asyncio
    async def test_unresolved_target(self, interpreter):
        outcome = await interpreter.run(
            [node("start", "start")],
            [edge("start", "ghost")],
        )

        assert outcome.status == ExecutionStatus.FAILED
        assert "ghost" in outcome.error

    @pytest.mark.asyncio
    async def test_unsupported_node_type(self, interpreter):
        outcome = await interpreter.run(
            [node("start", "start"), node("x", "teleport")],
            [edge("start", "x")],
        )

        assert outcome.status == ExecutionStatus.FAILED
        assert "teleport" in outcome.error

    @pytest.mark.asyncio
    async def test_reserved_node_id(self, interpreter):
        outcome = await interpreter.run(
            [node("start", "start"), node(INPUT_KEY, "task")],
            [edge("start", INPUT_KEY)],
        )

        assert outcome.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_sandbox_violation_fails_run(self, interpreter):
        outcome = await interpreter.run(
            [node("start", "start"), node("evil", "script", code="import os"), node("end", "end")],
            [edge("start", "evil"), edge("evil", "end")],
        )

        assert outcome.status == ExecutionStatus.FAILED
        assert "evil" not in outcome.results


class TestCycles:

    @pytest.fixture
    def loop_graph(self):
        return (
            [node("start", "start"), node("a", "task"), node("b", "task")],
            [edge("start", "a"), edge("a", "b"), edge("b", "a")],
        )

    @pytest.mark.asyncio
    async def test_revisit_fails_by_default(self, interpreter, loop_graph):
        outcome = await interpreter.run(*loop_graph)

        assert outcome.status == ExecutionStatus.FAILED
        assert "visited twice" in outcome.error
        assert list(outcome.results) == [INPUT_KEY, "start", "a", "b"]

    @pytest.mark.asyncio
    async def test_revisit_completes_when_configured(self, reporter, loop_graph):
        interpreter = WorkflowInterpreter(
            NodeDispatcher().execute,
            reporter=reporter,
            config=InterpreterConfig(on_revisit="complete"),
        )

        outcome = await interpreter.run(*loop_graph)

        assert outcome.status == ExecutionStatus.COMPLETED
        assert list(outcome.results) == [INPUT_KEY, "start", "a", "b"]


class TestReporting:

    @pytest.mark.asyncio
    async def test_broken_reporter_does_not_change_outcome(self):
        interpreter = WorkflowInterpreter(NodeDispatcher().execute, reporter=BrokenReporter())

        outcome = await interpreter.run([node("s", "start"), node("e", "end")], [edge("s", "e")])

        assert outcome.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_runner_crash_fails_run(self, reporter):
        async def runner(node, context):
            if node.id == "boom":
                raise RuntimeError("activity retries exhausted")
            return {"success": True}

        interpreter = WorkflowInterpreter(runner, reporter=reporter)
        outcome = await interpreter.run(
            [node("s", "start"), node("boom", "task"), node("e", "end")],
            [edge("s", "boom"), edge("boom", "e")],
        )

        assert outcome.status == ExecutionStatus.FAILED
        assert outcome.error == "activity retries exhausted"
        assert list(outcome.results) == [INPUT_KEY, "s"]


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_executions_are_isolated(self, interpreter):
        def graph(delay_ms):
            return (
                [
                    node("start", "start"),
                    node("wait", "delay", milliseconds=delay_ms),
                    node("echo", "script", code="result = tag"),
                    node("end", "end"),
                ],
                [edge("start", "wait"), edge("wait", "echo"), edge("echo", "end")],
            )

        slow, fast = await asyncio.gather(
            interpreter.run(*graph(30), input={"tag": "slow"}, execution_id="slow"),
            interpreter.run(*graph(0), input={"tag": "fast"}, execution_id="fast"),
        )

        assert slow.results["echo"]["result"] == "slow"
        assert fast.results["echo"]["result"] == "fast"
        assert slow.results[INPUT_KEY] == {"tag": "slow"}
