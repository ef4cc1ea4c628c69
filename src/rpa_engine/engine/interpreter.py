"""Workflow graph interpreter."""

import time
import uuid
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

import structlog

from ..core.config import InterpreterConfig
from ..core.errors import (
    CycleDetectedError,
    FatalExecutionError,
    GraphStructureError,
    NoOutgoingEdgeError,
    UnmatchedDecisionError,
    UnresolvedTargetError,
)
from .conditions import ConditionEvaluator
from .models import (
    INPUT_KEY,
    ExecutionOutcome,
    ExecutionStatus,
    NodeType,
    RunRequest,
    WorkflowEdge,
    parse_edge,
    parse_node,
)

logger = structlog.get_logger()


# (node, context) -> NodeExecutionResult
NodeRunner = Callable[[Any, dict[str, Any]], Awaitable[dict[str, Any]]]


class StatusPublisher(Protocol):
    """Receives execution lifecycle transitions."""

    async def report_started(self, execution_id: str) -> None: ...

    async def report_completed(self, execution_id: str, results: dict[str, Any]) -> None: ...

    async def report_failed(
        self,
        execution_id: str,
        error: str,
        partial_results: dict[str, Any],
    ) -> None: ...


class WorkflowInterpreter:
    """
    Walks a workflow graph from its start node to an end node.

    Features:
    - Strictly sequential node execution
    - Decision branching through edge conditions
    - Result accumulation keyed by node id
    - Partial results kept on failure

    The interpreter holds no per-execution state between calls, so one
    instance can serve many concurrent executions.
    """

    def __init__(
        self,
        node_runner: NodeRunner,
        reporter: Optional[StatusPublisher] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        config: Optional[InterpreterConfig] = None,
    ):
        """
        Args:
            node_runner: Executes a single node (normally NodeDispatcher.execute)
            reporter: Lifecycle sink, skipped when None
            evaluator: Decision-edge evaluator
            config: Traversal settings
        """
        self.node_runner = node_runner
        self.reporter = reporter
        self.evaluator = evaluator or ConditionEvaluator()
        self.config = config or InterpreterConfig()

    async def run_request(self, request: Any) -> ExecutionOutcome:
        """Run a RunRequest (model or wire dict)."""
        if not isinstance(request, RunRequest):
            request = RunRequest.model_validate(request)
        return await self.run(
            request.nodes,
            request.edges,
            request.input,
            execution_id=request.execution_id,
            workflow_id=request.workflow_id,
        )

    async def run(
        self,
        nodes: Iterable[Any],
        edges: Iterable[Any],
        input: Optional[dict[str, Any]] = None,
        execution_id: Optional[str] = None,
        workflow_id: str = "",
    ) -> ExecutionOutcome:
        """
        Execute a workflow graph.

        Args:
            nodes: Node models or raw node records
            edges: Edge models or raw edge records
            input: Caller input, visible to every node and condition
            execution_id: Execution identifier (generated when omitted)
            workflow_id: Workflow identifier, echoed in the outcome

        Returns:
            ExecutionOutcome with status COMPLETED or FAILED
        """
        execution_id = execution_id or str(uuid.uuid4())
        input_data = dict(input or {})
        results: dict[str, Any] = {INPUT_KEY: input_data}
        log = logger.bind(execution_id=execution_id, workflow_id=workflow_id)
        start_time = time.monotonic()

        await self._publish("report_started", execution_id)
        log.info("execution_started")

        try:
            await self._walk(list(nodes), list(edges), input_data, results, log)
        except FatalExecutionError as e:
            e.context["execution_id"] = execution_id
            log.error(
                "execution_failed",
                error=e.message,
                error_type=type(e).__name__,
                node_id=e.context.get("node_id"),
                visited=len(results) - 1,
            )
            return await self._failed(execution_id, workflow_id, e.message, results)
        except Exception as e:
            # Node runner infrastructure failure (e.g. activity retries exhausted)
            log.exception("execution_failed", error=str(e), error_type=type(e).__name__)
            return await self._failed(execution_id, workflow_id, str(e), results)

        log.info(
            "execution_completed",
            visited=len(results) - 1,
            duration_ms=round((time.monotonic() - start_time) * 1000, 1),
        )
        await self._publish("report_completed", execution_id, results)
        return ExecutionOutcome(
            execution_id=execution_id,
            workflow_id=workflow_id,
            status=ExecutionStatus.COMPLETED,
            results=results,
        )

    async def _walk(
        self,
        raw_nodes: list[Any],
        raw_edges: list[Any],
        input_data: dict[str, Any],
        results: dict[str, Any],
        log,
    ) -> None:
        nodes = [parse_node(n) for n in raw_nodes]
        edges = [parse_edge(e) for e in raw_edges]

        node_index: dict[str, Any] = {}
        for node in nodes:
            if node.id == INPUT_KEY:
                raise GraphStructureError(
                    f"Node id '{INPUT_KEY}' is reserved for the execution input",
                    node_id=node.id,
                )
            if node.id in node_index:
                raise GraphStructureError(f"Duplicate node id: {node.id}", node_id=node.id)
            node_index[node.id] = node

        outgoing: dict[str, list[WorkflowEdge]] = {}
        for edge in edges:
            outgoing.setdefault(edge.source, []).append(edge)

        starts = [node for node in nodes if node.type == NodeType.START]
        if not starts:
            raise GraphStructureError("Workflow has no start node")
        if len(starts) > 1:
            log.warning(
                "multiple_start_nodes",
                start_ids=[n.id for n in starts],
                using=starts[0].id,
            )

        visited: set[str] = set()
        current = starts[0]

        while current is not None and current.id not in visited:
            visited.add(current.id)

            context = {**input_data, **results}
            log.debug("node_started", node_id=current.id, node_type=current.type)
            result = await self.node_runner(current, context)
            results[current.id] = result
            log.info(
                "node_completed",
                node_id=current.id,
                node_type=current.type,
                success=result.get("success") if isinstance(result, dict) else None,
            )

            if current.type == NodeType.END:
                return

            next_id = self._next_node_id(current, outgoing.get(current.id, []), {**input_data, **results})

            next_node = node_index.get(next_id)
            if next_node is None:
                raise UnresolvedTargetError(
                    f"Edge from {current.id} points to unknown node {next_id}",
                    target_id=next_id,
                    node_id=current.id,
                )

            if next_node.id in visited:
                if self.config.on_revisit == "fail":
                    raise CycleDetectedError(
                        f"Node {next_node.id} would be visited twice (from {current.id})",
                        node_id=next_node.id,
                    )
                log.warning("node_revisit_stops_execution", node_id=next_node.id)

            current = next_node

    def _next_node_id(
        self,
        node: Any,
        edges: list[WorkflowEdge],
        context: dict[str, Any],
    ) -> str:
        if node.type == NodeType.DECISION:
            edge = self.evaluator.select_edge(edges, context)
            if edge is None:
                raise UnmatchedDecisionError(
                    f"Decision node {node.id} has no matching condition",
                    node_id=node.id,
                )
            return edge.target

        if not edges:
            raise NoOutgoingEdgeError(f"Node {node.id} has no next node", node_id=node.id)
        return edges[0].target

    async def _failed(
        self,
        execution_id: str,
        workflow_id: str,
        error: str,
        results: dict[str, Any],
    ) -> ExecutionOutcome:
        await self._publish("report_failed", execution_id, error, results)
        return ExecutionOutcome(
            execution_id=execution_id,
            workflow_id=workflow_id,
            status=ExecutionStatus.FAILED,
            results=results,
            error=error,
        )

    async def _publish(self, method: str, *args: Any) -> None:
        """Push a lifecycle transition; sink failures never change the outcome."""
        if self.reporter is None:
            return
        try:
            await getattr(self.reporter, method)(*args)
        except Exception as e:
            logger.warning("status_report_failed", method=method, error=str(e))
