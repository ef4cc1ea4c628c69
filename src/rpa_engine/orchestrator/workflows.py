"""
Durable workflow definition for the Temporal backend.

Replayed inside the Temporal sandbox: every side effect (node execution,
status publishing) goes through an activity, and engine modules are passed
through rather than re-imported per run.
"""

from datetime import timedelta
from typing import Any

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError, ApplicationError

with workflow.unsafe.imports_passed_through():
    from ..core.config import InterpreterConfig
    from ..core.errors import FatalExecutionError
    from ..engine.interpreter import WorkflowInterpreter
    from ..engine.models import ExecutionStatus, StatusUpdate


WORKFLOW_NAME = "executeRPAWorkflow"
EXECUTE_NODE_ACTIVITY = "execute_node"
REPORT_STATUS_ACTIVITY = "report_status"


class _ActivitySettings:
    """Activity timeout and retry policy carried in the workflow argument."""

    def __init__(self, settings: dict[str, Any]):
        self.timeout = timedelta(seconds=settings.get("activityTimeoutSeconds", 600))
        self.retry_policy = RetryPolicy(maximum_attempts=settings.get("activityMaxAttempts", 3))


class _ActivityStatusPublisher:
    """StatusPublisher that records each transition through an activity."""

    def __init__(self, settings: _ActivitySettings):
        self.settings = settings

    async def report_started(self, execution_id: str) -> None:
        await self._send(StatusUpdate(execution_id=execution_id, status=ExecutionStatus.RUNNING))

    async def report_completed(self, execution_id: str, results: dict[str, Any]) -> None:
        await self._send(StatusUpdate(
            execution_id=execution_id,
            status=ExecutionStatus.COMPLETED,
            result=results,
        ))

    async def report_failed(self, execution_id: str, error: str, partial_results: dict[str, Any]) -> None:
        await self._send(StatusUpdate(
            execution_id=execution_id,
            status=ExecutionStatus.FAILED,
            result=partial_results,
            error=error,
        ))

    async def _send(self, update: StatusUpdate) -> None:
        await workflow.execute_activity(
            REPORT_STATUS_ACTIVITY,
            update.to_wire(),
            start_to_close_timeout=self.settings.timeout,
            retry_policy=self.settings.retry_policy,
        )


@workflow.defn(name=WORKFLOW_NAME)
class RpaWorkflow:
    """Interprets a workflow graph, one activity per node."""

    @workflow.run
    async def run(self, request: dict[str, Any]) -> dict[str, Any]:
        settings = _ActivitySettings(request.get("settings") or {})
        interpreter = WorkflowInterpreter(
            self._node_runner(settings),
            reporter=_ActivityStatusPublisher(settings),
            config=InterpreterConfig(**(request.get("engine") or {})),
        )
        outcome = await interpreter.run_request(request)
        return outcome.to_wire()

    @staticmethod
    def _node_runner(settings: _ActivitySettings):
        async def execute_node(node: Any, context: dict[str, Any]) -> dict[str, Any]:
            try:
                return await workflow.execute_activity(
                    EXECUTE_NODE_ACTIVITY,
                    args=[node.to_wire(), context],
                    start_to_close_timeout=settings.timeout,
                    retry_policy=settings.retry_policy,
                )
            except ActivityError as e:
                cause = e.cause
                message = cause.message if isinstance(cause, ApplicationError) else str(cause or e)
                raise FatalExecutionError(message, node_id=node.id)

        return execute_node
