"""In-process orchestration backend."""

import asyncio
from typing import Any, Optional

import structlog

from ..core.config import InterpreterConfig
from ..core.errors import OrchestrationError
from ..core.state import StateManager
from ..engine.interpreter import NodeRunner, WorkflowInterpreter
from ..engine.models import (
    ExecutionOutcome,
    ExecutionStatus,
    RunRequest,
    StatusUpdate,
    WorkflowExecution,
)
from .reporter import ExecutionStatusReporter, RunDescription

logger = structlog.get_logger()


class LocalOrchestrator:
    """
    Runs executions as asyncio tasks inside the worker process.

    Status records live in SQLite through StateManager. There is no durable
    replay: a process restart loses in-flight executions.
    """

    def __init__(
        self,
        state: StateManager,
        node_runner: NodeRunner,
        config: Optional[InterpreterConfig] = None,
    ):
        self.state = state
        self.reporter = ExecutionStatusReporter(self)
        self.interpreter = WorkflowInterpreter(
            node_runner,
            reporter=self.reporter,
            config=config,
        )
        self._tasks: dict[str, asyncio.Task] = {}

    async def start(self, request: RunRequest) -> WorkflowExecution:
        """
        Record the execution as pending and schedule it.

        Raises:
            OrchestrationError: execution id already used
        """
        if not isinstance(request, RunRequest):
            request = RunRequest.model_validate(request)

        await self.state.create_execution(
            request.execution_id,
            request.workflow_id,
            input_data=request.input,
        )
        task = asyncio.create_task(
            self._run(request),
            name=f"execution-{request.execution_id}",
        )
        self._tasks[request.execution_id] = task
        # Finished outcomes are read back from state
        task.add_done_callback(lambda _: self._tasks.pop(request.execution_id, None))
        logger.info(
            "execution_scheduled",
            execution_id=request.execution_id,
            workflow_id=request.workflow_id,
        )

        return WorkflowExecution(
            id=request.execution_id,
            workflow_id=request.workflow_id,
            status=ExecutionStatus.PENDING,
        )

    async def run(self, request: Any) -> ExecutionOutcome:
        """Start an execution and wait for its outcome."""
        execution = await self.start(request)
        return await self.wait(execution.id)

    async def wait(self, execution_id: str) -> ExecutionOutcome:
        """
        Wait for an execution to finish.

        Raises:
            OrchestrationError: unknown or canceled execution
        """
        task = self._tasks.get(execution_id)
        if task is not None:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
                raise OrchestrationError("Execution was canceled", execution_id=execution_id)

        record = await self.state.get_execution(execution_id)
        if record is None:
            raise OrchestrationError(f"Unknown execution: {execution_id}", execution_id=execution_id)
        if record.status == ExecutionStatus.CANCELED.value:
            raise OrchestrationError("Execution was canceled", execution_id=execution_id)
        if not record.is_terminal:
            raise OrchestrationError(
                "Execution is not running in this process",
                execution_id=execution_id,
            )
        return ExecutionOutcome(
            execution_id=record.execution_id,
            workflow_id=record.workflow_id,
            status=ExecutionStatus(record.status),
            results=record.result or {},
            error=record.error,
        )

    async def publish_status(self, update: StatusUpdate) -> None:
        await self.state.update_execution_status(
            update.execution_id,
            update.status.value,
            result=update.result,
            error=update.error,
        )

    async def describe(self, execution_id: str) -> RunDescription:
        record = await self.state.get_execution(execution_id)
        if record is None:
            raise OrchestrationError(f"Unknown execution: {execution_id}", execution_id=execution_id)
        return RunDescription(
            execution_id=execution_id,
            status_name=record.status.upper(),
            workflow_id=record.workflow_id,
        )

    async def result(self, execution_id: str) -> dict[str, Any]:
        """
        Return the outcome of a finished execution.

        Raises:
            OrchestrationError: unknown, canceled or still running
        """
        record = await self.state.get_execution(execution_id)
        if record is None:
            raise OrchestrationError(f"Unknown execution: {execution_id}", execution_id=execution_id)
        if record.status == ExecutionStatus.CANCELED.value:
            raise OrchestrationError("Execution was canceled", execution_id=execution_id)
        if not record.is_terminal:
            raise OrchestrationError("Execution has not finished", execution_id=execution_id)

        outcome: dict[str, Any] = {
            "executionId": record.execution_id,
            "workflowId": record.workflow_id,
            "status": record.status,
            "results": record.result or {},
        }
        if record.error:
            outcome["error"] = record.error
        return outcome

    async def cancel(self, execution_id: str) -> bool:
        task = self._tasks.get(execution_id)
        if task is None or task.done():
            return False
        if not task.cancel():
            return False

        # A task canceled before its first step never reaches _run's handler
        await self.state.update_execution_status(execution_id, ExecutionStatus.CANCELED.value)
        logger.info("execution_cancel_requested", execution_id=execution_id)
        return True

    async def get_status(self, execution_id: str):
        return await self.reporter.get_status(execution_id)

    async def close(self) -> None:
        """Cancel outstanding executions."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run(self, request: RunRequest) -> ExecutionOutcome:
        try:
            return await self.interpreter.run_request(request)
        except asyncio.CancelledError:
            logger.info("execution_canceled", execution_id=request.execution_id)
            await self.state.update_execution_status(
                request.execution_id,
                ExecutionStatus.CANCELED.value,
            )
            raise
