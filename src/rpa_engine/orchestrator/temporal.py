"""
Temporal orchestration backend.

Client side: starts, describes, awaits and cancels runs of the
executeRPAWorkflow workflow. Worker side: hosts the workflow plus the
execute_node and report_status activities on the task queue.
"""

import asyncio
from typing import Any, Optional

import structlog
from temporalio import activity
from temporalio.client import Client, WorkflowFailureError
from temporalio.exceptions import ApplicationError
from temporalio.service import RPCError
from temporalio.worker import Worker

from ..core.config import EngineConfig, InterpreterConfig, OrchestrationConfig
from ..core.errors import FatalExecutionError, OrchestrationError
from ..engine.dispatcher import NodeDispatcher
from ..engine.models import (
    ExecutionStatus,
    RunRequest,
    StatusUpdate,
    WorkflowExecution,
    parse_node,
)
from .reporter import RunDescription
from .workflows import EXECUTE_NODE_ACTIVITY, REPORT_STATUS_ACTIVITY, WORKFLOW_NAME, RpaWorkflow

logger = structlog.get_logger()


async def connect_client(config: OrchestrationConfig) -> Client:
    logger.info(
        "temporal_connecting",
        address=config.temporal_address,
        namespace=config.namespace,
    )
    return await Client.connect(config.temporal_address, namespace=config.namespace)


class TemporalBackend:
    """OrchestrationBackend backed by a Temporal cluster."""

    def __init__(
        self,
        client: Client,
        config: Optional[OrchestrationConfig] = None,
        engine_config: Optional[InterpreterConfig] = None,
    ):
        self.client = client
        self.config = config or OrchestrationConfig()
        self.engine_config = engine_config or InterpreterConfig()

    @classmethod
    async def connect(cls, config: EngineConfig) -> "TemporalBackend":
        client = await connect_client(config.orchestration)
        return cls(client, config.orchestration, config.engine)

    def workflow_id(self, execution_id: str) -> str:
        return f"{self.config.workflow_id_prefix}{execution_id}"

    def build_argument(self, request: RunRequest) -> dict[str, Any]:
        """Workflow argument: the run request plus settings the replay must see."""
        argument = request.to_wire()
        argument["engine"] = self.engine_config.model_dump()
        argument["settings"] = {
            "activityTimeoutSeconds": self.config.activity_timeout_seconds,
            "activityMaxAttempts": self.config.activity_max_attempts,
        }
        return argument

    async def start(self, request: RunRequest) -> WorkflowExecution:
        if not isinstance(request, RunRequest):
            request = RunRequest.model_validate(request)

        workflow_id = self.workflow_id(request.execution_id)
        try:
            await self.client.start_workflow(
                WORKFLOW_NAME,
                self.build_argument(request),
                id=workflow_id,
                task_queue=self.config.task_queue,
            )
        except RPCError as e:
            raise OrchestrationError(
                f"Failed to start workflow: {e}",
                execution_id=request.execution_id,
            )

        logger.info(
            "workflow_started",
            execution_id=request.execution_id,
            temporal_workflow_id=workflow_id,
            task_queue=self.config.task_queue,
        )
        return WorkflowExecution(
            id=request.execution_id,
            workflow_id=request.workflow_id,
            status=ExecutionStatus.PENDING,
        )

    async def publish_status(self, update: StatusUpdate) -> None:
        # Run state is persisted by Temporal itself
        logger.info(
            "execution_status",
            execution_id=update.execution_id,
            status=update.status.value,
            error=update.error,
        )

    async def describe(self, execution_id: str) -> RunDescription:
        handle = self.client.get_workflow_handle(self.workflow_id(execution_id))
        try:
            description = await handle.describe()
        except RPCError as e:
            raise OrchestrationError(f"Failed to describe workflow: {e}", execution_id=execution_id)

        return RunDescription(
            execution_id=execution_id,
            status_name=description.status.name if description.status is not None else "PENDING",
        )

    async def result(self, execution_id: str) -> Any:
        handle = self.client.get_workflow_handle(self.workflow_id(execution_id))
        try:
            return await handle.result()
        except WorkflowFailureError as e:
            cause = e.cause
            raise OrchestrationError(
                getattr(cause, "message", None) or str(cause or e),
                execution_id=execution_id,
            )

    async def cancel(self, execution_id: str) -> bool:
        handle = self.client.get_workflow_handle(self.workflow_id(execution_id))
        try:
            await handle.cancel()
        except RPCError as e:
            logger.warning("workflow_cancel_rejected", execution_id=execution_id, error=str(e))
            return False
        return True


class RpaActivities:
    """Activities executed on the worker on behalf of RpaWorkflow."""

    def __init__(self, dispatcher: NodeDispatcher):
        self.dispatcher = dispatcher

    @activity.defn(name=EXECUTE_NODE_ACTIVITY)
    async def execute_node(self, node: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self.dispatcher.execute(parse_node(node), context)
        except FatalExecutionError as e:
            # Retrying would fail the same way
            raise ApplicationError(e.message, type=type(e).__name__, non_retryable=True)

    @activity.defn(name=REPORT_STATUS_ACTIVITY)
    async def report_status(self, update: dict[str, Any]) -> None:
        status = StatusUpdate.model_validate(update)
        logger.info(
            "execution_status",
            execution_id=status.execution_id,
            status=status.status.value,
            error=status.error,
        )


async def run_worker(
    config: EngineConfig,
    dispatcher: NodeDispatcher,
    shutdown_event: asyncio.Event,
    client: Optional[Client] = None,
) -> None:
    """Poll the task queue until ``shutdown_event`` is set."""
    client = client or await connect_client(config.orchestration)
    activities = RpaActivities(dispatcher)

    worker = Worker(
        client,
        task_queue=config.orchestration.task_queue,
        workflows=[RpaWorkflow],
        activities=[activities.execute_node, activities.report_status],
    )

    logger.info("temporal_worker_started", task_queue=config.orchestration.task_queue)
    async with worker:
        await shutdown_event.wait()
    logger.info("temporal_worker_stopped")
