"""Execution status reporting against an orchestration backend."""

from dataclasses import dataclass
from typing import Any, Optional, Protocol

import structlog

from ..engine.models import ExecutionStatus, ExecutionStatusInfo, RunRequest, StatusUpdate, WorkflowExecution

logger = structlog.get_logger()


@dataclass
class RunDescription:
    """A run as the orchestration substrate describes it."""
    execution_id: str
    status_name: str
    workflow_id: Optional[str] = None


class OrchestrationBackend(Protocol):
    """The narrow contract the engine needs from an orchestration substrate."""

    async def start(self, request: RunRequest) -> WorkflowExecution: ...

    async def publish_status(self, update: StatusUpdate) -> None: ...

    async def describe(self, execution_id: str) -> RunDescription: ...

    async def result(self, execution_id: str) -> Any: ...

    async def cancel(self, execution_id: str) -> bool: ...


# Substrate status names -> engine lifecycle
STATUS_MAP: dict[str, ExecutionStatus] = {
    "PENDING": ExecutionStatus.PENDING,
    "RUNNING": ExecutionStatus.RUNNING,
    "CONTINUED_AS_NEW": ExecutionStatus.RUNNING,
    "COMPLETED": ExecutionStatus.COMPLETED,
    "FAILED": ExecutionStatus.FAILED,
    "TIMED_OUT": ExecutionStatus.FAILED,
    "TERMINATED": ExecutionStatus.FAILED,
    "CANCELED": ExecutionStatus.CANCELED,
    "CANCELLED": ExecutionStatus.CANCELED,
}


def map_status(status_name: Optional[str]) -> ExecutionStatus:
    """Map a substrate status name onto ExecutionStatus (unknown -> PENDING)."""
    if not status_name:
        return ExecutionStatus.PENDING
    return STATUS_MAP.get(status_name.upper(), ExecutionStatus.PENDING)


class ExecutionStatusReporter:
    """
    Publishes lifecycle transitions and answers status/cancel queries.

    Publishing is fire-and-forget: a failing sink is logged and never
    affects the execution that reported.
    """

    def __init__(self, backend: OrchestrationBackend):
        self.backend = backend

    async def report_started(self, execution_id: str) -> None:
        await self._publish(StatusUpdate(execution_id=execution_id, status=ExecutionStatus.RUNNING))

    async def report_completed(self, execution_id: str, results: dict[str, Any]) -> None:
        await self._publish(StatusUpdate(
            execution_id=execution_id,
            status=ExecutionStatus.COMPLETED,
            result=results,
        ))

    async def report_failed(
        self,
        execution_id: str,
        error: str,
        partial_results: dict[str, Any],
    ) -> None:
        await self._publish(StatusUpdate(
            execution_id=execution_id,
            status=ExecutionStatus.FAILED,
            result=partial_results,
            error=error,
        ))

    async def get_status(self, execution_id: str) -> ExecutionStatusInfo:
        """
        Read the substrate's view of a run.

        Terminal runs also carry their return value (completed) or captured
        error (failed). A run the substrate considers completed but whose
        outcome says it failed is reported as failed.
        """
        description = await self.backend.describe(execution_id)
        status = map_status(description.status_name)
        result: Any = None
        error: Optional[str] = None

        if status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED):
            try:
                result = await self.backend.result(execution_id)
            except Exception as e:
                status = ExecutionStatus.FAILED
                error = str(e)
            else:
                if isinstance(result, dict) and result.get("status") == ExecutionStatus.FAILED.value:
                    status = ExecutionStatus.FAILED
                    error = result.get("error")

        return ExecutionStatusInfo(
            execution_id=execution_id,
            status=status,
            result=result,
            error=error,
        )

    async def cancel(self, execution_id: str) -> bool:
        """
        Request cooperative cancellation.

        Returns whether the request was accepted, not whether the run stopped.
        """
        try:
            accepted = await self.backend.cancel(execution_id)
        except Exception as e:
            logger.error("execution_cancel_failed", execution_id=execution_id, error=str(e))
            return False

        logger.info("execution_cancel_requested", execution_id=execution_id, accepted=accepted)
        return accepted

    async def _publish(self, update: StatusUpdate) -> None:
        try:
            await self.backend.publish_status(update)
        except Exception as e:
            logger.warning(
                "status_publish_failed",
                execution_id=update.execution_id,
                status=update.status.value,
                error=str(e),
            )
