"""Execution record storage using SQLite."""

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Optional
from dataclasses import dataclass

import aiosqlite

from .errors import OrchestrationError


TERMINAL_STATUSES = ("completed", "failed", "canceled")


@dataclass
class ExecutionRecord:
    """Stored execution record."""
    execution_id: str
    workflow_id: str
    status: str
    start_time: float
    end_time: Optional[float]
    input_json: str
    result_json: Optional[str]
    error: Optional[str]

    @property
    def result(self) -> Optional[Any]:
        return json.loads(self.result_json) if self.result_json else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class StateManager:
    """Keeps workflow execution records in SQLite for the local backend."""

    def __init__(self, db_path: str = "./data/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database and create tables."""
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row

        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                start_time REAL NOT NULL,
                end_time REAL,
                input_json TEXT,
                result_json TEXT,
                error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status);
            CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions(workflow_id);
        """)
        await self._db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def create_execution(
        self,
        execution_id: str,
        workflow_id: str,
        input_data: Optional[dict] = None,
    ) -> ExecutionRecord:
        """
        Create a new pending execution record.

        Raises:
            OrchestrationError: an execution with this id already exists
        """
        async with self._lock:
            now = time.time()
            try:
                await self._db.execute("""
                    INSERT INTO executions
                    (execution_id, workflow_id, status, start_time, input_json)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    execution_id,
                    workflow_id,
                    "pending",
                    now,
                    json.dumps(input_data or {}),
                ))
            except aiosqlite.IntegrityError:
                raise OrchestrationError(
                    f"Execution already exists: {execution_id}",
                    execution_id=execution_id,
                    retryable=False,
                )
            await self._db.commit()

            return ExecutionRecord(
                execution_id=execution_id,
                workflow_id=workflow_id,
                status="pending",
                start_time=now,
                end_time=None,
                input_json=json.dumps(input_data or {}),
                result_json=None,
                error=None,
            )

    async def update_execution_status(
        self,
        execution_id: str,
        status: str,
        result: Optional[Any] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Update execution status.

        Terminal records are never moved back to a non-terminal status.
        """
        async with self._lock:
            cursor = await self._db.execute(
                "SELECT status FROM executions WHERE execution_id = ?",
                (execution_id,)
            )
            row = await cursor.fetchone()
            if not row:
                raise OrchestrationError(
                    f"Unknown execution: {execution_id}",
                    execution_id=execution_id,
                    retryable=False,
                )
            if row["status"] in TERMINAL_STATUSES:
                return

            updates = ["status = ?"]
            params: list[Any] = [status]

            if status in TERMINAL_STATUSES:
                updates.append("end_time = ?")
                params.append(time.time())

            if result is not None:
                updates.append("result_json = ?")
                params.append(json.dumps(result, default=str))

            if error is not None:
                updates.append("error = ?")
                params.append(error)

            params.append(execution_id)
            await self._db.execute(
                f"UPDATE executions SET {', '.join(updates)} WHERE execution_id = ?",
                params
            )
            await self._db.commit()

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        """Get execution by ID."""
        cursor = await self._db.execute(
            "SELECT * FROM executions WHERE execution_id = ?",
            (execution_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return self._row_to_execution(row)

    async def get_running_executions(self) -> list[ExecutionRecord]:
        """Get all currently running executions."""
        cursor = await self._db.execute(
            "SELECT * FROM executions WHERE status = ? ORDER BY start_time ASC",
            ("running",)
        )
        rows = await cursor.fetchall()
        return [self._row_to_execution(row) for row in rows]

    def _row_to_execution(self, row) -> ExecutionRecord:
        return ExecutionRecord(
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            status=row["status"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            input_json=row["input_json"],
            result_json=row["result_json"],
            error=row["error"],
        )
