"""
Main entry point for the RPA engine worker.

Starts the browser session manager, node dispatcher, orchestration backend,
health server and signal handlers. ``rpa-engine run <file>`` executes a single
workflow definition in-process and prints the outcome.
"""

import argparse
import asyncio
import json
import os
import signal
import sys
import uuid
from pathlib import Path
from typing import Any, Optional

import structlog
from aiohttp import web
from dotenv import load_dotenv

from .browser import BrowserSessionManager
from .core.config import ConfigLoader, EngineConfig
from .core.errors import ConfigError, FrameworkError
from .core.log_config import configure_logging
from .core.state import StateManager
from .engine.dispatcher import NodeDispatcher
from .engine.models import ExecutionOutcome, ExecutionStatus, RunRequest, Workflow
from .orchestrator.local import LocalOrchestrator

logger = structlog.get_logger()


class HealthServer:
    """Simple HTTP health check server."""

    def __init__(self, application: "Application", port: int = 8080):
        self.application = application
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/ready", self._ready_handler)
        app.router.add_get("/status", self._status_handler)

        self._runner = web.AppRunner(app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await site.start()

        logger.info("health_server_started", port=self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            logger.info("health_server_stopped")

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Basic health check - is the process alive."""
        return web.json_response({"status": "healthy"})

    async def _ready_handler(self, request: web.Request) -> web.Response:
        """Readiness check - is the worker accepting executions."""
        if self.application.ready:
            return web.json_response({"status": "ready"})
        return web.json_response({"status": "not_ready"}, status=503)

    async def _status_handler(self, request: web.Request) -> web.Response:
        return web.json_response(await self.application.get_status())


class Application:
    """Main application container."""

    def __init__(self, config: EngineConfig):
        self.config = config
        self.browser: Optional[BrowserSessionManager] = None
        self.dispatcher: Optional[NodeDispatcher] = None
        self.state_manager: Optional[StateManager] = None
        self.orchestrator: Optional[LocalOrchestrator] = None
        self.health_server: Optional[HealthServer] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    @property
    def ready(self) -> bool:
        if self._worker_task is not None:
            return not self._worker_task.done()
        return self.orchestrator is not None

    async def start(self) -> None:
        """Start all components."""
        logger.info(
            "application_starting",
            backend=self.config.orchestration.backend,
            config_hash=self.config.config_hash(),
        )

        # Browser is launched lazily on the first browser action
        self.browser = BrowserSessionManager(self.config.browser)
        self.dispatcher = NodeDispatcher(
            browser=self.browser,
            api_config=self.config.api,
            engine_config=self.config.engine,
        )

        if self.config.orchestration.backend == "temporal":
            from .orchestrator.temporal import run_worker

            self._worker_task = asyncio.create_task(
                run_worker(self.config, self.dispatcher, self._shutdown_event),
                name="temporal-worker",
            )
            self._worker_task.add_done_callback(self._on_worker_done)
        else:
            self.state_manager = StateManager(self.config.orchestration.state_db_path)
            await self.state_manager.initialize()
            self.orchestrator = LocalOrchestrator(
                self.state_manager,
                self.dispatcher.execute,
                config=self.config.engine,
            )

        self.health_server = HealthServer(self, port=self.config.health_port)
        await self.health_server.start()

        logger.info("application_started")

    async def stop(self) -> None:
        """Stop all components."""
        logger.info("application_stopping")

        self._shutdown_event.set()
        if self._worker_task is not None:
            try:
                await self._worker_task
            except Exception:
                logger.exception("temporal_worker_error")

        if self.orchestrator:
            await self.orchestrator.close()

        if self.browser:
            await self.browser.shutdown()

        if self.health_server:
            await self.health_server.stop()

        if self.state_manager:
            await self.state_manager.close()

        logger.info("application_stopped")

    async def run(self) -> None:
        """Run until shutdown signal."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def get_status(self) -> dict[str, Any]:
        status: dict[str, Any] = {
            "name": self.config.name,
            "version": self.config.version,
            "backend": self.config.orchestration.backend,
            "ready": self.ready,
        }
        if self.browser:
            status["browser"] = await self.browser.get_status()
        if self.state_manager:
            running = await self.state_manager.get_running_executions()
            status["running_executions"] = [r.execution_id for r in running]
        return status

    def _on_worker_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or self._shutdown_event.is_set():
            return
        if task.exception() is not None:
            logger.error("temporal_worker_failed", error=str(task.exception()))
        self.request_shutdown()


def load_config(path: Optional[str] = None) -> EngineConfig:
    """Load engine config from ``path`` / CONFIG_PATH, falling back to defaults."""
    config_path = Path(path or os.getenv("CONFIG_PATH", "./config/engine.yaml"))

    if config_path.exists():
        config = ConfigLoader(str(config_path.parent)).load_engine_config(str(config_path))
    elif path:
        raise ConfigError(f"Config file not found: {config_path}", config_path=str(config_path))
    else:
        config = EngineConfig()

    return config.apply_env_overrides()


def select_workflow(workflows: list[Workflow], workflow_id: Optional[str]) -> Workflow:
    if not workflows:
        raise ConfigError("No workflow definitions found")
    if workflow_id is None:
        return workflows[0]
    for workflow in workflows:
        if workflow.id == workflow_id:
            return workflow
    raise ConfigError(f"Workflow not found: {workflow_id}")


async def run_workflow_file(
    path: str,
    input_data: dict[str, Any],
    config: EngineConfig,
    workflow_id: Optional[str] = None,
) -> ExecutionOutcome:
    """Run one workflow definition with the in-process backend."""
    workflows = ConfigLoader().load_workflow_file(Path(path))
    workflow = select_workflow(workflows, workflow_id)

    for warning in workflow.validate_graph():
        logger.warning("workflow_graph_warning", workflow_id=workflow.id, warning=warning)

    browser = BrowserSessionManager(config.browser)
    dispatcher = NodeDispatcher(browser=browser, api_config=config.api, engine_config=config.engine)
    state_manager = StateManager(":memory:")
    await state_manager.initialize()

    orchestrator = LocalOrchestrator(state_manager, dispatcher.execute, config=config.engine)
    request = RunRequest(
        workflow_id=workflow.id,
        execution_id=str(uuid.uuid4()),
        nodes=[node.to_wire() for node in workflow.nodes],
        edges=[edge.to_wire() for edge in workflow.edges],
        input=input_data,
    )

    try:
        return await orchestrator.run(request)
    finally:
        await orchestrator.close()
        await browser.shutdown()
        await state_manager.close()


async def serve(config: EngineConfig) -> None:
    """Run the worker until SIGINT/SIGTERM."""
    app = Application(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        app.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
        await app.run()
    finally:
        await app.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rpa-engine", description="RPA workflow engine worker")
    parser.add_argument("--config", help="Engine config file (defaults to CONFIG_PATH)")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("worker", help="Run the worker (default)")

    run_parser = subparsers.add_parser("run", help="Run a workflow definition once")
    run_parser.add_argument("workflow_file", help="YAML or JSON workflow definition")
    run_parser.add_argument("--input", default="{}", help="Execution input as a JSON object")
    run_parser.add_argument("--workflow-id", help="Workflow to run when the file holds several")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(config.logging.level, config.logging.format)

    if args.command == "run":
        try:
            input_data = json.loads(args.input)
        except json.JSONDecodeError as e:
            print(f"Invalid --input JSON: {e}", file=sys.stderr)
            return 2
        if not isinstance(input_data, dict):
            print("--input must be a JSON object", file=sys.stderr)
            return 2

        try:
            outcome = asyncio.run(
                run_workflow_file(args.workflow_file, input_data, config, args.workflow_id)
            )
        except FrameworkError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2

        print(json.dumps(outcome.to_wire(), indent=2, default=str))
        return 0 if outcome.status == ExecutionStatus.COMPLETED else 1

    try:
        asyncio.run(serve(config))
    except Exception:
        logger.exception("application_error")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
