"""Node type to action dispatch."""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from ..core.config import ApiConfig, InterpreterConfig
from ..core.errors import FatalExecutionError, UnsupportedNodeTypeError
from .models import (
    ApiCallNode,
    BrowserActionNode,
    DelayNode,
    NodeType,
    ScriptNode,
)
from .sandbox import ScriptSandbox

logger = structlog.get_logger()


# Type alias for node handlers: (node, context) -> NodeExecutionResult
NodeHandler = Callable[[Any, dict[str, Any]], Awaitable[dict[str, Any]]]


def _type_key(node_type: Any) -> str:
    return node_type.value if isinstance(node_type, NodeType) else str(node_type)


class NodeDispatcher:
    """
    Maps node types to their handlers.

    START/END/TASK/DECISION are markers, BROWSER_ACTION goes to the browser
    session manager, DELAY/API_CALL/SCRIPT run inline. Handlers return a
    structured result dict; only fatal engine errors propagate.
    """

    def __init__(
        self,
        browser: Optional[Any] = None,
        api_config: Optional[ApiConfig] = None,
        engine_config: Optional[InterpreterConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sandbox: Optional[ScriptSandbox] = None,
    ):
        """
        Args:
            browser: Object exposing ``async perform_action(spec) -> dict``
            api_config: Outbound HTTP settings
            engine_config: Interpreter settings (default delay, script time limit)
            http_client: Shared client, mainly for tests (MockTransport)
            sandbox: Script sandbox
        """
        self.browser = browser
        self.api_config = api_config or ApiConfig()
        self.engine_config = engine_config or InterpreterConfig()
        self.sandbox = sandbox or ScriptSandbox(timeout_seconds=self.engine_config.script_timeout_seconds)
        self._http_client = http_client
        self._handlers: dict[str, NodeHandler] = {}
        self._register_builtin_handlers()

    def register(self, node_type: str, handler: NodeHandler) -> None:
        """Register or replace the handler for a node type."""
        self._handlers[_type_key(node_type)] = handler

    def unregister(self, node_type: str) -> None:
        self._handlers.pop(_type_key(node_type), None)

    def get_handler(self, node_type: str) -> Optional[NodeHandler]:
        return self._handlers.get(_type_key(node_type))

    async def execute(self, node: Any, context: dict[str, Any]) -> dict[str, Any]:
        """
        Execute one node.

        Raises:
            UnsupportedNodeTypeError: no handler for the node's type
            FatalExecutionError: handler hit an engine-level failure
        """
        handler = self.get_handler(node.type)
        if handler is None:
            raise UnsupportedNodeTypeError(
                f"Unsupported node type: {node.type}",
                node_type=str(node.type),
                node_id=node.id,
            )

        logger.debug("node_dispatch", node_id=node.id, node_type=node.type)

        try:
            return await handler(node, context)
        except FatalExecutionError:
            raise
        except Exception as e:
            logger.warning("node_handler_error", node_id=node.id, error=str(e))
            return {"success": False, "error": str(e)}

    def _register_builtin_handlers(self) -> None:
        self.register(NodeType.START, self._handle_start)
        self.register(NodeType.END, self._handle_end)
        self.register(NodeType.TASK, self._handle_marker)
        self.register(NodeType.DECISION, self._handle_marker)
        self.register(NodeType.BROWSER_ACTION, self._handle_browser_action)
        self.register(NodeType.DELAY, self._handle_delay)
        self.register(NodeType.API_CALL, self._handle_api_call)
        self.register(NodeType.SCRIPT, self._handle_script)

    async def _handle_start(self, node: Any, context: dict[str, Any]) -> dict[str, Any]:
        return {"success": True, "message": "workflow started"}

    async def _handle_end(self, node: Any, context: dict[str, Any]) -> dict[str, Any]:
        return {"success": True, "message": "workflow finished"}

    async def _handle_marker(self, node: Any, context: dict[str, Any]) -> dict[str, Any]:
        # Decision branching happens in the interpreter
        return {"success": True, "nodeId": node.id}

    async def _handle_browser_action(
        self,
        node: BrowserActionNode,
        context: dict[str, Any],
    ) -> dict[str, Any]:
        if self.browser is None:
            return {"success": False, "error": "Browser automation is not configured"}
        return await self.browser.perform_action(node.to_action_spec())

    async def _handle_delay(self, node: DelayNode, context: dict[str, Any]) -> dict[str, Any]:
        """Suspend only this execution; other tasks keep running."""
        milliseconds = node.milliseconds
        if milliseconds is None:
            milliseconds = self.engine_config.default_delay_ms

        await asyncio.sleep(milliseconds / 1000)
        return {"success": True, "delayedMs": milliseconds, "message": f"delayed {milliseconds}ms"}

    async def _handle_api_call(self, node: ApiCallNode, context: dict[str, Any]) -> dict[str, Any]:
        """
        Issue one HTTP request. Retries belong to the orchestration substrate.

        Output:
            status: HTTP status code
            data: Decoded JSON body (None for an empty body)
        """
        headers = {**self.api_config.default_headers, **node.headers}
        content = None
        if node.body is not None:
            content = node.body if isinstance(node.body, str) else json.dumps(node.body)

        try:
            if self._http_client is not None:
                response = await self._http_client.request(
                    node.method,
                    node.url,
                    headers=headers,
                    content=content,
                    timeout=self.api_config.timeout_seconds,
                )
            else:
                async with httpx.AsyncClient(timeout=self.api_config.timeout_seconds) as client:
                    response = await client.request(
                        node.method,
                        node.url,
                        headers=headers,
                        content=content,
                    )
        except httpx.HTTPError as e:
            logger.warning("api_call_failed", node_id=node.id, url=node.url, error=str(e))
            return {"success": False, "error": f"{type(e).__name__}: {e}"}

        try:
            data = response.json() if response.content else None
        except ValueError as e:
            logger.warning("api_call_bad_body", node_id=node.id, status=response.status_code)
            return {
                "success": False,
                "status": response.status_code,
                "error": f"Response is not valid JSON: {e}",
            }

        return {"success": True, "status": response.status_code, "data": data}

    async def _handle_script(self, node: ScriptNode, context: dict[str, Any]) -> dict[str, Any]:
        bindings = {**context, **node.context}
        limit = self.engine_config.script_timeout_seconds
        try:
            # The sandbox interrupts the script itself; this only frees the execution
            return await asyncio.wait_for(
                asyncio.to_thread(self.sandbox.run, node.code, bindings, node.id),
                timeout=limit + 1,
            )
        except asyncio.TimeoutError:
            logger.warning("script_timed_out", node_id=node.id, timeout_seconds=limit)
            return {"success": False, "error": f"ScriptTimeout: script exceeded {limit}s"}
