"""
Browser Session Manager - Single long-lived browser session per worker process.

Owns one browser process, one context and one page. The session is
re-created when it is lost, and every public operation is serialized
through an owned lock so concurrent executions never drive the page at the
same time.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
)
from pydantic import ValidationError

from ..core.config import BrowserConfig
from ..core.errors import BrowserSessionError
from ..engine.models import BrowserActionSpec
from .actions import BrowserActions

logger = structlog.get_logger()


# Error message fragments meaning the page/context/browser is gone
CONNECTION_LOST_SIGNATURES = (
    "target page, context or browser has been closed",
    "target closed",
    "browser has been closed",
    "browser has disconnected",
    "context has been closed",
    "page has been closed",
    "page closed",
    "connection closed",
    "browser closed",
)


def is_connection_lost(error: BaseException) -> bool:
    """Check whether an error means the browser session is no longer usable."""
    message = str(error).lower()
    return any(signature in message for signature in CONNECTION_LOST_SIGNATURES)


class SessionState(str, Enum):
    """Browser session lifecycle."""
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


PlaywrightFactory = Callable[[], Awaitable[Playwright]]


async def _start_playwright() -> Playwright:
    return await async_playwright().start()


class BrowserSessionManager:
    """
    Manages the single browser session used for browser actions.

    Features:
    - Lazy launch on first use, fixed viewport and user agent
    - Disconnect observer marks the session for re-creation
    - Bounded re-acquire on launch failure
    - Bounded retry of actions that lost their session
    - Structured results, never raises from perform_action
    """

    def __init__(
        self,
        config: Optional[BrowserConfig] = None,
        playwright_factory: Optional[PlaywrightFactory] = None,
        actions: Optional[BrowserActions] = None,
    ):
        """
        Initialize the session manager.

        Args:
            config: Browser settings
            playwright_factory: Coroutine returning a started Playwright
                driver (swapped out in tests)
            actions: Per-action operations
        """
        self.config = config or BrowserConfig()
        self._playwright_factory = playwright_factory or _start_playwright
        self.actions = actions or BrowserActions(
            default_scheme=self.config.default_scheme,
            navigation_retries=self.config.navigation_retries,
            navigation_backoff_seconds=self.config.navigation_backoff_seconds,
            is_retryable_navigation_error=is_connection_lost,
        )

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._lock = asyncio.Lock()
        self._state = SessionState.UNINITIALIZED
        self._generation = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        """Number of sessions launched so far."""
        return self._generation

    async def acquire(self) -> Page:
        """
        Return a usable page, launching a fresh session if needed.

        Raises:
            BrowserSessionError: no usable session after the bounded retry
        """
        async with self._lock:
            return await self._acquire()

    async def perform_action(self, spec: Any) -> dict[str, Any]:
        """
        Execute a browser action.

        Args:
            spec: BrowserActionSpec or its wire dict
                (actionType, url?, selector?, text?, timeout?, options?)

        Returns:
            {"success": True, ...payload} or {"success": False, "error": ...}
        """
        if not isinstance(spec, BrowserActionSpec):
            try:
                spec = BrowserActionSpec.model_validate(spec)
            except ValidationError as e:
                return {"success": False, "error": f"Invalid browser action: {e}"}

        timeout = spec.timeout or self.config.default_timeout_ms
        attempts = 1 + self.config.action_retries
        log = logger.bind(action_type=spec.action_type.value)

        async with self._lock:
            for attempt in range(1, attempts + 1):
                try:
                    page = await self._acquire()

                    # The disconnect event may land between acquire and use
                    if not self._is_ready():
                        log.warning("browser_session_lost_before_use", attempt=attempt)
                        self._state = SessionState.DISCONNECTED
                        page = await self._acquire()

                    result = await self.actions.run(page, spec, timeout)
                    log.info("browser_action_completed", attempt=attempt)
                    return result

                except Exception as e:
                    if is_connection_lost(e) and attempt < attempts:
                        log.warning(
                            "browser_connection_lost",
                            attempt=attempt,
                            error=str(e),
                        )
                        self._state = SessionState.DISCONNECTED
                        continue

                    log.warning("browser_action_failed", attempt=attempt, error=str(e))
                    return {"success": False, "error": str(e)}

        return {"success": False, "error": "Browser action retries exhausted"}

    async def shutdown(self) -> None:
        """Close page, context, browser and the Playwright driver."""
        async with self._lock:
            logger.info("browser_shutting_down")
            await self._teardown()
            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except Exception as e:
                    logger.warning("playwright_stop_failed", error=str(e))
                self._playwright = None
            self._state = SessionState.CLOSED
            logger.info("browser_shutdown_complete")

    async def get_status(self) -> dict[str, Any]:
        """Get browser status for diagnostics."""
        return {
            "state": self._state.value,
            "headless": self.config.headless,
            "generation": self._generation,
            "current_url": self._page.url if self._page and not self._page.is_closed() else None,
        }

    def _is_ready(self) -> bool:
        return (
            self._state == SessionState.READY
            and self._browser is not None
            and self._browser.is_connected()
            and self._page is not None
            and not self._page.is_closed()
        )

    async def _acquire(self) -> Page:
        if self._is_ready():
            return self._page

        attempts = 1 + self.config.acquire_retries
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            await self._teardown()
            if attempt > 1:
                # The driver itself may be what broke
                await self._restart_driver()

            try:
                await self._launch()
            except Exception as e:
                last_error = e
                logger.warning("browser_launch_failed", attempt=attempt, error=str(e))
                continue

            if self._is_ready():
                return self._page

            last_error = BrowserSessionError("Browser launched but page is not usable")
            logger.warning("browser_launch_unusable", attempt=attempt)

        self._state = SessionState.DISCONNECTED
        raise BrowserSessionError(f"Could not acquire browser session: {last_error}")

    async def _launch(self) -> None:
        if self._playwright is None:
            self._playwright = await self._playwright_factory()

        logger.info("browser_launching", headless=self.config.headless)

        browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=list(self.config.launch_args),
        )
        self._browser = browser
        self._generation += 1
        generation = self._generation
        browser.on("disconnected", lambda _: self._on_disconnected(generation))

        self._context = await browser.new_context(
            viewport={
                "width": self.config.viewport_width,
                "height": self.config.viewport_height,
            },
            user_agent=self.config.user_agent,
        )
        self._page = await self._context.new_page()
        self._page.set_default_timeout(self.config.default_timeout_ms)

        self._state = SessionState.READY
        logger.info("browser_session_ready", generation=generation)

    def _on_disconnected(self, generation: int) -> None:
        # Late events from an already replaced browser are ignored
        if generation != self._generation or self._state == SessionState.CLOSED:
            return
        logger.warning("browser_disconnected", generation=generation)
        self._state = SessionState.DISCONNECTED

    async def _teardown(self) -> None:
        """Best-effort close of stale handles; each close failure is swallowed."""
        page, context, browser = self._page, self._context, self._browser
        self._page = self._context = self._browser = None

        for name, handle in (("page", page), ("context", context), ("browser", browser)):
            if handle is None:
                continue
            try:
                await handle.close()
            except Exception as e:
                logger.debug("browser_close_failed", handle=name, error=str(e))

    async def _restart_driver(self) -> None:
        if self._playwright is None:
            return
        try:
            await self._playwright.stop()
        except Exception as e:
            logger.debug("playwright_stop_failed", error=str(e))
        self._playwright = None
