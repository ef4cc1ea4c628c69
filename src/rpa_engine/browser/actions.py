"""
Browser Actions - Per-action-type page operations.

Each operation takes a live Playwright page and a BrowserActionSpec and
returns a result payload. Operations raise on failure; the session manager
decides whether a failure means "retry on a fresh session" or "report".
"""

import asyncio
import base64
import re
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

import structlog
from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from ..core.errors import BrowserError, ErrorCategory
from ..engine.models import BrowserActionSpec, BrowserActionType

logger = structlog.get_logger()


ALLOWED_SCHEMES = ("http", "https", "file", "about", "data")

# Option keys consumed here rather than forwarded to Playwright
_RESERVED_OPTIONS = {
    "textOnly", "attribute", "waitUntil", "wait_until", "fullPage", "full_page", "state", "timeout",
}

_EXTRACT_SCRIPT = """
(elements, opts) => elements.map(el => {
    const text = el.textContent ? el.textContent.trim() : '';
    if (opts.attribute) {
        return el.getAttribute(opts.attribute);
    }
    if (opts.textOnly) {
        return text;
    }
    const attributes = {};
    for (const attr of Array.from(el.attributes)) {
        attributes[attr.name] = attr.value;
    }
    return { text, attributes };
})
"""


def normalize_url(url: str, default_scheme: str = "https") -> str:
    """
    Prefix bare hostnames with a scheme and validate the result.

    Raises:
        BrowserError: URL is empty or malformed
    """
    if not url or not url.strip():
        raise BrowserError("URL is required", category=ErrorCategory.VALIDATION, retryable=False)

    url = url.strip()
    if "://" not in url and not url.startswith(("about:", "data:")):
        url = f"{default_scheme}://{url}"

    parsed = urlparse(url)
    if parsed.scheme not in ALLOWED_SCHEMES:
        raise BrowserError(
            f"Unsupported URL scheme: {parsed.scheme}",
            url=url,
            category=ErrorCategory.VALIDATION,
            retryable=False,
        )
    if parsed.scheme in ("http", "https"):
        if not parsed.hostname or " " in parsed.netloc:
            raise BrowserError(
                f"Invalid URL: {url}",
                url=url,
                category=ErrorCategory.VALIDATION,
                retryable=False,
            )
        try:
            parsed.port
        except ValueError:
            raise BrowserError(f"Invalid port in URL: {url}", url=url, retryable=False)

    return url


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _forwarded_options(options: dict[str, Any]) -> dict[str, Any]:
    """Designer options use camelCase; Playwright's Python API wants snake_case."""
    return {_snake(k): v for k, v in options.items() if k not in _RESERVED_OPTIONS}


def _require(value: Any, message: str, spec: BrowserActionSpec) -> None:
    if not value:
        raise BrowserError(
            message,
            selector=spec.selector,
            url=spec.url,
            category=ErrorCategory.VALIDATION,
            retryable=False,
        )


ActionOperation = Callable[[Page, BrowserActionSpec, int], Awaitable[dict[str, Any]]]


class BrowserActions:
    """
    Page operations keyed by BrowserActionType.

    Element operations first wait for the selector (bounded by the action's
    timeout), then act.
    """

    def __init__(
        self,
        default_scheme: str = "https",
        navigation_retries: int = 2,
        navigation_backoff_seconds: float = 1.0,
        is_retryable_navigation_error: Optional[Callable[[BaseException], bool]] = None,
    ):
        """
        Args:
            default_scheme: Scheme added to bare hostnames
            navigation_retries: Extra goto attempts on timeout/closed-target errors
            navigation_backoff_seconds: Pause between goto attempts
            is_retryable_navigation_error: Classifier for closed-target errors
        """
        self.default_scheme = default_scheme
        self.navigation_retries = navigation_retries
        self.navigation_backoff_seconds = navigation_backoff_seconds
        self._is_closed_target = is_retryable_navigation_error or (lambda e: False)

        self._operations: dict[BrowserActionType, ActionOperation] = {
            BrowserActionType.NAVIGATE: self.navigate,
            BrowserActionType.CLICK: self.click,
            BrowserActionType.TYPE: self.type_text,
            BrowserActionType.SELECT: self.select,
            BrowserActionType.WAIT_FOR_SELECTOR: self.wait_for_selector,
            BrowserActionType.WAIT_FOR_NAVIGATION: self.wait_for_navigation,
            BrowserActionType.SCREENSHOT: self.screenshot,
            BrowserActionType.EXTRACT_DATA: self.extract_data,
        }

    async def run(self, page: Page, spec: BrowserActionSpec, timeout: int) -> dict[str, Any]:
        """
        Dispatch to the operation for ``spec.action_type``.

        A positive ``timeout`` in the node options overrides the action timeout.
        """
        operation = self._operations.get(spec.action_type)
        if operation is None:
            raise BrowserError(
                f"Unsupported browser action: {spec.action_type}",
                retryable=False,
                category=ErrorCategory.VALIDATION,
            )
        option_timeout = spec.options.get("timeout")
        if type(option_timeout) in (int, float) and option_timeout > 0:
            timeout = int(option_timeout)
        return await operation(page, spec, timeout)

    async def navigate(self, page: Page, spec: BrowserActionSpec, timeout: int) -> dict[str, Any]:
        """
        Navigate to URL.

        A missing or non-2xx response still counts as success, with a warning.

        Output:
            url: Final page URL
            title: Page title
            status: HTTP status (None when no response)
        """
        url = normalize_url(spec.url, self.default_scheme)
        wait_until = spec.options.get("waitUntil") or spec.options.get("wait_until") or "domcontentloaded"

        attempts = 1 + self.navigation_retries
        response = None
        for attempt in range(1, attempts + 1):
            try:
                response = await page.goto(url, timeout=timeout, wait_until=wait_until)
                break
            except Exception as e:
                retryable = isinstance(e, PlaywrightTimeoutError) or self._is_closed_target(e)
                if not retryable or attempt >= attempts:
                    raise
                logger.warning(
                    "navigation_retry",
                    url=url,
                    attempt=attempt,
                    error=str(e),
                )
                await asyncio.sleep(self.navigation_backoff_seconds)

        result: dict[str, Any] = {
            "success": True,
            "url": page.url,
            "title": await page.title(),
            "status": response.status if response is not None else None,
        }

        if response is None:
            result["warning"] = "Navigation finished without a response"
        elif not response.ok:
            result["warning"] = f"Navigation returned HTTP {response.status}"

        if "warning" in result:
            logger.warning("navigation_degraded", url=url, warning=result["warning"])

        return result

    async def click(self, page: Page, spec: BrowserActionSpec, timeout: int) -> dict[str, Any]:
        _require(spec.selector, "Click requires a selector", spec)
        await page.wait_for_selector(spec.selector, timeout=timeout)
        await page.click(spec.selector, timeout=timeout, **_forwarded_options(spec.options))
        return {"success": True, "selector": spec.selector}

    async def type_text(self, page: Page, spec: BrowserActionSpec, timeout: int) -> dict[str, Any]:
        """Fill an input (clears existing value)."""
        _require(spec.selector, "Type requires a selector", spec)
        _require(spec.text, "Type requires text", spec)
        await page.wait_for_selector(spec.selector, timeout=timeout)
        await page.fill(spec.selector, spec.text, timeout=timeout, **_forwarded_options(spec.options))
        return {"success": True, "selector": spec.selector, "length": len(spec.text)}

    async def select(self, page: Page, spec: BrowserActionSpec, timeout: int) -> dict[str, Any]:
        _require(spec.selector, "Select requires a selector", spec)
        _require(spec.text, "Select requires an option value", spec)
        await page.wait_for_selector(spec.selector, timeout=timeout)
        selected = await page.select_option(
            spec.selector,
            spec.text,
            timeout=timeout,
            **_forwarded_options(spec.options),
        )
        return {"success": True, "selector": spec.selector, "selected": selected}

    async def wait_for_selector(self, page: Page, spec: BrowserActionSpec, timeout: int) -> dict[str, Any]:
        _require(spec.selector, "Wait requires a selector", spec)
        state = spec.options.get("state", "visible")
        await page.wait_for_selector(spec.selector, timeout=timeout, state=state)
        return {"success": True, "selector": spec.selector, "state": state}

    async def wait_for_navigation(self, page: Page, spec: BrowserActionSpec, timeout: int) -> dict[str, Any]:
        """Wait for the next main-frame navigation."""
        await page.wait_for_event(
            "framenavigated",
            predicate=lambda frame: frame == page.main_frame,
            timeout=timeout,
        )
        wait_until = spec.options.get("waitUntil") or spec.options.get("wait_until")
        if wait_until:
            await page.wait_for_load_state(wait_until, timeout=timeout)
        return {"success": True, "url": page.url}

    async def screenshot(self, page: Page, spec: BrowserActionSpec, timeout: int) -> dict[str, Any]:
        """
        Output:
            screenshot: Base64-encoded PNG
            size: Image size in bytes
        """
        full_page = bool(spec.options.get("fullPage") or spec.options.get("full_page"))
        image = await page.screenshot(full_page=full_page, timeout=timeout)
        return {
            "success": True,
            "screenshot": base64.b64encode(image).decode("ascii"),
            "size": len(image),
        }

    async def extract_data(self, page: Page, spec: BrowserActionSpec, timeout: int) -> dict[str, Any]:
        """
        Extract text and attributes from every element matching the selector.

        Options:
            textOnly: Return trimmed text per element instead of {text, attributes}
            attribute: Return only this attribute per element

        Output:
            data: List of extracted values
            count: Number of matches
        """
        _require(spec.selector, "Extract requires a selector", spec)
        await page.wait_for_selector(spec.selector, timeout=timeout)
        data = await page.eval_on_selector_all(
            spec.selector,
            _EXTRACT_SCRIPT,
            {
                "textOnly": bool(spec.options.get("textOnly")),
                "attribute": spec.options.get("attribute"),
            },
        )
        return {"success": True, "data": data, "count": len(data)}
