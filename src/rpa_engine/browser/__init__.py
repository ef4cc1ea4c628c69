"""Browser automation module using Playwright."""

from .manager import BrowserSessionManager, SessionState
from .actions import BrowserActions, normalize_url

__all__ = ["BrowserSessionManager", "SessionState", "BrowserActions", "normalize_url"]
