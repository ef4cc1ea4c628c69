"""Core engine components."""

from .config import ConfigLoader, EngineConfig
from .state import StateManager
from .errors import (
    FrameworkError,
    ConfigError,
    FatalExecutionError,
    GraphStructureError,
    BrowserError,
    OrchestrationError,
)

__all__ = [
    "ConfigLoader",
    "EngineConfig",
    "StateManager",
    "FrameworkError",
    "ConfigError",
    "FatalExecutionError",
    "GraphStructureError",
    "BrowserError",
    "OrchestrationError",
]
