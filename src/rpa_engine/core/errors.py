"""Engine error definitions."""

import hashlib
from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Transient, retried internally
    MEDIUM = "medium"     # Captured into the node result
    HIGH = "high"         # Aborts the execution
    CRITICAL = "critical" # Aborts the execution, needs operator attention


class ErrorCategory(Enum):
    """Error categories for routing and handling."""
    TRANSIENT = "transient"       # Network, timeout, lost browser connection
    PERMANENT = "permanent"       # Invalid graph, invalid selector
    EXTERNAL = "external"         # Orchestration substrate or remote API issue
    VALIDATION = "validation"     # Input/config validation failure
    SANDBOX = "sandbox"           # Script or expression sandbox violation


class FrameworkError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

    def fingerprint(self) -> str:
        """Generate error fingerprint for deduplication."""
        components = [
            self.__class__.__name__,
            self.category.value,
            str(self.context.get("execution_id", "")),
            str(self.context.get("node_id", "")),
        ]
        return hashlib.sha256(":".join(components).encode()).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging/storage."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "retryable": self.retryable,
            "fingerprint": self.fingerprint(),
        }


class ConfigError(FrameworkError):
    """Configuration loading or validation error."""

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["config_path"] = config_path


class FatalExecutionError(FrameworkError):
    """
    Error that aborts a workflow execution.

    The interpreter stops at the first fatal error and reports the
    execution as failed, keeping whatever node results it has so far.
    """

    def __init__(self, message: str, node_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["node_id"] = node_id


class GraphStructureError(FatalExecutionError):
    """Missing start node, malformed node record or dangling edge."""


class NoOutgoingEdgeError(GraphStructureError):
    """A non-terminal node has nowhere to go."""


class UnresolvedTargetError(GraphStructureError):
    """An edge points at a node id that does not exist."""

    def __init__(self, message: str, target_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.context["target_id"] = target_id


class UnmatchedDecisionError(FatalExecutionError):
    """No edge condition matched and the decision node has no default edge."""


class UnsupportedNodeTypeError(FatalExecutionError):
    """Node type has no registered handler."""

    def __init__(self, message: str, node_type: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.context["node_type"] = node_type


class CycleDetectedError(FatalExecutionError):
    """Traversal would visit the same node twice."""


class ScriptSandboxError(FatalExecutionError):
    """Script rejected or broke out of the restricted execution harness."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.SANDBOX)
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        super().__init__(message, **kwargs)


class BrowserError(FrameworkError):
    """Browser automation error."""

    def __init__(
        self,
        message: str,
        selector: Optional[str] = None,
        url: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.context["selector"] = selector
        self.context["url"] = url


class BrowserSessionError(BrowserError):
    """Browser process, context or page could not be (re)acquired."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(message, **kwargs)


class OrchestrationError(FrameworkError):
    """Orchestration backend could not answer or accept a request."""

    def __init__(self, message: str, execution_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.EXTERNAL)
        super().__init__(message, **kwargs)
        self.context["execution_id"] = execution_id
