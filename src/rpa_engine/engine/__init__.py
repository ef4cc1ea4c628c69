"""Workflow execution engine: graph model, conditions, dispatch, interpretation."""

from .conditions import ConditionEvaluator
from .dispatcher import NodeDispatcher
from .interpreter import WorkflowInterpreter
from .models import ExecutionStatus, NodeType, Workflow

__all__ = [
    "ConditionEvaluator",
    "NodeDispatcher",
    "WorkflowInterpreter",
    "ExecutionStatus",
    "NodeType",
    "Workflow",
]
