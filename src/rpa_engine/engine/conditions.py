"""Decision-edge condition evaluation."""

import ast
import operator
import re
from typing import Any, Callable, Optional, Sequence

import structlog

from .models import WorkflowEdge

logger = structlog.get_logger()


class ExpressionError(Exception):
    """Expression uses syntax or names outside the allowed subset."""


# String literals are left untouched by the JS-to-Python rewrite
_STRING_LITERAL = re.compile(r"""("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')""")

_JS_REWRITES = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
]


def normalize_expression(expression: str) -> str:
    """Rewrite JavaScript-style operators into their Python spelling."""
    parts = _STRING_LITERAL.split(expression)
    for i in range(0, len(parts), 2):
        segment = parts[i]
        for pattern, replacement in _JS_REWRITES:
            segment = pattern.sub(replacement, segment)
        parts[i] = segment
    return "".join(parts).strip()


class ConditionEvaluator:
    """
    Evaluates edge conditions against the accumulated execution context.

    Expressions are parsed with :mod:`ast` and walked over an allow-list of
    node types. Nothing is compiled or executed by the host interpreter.

    Supports:
    - Comparison operators (==, !=, <, <=, >, >=, in, not in, is, is not)
    - Logical operators (and, or, not) and their JS spellings (&&, ||, !)
    - Arithmetic (+, -, *, /, //, %)
    - Dotted access into result dicts (``fetch.data.count``) and subscripts
    - Literals, including true/false/null/undefined
    """

    BINARY_OPERATORS: dict[type, Callable[[Any, Any], Any]] = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
    }

    COMPARE_OPERATORS: dict[type, Callable[[Any, Any], bool]] = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
        ast.In: lambda a, b: a in b if hasattr(b, "__contains__") else False,
        ast.NotIn: lambda a, b: a not in b if hasattr(b, "__contains__") else True,
    }

    CONSTANTS: dict[str, Any] = {
        "true": True,
        "false": False,
        "null": None,
        "undefined": None,
    }

    def select_edge(
        self,
        edges: Sequence[WorkflowEdge],
        context: dict[str, Any],
    ) -> Optional[WorkflowEdge]:
        """
        Pick the outgoing edge of a decision node.

        The first edge whose condition is true wins. Unconditioned edges are
        defaults; when several exist the last one is used. Returns None when
        nothing matches and there is no default.
        """
        default: Optional[WorkflowEdge] = None

        for edge in edges:
            if not edge.condition:
                default = edge
                continue

            if self.evaluate(edge.condition, context):
                return edge

        return default

    def evaluate(self, expression: str, context: dict[str, Any]) -> bool:
        """
        Evaluate an expression to a boolean.

        Parse or evaluation failures count as false.
        """
        try:
            return bool(self.evaluate_value(expression, context))
        except Exception as e:
            logger.warning(
                "condition_evaluation_failed",
                condition=expression,
                error=str(e),
            )
            return False

    def evaluate_value(self, expression: str, context: dict[str, Any]) -> Any:
        """Evaluate an expression and return its raw value (raises on error)."""
        source = normalize_expression(expression)
        if not source:
            raise ExpressionError("Empty expression")

        try:
            tree = ast.parse(source, mode="eval")
        except SyntaxError as e:
            raise ExpressionError(f"Invalid expression: {e.msg}")

        return self._eval(tree.body, context)

    def _eval(self, node: ast.AST, context: dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            return self._resolve_name(node.id, context)

        if isinstance(node, ast.BoolOp):
            # Short-circuit like Python/JS, returning the deciding operand
            if isinstance(node.op, ast.And):
                value: Any = True
                for operand in node.values:
                    value = self._eval(operand, context)
                    if not value:
                        return value
                return value
            value = False
            for operand in node.values:
                value = self._eval(operand, context)
                if value:
                    return value
            return value

        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, context)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
            raise ExpressionError(f"Unsupported unary operator: {type(node.op).__name__}")

        if isinstance(node, ast.BinOp):
            op_func = self.BINARY_OPERATORS.get(type(node.op))
            if op_func is None:
                raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
            left = self._eval(node.left, context)
            right = self._eval(node.right, context)
            if isinstance(node.op, ast.Mult) and not (
                isinstance(left, (int, float)) and isinstance(right, (int, float))
            ):
                raise ExpressionError("Multiplication is only allowed on numbers")
            return op_func(left, right)

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, context)
            for op, comparator in zip(node.ops, node.comparators):
                op_func = self.COMPARE_OPERATORS.get(type(op))
                if op_func is None:
                    raise ExpressionError(f"Unsupported comparison: {type(op).__name__}")
                right = self._eval(comparator, context)
                if not op_func(left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self._eval(node.test, context):
                return self._eval(node.body, context)
            return self._eval(node.orelse, context)

        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise ExpressionError(f"Access to '{node.attr}' is not allowed")
            return self._get_member(self._eval(node.value, context), node.attr)

        if isinstance(node, ast.Subscript):
            container = self._eval(node.value, context)
            key = self._eval(node.slice, context)
            return self._get_item(container, key)

        if isinstance(node, (ast.List, ast.Tuple)):
            items = [self._eval(element, context) for element in node.elts]
            return items if isinstance(node, ast.List) else tuple(items)

        if isinstance(node, ast.Dict):
            return {
                self._eval(k, context): self._eval(v, context)
                for k, v in zip(node.keys, node.values)
                if k is not None
            }

        raise ExpressionError(f"Unsupported expression element: {type(node).__name__}")

    def _resolve_name(self, name: str, context: dict[str, Any]) -> Any:
        if name in self.CONSTANTS:
            return self.CONSTANTS[name]
        if name.startswith("_"):
            raise ExpressionError(f"Access to '{name}' is not allowed")
        if name not in context:
            raise ExpressionError(f"Unknown name: {name}")
        return context[name]

    def _get_member(self, value: Any, attr: str) -> Any:
        """Dotted access reads dict keys; missing members are None."""
        if isinstance(value, dict):
            return value.get(attr)
        if attr == "length" and isinstance(value, (str, list, tuple, dict)):
            return len(value)
        return None

    def _get_item(self, container: Any, key: Any) -> Any:
        if isinstance(container, dict):
            return container.get(key)
        if isinstance(container, (list, tuple, str)) and isinstance(key, int):
            if -len(container) <= key < len(container):
                return container[key]
            return None
        raise ExpressionError(f"Cannot index {type(container).__name__}")
