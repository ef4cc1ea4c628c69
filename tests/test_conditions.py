"""Tests for decision-edge condition evaluation."""

import pytest

from rpa_engine.engine.conditions import ConditionEvaluator, ExpressionError, normalize_expression
from rpa_engine.engine.models import WorkflowEdge


def _edge(target, condition=None):
    return WorkflowEdge(source="decide", target=target, condition=condition)


class TestConditionEvaluator:
    """Test expression evaluation."""

    @pytest.fixture
    def evaluator(self):
        return ConditionEvaluator()

    @pytest.fixture
    def context(self):
        return {
            "amount": 150,
            "status": "approved",
            "input": {"amount": 150, "tags": ["vip"]},
            "fetch": {"success": True, "status": 200, "data": {"items": [1, 2, 3]}},
        }

    def test_comparisons(self, evaluator, context):
        assert evaluator.evaluate("amount > 100", context)
        assert not evaluator.evaluate("amount <= 100", context)
        assert evaluator.evaluate("status == 'approved'", context)
        assert evaluator.evaluate("'vip' in input.tags", context)

    def test_dotted_result_access(self, evaluator, context):
        assert evaluator.evaluate("fetch.success and fetch.status == 200", context)
        assert evaluator.evaluate("fetch.data.items.length == 3", context)
        assert evaluator.evaluate("fetch.data['items'][0] == 1", context)
        assert evaluator.evaluate_value("fetch.data.missing", context) is None

    def test_javascript_operators(self, evaluator, context):
        assert evaluator.evaluate("amount === 150 && status !== 'rejected'", context)
        assert evaluator.evaluate("amount < 10 || fetch.success", context)
        assert evaluator.evaluate("!(amount < 10)", context)
        assert evaluator.evaluate("fetch.data.done === undefined", context)

    def test_operators_inside_strings_untouched(self):
        assert normalize_expression("status == 'a && b'") == "status == 'a && b'"
        assert normalize_expression("x === 1 && !y") == "x == 1  and   not y"

    def test_arithmetic(self, evaluator, context):
        assert evaluator.evaluate("amount * 2 == 300", context)
        assert evaluator.evaluate("amount % 2 == 0", context)

    def test_invalid_expressions_are_false(self, evaluator, context):
        assert not evaluator.evaluate("amount >", context)
        assert not evaluator.evaluate("unknown_name > 1", context)
        assert not evaluator.evaluate("", context)

    def test_unsafe_expressions_rejected(self, evaluator, context):
        with pytest.raises(ExpressionError):
            evaluator.evaluate_value("__import__('os')", context)
        with pytest.raises(ExpressionError):
            evaluator.evaluate_value("status.__class__", context)
        with pytest.raises(ExpressionError):
            evaluator.evaluate_value("'a' * 1000000", context)
        with pytest.raises(ExpressionError):
            evaluator.evaluate_value("(lambda: 1)()", context)

        assert not evaluator.evaluate("status.__class__", context)


class TestEdgeSelection:
    """Test decision edge selection."""

    @pytest.fixture
    def evaluator(self):
        return ConditionEvaluator()

    def test_first_true_condition_wins(self, evaluator):
        edges = [_edge("a", "x > 10"), _edge("b", "x > 1"), _edge("c", "x > 0"), _edge("default")]

        assert evaluator.select_edge(edges, {"x": 5}).target == "b"

    def test_default_when_nothing_matches(self, evaluator):
        edges = [_edge("a", "x > 10"), _edge("default")]

        assert evaluator.select_edge(edges, {"x": 5}).target == "default"

    def test_default_position_does_not_shadow_conditions(self, evaluator):
        edges = [_edge("default"), _edge("a", "x > 1")]

        assert evaluator.select_edge(edges, {"x": 5}).target == "a"

    def test_last_default_wins(self, evaluator):
        edges = [_edge("first"), _edge("a", "x > 10"), _edge("second")]

        assert evaluator.select_edge(edges, {"x": 5}).target == "second"

    def test_broken_condition_falls_through(self, evaluator):
        edges = [_edge("a", "x >>> 1"), _edge("b", "x == 5")]

        assert evaluator.select_edge(edges, {"x": 5}).target == "b"

    def test_no_match_no_default(self, evaluator):
        edges = [_edge("a", "x > 10")]

        assert evaluator.select_edge(edges, {"x": 5}) is None
        assert evaluator.select_edge([], {"x": 5}) is None
