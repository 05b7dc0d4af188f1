"""
Unit tests for structured rule conditions.
"""

import pytest

from gavel.core.errors import RuleConfigurationError
from gavel.core.rules import conditions


CONTEXT = {
    "bid": {"amount": 500, "quantity": 2},
    "auction": {"starting_price": 100, "params": {"items": ["A", "B"]}},
    "bidder": {"groups": ["vip"], "last_bid_at": None},
    "config": {"max_multiplier": 10},
}


class TestEvaluate:
    """Operator semantics."""

    def test_var_paths(self):
        """Dotted paths read nested values and list indexes."""
        assert conditions.evaluate({"var": "bid.amount"}, CONTEXT) == 500
        assert conditions.evaluate({"var": "auction.params.items.1"}, CONTEXT) == "B"
        assert conditions.evaluate({"var": "bid.missing"}, CONTEXT) is None
        assert conditions.evaluate({"var": "bid.missing", "default": 7}, CONTEXT) == 7

    def test_comparisons(self):
        """Comparisons and arithmetic compose."""
        limit = {"*": [{"var": "auction.starting_price"}, {"var": "config.max_multiplier"}]}
        assert conditions.evaluate({"<=": [{"var": "bid.amount"}, limit]}, CONTEXT) is True
        assert conditions.evaluate({">": [{"var": "bid.amount"}, limit]}, CONTEXT) is False

    def test_none_is_not_ordered(self):
        """Ordering against a missing value is false."""
        assert conditions.evaluate({"<": [{"var": "bidder.last_bid_at"}, 10]}, CONTEXT) is False
        assert conditions.evaluate({">=": [{"var": "bidder.last_bid_at"}, 10]}, CONTEXT) is False

    def test_logic(self):
        """and / or / not short-circuit and negate."""
        true = {"==": [1, 1]}
        false = {"==": [1, 2]}
        assert conditions.evaluate({"and": [true, true]}, CONTEXT)
        assert not conditions.evaluate({"and": [true, false]}, CONTEXT)
        assert conditions.evaluate({"or": [false, true]}, CONTEXT)
        assert conditions.evaluate({"!": [false]}, CONTEXT)

    def test_membership_and_between(self):
        """in and between."""
        assert conditions.evaluate({"in": ["vip", {"var": "bidder.groups"}]}, CONTEXT)
        assert not conditions.evaluate({"in": ["vip", {"var": "bidder.unknown"}]}, CONTEXT)
        assert conditions.evaluate({"between": [100, {"var": "bid.amount"}, 1000]}, CONTEXT)

    def test_if_and_min_max(self):
        """if picks the first true branch; min/max ignore missing values."""
        node = {"if": [{">": [{"var": "bid.quantity"}, 5]}, "bulk", "single"]}
        assert conditions.evaluate(node, CONTEXT) == "single"
        assert conditions.evaluate({"max": [3, {"var": "bid.missing"}, 9]}, CONTEXT) == 9
        assert conditions.evaluate({"min": [{"var": "bid.missing"}]}, CONTEXT) is None

    def test_integer_division(self):
        """Integer division stays integral; division by zero is missing."""
        assert conditions.evaluate({"/": [7, 2]}, CONTEXT) == 3
        assert conditions.evaluate({"/": [7, 0]}, CONTEXT) is None


class TestValidate:
    """Registration-time validation."""

    def test_unknown_operator(self):
        """Unknown operators are rejected with their path."""
        with pytest.raises(RuleConfigurationError) as exc:
            conditions.validate_condition({"and": [{"==": [1, 1]}, {"xor": [1, 2]}]})
        assert exc.value.field == "condition.and[1]"

    def test_arity(self):
        """Comparisons take two arguments, between three."""
        with pytest.raises(RuleConfigurationError):
            conditions.validate_condition({"<": [1]})
        with pytest.raises(RuleConfigurationError):
            conditions.validate_condition({"between": [1, 2]})

    def test_malformed_var(self):
        """var nodes take a string path and an optional default."""
        with pytest.raises(RuleConfigurationError):
            conditions.validate_condition({"var": 3})
        with pytest.raises(RuleConfigurationError):
            conditions.validate_condition({"var": "bid.amount", "fallback": 1})

    def test_valid_tree(self):
        """A well-formed tree passes."""
        conditions.validate_condition(
            {"and": [{"<=": [{"var": "bid.amount"}, {"var": "config.max_amount", "default": 100}]}, True]}
        )


class TestExplain:
    """Expected / actual extraction."""

    def test_first_failing_comparison(self):
        """The failing branch of an and is reported."""
        condition = {
            "and": [
                {">=": [{"var": "bid.quantity"}, 1]},
                {"<=": [{"var": "bid.amount"}, {"var": "config.max_amount", "default": 300}]},
            ]
        }
        expected, actual = conditions.explain(condition, CONTEXT)
        assert expected == {"operator": "<=", "config.max_amount": 300}
        assert actual == {"bid.amount": 500}
