"""
Conditions - structured rule expressions.

A rule condition is a JSON-logic style tree: every node is either a literal
or a single-key dict `{operator: [arguments]}`. Example, "bid must not
exceed ten times the starting price":

    {"<=": [{"var": "bid.amount"},
            {"*": [{"var": "auction.starting_price"}, {"var": "config.max_multiplier", "default": 10}]}]}

`var` reads a dotted path from the evaluation context (`bid`, `auction`,
`bidder`, `config`, `now`, ...). Missing paths resolve to the node's
`default` or None; ordering comparisons against None are false.

Conditions are validated once at rule registration; evaluation never sees
an unknown operator.
"""

import operator
from typing import Any, Callable, Dict, List, Tuple

from gavel.core.errors import RuleConfigurationError

Condition = Any


def _compare(fn: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def run(a: Any, b: Any) -> bool:
        if a is None or b is None:
            return False
        try:
            return bool(fn(a, b))
        except TypeError:
            return False
    return run


def _divide(a: Any, b: Any) -> Any:
    if a is None or b is None or b == 0:
        return None
    if isinstance(a, int) and isinstance(b, int):
        return a // b
    return a / b


def _arith(fn: Callable[[Any, Any], Any]) -> Callable[..., Any]:
    def run(*args: Any) -> Any:
        if not args or any(a is None for a in args):
            return None
        result = args[0]
        for value in args[1:]:
            result = fn(result, value)
        return result
    return run


COMPARISONS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": _compare(operator.gt),
    ">=": _compare(operator.ge),
    "<": _compare(operator.lt),
    "<=": _compare(operator.le),
}

ARITHMETIC: Dict[str, Callable[..., Any]] = {
    "+": _arith(operator.add),
    "-": _arith(operator.sub),
    "*": _arith(operator.mul),
    "/": _arith(_divide),
    "%": _arith(lambda a, b: a % b if b else None),
}

OPERATORS = frozenset(
    set(COMPARISONS) | set(ARITHMETIC) | {"var", "and", "or", "!", "not", "in", "if", "min", "max", "between"}
)


# =============================================================================
# Validation
# =============================================================================


def validate_condition(condition: Condition, path: str = "condition") -> None:
    """
    Check a condition tree for unknown operators and malformed arguments.

    Raises:
        RuleConfigurationError: with the offending path in context
    """
    if isinstance(condition, list):
        for idx, item in enumerate(condition):
            validate_condition(item, f"{path}[{idx}]")
        return
    if not isinstance(condition, dict):
        return

    if "var" in condition:
        extra = set(condition) - {"var", "default"}
        if extra or not isinstance(condition["var"], str):
            raise RuleConfigurationError(
                f"Malformed var node at {path}",
                field=path,
            )
        return

    if len(condition) != 1:
        raise RuleConfigurationError(
            f"Condition node at {path} must have exactly one operator",
            field=path,
        )
    op, args = next(iter(condition.items()))
    if op not in OPERATORS:
        raise RuleConfigurationError(
            f"Unknown operator {op!r} at {path}",
            field=path,
            context={"operator": op},
        )
    if op in COMPARISONS and (not isinstance(args, list) or len(args) != 2):
        raise RuleConfigurationError(
            f"Operator {op!r} at {path} takes two arguments",
            field=path,
        )
    if op == "between" and (not isinstance(args, list) or len(args) != 3):
        raise RuleConfigurationError(
            f"Operator 'between' at {path} takes three arguments",
            field=path,
        )
    validate_condition(args, f"{path}.{op}")


# =============================================================================
# Evaluation
# =============================================================================


def resolve_var(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Read a dotted path (`bid.amount`, `auction.params.items.0`)."""
    current: Any = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            idx = int(part)
            if idx >= len(current):
                return default
            current = current[idx]
        else:
            return default
    return default if current is None else current


def _args(args: Any) -> List[Any]:
    return args if isinstance(args, list) else [args]


def evaluate(condition: Condition, data: Dict[str, Any]) -> Any:
    """Evaluate a condition tree against a context dict."""
    if isinstance(condition, list):
        return [evaluate(item, data) for item in condition]
    if not isinstance(condition, dict):
        return condition

    if "var" in condition:
        return resolve_var(data, condition["var"], condition.get("default"))

    op, raw = next(iter(condition.items()))
    args = _args(raw)

    # Short-circuit operators
    if op == "and":
        result: Any = True
        for arg in args:
            result = evaluate(arg, data)
            if not result:
                return result
        return result
    if op == "or":
        result = False
        for arg in args:
            result = evaluate(arg, data)
            if result:
                return result
        return result
    if op == "if":
        # [cond, then, cond, then, ..., else]
        idx = 0
        while idx + 1 < len(args):
            if evaluate(args[idx], data):
                return evaluate(args[idx + 1], data)
            idx += 2
        return evaluate(args[idx], data) if idx < len(args) else None

    values = [evaluate(arg, data) for arg in args]

    if op in COMPARISONS:
        return COMPARISONS[op](values[0], values[1])
    if op in ARITHMETIC:
        return ARITHMETIC[op](*values)
    if op in ("!", "not"):
        return not values[0]
    if op == "in":
        needle, haystack = values[0], values[1]
        if haystack is None:
            return False
        return needle in haystack
    if op == "between":
        low, value, high = values
        return COMPARISONS["<="](low, value) and COMPARISONS["<="](value, high)
    if op in ("min", "max"):
        present = [v for v in values if v is not None]
        if not present:
            return None
        return min(present) if op == "min" else max(present)

    raise RuleConfigurationError(f"Unknown operator {op!r}", context={"operator": op})


def _label(node: Any, fallback: str) -> str:
    if isinstance(node, dict) and "var" in node:
        return node["var"]
    return fallback


def explain(condition: Condition, data: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Expected and actual values behind a failed condition.

    Walks down to the first failing comparison (through `and` nodes) and
    reports its left side as actual and its operator/right side as expected.
    """
    if not isinstance(condition, dict) or "var" in condition:
        return {}, {}
    op, raw = next(iter(condition.items()))
    args = _args(raw)

    if op == "and":
        for arg in args:
            if not evaluate(arg, data):
                return explain(arg, data)
        return {}, {}

    if op in COMPARISONS:
        left, right = args
        expected = {
            "operator": op,
            _label(right, "value"): evaluate(right, data),
        }
        actual = {_label(left, "value"): evaluate(left, data)}
        return expected, actual

    if op == "between":
        low, value, high = args
        return (
            {"min": evaluate(low, data), "max": evaluate(high, data)},
            {_label(value, "value"): evaluate(value, data)},
        )

    if op == "in":
        needle, haystack = args
        return (
            {"one_of": evaluate(haystack, data)},
            {_label(needle, "value"): evaluate(needle, data)},
        )

    return {"condition": condition}, {}
