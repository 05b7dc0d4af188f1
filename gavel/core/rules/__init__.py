"""
Gavel Rules Module.

Rule catalog records and the condition language. The engine itself lives
in `gavel.core.rules.engine`.
"""

from gavel.core.rules.models import (
    ConfigScope,
    Rule,
    RuleCategory,
    RuleConfiguration,
    RuleResult,
    RuleViolation,
    Severity,
    ViolationStatus,
    ViolationType,
)

from gavel.core.rules.conditions import evaluate, explain, validate_condition

__all__ = [
    # Models
    "ConfigScope",
    "Rule",
    "RuleCategory",
    "RuleConfiguration",
    "RuleResult",
    "RuleViolation",
    "Severity",
    "ViolationStatus",
    "ViolationType",
    # Conditions
    "evaluate",
    "explain",
    "validate_condition",
]
