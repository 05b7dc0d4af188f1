"""
Rule catalog records - rules, scoped configurations and violations.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from gavel.core.market.types import now_ms


# =============================================================================
# Enums
# =============================================================================


class RuleCategory(str, Enum):
    BIDDING = "bidding"
    TIMING = "timing"
    ELIGIBILITY = "eligibility"
    PAYMENT = "payment"
    COMPLIANCE = "compliance"
    SECURITY = "security"


class Severity(str, Enum):
    """Rule severity. ERROR and CRITICAL failures block the operation."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def blocking(self) -> bool:
        return self.rank >= _SEVERITY_RANK[Severity.ERROR]


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.ERROR: 2,
    Severity.CRITICAL: 3,
}


class ConfigScope(str, Enum):
    """Configuration scopes, most specific first."""
    USER_GROUP = "user_group"
    AUCTION = "auction"
    AUCTION_TYPE = "auction_type"
    GLOBAL = "global"

    @property
    def specificity(self) -> int:
        return _SCOPE_SPECIFICITY[self]


_SCOPE_SPECIFICITY = {
    ConfigScope.GLOBAL: 0,
    ConfigScope.AUCTION_TYPE: 1,
    ConfigScope.AUCTION: 2,
    ConfigScope.USER_GROUP: 3,
}


class ViolationType(str, Enum):
    HARD = "hard_violation"
    SOFT = "soft_violation"


class ViolationStatus(str, Enum):
    DETECTED = "detected"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"
    ESCALATED = "escalated"


OPEN_VIOLATION_STATUSES = (
    ViolationStatus.DETECTED,
    ViolationStatus.ACKNOWLEDGED,
    ViolationStatus.ESCALATED,
)


def _in_window(start: Optional[int], end: Optional[int], at: int) -> bool:
    if start is not None and at < start:
        return False
    if end is not None and at >= end:
        return False
    return True


# =============================================================================
# Records
# =============================================================================


@dataclass
class Rule:
    """
    A business rule.

    `condition` is a structured expression (see rules.conditions) that must
    evaluate truthy for the rule to pass. `dependencies` are rule codes that
    must pass before this rule is evaluated.
    """
    rule_id: str
    rule_code: str
    name: str
    category: RuleCategory
    severity: Severity
    condition: Dict[str, Any]
    description: str = ""
    auction_types: List[str] = field(default_factory=list)
    default_parameters: Dict[str, Any] = field(default_factory=dict)
    error_message: str = ""
    dependencies: List[str] = field(default_factory=list)
    is_active: bool = True
    effective_from: Optional[int] = None
    effective_until: Optional[int] = None
    version: int = 1
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def applies_to(self, auction_type: str, at: int) -> bool:
        """Active, in its effective window and scoped to the auction type."""
        if not self.is_active:
            return False
        if self.auction_types and auction_type not in self.auction_types:
            return False
        return _in_window(self.effective_from, self.effective_until, at)


@dataclass
class RuleConfiguration:
    """Scoped parameter override for a rule."""
    config_id: str
    rule_id: str
    scope: ConfigScope
    config_values: Dict[str, Any] = field(default_factory=dict)
    auction_id: Optional[str] = None
    auction_type: Optional[str] = None
    scope_value: Optional[str] = None
    priority: int = 0
    is_active: bool = True
    requires_approval: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[int] = None
    effective_from: Optional[int] = None
    effective_until: Optional[int] = None
    created_at: int = field(default_factory=now_ms)

    def is_eligible(self, at: int) -> bool:
        """Active, in window and approved if an approval gate is set."""
        if not self.is_active:
            return False
        if self.requires_approval and not self.approved_by:
            return False
        return _in_window(self.effective_from, self.effective_until, at)


@dataclass
class RuleViolation:
    """A recorded rule failure and its resolution lifecycle."""
    violation_id: str
    rule_id: str
    rule_version: int
    violation_type: ViolationType
    severity: Severity
    message: str
    config_id: Optional[str] = None
    auction_id: Optional[str] = None
    user_id: Optional[str] = None
    bid_id: Optional[str] = None
    expected_values: Dict[str, Any] = field(default_factory=dict)
    actual_values: Dict[str, Any] = field(default_factory=dict)
    status: ViolationStatus = ViolationStatus.DETECTED
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[int] = None
    escalation_level: int = 0
    next_escalation_at: Optional[int] = None
    occurred_at: int = field(default_factory=now_ms)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_VIOLATION_STATUSES


@dataclass
class RuleResult:
    """Outcome of evaluating one rule."""
    rule: Rule
    passed: bool
    expected: Dict[str, Any] = field(default_factory=dict)
    actual: Dict[str, Any] = field(default_factory=dict)
    config: Optional[RuleConfiguration] = None
    skipped: bool = False
    message: str = ""
