"""
Error taxonomy for Gavel.

ERROR CATEGORIES:
1. Validation      - malformed or out-of-range request, never retried
2. Business rule   - rule violation or illegal auction state for the operation
3. Concurrency     - optimistic version mismatch, retry from a fresh read
4. Infrastructure  - store unavailable or publish failure

Every error carries a machine-readable `code` and a `context` dict with
enough detail (auction id, rule id, field, expected/actual) to reconstruct
the failure without re-querying.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """Error category classification."""
    VALIDATION = "VALIDATION"
    BUSINESS_RULE = "BUSINESS_RULE"
    CONCURRENCY = "CONCURRENCY"
    INFRASTRUCTURE = "INFRASTRUCTURE"


class GavelError(Exception):
    """Base class for all engine errors."""

    category: ErrorCategory = ErrorCategory.INFRASTRUCTURE
    retryable: bool = False
    default_code: str = "GAVEL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context: Dict[str, Any] = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


# =============================================================================
# Validation
# =============================================================================


class ValidationError(GavelError):
    """Malformed or out-of-range request, identified by field."""

    category = ErrorCategory.VALIDATION
    default_code = "VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = dict(context or {})
        if field is not None:
            ctx.setdefault("field", field)
        super().__init__(message, code=code, context=ctx)
        self.field = field


class BidRejectedError(ValidationError):
    """Bid amount or shape is illegal for the auction's mechanism."""

    default_code = "BID_INVALID"


class RuleConfigurationError(ValidationError):
    """Rule catalog is inconsistent (unknown dependency, cycle, bad condition)."""

    default_code = "RULE_CONFIGURATION_INVALID"


class UnsupportedMechanismError(ValidationError):
    """Auction type has no registered mechanism."""

    default_code = "MECHANISM_UNSUPPORTED"


class NotFoundError(ValidationError):
    """Referenced entity does not exist."""

    default_code = "NOT_FOUND"


# =============================================================================
# Business rules
# =============================================================================


class BusinessRuleError(GavelError):
    """A blocking (ERROR/CRITICAL) rule failed."""

    category = ErrorCategory.BUSINESS_RULE
    default_code = "RULE_VIOLATION"

    def __init__(
        self,
        message: str,
        rule_id: Optional[str] = None,
        rule_code: Optional[str] = None,
        severity: Optional[str] = None,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = dict(context or {})
        if rule_id is not None:
            ctx.setdefault("rule_id", rule_id)
        if rule_code is not None:
            ctx.setdefault("rule_code", rule_code)
        if severity is not None:
            ctx.setdefault("severity", severity)
        super().__init__(message, code=code, context=ctx)
        self.rule_id = rule_id
        self.rule_code = rule_code
        self.severity = severity


class AuctionStateError(BusinessRuleError):
    """Operation is not allowed in the auction's current state."""

    default_code = "AUCTION_NOT_ACTIVE"


# =============================================================================
# Concurrency
# =============================================================================


class ConcurrencyConflict(GavelError):
    """Row changed since it was read; retry from a fresh read."""

    category = ErrorCategory.CONCURRENCY
    retryable = True
    default_code = "VERSION_CONFLICT"

    def __init__(
        self,
        entity: str,
        entity_id: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ):
        super().__init__(
            f"{entity} {entity_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            context={
                "entity": entity,
                "entity_id": entity_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version


# =============================================================================
# Infrastructure
# =============================================================================


class InfrastructureError(GavelError):
    """Store unavailable or another environmental failure."""

    category = ErrorCategory.INFRASTRUCTURE
    retryable = True
    default_code = "STORE_UNAVAILABLE"


class PublishError(InfrastructureError):
    """Event bus rejected or timed out a publish."""

    default_code = "PUBLISH_FAILED"
