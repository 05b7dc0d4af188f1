"""
Unit tests for request validation and the error taxonomy.
"""

import pytest

from gavel.core.errors import (
    AuctionStateError,
    BusinessRuleError,
    ConcurrencyConflict,
    ErrorCategory,
    InfrastructureError,
    ValidationError,
)
from gavel.core.market.types import AuctionType
from gavel.utils.validation import (
    MAX_IDEMPOTENCY_KEY_LENGTH,
    CreateAuctionRequest,
    PlaceBidRequest,
    RuleConfigurationRequest,
    parse_request,
    validate_idempotency_key,
)


class TestParseRequest:
    """pydantic errors surface as ValidationError."""

    def test_valid_request(self):
        """Values are coerced into the model."""
        req = parse_request(
            CreateAuctionRequest,
            {"auction_type": "vickrey", "starting_price": 10, "start_time": 1, "end_time": 2},
        )
        assert req.auction_type == AuctionType.VICKREY
        assert req.min_increment == 1
        assert parse_request(CreateAuctionRequest, req) is req

    def test_field_named(self):
        """The first failing field is reported."""
        with pytest.raises(ValidationError) as exc:
            parse_request(PlaceBidRequest, {"auction_id": "a", "bidder_id": "b", "amount": 0})
        assert exc.value.field == "amount"
        assert exc.value.category == ErrorCategory.VALIDATION
        assert exc.value.context["errors"][0]["field"] == "amount"

    def test_missing_field(self):
        """Required fields are enforced."""
        with pytest.raises(ValidationError) as exc:
            parse_request(PlaceBidRequest, {"auction_id": "a", "amount": 5})
        assert exc.value.field == "bidder_id"

    def test_bad_side(self):
        """Enum fields reject unknown values."""
        with pytest.raises(ValidationError) as exc:
            parse_request(PlaceBidRequest, {"auction_id": "a", "bidder_id": "b", "amount": 5, "side": "middle"})
        assert exc.value.field == "side"

    def test_scope_target_required(self):
        """Scoped configurations name their target."""
        with pytest.raises(ValidationError):
            parse_request(RuleConfigurationRequest, {"rule_id": "r", "scope": "auction"})
        req = parse_request(RuleConfigurationRequest, {"rule_id": "r", "scope": "user_group", "scope_value": "vip"})
        assert req.scope_value == "vip"
        assert parse_request(RuleConfigurationRequest, {"rule_id": "r", "scope": "global"}).priority == 0


class TestIdempotencyKey:
    """validate_idempotency_key."""

    def test_optional(self):
        assert validate_idempotency_key(None) is None
        assert validate_idempotency_key("order-1") == "order-1"

    def test_blank_and_long(self):
        """Blank and oversized keys are refused."""
        with pytest.raises(ValidationError):
            validate_idempotency_key("   ")
        with pytest.raises(ValidationError) as exc:
            validate_idempotency_key("k" * (MAX_IDEMPOTENCY_KEY_LENGTH + 1))
        assert exc.value.field == "idempotency_key"


class TestErrorTaxonomy:
    """Categories, codes and retryability."""

    def test_categories(self):
        assert AuctionStateError("x").category == ErrorCategory.BUSINESS_RULE
        assert isinstance(AuctionStateError("x"), BusinessRuleError)
        assert InfrastructureError("x").retryable
        assert not ValidationError("x").retryable

    def test_conflict_context(self):
        """Version conflicts carry both versions and are retryable."""
        err = ConcurrencyConflict("auction", "a1", expected_version=3, actual_version=4)
        assert err.retryable
        assert err.code == "VERSION_CONFLICT"
        assert err.to_dict()["context"]["actual_version"] == 4

    def test_business_rule_context(self):
        """Rule identity lands in the context."""
        err = BusinessRuleError("blocked", rule_id="r1", rule_code="MAX_BID", severity="error")
        assert err.context == {"rule_id": "r1", "rule_code": "MAX_BID", "severity": "error"}
        assert str(err) == "[RULE_VIOLATION] blocked"
