"""
Input Validation - request models for every external entry point.

Requests are pydantic models with hard bounds on every field; anything that
fails is reported as a `ValidationError` naming the offending field, before
any state is read or written.
"""

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from gavel.core.errors import ValidationError
from gavel.core.market.types import AuctionType, BidSide
from gavel.core.rules.models import ConfigScope, RuleCategory, Severity

# =============================================================================
# Constants
# =============================================================================

# Amounts are minor currency units
MIN_AMOUNT = 1
MAX_AMOUNT = 2**53 - 1
MAX_QUANTITY = 1_000_000

MAX_ID_LENGTH = 128
MAX_TITLE_LENGTH = 256
MAX_STRING_LENGTH = 1024
MAX_ARRAY_LENGTH = 256
MAX_IDEMPOTENCY_KEY_LENGTH = 255

MIN_TIMESTAMP = 0
MAX_TIMESTAMP = 2**48

ModelT = TypeVar("ModelT", bound=BaseModel)


# =============================================================================
# Request models
# =============================================================================


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class CreateAuctionRequest(_Request):
    auction_type: AuctionType
    title: str = Field(default="", max_length=MAX_TITLE_LENGTH)
    starting_price: int = Field(ge=0, le=MAX_AMOUNT)
    reserve_price: Optional[int] = Field(default=None, ge=0, le=MAX_AMOUNT)
    min_increment: int = Field(default=1, ge=1, le=MAX_AMOUNT)
    start_time: int = Field(ge=MIN_TIMESTAMP, le=MAX_TIMESTAMP)
    end_time: int = Field(ge=MIN_TIMESTAMP, le=MAX_TIMESTAMP)
    params: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)
    activate: bool = False  # Schedule straight away instead of leaving a draft

    @model_validator(mode="after")
    def _window(self) -> "CreateAuctionRequest":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class PlaceBidRequest(_Request):
    auction_id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    bidder_id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    amount: int = Field(ge=MIN_AMOUNT, le=MAX_AMOUNT)
    quantity: int = Field(default=1, ge=1, le=MAX_QUANTITY)
    side: Optional[BidSide] = None
    package: Optional[List[str]] = Field(default=None, max_length=MAX_ARRAY_LENGTH)
    user_groups: List[str] = Field(default_factory=list, max_length=MAX_ARRAY_LENGTH)


class CreateRuleRequest(_Request):
    rule_code: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    name: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    category: RuleCategory
    severity: Severity
    condition: Dict[str, Any]
    description: str = Field(default="", max_length=MAX_STRING_LENGTH)
    auction_types: List[AuctionType] = Field(default_factory=list)
    default_parameters: Dict[str, Any] = Field(default_factory=dict)
    error_message: str = Field(default="", max_length=MAX_STRING_LENGTH)
    dependencies: List[str] = Field(default_factory=list, max_length=MAX_ARRAY_LENGTH)
    is_active: bool = True
    effective_from: Optional[int] = Field(default=None, ge=MIN_TIMESTAMP, le=MAX_TIMESTAMP)
    effective_until: Optional[int] = Field(default=None, ge=MIN_TIMESTAMP, le=MAX_TIMESTAMP)

    @field_validator("condition")
    @classmethod
    def _condition_not_empty(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not value:
            raise ValueError("condition must not be empty")
        return value


class RuleConfigurationRequest(_Request):
    rule_id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    scope: ConfigScope
    config_values: Dict[str, Any] = Field(default_factory=dict)
    auction_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)
    auction_type: Optional[AuctionType] = None
    scope_value: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)
    priority: int = Field(default=0, ge=-1000, le=1000)
    is_active: bool = True
    requires_approval: bool = False
    effective_from: Optional[int] = Field(default=None, ge=MIN_TIMESTAMP, le=MAX_TIMESTAMP)
    effective_until: Optional[int] = Field(default=None, ge=MIN_TIMESTAMP, le=MAX_TIMESTAMP)

    @model_validator(mode="after")
    def _scope_target(self) -> "RuleConfigurationRequest":
        required = {
            ConfigScope.AUCTION: "auction_id",
            ConfigScope.AUCTION_TYPE: "auction_type",
            ConfigScope.USER_GROUP: "scope_value",
        }.get(self.scope)
        if required and getattr(self, required) is None:
            raise ValueError(f"{self.scope.value} scope requires {required}")
        return self


# =============================================================================
# Parsing
# =============================================================================


def parse_request(model: Type[ModelT], data: Any) -> ModelT:
    """
    Validate raw input into a request model.

    Args:
        model: Request model class
        data: Mapping (or an instance of `model`, returned unchanged)

    Raises:
        ValidationError: first failing field, with all errors in context
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = e.errors()
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ValidationError(
            f"Invalid {model.__name__}: {field or 'request'}: {first.get('msg')}",
            field=field,
            context={
                "errors": [
                    {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
                    for err in errors
                ]
            },
        ) from e


def validate_idempotency_key(key: Optional[str]) -> Optional[str]:
    """Idempotency keys are optional, non-blank and bounded."""
    if key is None:
        return None
    if not isinstance(key, str) or not key.strip():
        raise ValidationError("idempotency_key must be a non-empty string", field="idempotency_key")
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError(
            f"idempotency_key exceeds max length {MAX_IDEMPOTENCY_KEY_LENGTH}",
            field="idempotency_key",
        )
    return key
