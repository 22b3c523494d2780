import logging
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError


logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PENDING = "PENDING"
    FAILURE = "FAILURE"
    ERROR = "ERROR"
    AWAITING_RESPONSE = "AWAITING_RESPONSE"
    UNKNOWN = "UNKNOWN"


class GatewayClass(str, Enum):
    GIFT_CARD = "GIFT_CARD"
    STORE_CREDIT = "STORE_CREDIT"
    EXTERNAL = "EXTERNAL"


def classify_gateway(gateway: str) -> GatewayClass:
    name = gateway.strip().lower()
    if "gift_card" in name:
        return GatewayClass.GIFT_CARD
    if "store_credit" in name:
        return GatewayClass.STORE_CREDIT
    return GatewayClass.EXTERNAL


class _PaymentLegBase(BaseModel):
    id: Optional[str] = None
    gateway: str
    status: PaymentStatus
    amount: Decimal = Field(ge=0)

    @field_validator("gateway")
    @classmethod
    def _gateway_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("gateway is required")
        return v.strip()

    @property
    def gateway_class(self) -> GatewayClass:
        return classify_gateway(self.gateway)


class SaleLeg(_PaymentLegBase):
    kind: Literal["SALE"]


class AuthorizationLeg(_PaymentLegBase):
    kind: Literal["AUTHORIZATION"]


class CaptureLeg(_PaymentLegBase):
    kind: Literal["CAPTURE"]
    parentTransactionId: Optional[str] = None


class RefundLeg(_PaymentLegBase):
    kind: Literal["REFUND"]
    parentTransactionId: Optional[str] = None


class VoidLeg(_PaymentLegBase):
    kind: Literal["VOID"]
    parentTransactionId: Optional[str] = None


PaymentLeg = Annotated[
    Union[SaleLeg, AuthorizationLeg, CaptureLeg, RefundLeg, VoidLeg],
    Field(discriminator="kind"),
]

_payment_leg_adapter = TypeAdapter(PaymentLeg)


def parse_payment_legs(raw_legs: List[Any]) -> list:
    """Parse raw payment legs, dropping any that do not fit a known shape."""
    legs = []
    for index, raw in enumerate(raw_legs or []):
        if not isinstance(raw, dict):
            logger.warning("skipping malformed payment leg", extra={"index": index})
            continue

        normalized = dict(raw)
        for key in ("kind", "status"):
            if isinstance(normalized.get(key), str):
                normalized[key] = normalized[key].strip().upper()

        try:
            legs.append(_payment_leg_adapter.validate_python(normalized))
        except PydanticValidationError as e:
            logger.warning(
                "skipping unrecognized payment leg",
                extra={"index": index, "kind": raw.get("kind"), "gateway": raw.get("gateway"), "errors": e.error_count()},
            )
    return legs


class OrderPaidEvent(BaseModel):
    orderId: str
    customerId: Optional[str] = None
    customerEmail: Optional[str] = None
    currency: str = "USD"
    totalPrice: Optional[Decimal] = None
    financialStatus: Optional[str] = None
    cancelled: bool = False
    # raw legs; parsed with parse_payment_legs
    paymentLegs: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("orderId")
    @classmethod
    def _order_id_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("orderId is required")
        return v.strip()

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return (v or "USD").strip().upper()


class OrderPaidResult(BaseModel):
    outcome: str
    reason: Optional[str] = None
    transactionId: Optional[str] = None
    eligibleAmount: Optional[Decimal] = None
    cashbackAmount: Optional[Decimal] = None
    cashbackPercent: Optional[Decimal] = None
    status: Optional[str] = None
    tierChanged: bool = False
