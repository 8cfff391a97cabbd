from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Generic, Literal, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

TEMP_ID_PREFIX = "temp-"

T = TypeVar("T")


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    REFUNDED = "refunded"


class CancellationReason(str, Enum):
    CHANGE_OF_PLANS = "change_of_plans"
    FOUND_BETTER_OPTION = "found_better_option"
    PERSONAL_EMERGENCY = "personal_emergency"
    PROPERTY_ISSUE = "property_issue"
    OTHER = "other"


class ApiModel(BaseModel):
    """Backend payloads are camelCase"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReservationBase(ApiModel):
    property_id: str
    check_in: date
    check_out: date
    guests: int = Field(default=1, ge=1)
    total_amount: Decimal = Decimal("0.00")
    special_requests: Optional[str] = Field(default=None, max_length=500)


class CreateReservationRequest(ReservationBase):
    pass


class ReservationEntity(ReservationBase):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    status: ReservationStatus = ReservationStatus.PENDING
    version: int = Field(default=0, validation_alias=AliasChoices("version", "__v"))
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)


class ReservationListParams(ApiModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True
    )

    status: Optional[ReservationStatus] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    property_id: Optional[str] = None
    page: Optional[int] = Field(default=None, ge=1)
    limit: Optional[int] = Field(default=None, ge=1, le=100)
    sort_by: Optional[Literal["createdAt", "checkIn", "checkOut", "totalAmount"]] = None
    sort_order: Optional[Literal["asc", "desc"]] = None


class PriceBreakdown(ApiModel):
    base_price: Decimal
    taxes: Decimal
    fees: Decimal
    total: Decimal
    nights: int


class ReservationStats(ApiModel):
    total_orders: int = 0
    total_revenue: Decimal = Decimal("0")
    pending_orders: int = 0
    completed_orders: int = 0
    cancelled_orders: int = 0


class CheckoutSession(ApiModel):
    id: str
    url: Optional[str] = None


class Page(ApiModel, Generic[T]):
    data: list[T] = Field(default_factory=list)
    page: int = 1
    limit: int = 10
    total: int = 0
    total_pages: int = 1


class ConflictCheck(ApiModel):
    has_conflict: bool = False
    conflicting_orders: list[ReservationEntity] = Field(default_factory=list)


class PaymentResult(ApiModel):
    status: str
    payment_intent_id: Optional[str] = None
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None

    @property
    def succeeded(self) -> bool:
        return self.status in ("succeeded", "paid", "refunded")


class SessionContext(BaseModel):
    """Who is acting; passed explicitly to every call that talks to the API"""

    model_config = ConfigDict(frozen=True)

    user_id: str
    access_token: Optional[str] = None
    role: Literal["guest", "host", "admin"] = "guest"

    @property
    def auth_headers(self) -> dict[str, str]:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}
