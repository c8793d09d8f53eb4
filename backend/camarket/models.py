from decimal import Decimal
from typing import Any, Dict, Literal, Optional, Union, get_args

from pydantic import BaseModel, Field


ActorKind = Literal["client", "provider", "system"]

RequestStatus = Literal[
    "pending",
    "accepted",
    "in_progress",
    "completed",
    "rejected",
    "cancelled",
]

RejectRoute = Literal["pending", "rejected"]

PaymentType = Literal["booking_fee", "service_fee", "cancellation_fee", "refund"]

ChargeKind = Literal["booking_fee", "service_fee", "cancellation_fee"]

PaymentStatus = Literal["pending", "completed", "failed", "refunded", "cancelled"]

DiscountType = Literal["percentage", "fixed"]

ProviderStatus = Literal["active", "inactive", "suspended", "rejected", "pending_registration"]

ServiceCategory = Literal[
    "tax_filing",
    "gst_registration",
    "gst_return_filing",
    "company_registration",
    "trademark_registration",
    "tax_consultation",
    "audit_services",
    "compliance_check",
    "financial_consultation",
    "other",
]

SERVICE_CATEGORIES = frozenset(get_args(ServiceCategory))

MAX_PAYMENT_RETRIES = 3

MetadataValue = Union[bool, int, float, str]


class ActorRef(BaseModel):
    kind: ActorKind
    id: str = Field(min_length=1)

    @classmethod
    def system(cls) -> "ActorRef":
        return cls(kind="system", id="system")

    @classmethod
    def client(cls, user_id: str) -> "ActorRef":
        return cls(kind="client", id=user_id)

    @classmethod
    def provider(cls, provider_id: str) -> "ActorRef":
        return cls(kind="provider", id=provider_id)


class Metadata(BaseModel):
    """Versioned key/value map attached to requests, payments and coupons."""

    schema_version: Literal[1] = 1
    values: Dict[str, MetadataValue] = Field(default_factory=dict)


class Provider(BaseModel):
    id: str
    name: str
    status: ProviderStatus = "active"
    commission_percentage: Decimal = Field(ge=0, le=100)
    created_by: Optional[str] = None
    created_at: str


class Offering(BaseModel):
    id: str
    provider_id: str
    category: ServiceCategory
    price: Optional[Decimal] = Field(default=None, ge=0)
    currency: str = "INR"
    is_active: bool = True


class ServiceRequest(BaseModel):
    id: str
    user_id: str
    ca_id: Optional[str] = None
    ca_service_id: str
    status: RequestStatus = "pending"
    purpose: str = ""
    additional_notes: str = ""
    cancellation_reason: Optional[str] = None
    cancellation_fee_due: bool = False
    escalated_at: Optional[str] = None
    completed_at: Optional[str] = None
    metadata: Metadata = Field(default_factory=Metadata)
    created_at: str
    updated_at: str


class RequestStatusChange(BaseModel):
    id: str
    service_request_id: str
    actor: ActorRef
    from_status: Optional[RequestStatus] = None
    to_status: RequestStatus
    note: str = ""
    created_at: str


class Payment(BaseModel):
    id: str
    service_request_id: str
    payer_id: str
    payee_id: Optional[str] = None
    amount: Decimal = Field(ge=0)
    currency: str = "INR"
    payment_type: PaymentType
    status: PaymentStatus = "pending"
    gateway_payment_id: Optional[str] = None
    is_escrow: bool = False
    escrow_release_date: Optional[str] = None
    commission_percentage: Optional[Decimal] = None
    commission_amount: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    coupon_id: Optional[str] = None
    discount_amount: Decimal = Decimal("0.00")
    original_amount: Decimal = Field(ge=0)
    payment_date: Optional[str] = None
    refund_date: Optional[str] = None
    refund_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    retry_count: int = 0
    last_retry_at: Optional[str] = None
    refund_of_payment_id: Optional[str] = None
    metadata: Metadata = Field(default_factory=Metadata)
    created_at: str
    updated_at: str


class Coupon(BaseModel):
    id: str
    code: str
    description: str = ""
    discount_type: DiscountType = "percentage"
    discount_value: Decimal = Field(ge=0)
    max_discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    min_order_amount: Decimal = Decimal("0.00")
    max_usage_limit: Optional[int] = Field(default=None, ge=0)
    usage_count: int = 0
    max_usage_per_user: int = Field(default=1, ge=1)
    valid_from: str
    valid_until: str
    is_active: bool = True
    applicable_service_types: Optional[list[ServiceCategory]] = None
    metadata: Metadata = Field(default_factory=Metadata)
    created_at: str


class CouponUsage(BaseModel):
    id: str
    coupon_id: str
    user_id: str
    service_request_id: str
    payment_id: Optional[str] = None
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    used_at: str
    metadata: Metadata = Field(default_factory=Metadata)


class CouponEligibility(BaseModel):
    eligible: bool
    reason: Optional[str] = None


class CouponQuote(BaseModel):
    code: str
    eligible: bool
    reason: Optional[str] = None
    original_amount: Decimal
    discount_amount: Decimal = Decimal("0.00")
    final_amount: Decimal


class Review(BaseModel):
    id: str
    provider_id: str
    user_id: str
    service_request_id: Optional[str] = None
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    is_verified: bool = False
    created_at: str
    updated_at: str


class RatingSummary(BaseModel):
    provider_id: str
    average_rating: float = 0.0
    review_count: int = 0
    verified_rating: float = 0.0
    verified_review_count: int = 0


class DomainEvent(BaseModel):
    id: str
    type: str
    request_id: Optional[str] = None
    actor_type: ActorKind
    timestamp: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ServiceRequestCreate(BaseModel):
    user_id: str
    ca_service_id: str
    purpose: str = ""
    additional_notes: str = ""
    metadata: Dict[str, MetadataValue] = Field(default_factory=dict)


class ProviderActionRequest(BaseModel):
    provider_id: str


class RejectCommand(BaseModel):
    provider_id: str
    reason: str = ""
    route: RejectRoute = "rejected"


class CancelCommand(BaseModel):
    actor: ActorRef
    reason: str = ""
    fee_applies: bool = False


class EscalateCommand(BaseModel):
    actor: ActorRef


class ChargeCommand(BaseModel):
    service_request_id: str
    payment_type: ChargeKind
    base_amount: Decimal = Field(ge=0)
    coupon_code: Optional[str] = None
    is_escrow: bool = False


class PaymentCompleteCommand(BaseModel):
    gateway_ref: str


class PaymentFailCommand(BaseModel):
    reason: str


class RefundCommand(BaseModel):
    reason: str
    amount: Optional[Decimal] = Field(default=None, gt=0)


class EscrowScheduleCommand(BaseModel):
    release_date: str


class CouponCreate(BaseModel):
    code: str
    description: str = ""
    discount_type: DiscountType = "percentage"
    discount_value: Decimal = Field(ge=0)
    max_discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    min_order_amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    max_usage_limit: Optional[int] = Field(default=None, ge=0)
    max_usage_per_user: int = Field(default=1, ge=1)
    valid_from: Optional[str] = None
    valid_until: str
    applicable_service_types: Optional[list[ServiceCategory]] = None


class CouponUpdate(BaseModel):
    description: Optional[str] = None
    discount_value: Optional[Decimal] = Field(default=None, ge=0)
    max_discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    min_order_amount: Optional[Decimal] = Field(default=None, ge=0)
    max_usage_limit: Optional[int] = Field(default=None, ge=0)
    max_usage_per_user: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[str] = None
    valid_until: Optional[str] = None
    applicable_service_types: Optional[list[ServiceCategory]] = None


class CouponPreviewRequest(BaseModel):
    code: str
    user_id: str
    order_amount: Decimal = Field(ge=0)
    service_category: ServiceCategory


class ProviderCreate(BaseModel):
    name: str
    commission_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    created_by: Optional[str] = None


class OfferingCreate(BaseModel):
    category: ServiceCategory
    price: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = None


class ReviewCreate(BaseModel):
    user_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    service_request_id: Optional[str] = None


class ReviewUpdate(BaseModel):
    user_id: str
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    comment: Optional[str] = None


class AuthTokenRequest(BaseModel):
    actor: ActorRef
    password: str


class AuthTokenResponse(BaseModel):
    access_token: str
    actor: ActorRef
    expires_at: str
