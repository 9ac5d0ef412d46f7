"""
Database Schemas for Your Spell Caster

Each Pydantic model corresponds to a MongoDB collection.
Collection name = snake_case of the class name (service_request, price_quote, ...).

Documents are validated through these models before they are written, so the
stored shape and its status values are always one of the known variants.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

RequestStatus = Literal["pending", "in_progress", "completed", "cancelled", "on_hold"]
Priority = Literal["low", "medium", "high", "urgent"]
PaymentStatus = Literal["unpaid", "paid", "failed", "refunded"]
QuoteStatus = Literal["pending", "accepted", "rejected"]
RefundStatus = Literal["pending", "approved", "denied", "processed", "failed"]
RefundReason = Literal[
    "service_unsatisfactory",
    "duplicate_charge",
    "service_not_completed",
    "changed_mind",
    "other",
]
RefundMethod = Literal["original_payment_method", "store_credit"]
InviteStatus = Literal["pending", "accepted", "revoked", "expired"]
Role = Literal["user", "admin"]
Frequency = Literal["daily", "weekly", "monthly"]
TransactionStatus = Literal["pending", "succeeded", "failed", "refunded", "partially_refunded"]

REQUEST_STATUSES = ("pending", "in_progress", "completed", "cancelled", "on_hold")
PRIORITIES = ("low", "medium", "high", "urgent")
PRIORITY_RANK = {"urgent": 3, "high": 2, "medium": 1, "low": 0}
REFUND_REASONS = (
    "service_unsatisfactory",
    "duplicate_charge",
    "service_not_completed",
    "changed_mind",
    "other",
)
REFUND_METHODS = ("original_payment_method", "store_credit")
ROLES = ("user", "admin")
FREQUENCIES = ("daily", "weekly", "monthly")

USER_MESSAGE_MAX_LENGTH = 500


class StatusChange(BaseModel):
    status: str
    updated_by: str
    updated_at: datetime
    notes: Optional[str] = None


class RitualStep(BaseModel):
    step_number: int = Field(..., ge=1)
    step_name: str
    completed: bool = False
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None
    photo_urls: List[str] = Field(default_factory=list)


class ServiceRequest(BaseModel):
    user_id: str
    service_name: str
    service_type: str
    description: str
    client_notes: Optional[str] = None
    status: RequestStatus = "pending"
    priority: Priority = "medium"
    priority_rank: int = 1
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    admin_notes: Optional[str] = None
    ritual_steps: List[RitualStep] = Field(default_factory=list)
    status_history: List[StatusChange] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    amount_paid: Optional[int] = Field(None, ge=0, description="Minor units (cents)")
    payment_intent_id: Optional[str] = None
    payment_status: PaymentStatus = "unpaid"
    requested_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PriceQuote(BaseModel):
    user_id: str
    service_id: str
    service_name: str
    quoted_price: float = Field(..., gt=0, description="Decimal amount in the quote currency")
    currency: str = "usd"
    notes: Optional[str] = None
    valid_until: datetime
    status: QuoteStatus = "pending"
    rejection_reason: Optional[str] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None


class RefundRequest(BaseModel):
    user_id: str
    payment_intent_id: str
    transaction_id: Optional[str] = None
    amount: int = Field(..., gt=0, description="Original charge in minor units (cents)")
    currency: str = "usd"
    service_name: str
    service_type: str
    reason: RefundReason
    user_message: Optional[str] = Field(None, max_length=USER_MESSAGE_MAX_LENGTH)
    status: RefundStatus = "pending"
    admin_notes: Optional[str] = None
    admin_id: Optional[str] = None
    refund_amount: Optional[int] = Field(None, gt=0, description="Approved amount in cents")
    refund_method: Optional[RefundMethod] = None
    refund_intent_id: Optional[str] = None
    refunded_amount: Optional[int] = None
    stripe_refund_status: Optional[str] = None
    stripe_refund_error: Optional[str] = None
    status_history: List[StatusChange] = Field(default_factory=list)
    requested_at: datetime
    reviewed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RequestTemplate(BaseModel):
    name: str
    service_type: str
    service_name: str
    description: str
    default_ritual_steps: List[RitualStep] = Field(default_factory=list)
    estimated_price: Optional[float] = Field(None, ge=0)
    estimated_days: Optional[int] = Field(None, ge=0)
    priority: Priority = "medium"
    category: str
    tags: List[str] = Field(default_factory=list)
    active: bool = True
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    created_by: str


class AdminInvite(BaseModel):
    email: EmailStr
    token: str = Field(..., min_length=64, max_length=64)
    role: Role = "admin"
    status: InviteStatus = "pending"
    custom_message: Optional[str] = None
    created_by: str
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    revoked_at: Optional[datetime] = None


class Insight(BaseModel):
    title: str
    content: str
    preview_text: Optional[str] = None
    frequency: Frequency = "daily"
    tags: List[str] = Field(default_factory=list)
    locale: str = "en-US"
    active: bool = False
    created_by: Optional[str] = None


class User(BaseModel):
    email: EmailStr
    password_hash: Optional[str] = Field(None, description="Hashed password")
    name: Optional[str] = None
    phone: Optional[str] = None
    image: Optional[str] = None
    role: Role = "user"
    is_active: bool = True
    is_suspended: bool = False
    suspension_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    last_activity_at: Optional[datetime] = None


class Payment(BaseModel):
    user_id: Optional[str] = None
    payment_intent_id: str
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    service_request_id: Optional[str] = None
    quote_id: Optional[str] = None
    amount: int = Field(..., ge=0, description="Minor units (cents)")
    currency: str = "usd"
    status: TransactionStatus = "pending"
    refunded_amount: int = 0
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None


class AuditLogEntry(BaseModel):
    actor_id: str
    action: str
    target_type: str
    target_id: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    created_at: datetime
