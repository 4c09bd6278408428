from pydantic import BaseModel, Field
from enum import Enum
from typing import List, Optional
import datetime

from .models import (
    PriceType, PaymentOption, BookingStatus, BookingPaymentStatus, MilestoneStatus,
    PaymentStatus, PaymentMethod, PaymentType, LinkStatus,
)


class SettlementTarget(str, Enum):
    PAID = "Paid"
    PENDING = "Pending"
    CANCELLED = "cancelled"


# --- Pricing ---
class PriceLineItem(BaseModel):
    room_id: int
    rate: float
    quantity: int
    total: float
    # False when the room has no rate for the requested granularity
    priced: bool = True


class PriceQuote(BaseModel):
    price_type: PriceType
    number_of_days: int
    rent_amount: float
    booking_fee: float
    total_amount: float
    line_items: List[PriceLineItem]


class QuoteRequest(BaseModel):
    room_ids: List[int] = Field(min_length=1)
    from_date: datetime.date
    to_date: datetime.date
    price_type: PriceType


# --- Bookings ---
class BookingBase(BaseModel):
    package_id: int
    room_ids: List[int] = Field(min_length=1)
    from_date: datetime.date
    to_date: datetime.date
    price_type: PriceType


class BookingCreate(BookingBase):
    # user_id will come from the JWT token
    payment_option: PaymentOption = PaymentOption.BOOKING_ONLY
    payment_method: PaymentMethod = PaymentMethod.CASH
    transaction_reference: Optional[str] = Field(default=None, max_length=100)
    auto_renewal: bool = False
    renewal_period_days: Optional[int] = Field(default=None, ge=1)


class BookingRead(BookingBase):
    id: int
    user_id: int
    number_of_days: int
    rent_amount: float
    booking_fee: float
    total_amount: float
    payment_option: PaymentOption
    status: BookingStatus
    payment_status: BookingPaymentStatus
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime.datetime] = None
    auto_renewal: bool
    next_renewal_date: Optional[datetime.date] = None
    milestones_scheduled: bool
    last_payment_date: Optional[datetime.datetime] = None
    created_at: datetime.datetime

    class Config:
        from_attributes = True


class BookingExtend(BaseModel):
    new_to_date: datetime.date


class BookingCancel(BaseModel):
    cancellation_reason: str = Field(min_length=1, max_length=500)
    refund_amount: Optional[float] = Field(default=None, ge=0)


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


# --- Milestones ---
class MilestoneRead(BaseModel):
    id: int
    booking_id: int
    sequence: int
    milestone_type: str
    is_booking_fee: bool
    due_date: datetime.date
    amount: float
    payment_status: MilestoneStatus
    payment_id: Optional[int] = None
    paid_at: Optional[datetime.datetime] = None
    payment_method: Optional[str] = None
    transaction_reference: Optional[str] = None

    class Config:
        from_attributes = True


class MilestoneView(MilestoneRead):
    description: str
    payment_link: Optional[str] = None
    link_updated_at: Optional[datetime.datetime] = None


# --- Payments ---
class PaymentRead(BaseModel):
    id: int
    booking_id: int
    user_id: int
    milestone_id: Optional[int] = None
    amount: float
    payment_method: PaymentMethod
    payment_type: PaymentType
    status: PaymentStatus
    transaction_id: Optional[str] = None
    description: Optional[str] = None
    paid_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime

    class Config:
        from_attributes = True


class PaymentCreate(BaseModel):
    amount: float = Field(ge=0)
    status: SettlementTarget = SettlementTarget.PENDING
    milestone_id: Optional[int] = None
    payment_method: PaymentMethod = PaymentMethod.MANUAL
    payment_type: PaymentType = PaymentType.MANUAL
    transaction_id: Optional[str] = Field(default=None, max_length=100)


class PaymentStatusUpdate(BaseModel):
    status: SettlementTarget


class SettlementResult(BaseModel):
    booking: BookingRead
    milestone: Optional[MilestoneRead] = None
    payment: PaymentRead


# --- Payment links ---
class PaymentLinkIssue(BaseModel):
    amount: Optional[float] = Field(default=None, ge=0)


class PaymentLinkRead(BaseModel):
    unique_id: str
    user_id: int
    booking_id: int
    milestone_id: Optional[int] = None
    payment_id: Optional[int] = None
    amount: float
    status: LinkStatus
    expires_at: Optional[datetime.datetime] = None
    paid_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None
    url: Optional[str] = None

    class Config:
        from_attributes = True


class PaymentLinkRedeem(BaseModel):
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    reference: Optional[str] = Field(default=None, max_length=100)


class RedemptionResult(BaseModel):
    payment: PaymentRead
    milestone: Optional[MilestoneRead] = None
    link: PaymentLinkRead


# --- Invoice ---
class InvoiceSummary(BaseModel):
    total_price: float
    total_paid: float
    remaining_balance: float


class Invoice(BaseModel):
    invoice_number: str
    issued_on: datetime.date
    booking: BookingRead
    milestones: List[MilestoneRead]
    payments: List[PaymentRead]
    summary: InvoiceSummary


class PaymentOverview(InvoiceSummary):
    payment_percentage: float
    current_milestone: Optional[MilestoneRead] = None
    has_overdue: bool
