from sqlalchemy import (
    Column, Integer, Float, Date, TIMESTAMP, String, Text, Boolean, JSON,
    ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship
from enum import Enum as PyEnum
import datetime

from .database import Base


def utcnow() -> datetime.datetime:
    # Naive UTC, matching the TIMESTAMP columns below
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# --- ENUMS ---
class PriceType(str, PyEnum):
    DAY = "Day"
    WEEK = "Week"
    MONTH = "Month"


class PaymentOption(str, PyEnum):
    BOOKING_ONLY = "booking_only"
    FULL = "full"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class BookingPaymentStatus(str, PyEnum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    FAILED = "failed"


class MilestoneStatus(str, PyEnum):
    PENDING = "pending"
    PAID = "paid"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, PyEnum):
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    MANUAL = "manual"
    REFUND = "refund"
    PENDING = "pending"


class PaymentType(str, PyEnum):
    BOOKING = "booking"
    RENT = "rent"
    EXTENSION = "extension"
    REFUND = "refund"
    MANUAL = "manual"


class LinkStatus(str, PyEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    REVOKED = "revoked"


# --- Rate Catalog (owned by the catalog service, read-only here) ---
class RoomPrice(Base):
    __tablename__ = "room_prices"

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(Integer, index=True, nullable=False)
    price_type = Column(SQLEnum(PriceType), nullable=False)
    fixed_price = Column(Float, nullable=False)
    discount_price = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("room_id", "price_type", name="uq_room_prices_room_type"),
    )


# --- Booking ---
class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)

    # Users and packages live in other services; only their ids are stored.
    user_id = Column(Integer, index=True, nullable=False)
    package_id = Column(Integer, index=True, nullable=False)
    room_ids = Column(JSON, nullable=False, default=list)

    from_date = Column(Date, nullable=False)
    to_date = Column(Date, nullable=False)
    number_of_days = Column(Integer, nullable=False)
    price_type = Column(SQLEnum(PriceType), nullable=False)

    rent_amount = Column(Float, nullable=False, default=0.0)
    booking_fee = Column(Float, nullable=False, default=0.0)
    # Always rent_amount + booking_fee; written only through set_amounts()
    total_amount = Column(Float, nullable=False, default=0.0)

    payment_option = Column(SQLEnum(PaymentOption), nullable=False)
    status = Column(SQLEnum(BookingStatus), default=BookingStatus.PENDING, nullable=False)
    payment_status = Column(SQLEnum(BookingPaymentStatus), default=BookingPaymentStatus.PENDING, nullable=False)

    cancellation_reason = Column(String(500), nullable=True)
    cancelled_at = Column(TIMESTAMP, nullable=True)

    auto_renewal = Column(Boolean, default=False, nullable=False)
    renewal_period_days = Column(Integer, nullable=True)
    next_renewal_date = Column(Date, nullable=True)

    milestones_scheduled = Column(Boolean, default=False, nullable=False)
    last_payment_date = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    milestones = relationship("Milestone", back_populates="booking", order_by="Milestone.sequence")
    payments = relationship("Payment", back_populates="booking", order_by="Payment.id")
    payment_links = relationship("PaymentLink", back_populates="booking")

    __table_args__ = (
        Index("ix_bookings_dates", "from_date", "to_date"),
    )

    def set_amounts(self, rent_amount: float, booking_fee: float) -> None:
        self.rent_amount = rent_amount
        self.booking_fee = booking_fee
        self.total_amount = rent_amount + booking_fee

    @property
    def is_terminal(self) -> bool:
        return self.status in (BookingStatus.CANCELLED, BookingStatus.COMPLETED)


# --- Milestone (scheduled payment obligation) ---
class Milestone(Base):
    __tablename__ = "milestones"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), index=True, nullable=False)

    sequence = Column(Integer, nullable=False)
    milestone_type = Column(String(20), nullable=False)
    is_booking_fee = Column(Boolean, default=False, nullable=False)
    due_date = Column(Date, nullable=False)
    amount = Column(Float, nullable=False)

    payment_status = Column(SQLEnum(MilestoneStatus), default=MilestoneStatus.PENDING, nullable=False)
    # use_alter breaks the milestones <-> payments FK cycle for create_all/drop_all
    payment_id = Column(Integer, ForeignKey("payments.id", use_alter=True, name="fk_milestones_payment_id"), nullable=True)
    paid_at = Column(TIMESTAMP, nullable=True)
    payment_method = Column(String(30), nullable=True)
    transaction_reference = Column(String(100), nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow)

    booking = relationship("Booking", back_populates="milestones")

    __table_args__ = (
        UniqueConstraint("booking_id", "sequence", name="uq_milestones_booking_sequence"),
    )


# --- Payment transaction ---
class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), index=True, nullable=False)
    user_id = Column(Integer, index=True, nullable=False)
    milestone_id = Column(Integer, ForeignKey("milestones.id"), index=True, nullable=True)

    # Signed: refunds are negative
    amount = Column(Float, nullable=False)
    payment_method = Column(SQLEnum(PaymentMethod), nullable=False)
    payment_type = Column(SQLEnum(PaymentType), nullable=False)
    status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    transaction_id = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    paid_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow)

    booking = relationship("Booking", back_populates="payments")

    __table_args__ = (
        Index("ix_payments_booking_status", "booking_id", "status"),
    )


# --- Payment link ---
class PaymentLink(Base):
    __tablename__ = "payment_links"

    id = Column(Integer, primary_key=True, index=True)
    unique_id = Column(String(40), unique=True, index=True, nullable=False)
    user_id = Column(Integer, index=True, nullable=False)
    booking_id = Column(Integer, ForeignKey("bookings.id"), index=True, nullable=False)
    milestone_id = Column(Integer, ForeignKey("milestones.id"), index=True, nullable=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)

    amount = Column(Float, nullable=False)
    status = Column(SQLEnum(LinkStatus), default=LinkStatus.ACTIVE, nullable=False)
    expires_at = Column(TIMESTAMP, nullable=True)
    paid_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    booking = relationship("Booking", back_populates="payment_links")

    __table_args__ = (
        Index("ix_payment_links_milestone_status", "milestone_id", "status"),
    )
