"""
Milestone scheduling.

A booking's schedule is one booking-fee milestone (sequence 0, due on the
first day of the stay) followed by one installment per period of the
booking's price type. The schedule is generated once, lazily, the first time
it is asked for. The booking's `milestones_scheduled` flag, read under a row
lock, decides whether generation still has to happen.

Installments use plain float division by default ("legacy" rounding), so the
installments may not add up to the rent to the cent. Downstream figures were
produced this way; set INSTALLMENT_ROUNDING=absorb_remainder to round to cents
and let the last installment take the remainder instead.
"""
import calendar
import datetime
import logging
import math
from typing import List

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models, crud, ledger
from .config import settings
from .database import atomic
from .exceptions import IncompleteBookingState, NotFound, ReconciliationError, ValidationError

logger = logging.getLogger("booking_service")

BOOKING_FEE_TYPE = "Booking Fee"
EXTENSION_TYPE = "Extension"

ROUNDING_POLICIES = ("legacy", "absorb_remainder")


def add_months(start: datetime.date, months: int) -> datetime.date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return datetime.date(year, month, day)


def whole_months_between(from_date: datetime.date, to_date: datetime.date) -> int:
    months = (to_date.year - from_date.year) * 12 + (to_date.month - from_date.month)
    if to_date.day < from_date.day:
        months -= 1
    return max(0, months)


def periods_between(from_date: datetime.date, to_date: datetime.date, price_type) -> int:
    days = (to_date - from_date).days
    if price_type == models.PriceType.MONTH:
        return whole_months_between(from_date, to_date)
    if price_type == models.PriceType.WEEK:
        return math.ceil(days / 7)
    if price_type == models.PriceType.DAY:
        return days
    return 1


def period_start(start: datetime.date, index: int, price_type) -> datetime.date:
    if price_type == models.PriceType.WEEK:
        return start + datetime.timedelta(weeks=index)
    if price_type == models.PriceType.DAY:
        return start + datetime.timedelta(days=index)
    return add_months(start, index)


def installment_amounts(rent_amount: float, count: int, policy: str = None) -> List[float]:
    policy = policy or settings.INSTALLMENT_ROUNDING
    if policy not in ROUNDING_POLICIES:
        raise ValidationError(f"Unknown installment rounding policy: {policy!r}")

    if policy == "legacy":
        return [rent_amount / count] * count

    base = round(rent_amount / count, 2)
    last = round(rent_amount - base * (count - 1), 2)
    return [base] * (count - 1) + [last]


def build_schedule(booking: models.Booking, policy: str = None) -> List[models.Milestone]:
    """Builds (but does not persist) the full milestone set for a booking."""
    if not booking.from_date or not booking.to_date:
        raise IncompleteBookingState(f"Booking {booking.id} has no dates; cannot schedule payments.")
    if not booking.rent_amount or booking.rent_amount <= 0:
        raise IncompleteBookingState(f"Booking {booking.id} has no rent amount; cannot schedule payments.")

    price_type = booking.price_type
    count = max(1, periods_between(booking.from_date, booking.to_date, price_type))

    schedule = [models.Milestone(
        booking_id=booking.id,
        sequence=0,
        milestone_type=BOOKING_FEE_TYPE,
        is_booking_fee=True,
        due_date=booking.from_date,
        amount=booking.booking_fee or 0.0,
        payment_status=models.MilestoneStatus.PENDING,
    )]
    for i, amount in enumerate(installment_amounts(booking.rent_amount, count, policy), start=1):
        schedule.append(models.Milestone(
            booking_id=booking.id,
            sequence=i,
            milestone_type=price_type.value if price_type else "Month",
            is_booking_fee=False,
            due_date=period_start(booking.from_date, i - 1, price_type),
            amount=amount,
            payment_status=models.MilestoneStatus.PENDING,
        ))
    return schedule


def generate_milestones(db: Session, booking: models.Booking) -> bool:
    """
    Generates and persists the booking's schedule unless it already exists.

    Returns True when milestones were created by this call.
    """
    with atomic(db, ReconciliationError, "milestone generation"):
        db_booking = db.query(models.Booking).filter(
            models.Booking.id == booking.id
        ).with_for_update().populate_existing().first()
        if db_booking is None:
            raise NotFound(f"Booking {booking.id} not found")

        if db_booking.milestones_scheduled:
            return False

        # Bookings scheduled before the flag existed
        existing = db.query(models.Milestone).filter(models.Milestone.booking_id == db_booking.id).count()
        if existing:
            logger.info(f"Booking {db_booking.id} already has {existing} milestones; marking as scheduled.")
            db_booking.milestones_scheduled = True
            return False

        schedule = build_schedule(db_booking)
        db.add_all(schedule)
        db.flush()
        db_booking.milestones_scheduled = True

        settle_checkout_payment(db, db_booking, schedule)
        crud.reconcile_payment_status(db, db_booking)

    logger.info(f"Generated {len(schedule)} milestones for booking {booking.id}")
    return True


def settle_checkout_payment(db: Session, booking: models.Booking, schedule: List[models.Milestone]) -> int:
    """
    Applies the money taken at checkout to a freshly generated schedule,
    settling milestones in order for as long as the payment covers them in
    full. Returns the number of milestones settled.
    Note: Does NOT commit.
    """
    payment = db.query(models.Payment).filter(
        models.Payment.booking_id == booking.id,
        models.Payment.status == models.PaymentStatus.COMPLETED,
        models.Payment.payment_type.in_([models.PaymentType.BOOKING, models.PaymentType.RENT]),
        models.Payment.milestone_id.is_(None),
    ).order_by(models.Payment.id).with_for_update().first()
    if payment is None:
        return 0

    remaining = payment.amount
    covered = []
    for milestone in sorted(schedule, key=lambda m: (m.due_date, m.sequence)):
        if milestone.amount > remaining + settings.MILESTONE_SUM_TOLERANCE:
            break
        ledger.settle_milestone(db, payment, milestone)
        remaining -= milestone.amount
        covered.append(milestone)

    # A payment spread over several milestones is found through their payment_id
    if len(covered) != 1:
        payment.milestone_id = None

    if covered:
        logger.info(f"Checkout payment {payment.id} settled {len(covered)} milestones of booking {booking.id}")
    return len(covered)


def list_milestones(db: Session, booking_id: int) -> List[models.Milestone]:
    return db.query(models.Milestone).filter(
        models.Milestone.booking_id == booking_id
    ).order_by(models.Milestone.due_date, models.Milestone.sequence).all()


def get_or_generate_milestones(db: Session, booking: models.Booking) -> List[models.Milestone]:
    if not booking.milestones_scheduled:
        generate_milestones(db, booking)
    return list_milestones(db, booking.id)


def get_milestone(db: Session, milestone_id: int) -> models.Milestone:
    milestone = db.query(models.Milestone).filter(models.Milestone.id == milestone_id).first()
    if milestone is None:
        raise NotFound(f"Milestone {milestone_id} not found")
    return milestone


def append_extension_milestone(
        db: Session,
        booking: models.Booking,
        due_date: datetime.date,
        amount: float,
) -> models.Milestone:
    """
    Adds a milestone for an extension charge to an existing schedule.
    Note: Does NOT commit. The extension owns the transaction.
    """
    last_sequence = db.query(func.max(models.Milestone.sequence)).filter(
        models.Milestone.booking_id == booking.id
    ).scalar()
    milestone = models.Milestone(
        booking_id=booking.id,
        sequence=(last_sequence if last_sequence is not None else 0) + 1,
        milestone_type=EXTENSION_TYPE,
        is_booking_fee=False,
        due_date=due_date,
        amount=amount,
        payment_status=models.MilestoneStatus.PENDING,
    )
    db.add(milestone)
    db.flush()
    return milestone


def describe_milestone(milestone: models.Milestone) -> str:
    if milestone.is_booking_fee:
        return BOOKING_FEE_TYPE
    formatted = milestone.due_date.strftime("%d %b %Y")
    if milestone.milestone_type in ("Day", "Week", "Month", EXTENSION_TYPE):
        return f"{milestone.milestone_type} {formatted} Payment"
    return f"Payment {formatted}"
