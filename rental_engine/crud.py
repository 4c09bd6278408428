import datetime
import logging
from typing import Iterable, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.orm import Session

from . import models, schemas, pricing, milestones
from .config import settings
from .database import atomic
from .exceptions import (
    InvalidExtension, InvalidStatusTransition, NotFound, PersistenceError,
    RoomUnavailable, ValidationError,
)

logger = logging.getLogger("booking_service")

ALLOWED_STATUS_TRANSITIONS = {
    models.BookingStatus.PENDING: {models.BookingStatus.CONFIRMED},
    models.BookingStatus.CONFIRMED: {models.BookingStatus.COMPLETED},
}


def check_booking_conflict(
        db: Session,
        room_ids: Iterable[int],
        start_date: datetime.date,
        end_date: datetime.date,
        exclude_booking_id: Optional[int] = None,
) -> bool:
    """
    Checks if any of the given rooms is held by a non-cancelled booking in an
    overlapping date window.

    Returns True if a conflict exists, False otherwise.
    """
    # The logic for an overlap is:
    # (Existing Start Date < New End Date) AND (Existing End Date > New Start Date)
    query = db.query(models.Booking).filter(
        models.Booking.status != models.BookingStatus.CANCELLED,
        models.Booking.from_date < end_date,  # Existing start is before new end
        models.Booking.to_date > start_date  # Existing end is after new start
    )
    if exclude_booking_id is not None:
        query = query.filter(models.Booking.id != exclude_booking_id)

    wanted = set(room_ids)
    # room_ids is a JSON column, so the room intersection happens here
    for existing in query.with_for_update().all():
        if wanted.intersection(existing.room_ids or []):
            return True
    return False


def get_booking(db: Session, booking_id: int, user_id: Optional[int] = None) -> models.Booking:
    query = db.query(models.Booking).filter(models.Booking.id == booking_id)
    if user_id is not None:
        query = query.filter(models.Booking.user_id == user_id)
    db_booking = query.first()
    if db_booking is None:
        raise NotFound(f"Booking {booking_id} not found")
    return db_booking


def lock_booking(db: Session, booking_id: int) -> models.Booking:
    """Re-reads the booking row under a row lock for the current transaction."""
    db_booking = db.query(models.Booking).filter(
        models.Booking.id == booking_id
    ).with_for_update().populate_existing().first()
    if db_booking is None:
        raise NotFound(f"Booking {booking_id} not found")
    return db_booking


def get_bookings_by_user(db: Session, user_id: int, skip: int = 0, limit: int = 100):
    return db.query(models.Booking).filter(
        models.Booking.user_id == user_id
    ).order_by(models.Booking.id).offset(skip).limit(limit).all()


def create_booking(
        db: Session,
        booking: schemas.BookingCreate,
        user_id: int,
        catalog: Optional[pricing.RateCatalog] = None,
) -> models.Booking:
    """
    Atomically creates a booking and the first settled payment for it.
    """
    catalog = catalog or pricing.SqlRateCatalog(db)

    if booking.auto_renewal and not booking.renewal_period_days:
        raise ValidationError("renewal_period_days is required when auto_renewal is enabled.")

    with atomic(db, PersistenceError, "booking creation"):
        # 1. The rooms must be free for the whole stay
        if check_booking_conflict(db, booking.room_ids, booking.from_date, booking.to_date):
            raise RoomUnavailable("Booking conflict: a selected room is already booked for these dates.")

        # 2. Price the stay
        price = pricing.quote(catalog, booking.room_ids, booking.from_date, booking.to_date, booking.price_type)
        if price.rent_amount <= 0:
            raise ValidationError("None of the selected rooms has a rate for this price type.")

        # 3. Create the booking object
        db_booking = models.Booking(
            user_id=user_id,
            package_id=booking.package_id,
            room_ids=list(booking.room_ids),
            from_date=booking.from_date,
            to_date=booking.to_date,
            number_of_days=price.number_of_days,
            price_type=price.price_type,
            payment_option=booking.payment_option,
            status=models.BookingStatus.PENDING,
            payment_status=models.BookingPaymentStatus.PENDING,
            auto_renewal=booking.auto_renewal,
            renewal_period_days=booking.renewal_period_days,
        )
        db_booking.set_amounts(price.rent_amount, price.booking_fee)
        if booking.auto_renewal:
            db_booking.next_renewal_date = booking.to_date + datetime.timedelta(days=booking.renewal_period_days)
        db.add(db_booking)
        db.flush()

        # 4. Record the money taken at checkout
        is_full = booking.payment_option == models.PaymentOption.FULL
        db.add(models.Payment(
            booking_id=db_booking.id,
            user_id=user_id,
            amount=db_booking.total_amount if is_full else db_booking.booking_fee,
            payment_method=booking.payment_method,
            payment_type=models.PaymentType.RENT if is_full else models.PaymentType.BOOKING,
            status=models.PaymentStatus.COMPLETED,
            transaction_id=booking.transaction_reference,
            paid_at=models.utcnow(),
        ))

        if is_full:
            db_booking.payment_status = models.BookingPaymentStatus.PAID
            db_booking.status = models.BookingStatus.CONFIRMED

    db.refresh(db_booking)
    logger.info(
        f"Created booking {db_booking.id} for user {user_id}: rooms {db_booking.room_ids}, "
        f"{db_booking.from_date} -> {db_booking.to_date}, total {db_booking.total_amount:.2f}"
    )
    return db_booking


def extend_booking(
        db: Session,
        booking: models.Booking,
        new_to_date: datetime.date,
        catalog: Optional[pricing.RateCatalog] = None,
) -> models.Booking:
    """
    Moves the booking's end date forward and charges the extra days at the
    booking's existing price type. The charge is recorded as a pending payment.
    """
    catalog = catalog or pricing.SqlRateCatalog(db)

    with atomic(db, PersistenceError, "booking extension"):
        db_booking = lock_booking(db, booking.id)

        if db_booking.is_terminal:
            raise InvalidExtension(f"A {db_booking.status.value} booking cannot be extended.")
        if new_to_date <= db_booking.to_date:
            raise InvalidExtension("The new end date must be after the current end date.")

        old_to_date = db_booking.to_date
        if check_booking_conflict(db, db_booking.room_ids, old_to_date, new_to_date,
                                  exclude_booking_id=db_booking.id):
            raise RoomUnavailable("Booking conflict: a room is already booked for the extension dates.")

        extension = pricing.quote(catalog, db_booking.room_ids, old_to_date, new_to_date, db_booking.price_type)
        extra_days = extension.number_of_days
        extra_amount = extension.rent_amount

        db_booking.to_date = new_to_date
        db_booking.number_of_days = pricing.days_between(db_booking.from_date, new_to_date)
        db_booking.set_amounts(db_booking.rent_amount + extra_amount, db_booking.booking_fee)
        if db_booking.auto_renewal and db_booking.renewal_period_days:
            db_booking.next_renewal_date = new_to_date + datetime.timedelta(days=db_booking.renewal_period_days)

        if extra_amount > 0:
            milestone = None
            # A schedule that already exists must keep covering the total
            if db_booking.milestones_scheduled:
                milestone = milestones.append_extension_milestone(db, db_booking, old_to_date, extra_amount)

            db.add(models.Payment(
                booking_id=db_booking.id,
                user_id=db_booking.user_id,
                milestone_id=milestone.id if milestone else None,
                amount=extra_amount,
                payment_method=models.PaymentMethod.PENDING,
                payment_type=models.PaymentType.EXTENSION,
                status=models.PaymentStatus.PENDING,
                description=f"Extension for {extra_days} days",
            ))

        reconcile_payment_status(db, db_booking)

    db.refresh(db_booking)
    logger.info(
        f"Extended booking {db_booking.id} from {old_to_date} to {new_to_date}: "
        f"{extra_days} extra days, extra amount {extra_amount:.2f}"
    )
    return db_booking


def cancel_booking(
        db: Session,
        booking: models.Booking,
        reason: str,
        refund_amount: Optional[float] = None,
) -> models.Booking:
    """
    Cancels a booking and optionally records a refund. Milestones are left
    untouched as the historical record.
    """
    if not reason or not reason.strip():
        raise ValidationError("A cancellation reason is required.")
    if len(reason) > 500:
        raise ValidationError("The cancellation reason must be at most 500 characters.")

    with atomic(db, PersistenceError, "booking cancellation"):
        db_booking = lock_booking(db, booking.id)

        if db_booking.is_terminal:
            raise InvalidStatusTransition(f"A {db_booking.status.value} booking cannot be cancelled.")
        if refund_amount is not None and not 0 <= refund_amount <= db_booking.total_amount:
            raise ValidationError(
                f"Refund amount must be between 0 and the booking total ({db_booking.total_amount:.2f})."
            )

        db_booking.status = models.BookingStatus.CANCELLED
        db_booking.cancellation_reason = reason
        db_booking.cancelled_at = models.utcnow()

        if refund_amount:
            db.add(models.Payment(
                booking_id=db_booking.id,
                user_id=db_booking.user_id,
                amount=-refund_amount,
                payment_method=models.PaymentMethod.REFUND,
                payment_type=models.PaymentType.REFUND,
                status=models.PaymentStatus.COMPLETED,
                description="Refund for cancelled booking",
                paid_at=models.utcnow(),
            ))

        reconcile_payment_status(db, db_booking)

    db.refresh(db_booking)
    logger.info(f"Cancelled booking {db_booking.id} (refund {refund_amount or 0:.2f}): {reason}")
    return db_booking


def transition_status(db: Session, booking: models.Booking, target: models.BookingStatus) -> models.Booking:
    """Moves a booking along pending -> confirmed -> completed."""
    if target == models.BookingStatus.CANCELLED:
        raise InvalidStatusTransition("Use the cancellation endpoint to cancel a booking.")

    with atomic(db, PersistenceError, "booking status update"):
        db_booking = lock_booking(db, booking.id)
        if target not in ALLOWED_STATUS_TRANSITIONS.get(db_booking.status, set()):
            raise InvalidStatusTransition(
                f"Cannot move booking from {db_booking.status.value} to {target.value}."
            )
        db_booking.status = target

    db.refresh(db_booking)
    logger.info(f"Booking {db_booking.id} is now {target.value}")
    return db_booking


def reconcile_payment_status(db: Session, booking: models.Booking) -> models.BookingPaymentStatus:
    """
    Recomputes the booking's payment status from its completed payments and
    its milestones.
    Note: Does NOT commit. The calling operation owns the transaction.
    """
    db.flush()

    total_paid = db.query(func.coalesce(func.sum(models.Payment.amount), 0.0)).filter(
        models.Payment.booking_id == booking.id,
        models.Payment.status == models.PaymentStatus.COMPLETED,
    ).scalar()

    all_milestones = db.query(models.Milestone).filter(models.Milestone.booking_id == booking.id).count()
    paid_milestones = db.query(models.Milestone).filter(
        models.Milestone.booking_id == booking.id,
        models.Milestone.payment_status == models.MilestoneStatus.PAID,
    ).count()

    covers_total = total_paid + settings.MILESTONE_SUM_TOLERANCE >= booking.total_amount
    if covers_total and paid_milestones == all_milestones:
        new_status = models.BookingPaymentStatus.PAID
    elif total_paid > 0:
        new_status = models.BookingPaymentStatus.PARTIALLY_PAID
    else:
        new_status = models.BookingPaymentStatus.PENDING

    booking.payment_status = new_status
    booking.last_payment_date = models.utcnow() if paid_milestones > 0 else None
    return new_status


def delete_booking(db: Session, booking: models.Booking, actor_id: int, force: bool = False) -> None:
    """
    Hard-deletes a booking. A booking with payment records is only removed when
    `force` is set, and then its links, payments and milestones go with it.
    """
    with atomic(db, PersistenceError, "booking deletion"):
        db_booking = lock_booking(db, booking.id)
        payment_count = db.query(models.Payment).filter(models.Payment.booking_id == db_booking.id).count()

        if payment_count and not force:
            raise ValidationError(
                f"Booking {db_booking.id} has {payment_count} payment records and cannot be deleted."
            )

        logger.warning(
            f"AUDIT: user {actor_id} deleted booking {db_booking.id} "
            f"(user {db_booking.user_id}, total {db_booking.total_amount:.2f}, payments {payment_count})"
        )

        booking_id = db_booking.id
        # Milestones and payments reference each other; break that first
        db.execute(
            update(models.Milestone).where(models.Milestone.booking_id == booking_id).values(payment_id=None),
            execution_options={"synchronize_session": False},
        )
        for table in (models.PaymentLink, models.Payment, models.Milestone, models.Booking):
            column = table.id if table is models.Booking else table.booking_id
            db.execute(delete(table).where(column == booking_id), execution_options={"synchronize_session": False})

    db.expunge_all()
