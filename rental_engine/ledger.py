"""
Payment ledger.

Payment transactions are the record of actual money movements. Settling a
transaction (marking it completed) propagates to the milestone it pays for
and to any payment link bound to that milestone, then the booking's
aggregate payment status is recomputed. Every status change runs inside a
single transaction; a failure anywhere leaves all rows as they were.
"""
import logging
import time
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from . import models, schemas, crud
from .database import atomic
from .exceptions import NotFound, ReconciliationError, ValidationError

logger = logging.getLogger("booking_service")

# Legacy transactions carry no milestone reference and are matched by amount
AMOUNT_MATCH_EPSILON = 0.005


def get_payment(db: Session, payment_id: int) -> models.Payment:
    payment = db.query(models.Payment).filter(models.Payment.id == payment_id).first()
    if payment is None:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


def _lock_payment(db: Session, payment_id: int) -> models.Payment:
    payment = db.query(models.Payment).filter(
        models.Payment.id == payment_id
    ).with_for_update().populate_existing().first()
    if payment is None:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


def _lock_milestone(db: Session, *criteria) -> Optional[models.Milestone]:
    return db.query(models.Milestone).filter(*criteria).order_by(
        models.Milestone.due_date, models.Milestone.sequence
    ).with_for_update().populate_existing().first()


def resolve_milestone(db: Session, payment: models.Payment, allow_amount_match: bool = True) -> Optional[models.Milestone]:
    """
    Finds the milestone a transaction pays for: its direct reference, then the
    milestone it currently settles, then (legacy records only) the earliest
    pending milestone of the booking with the same amount.
    """
    if payment.milestone_id:
        return _lock_milestone(db, models.Milestone.id == payment.milestone_id)

    settled = _lock_milestone(db, models.Milestone.payment_id == payment.id)
    if settled is not None or not allow_amount_match:
        return settled

    candidate = _lock_milestone(
        db,
        models.Milestone.booking_id == payment.booking_id,
        models.Milestone.payment_status == models.MilestoneStatus.PENDING,
        models.Milestone.amount > payment.amount - AMOUNT_MATCH_EPSILON,
        models.Milestone.amount < payment.amount + AMOUNT_MATCH_EPSILON,
    )
    if candidate is not None:
        logger.warning(
            f"Payment {payment.id} has no milestone reference; matched milestone {candidate.id} "
            f"of booking {payment.booking_id} by amount {payment.amount:.2f}"
        )
    return candidate


def settle_milestone(db: Session, payment: models.Payment, milestone: models.Milestone) -> None:
    """
    Marks the milestone paid by `payment`, cancels whatever settled it before
    and completes its active payment links.
    Note: Does NOT commit. The calling operation owns the transaction.
    """
    now = models.utcnow()

    # Only one completed transaction may settle a milestone
    if milestone.payment_id and milestone.payment_id != payment.id:
        previous = db.query(models.Payment).filter(models.Payment.id == milestone.payment_id).first()
        if previous is not None and previous.status != models.PaymentStatus.CANCELLED:
            logger.info(f"Payment {previous.id} superseded by {payment.id} on milestone {milestone.id}; cancelling it.")
            previous.status = models.PaymentStatus.CANCELLED
    db.query(models.Payment).filter(
        models.Payment.milestone_id == milestone.id,
        models.Payment.id != payment.id,
        models.Payment.status == models.PaymentStatus.COMPLETED,
    ).update({models.Payment.status: models.PaymentStatus.CANCELLED}, synchronize_session="fetch")

    if not payment.milestone_id:
        payment.milestone_id = milestone.id

    milestone.payment_status = models.MilestoneStatus.PAID
    milestone.payment_id = payment.id
    milestone.paid_at = payment.paid_at or now
    milestone.payment_method = payment.payment_method.value if payment.payment_method else None
    milestone.transaction_reference = payment.transaction_id

    db.query(models.PaymentLink).filter(
        models.PaymentLink.milestone_id == milestone.id,
        models.PaymentLink.status == models.LinkStatus.ACTIVE,
    ).update(
        {models.PaymentLink.status: models.LinkStatus.COMPLETED, models.PaymentLink.paid_at: now},
        synchronize_session="fetch",
    )


def unsettle_milestone(db: Session, payment: models.Payment, milestone: models.Milestone) -> bool:
    """
    Puts the milestone back to pending, unless another transaction settles it.
    Note: Does NOT commit.
    """
    if milestone.payment_id is not None and milestone.payment_id != payment.id:
        logger.info(
            f"Milestone {milestone.id} is settled by payment {milestone.payment_id}, "
            f"not {payment.id}; leaving it paid."
        )
        return False

    milestone.payment_status = models.MilestoneStatus.PENDING
    milestone.payment_id = None
    milestone.paid_at = None
    milestone.payment_method = None
    milestone.transaction_reference = None

    db.query(models.PaymentLink).filter(
        models.PaymentLink.milestone_id == milestone.id,
        models.PaymentLink.status != models.LinkStatus.COMPLETED,
    ).update({models.PaymentLink.status: models.LinkStatus.EXPIRED}, synchronize_session="fetch")
    return True


def _apply_status(
        db: Session,
        booking: models.Booking,
        payment: models.Payment,
        target: schemas.SettlementTarget,
) -> Optional[models.Milestone]:
    if payment.payment_type == models.PaymentType.REFUND:
        raise ValidationError("Refund records cannot be settled or reopened.")

    if target == schemas.SettlementTarget.PAID:
        payment.status = models.PaymentStatus.COMPLETED
        payment.paid_at = models.utcnow()
    elif target == schemas.SettlementTarget.PENDING:
        payment.status = models.PaymentStatus.PENDING
        payment.paid_at = None
    else:
        payment.status = models.PaymentStatus.CANCELLED
        payment.paid_at = None

    # Amount matching only ever settles; reopening needs a reference or a current settlement
    milestone = resolve_milestone(db, payment, allow_amount_match=target == schemas.SettlementTarget.PAID)
    if milestone is not None:
        if target == schemas.SettlementTarget.PAID:
            settle_milestone(db, payment, milestone)
        else:
            unsettle_milestone(db, payment, milestone)

    crud.reconcile_payment_status(db, booking)
    return milestone


def set_payment_status(
        db: Session,
        payment: models.Payment,
        status,
) -> Tuple[models.Booking, Optional[models.Milestone]]:
    """
    Sets a transaction to Paid, Pending or cancelled and propagates the change
    to its milestone, the milestone's links and the booking's payment status.
    """
    try:
        target = schemas.SettlementTarget(status)
    except ValueError:
        raise ValidationError(f"Unsupported payment status: {status!r}")

    with atomic(db, ReconciliationError, "payment status update"):
        booking = crud.lock_booking(db, payment.booking_id)
        db_payment = _lock_payment(db, payment.id)
        milestone = _apply_status(db, booking, db_payment, target)

    db.refresh(booking)
    if milestone is not None:
        db.refresh(milestone)
    logger.info(
        f"Payment {payment.id} set to {target.value}; milestone {milestone.id if milestone else None}, "
        f"booking {booking.id} payment status {booking.payment_status.value}"
    )
    return booking, milestone


def record_manual_payment(
        db: Session,
        booking: models.Booking,
        payment_in: schemas.PaymentCreate,
) -> Tuple[models.Payment, Optional[models.Milestone]]:
    """
    Records a payment entered by hand. A payment recorded as Paid is settled
    against its milestone in the same transaction.
    """
    if payment_in.status == schemas.SettlementTarget.CANCELLED:
        raise ValidationError("A new payment can only be recorded as Paid or Pending.")

    with atomic(db, ReconciliationError, "manual payment"):
        db_booking = crud.lock_booking(db, booking.id)

        milestone = None
        if payment_in.milestone_id is not None:
            milestone = _lock_milestone(db, models.Milestone.id == payment_in.milestone_id)
            if milestone is None or milestone.booking_id != db_booking.id:
                raise ValidationError(f"Milestone {payment_in.milestone_id} does not belong to booking {db_booking.id}.")

        db_payment = models.Payment(
            booking_id=db_booking.id,
            user_id=db_booking.user_id,
            milestone_id=payment_in.milestone_id,
            amount=payment_in.amount,
            payment_method=payment_in.payment_method,
            payment_type=payment_in.payment_type,
            status=models.PaymentStatus.PENDING,
            transaction_id=payment_in.transaction_id or f"manual-{int(time.time())}",
        )
        db.add(db_payment)
        db.flush()

        if payment_in.status == schemas.SettlementTarget.PAID:
            milestone = _apply_status(db, db_booking, db_payment, payment_in.status)
        else:
            # A pending record leaves its milestone and links alone
            crud.reconcile_payment_status(db, db_booking)

    db.refresh(db_payment)
    logger.info(f"Recorded manual payment {db_payment.id} of {db_payment.amount:.2f} on booking {booking.id}")
    return db_payment, milestone


def record_payment_failure(db: Session, payment: models.Payment) -> models.Booking:
    """The only path that moves a booking's payment status to failed."""
    with atomic(db, ReconciliationError, "payment failure"):
        booking = crud.lock_booking(db, payment.booking_id)
        db_payment = _lock_payment(db, payment.id)
        if db_payment.status == models.PaymentStatus.COMPLETED:
            raise ValidationError("A settled payment cannot fail; set it back to Pending first.")

        db_payment.status = models.PaymentStatus.FAILED
        db_payment.paid_at = None
        booking.payment_status = models.BookingPaymentStatus.FAILED

    db.refresh(booking)
    logger.warning(f"Payment {payment.id} failed; booking {booking.id} marked as failed")
    return booking
