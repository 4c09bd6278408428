import datetime
import logging
import secrets
import string
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from . import models, schemas, crud, ledger, milestones
from .config import settings
from .database import atomic
from .exceptions import LinkExpired, LinkNotActive, LinkNotFound, ReconciliationError, ValidationError

logger = logging.getLogger("booking_service")

LINK_ID_ALPHABET = string.ascii_uppercase + string.digits
REDEEMABLE_METHODS = (
    models.PaymentMethod.BANK_TRANSFER,
    models.PaymentMethod.CARD,
    models.PaymentMethod.CASH,
)


def generate_unique_id() -> str:
    return "PL-" + "".join(secrets.choice(LINK_ID_ALPHABET) for _ in range(12))


def link_url(unique_id: str) -> str:
    return f"{settings.PAYMENT_LINK_BASE_URL.rstrip('/')}/{unique_id}"


def to_read(link: models.PaymentLink) -> schemas.PaymentLinkRead:
    link_read = schemas.PaymentLinkRead.model_validate(link)
    link_read.url = link_url(link.unique_id)
    return link_read


def get_payment_link(db: Session, unique_id: str, lock: bool = False) -> models.PaymentLink:
    query = db.query(models.PaymentLink).filter(models.PaymentLink.unique_id == unique_id)
    if lock:
        query = query.with_for_update().populate_existing()
    link = query.first()
    if link is None:
        raise LinkNotFound(f"Payment link {unique_id} not found")
    return link


def expire_if_past_due(db: Session, link: models.PaymentLink) -> bool:
    """
    Expiry is only a timestamp; an active link past it is marked expired the
    first time it is read. Returns True if the link is (now) expired.
    """
    if link.status == models.LinkStatus.EXPIRED:
        return True
    if link.status != models.LinkStatus.ACTIVE or link.expires_at is None:
        return False
    if link.expires_at >= models.utcnow():
        return False

    link.status = models.LinkStatus.EXPIRED
    db.commit()
    db.refresh(link)
    logger.info(f"Payment link {link.unique_id} expired at {link.expires_at}")
    return True


def issue_or_refresh_payment_link(
        db: Session,
        milestone: models.Milestone,
        amount: Optional[float] = None,
) -> models.PaymentLink:
    """
    Returns the milestone's active link, refreshed with the given amount and a
    new expiry, or creates one if there is none.
    """
    with atomic(db, ReconciliationError, "payment link issue"):
        booking = crud.lock_booking(db, milestone.booking_id)
        db_milestone = db.query(models.Milestone).filter(
            models.Milestone.id == milestone.id
        ).with_for_update().populate_existing().first()

        if db_milestone.payment_status == models.MilestoneStatus.PAID:
            raise ValidationError("This milestone has already been paid.")
        if booking.status == models.BookingStatus.CANCELLED:
            raise ValidationError("Payment links cannot be issued for a cancelled booking.")

        amount = db_milestone.amount if amount is None else amount
        if amount <= 0:
            raise ValidationError("A payment link must be for a positive amount.")
        expires_at = models.utcnow() + datetime.timedelta(days=settings.PAYMENT_LINK_TTL_DAYS)

        active_links = db.query(models.PaymentLink).filter(
            models.PaymentLink.milestone_id == db_milestone.id,
            models.PaymentLink.status == models.LinkStatus.ACTIVE,
        ).order_by(models.PaymentLink.id.desc()).with_for_update().all()

        if active_links:
            link = active_links[0]
            link.amount = amount
            link.expires_at = expires_at
            # Older duplicates from before links were refreshed in place
            for stale in active_links[1:]:
                stale.status = models.LinkStatus.EXPIRED
        else:
            link = models.PaymentLink(
                unique_id=generate_unique_id(),
                user_id=booking.user_id,
                booking_id=booking.id,
                milestone_id=db_milestone.id,
                amount=amount,
                status=models.LinkStatus.ACTIVE,
                expires_at=expires_at,
            )
            db.add(link)

    db.refresh(link)
    logger.info(f"Payment link {link.unique_id} for milestone {milestone.id}: {link.amount:.2f}, expires {link.expires_at}")
    return link


def redeem_payment_link(
        db: Session,
        unique_id: str,
        payment_method,
        reference: Optional[str] = None,
) -> Tuple[models.Payment, Optional[models.Milestone], models.PaymentLink]:
    """
    Pays a link: records a completed payment for the link amount, settles the
    bound milestone and completes the link, all in one transaction.
    """
    try:
        method = models.PaymentMethod(payment_method)
    except ValueError:
        raise ValidationError(f"Unsupported payment method: {payment_method!r}")
    if method not in REDEEMABLE_METHODS:
        raise ValidationError(f"Payment links cannot be paid by {method.value}.")
    if method == models.PaymentMethod.BANK_TRANSFER and not reference:
        raise ValidationError("A bank reference is required for bank transfers.")

    link = get_payment_link(db, unique_id)
    if expire_if_past_due(db, link):
        raise LinkExpired("This payment link has expired.")

    with atomic(db, ReconciliationError, "payment link redemption"):
        booking = crud.lock_booking(db, link.booking_id)
        link = get_payment_link(db, unique_id, lock=True)
        if link.status == models.LinkStatus.EXPIRED:
            raise LinkExpired("This payment link has expired.")
        if link.status != models.LinkStatus.ACTIVE:
            raise LinkNotActive("This payment link is no longer active.")

        milestone = None
        if link.milestone_id is not None:
            milestone = db.query(models.Milestone).filter(
                models.Milestone.id == link.milestone_id
            ).with_for_update().populate_existing().first()

        now = models.utcnow()
        payment = models.Payment(
            booking_id=link.booking_id,
            user_id=link.user_id,
            milestone_id=link.milestone_id,
            amount=link.amount,
            payment_method=method,
            payment_type=models.PaymentType.BOOKING if milestone and milestone.is_booking_fee else models.PaymentType.RENT,
            status=models.PaymentStatus.COMPLETED,
            transaction_id=reference,
            paid_at=now,
        )
        db.add(payment)
        db.flush()

        if milestone is not None:
            ledger.settle_milestone(db, payment, milestone)

        link.status = models.LinkStatus.COMPLETED
        link.paid_at = now
        link.payment_id = payment.id

        crud.reconcile_payment_status(db, booking)

    db.refresh(payment)
    db.refresh(link)
    if milestone is not None:
        db.refresh(milestone)
    logger.info(f"Payment link {unique_id} redeemed: payment {payment.id} of {payment.amount:.2f} by {method.value}")
    return payment, milestone, link


def revoke_payment_link(db: Session, unique_id: str) -> models.PaymentLink:
    with atomic(db, ReconciliationError, "payment link revocation"):
        link = get_payment_link(db, unique_id, lock=True)
        if link.status != models.LinkStatus.ACTIVE:
            raise LinkNotActive(f"Only active links can be revoked; this one is {link.status.value}.")
        link.status = models.LinkStatus.REVOKED

    db.refresh(link)
    logger.info(f"Payment link {unique_id} revoked")
    return link


def milestone_views(db: Session, booking: models.Booking) -> List[schemas.MilestoneView]:
    """The booking's schedule (generated on first access) with each milestone's active link."""
    views = []
    for milestone in milestones.get_or_generate_milestones(db, booking):
        active_link = db.query(models.PaymentLink).filter(
            models.PaymentLink.milestone_id == milestone.id,
            models.PaymentLink.status == models.LinkStatus.ACTIVE,
        ).order_by(models.PaymentLink.id.desc()).first()

        view = schemas.MilestoneView.model_validate({
            **schemas.MilestoneRead.model_validate(milestone).model_dump(),
            "description": milestones.describe_milestone(milestone),
            "payment_link": link_url(active_link.unique_id) if active_link else None,
            "link_updated_at": active_link.updated_at if active_link else None,
        })
        views.append(view)
    return views
