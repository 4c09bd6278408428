from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import Annotated

from fastapi_limiter.depends import RateLimiter

from .. import schemas, crud, ledger, milestones, payment_links
from ..auth import get_current_user_id, rate_limit_key
from ..database import get_db
from ..exceptions import NotFound

router = APIRouter(tags=["Payments"])

CurrentUser = Annotated[int, Depends(get_current_user_id)]

payment_limiter = RateLimiter(times=10, minutes=1, identifier=rate_limit_key)


def _owned_payment(db: Session, payment_id: int, user_id: int):
    payment = ledger.get_payment(db, payment_id)
    if payment.user_id != user_id:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


@router.patch("/payments/{payment_id}/status", response_model=schemas.SettlementResult)
def update_payment_status(
        payment_id: int,
        update: schemas.PaymentStatusUpdate,
        user_id: CurrentUser,
        db: Session = Depends(get_db),
):
    """
    Mark a payment Paid, Pending or cancelled and reconcile its milestone and booking.
    """
    payment = _owned_payment(db, payment_id, user_id)
    booking, milestone = ledger.set_payment_status(db, payment, update.status)
    db.refresh(payment)
    return schemas.SettlementResult(
        booking=schemas.BookingRead.model_validate(booking),
        milestone=schemas.MilestoneRead.model_validate(milestone) if milestone else None,
        payment=schemas.PaymentRead.model_validate(payment),
    )


@router.post("/payments/{payment_id}/failure", response_model=schemas.BookingRead)
def report_payment_failure(payment_id: int, user_id: CurrentUser, db: Session = Depends(get_db)):
    payment = _owned_payment(db, payment_id, user_id)
    return ledger.record_payment_failure(db, payment)


@router.post(
    "/milestones/{milestone_id}/payment-link",
    response_model=schemas.PaymentLinkRead,
    status_code=status.HTTP_201_CREATED,
)
def issue_payment_link(
        milestone_id: int,
        request: schemas.PaymentLinkIssue,
        user_id: CurrentUser,
        db: Session = Depends(get_db),
        limit: None = Depends(payment_limiter),
):
    """
    Issue a payment link for a milestone, or refresh the one that is already active.
    """
    milestone = milestones.get_milestone(db, milestone_id)
    crud.get_booking(db, milestone.booking_id, user_id=user_id)
    link = payment_links.issue_or_refresh_payment_link(db, milestone, request.amount)
    return payment_links.to_read(link)


# Payment links are bearer capabilities: whoever holds the id may view and pay it.
@router.get("/payment-links/{unique_id}", response_model=schemas.PaymentLinkRead)
def read_payment_link(unique_id: str, db: Session = Depends(get_db)):
    link = payment_links.get_payment_link(db, unique_id)
    payment_links.expire_if_past_due(db, link)
    return payment_links.to_read(link)


@router.post("/payment-links/{unique_id}/redeem", response_model=schemas.RedemptionResult)
def redeem_payment_link(
        unique_id: str,
        redemption: schemas.PaymentLinkRedeem,
        db: Session = Depends(get_db),
        limit: None = Depends(payment_limiter),
):
    payment, milestone, link = payment_links.redeem_payment_link(
        db, unique_id, redemption.payment_method, redemption.reference
    )
    return schemas.RedemptionResult(
        payment=schemas.PaymentRead.model_validate(payment),
        milestone=schemas.MilestoneRead.model_validate(milestone) if milestone else None,
        link=payment_links.to_read(link),
    )


@router.post("/payment-links/{unique_id}/revoke", response_model=schemas.PaymentLinkRead)
def revoke_payment_link(unique_id: str, user_id: CurrentUser, db: Session = Depends(get_db)):
    link = payment_links.get_payment_link(db, unique_id)
    crud.get_booking(db, link.booking_id, user_id=user_id)
    return payment_links.to_read(payment_links.revoke_payment_link(db, unique_id))
