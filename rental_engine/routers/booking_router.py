from fastapi import APIRouter, Depends, status, Response
from sqlalchemy.orm import Session
from typing import List, Annotated

from fastapi_limiter.depends import RateLimiter

from .. import schemas, crud, pricing, ledger, invoice, payment_links
from ..auth import get_current_user_id, rate_limit_key
from ..database import get_db

router = APIRouter(prefix="/bookings", tags=["Bookings"])

CurrentUser = Annotated[int, Depends(get_current_user_id)]

write_limiter = RateLimiter(times=30, minutes=1, identifier=rate_limit_key)
read_limiter = RateLimiter(times=60, minutes=1, identifier=rate_limit_key)


def get_rate_catalog(db: Session = Depends(get_db)) -> pricing.RateCatalog:
    return pricing.SqlRateCatalog(db)


@router.post("/quote", response_model=schemas.PriceQuote)
def quote_booking(
        request: schemas.QuoteRequest,
        catalog: pricing.RateCatalog = Depends(get_rate_catalog),
        limit: None = Depends(read_limiter),
):
    """
    Price a stay without booking it.
    """
    return pricing.quote(catalog, request.room_ids, request.from_date, request.to_date, request.price_type)


@router.post("/", response_model=schemas.BookingRead, status_code=status.HTTP_201_CREATED)
def create_booking(
        booking: schemas.BookingCreate,
        user_id: CurrentUser,
        db: Session = Depends(get_db),
        catalog: pricing.RateCatalog = Depends(get_rate_catalog),
        limit: None = Depends(write_limiter),
):
    """
    Create a new booking for the authenticated user and record its first payment.
    """
    return crud.create_booking(db=db, booking=booking, user_id=user_id, catalog=catalog)


@router.get("/", response_model=List[schemas.BookingRead])
def read_user_bookings(
        user_id: CurrentUser,
        db: Session = Depends(get_db),
        skip: int = 0,
        limit: int = 100,
        limit2: None = Depends(read_limiter),
):
    """
    Get all bookings for the authenticated user.
    """
    return crud.get_bookings_by_user(db=db, user_id=user_id, skip=skip, limit=limit)


@router.get("/{booking_id}", response_model=schemas.BookingRead)
def read_booking(booking_id: int, user_id: CurrentUser, db: Session = Depends(get_db)):
    return crud.get_booking(db, booking_id, user_id=user_id)


@router.post("/{booking_id}/extend", response_model=schemas.BookingRead)
def extend_booking(
        booking_id: int,
        extension: schemas.BookingExtend,
        user_id: CurrentUser,
        db: Session = Depends(get_db),
        catalog: pricing.RateCatalog = Depends(get_rate_catalog),
        limit: None = Depends(write_limiter),
):
    booking = crud.get_booking(db, booking_id, user_id=user_id)
    return crud.extend_booking(db, booking, extension.new_to_date, catalog=catalog)


@router.post("/{booking_id}/cancel", response_model=schemas.BookingRead)
def cancel_booking(
        booking_id: int,
        cancellation: schemas.BookingCancel,
        user_id: CurrentUser,
        db: Session = Depends(get_db),
        limit: None = Depends(write_limiter),
):
    booking = crud.get_booking(db, booking_id, user_id=user_id)
    return crud.cancel_booking(db, booking, cancellation.cancellation_reason, cancellation.refund_amount)


@router.patch("/{booking_id}/status", response_model=schemas.BookingRead)
def update_booking_status(
        booking_id: int,
        update: schemas.BookingStatusUpdate,
        user_id: CurrentUser,
        db: Session = Depends(get_db),
):
    booking = crud.get_booking(db, booking_id, user_id=user_id)
    return crud.transition_status(db, booking, update.status)


@router.delete("/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_booking(
        booking_id: int,
        user_id: CurrentUser,
        force: bool = False,
        db: Session = Depends(get_db),
):
    booking = crud.get_booking(db, booking_id, user_id=user_id)
    crud.delete_booking(db, booking, actor_id=user_id, force=force)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{booking_id}/milestones", response_model=List[schemas.MilestoneView])
def read_milestones(
        booking_id: int,
        user_id: CurrentUser,
        db: Session = Depends(get_db),
        limit: None = Depends(read_limiter),
):
    """
    Get the booking's payment schedule, generating it on first access.
    """
    booking = crud.get_booking(db, booking_id, user_id=user_id)
    return payment_links.milestone_views(db, booking)


@router.get("/{booking_id}/invoice", response_model=schemas.Invoice)
def read_invoice(booking_id: int, user_id: CurrentUser, db: Session = Depends(get_db)):
    booking = crud.get_booking(db, booking_id, user_id=user_id)
    return invoice.build_invoice(db, booking)


@router.get("/{booking_id}/overview", response_model=schemas.PaymentOverview)
def read_payment_overview(booking_id: int, user_id: CurrentUser, db: Session = Depends(get_db)):
    booking = crud.get_booking(db, booking_id, user_id=user_id)
    return invoice.payment_overview(db, booking)


@router.post("/{booking_id}/payments", response_model=schemas.PaymentRead, status_code=status.HTTP_201_CREATED)
def record_payment(
        booking_id: int,
        payment: schemas.PaymentCreate,
        user_id: CurrentUser,
        db: Session = Depends(get_db),
        limit: None = Depends(write_limiter),
):
    """
    Record a manual payment against the booking, optionally for a specific milestone.
    """
    booking = crud.get_booking(db, booking_id, user_id=user_id)
    db_payment, _ = ledger.record_manual_payment(db, booking, payment)
    return db_payment
