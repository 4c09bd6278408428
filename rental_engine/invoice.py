import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models, schemas, milestones


def invoice_number(booking: models.Booking, year: int = None) -> str:
    year = year or datetime.date.today().year
    return f"INV-{year}-{booking.id:04d}"


def total_paid(db: Session, booking_id: int) -> float:
    return db.query(func.coalesce(func.sum(models.Payment.amount), 0.0)).filter(
        models.Payment.booking_id == booking_id,
        models.Payment.status == models.PaymentStatus.COMPLETED,
    ).scalar()


def build_summary(db: Session, booking: models.Booking) -> schemas.InvoiceSummary:
    paid = total_paid(db, booking.id)
    return schemas.InvoiceSummary(
        total_price=booking.total_amount,
        total_paid=paid,
        remaining_balance=booking.total_amount - paid,
    )


def build_invoice(db: Session, booking: models.Booking) -> schemas.Invoice:
    """
    Flat invoice data for the renderer. Milestones are read as they are;
    building an invoice never schedules them.
    """
    payments = db.query(models.Payment).filter(
        models.Payment.booking_id == booking.id
    ).order_by(models.Payment.id).all()

    return schemas.Invoice(
        invoice_number=invoice_number(booking),
        issued_on=datetime.date.today(),
        booking=schemas.BookingRead.model_validate(booking),
        milestones=[schemas.MilestoneRead.model_validate(m) for m in milestones.list_milestones(db, booking.id)],
        payments=[schemas.PaymentRead.model_validate(p) for p in payments],
        summary=build_summary(db, booking),
    )


def payment_overview(db: Session, booking: models.Booking, today: datetime.date = None) -> schemas.PaymentOverview:
    today = today or datetime.date.today()
    summary = build_summary(db, booking)
    unpaid = [
        m for m in milestones.list_milestones(db, booking.id)
        if m.payment_status != models.MilestoneStatus.PAID
    ]
    current = unpaid[0] if unpaid else None

    return schemas.PaymentOverview(
        **summary.model_dump(),
        payment_percentage=(summary.total_paid / summary.total_price * 100) if summary.total_price > 0 else 0.0,
        current_milestone=schemas.MilestoneRead.model_validate(current) if current else None,
        has_overdue=any(m.due_date < today for m in unpaid),
    )
