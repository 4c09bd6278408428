from datetime import date

import pytest

from rental_engine import crud, invoice, milestones, models, schemas

from conftest import DictRateCatalog

CATALOG = DictRateCatalog({(1, models.PriceType.MONTH): 10.0})


@pytest.fixture
def booking(db_session):
    return crud.create_booking(
        db_session,
        schemas.BookingCreate(
            package_id=10, room_ids=[1], price_type="Month",
            from_date=date(2025, 1, 1), to_date=date(2025, 4, 1),
        ),
        user_id=1,
        catalog=CATALOG,
    )


def test_invoice_summarises_completed_payments(db_session, booking):
    result = invoice.build_invoice(db_session, booking)

    assert result.invoice_number == f"INV-{date.today().year}-{booking.id:04d}"
    assert result.booking.id == booking.id
    assert len(result.payments) == 1
    assert result.summary.total_price == 990.0
    assert result.summary.total_paid == 90.0
    assert result.summary.remaining_balance == 900.0


def test_invoice_does_not_schedule_milestones(db_session, booking):
    result = invoice.build_invoice(db_session, booking)

    assert result.milestones == []
    db_session.refresh(booking)
    assert booking.milestones_scheduled is False


def test_refunds_reduce_total_paid(db_session, booking):
    crud.cancel_booking(db_session, booking, "Guest cancelled", refund_amount=40.0)

    summary = invoice.build_summary(db_session, booking)

    assert summary.total_paid == 50.0


def test_payment_overview(db_session, booking):
    milestones.generate_milestones(db_session, booking)

    overview = invoice.payment_overview(db_session, booking, today=date(2025, 2, 15))

    assert overview.payment_percentage == pytest.approx(90.0 / 990.0 * 100)
    # The fee taken at checkout already settles the booking-fee milestone
    assert overview.current_milestone.is_booking_fee is False
    assert overview.current_milestone.due_date == date(2025, 1, 1)
    assert overview.has_overdue is True


def test_payment_overview_before_stay(db_session, booking):
    milestones.generate_milestones(db_session, booking)

    overview = invoice.payment_overview(db_session, booking, today=date(2024, 12, 1))

    assert overview.has_overdue is False
