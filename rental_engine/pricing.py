"""
Stay pricing.

A quote is a pure function of the requested rooms, the date range, the rate
granularity and the read-only rate catalog. Rooms without a rate for the
requested granularity are not an error: they show up as zero-priced line
items and simply do not contribute to the total.

Note that the granularity only selects which rate column is read. The
multiplier is always the number of days, so a "Month" rate is multiplied by
the day count as well. Existing bookings were priced this way.
"""
import datetime
import logging
from typing import Iterable, Optional, Protocol

from sqlalchemy.orm import Session

from . import models, schemas
from .config import settings
from .exceptions import InvalidDateRange, ValidationError

logger = logging.getLogger("booking_service")


class RateCatalog(Protocol):
    def get_rate(self, room_id: int, granularity: models.PriceType) -> Optional[float]:
        ...


class SqlRateCatalog:
    """Reads unit rates from the catalog's room_prices table."""

    def __init__(self, db: Session):
        self.db = db

    def get_rate(self, room_id: int, granularity: models.PriceType) -> Optional[float]:
        room_price = self.db.query(models.RoomPrice).filter(
            models.RoomPrice.room_id == room_id,
            models.RoomPrice.price_type == granularity,
        ).first()
        if room_price is None:
            return None
        if room_price.discount_price is not None:
            return room_price.discount_price
        return room_price.fixed_price


def coerce_price_type(price_type) -> models.PriceType:
    if isinstance(price_type, models.PriceType):
        return price_type
    try:
        return models.PriceType(price_type)
    except ValueError:
        raise ValidationError(f"Unknown price type: {price_type!r}")


def days_between(from_date: datetime.date, to_date: datetime.date) -> int:
    """Whole days from from_date to to_date (nights-equivalent)."""
    if to_date <= from_date:
        raise InvalidDateRange("Booking end date must be after start date.")
    return (to_date - from_date).days


def calculate_booking_fee(rent_total: float) -> float:
    return round(rent_total * settings.BOOKING_FEE_RATE, 2)


def quote(
        catalog: RateCatalog,
        room_ids: Iterable[int],
        from_date: datetime.date,
        to_date: datetime.date,
        price_type,
) -> schemas.PriceQuote:
    room_ids = list(room_ids)
    if not room_ids:
        raise ValidationError("At least one room must be selected.")

    granularity = coerce_price_type(price_type)
    number_of_days = days_between(from_date, to_date)

    line_items = []
    rent_total = 0.0
    for room_id in room_ids:
        rate = catalog.get_rate(room_id, granularity)
        if rate is None:
            logger.warning(f"Room {room_id} has no {granularity.value} rate; pricing it at zero.")
            line_items.append(schemas.PriceLineItem(
                room_id=room_id, rate=0.0, quantity=number_of_days, total=0.0, priced=False,
            ))
            continue

        line_total = rate * number_of_days
        rent_total += line_total
        line_items.append(schemas.PriceLineItem(
            room_id=room_id, rate=rate, quantity=number_of_days, total=line_total, priced=True,
        ))

    booking_fee = calculate_booking_fee(rent_total)
    return schemas.PriceQuote(
        price_type=granularity,
        number_of_days=number_of_days,
        rent_amount=rent_total,
        booking_fee=booking_fee,
        total_amount=rent_total + booking_fee,
        line_items=line_items,
    )
