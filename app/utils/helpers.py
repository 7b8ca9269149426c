"""Shared utility functions.

as_utc:              normalise DB datetimes (SQLite drops tzinfo) to aware UTC
parse_datetime_input: parse ISO date/datetime input, raising ValueError on bad input
parse_amount:        parse a non-negative monetary amount, raising ValueError
"""
import logging
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation

logger = logging.getLogger(__name__)


def as_utc(value):
    """Return *value* as a timezone-aware UTC datetime (None passes through).

    SQLite returns naive datetimes even for ``DateTime(timezone=True)``
    columns; every value the engine writes is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime_input(value):
    """Parse an ISO date or datetime string to an aware UTC datetime.

    Raises ValueError on bad input. A bare date (YYYY-MM-DD) means
    midnight UTC of that day.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError as exc:
        raise ValueError(
            "Invalid datetime format. Use ISO 8601 (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)."
        ) from exc


def parse_amount(value):
    """Parse a non-negative amount to Decimal, raising ValueError on bad input."""
    if value is None or isinstance(value, bool):
        raise ValueError("amount must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError("amount must be a number") from exc
    if not amount.is_finite():
        raise ValueError("amount must be a finite number")
    if amount < 0:
        raise ValueError("amount must be zero or positive")
    return amount
