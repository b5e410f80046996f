"""Common helpers for the service layer."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from zoneinfo import ZoneInfo

from app.config import settings


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def parse_uuid(value) -> uuid.UUID | None:
    """Like coerce_uuid but returns None for malformed input."""
    try:
        return coerce_uuid(value)
    except (ValueError, TypeError, AttributeError):
        return None


def round_money(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def today() -> date:
    """Current calendar date in the billing timezone."""
    return datetime.now(ZoneInfo(settings.billing_timezone)).date()


def format_rupiah(amount) -> str:
    """Format an amount as ``Rp 150.000`` (dot thousands, no decimals)."""
    whole = int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return "Rp " + f"{whole:,}".replace(",", ".")


def format_date(value: date | datetime | None, with_time: bool = False) -> str:
    if value is None:
        return "N/A"
    if with_time:
        return value.strftime("%d/%m/%Y %H:%M")
    return value.strftime("%d/%m/%Y")
