"""Value normalizers shared by the diff engine and the priority scorer.

Source rows carry amounts as strings ("600", "600.00", "") and timestamps
with or without a zone designator. Everything is coerced to one canonical
form before comparison so representation changes never count as edits.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

_CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_amount(value: Any) -> Decimal:
    """Coerce a currency value to a 2-decimal Decimal.

    Non-numeric, empty and non-finite inputs become 0.00.
    """
    if value is None or isinstance(value, bool):
        return ZERO

    if isinstance(value, Decimal):
        amount = value
    else:
        text = str(value).strip().replace(",", "").replace("$", "")
        if not text:
            return ZERO
        try:
            amount = Decimal(text)
        except InvalidOperation:
            return ZERO

    if not amount.is_finite():
        return ZERO
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


def format_amount(value: Any) -> str:
    return f"${to_amount(value):,.2f}"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a timestamp-ish value into an aware UTC datetime.

    Accepts datetimes, dates and ISO-8601 strings. Values without a zone
    are taken as UTC. Returns None for empty or unparseable input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)

    text = str(value).strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)


def normalize_timestamp(value: Any) -> str | None:
    """Render a timestamp as ``YYYY-MM-DDTHH:MM:SS.mmmZ``.

    Empty input gives None; strings that are not timestamps are returned
    stripped so they still compare stably.
    """
    parsed = parse_timestamp(value)
    if parsed is not None:
        millis = parsed.microsecond // 1000
        return parsed.strftime("%Y-%m-%dT%H:%M:%S") + f".{millis:03d}Z"

    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_text(value: Any) -> str | None:
    """Strip a text value; None and blank are the same thing."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def days_until(moment: datetime, now: datetime) -> int:
    """Whole days from ``now`` until ``moment``, floored (negative when past)."""
    delta = ensure_utc(moment) - ensure_utc(now)
    return math.floor(delta.total_seconds() / 86400)
