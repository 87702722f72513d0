"""Tiered priority scoring for the enrichment queue.

Lower score = processed sooner.

Tiers by days until hearing:
    0-7      CRITICAL  days * 10                      (0-70)
    8-30     URGENT    100 + (days - 7)
    31-90    STANDARD  200 + (days - 30) // 2
    >90      LOW       min(399, 300 + (days - 90) // 3)
    past     ARCHIVE   400 + min(100, |days|)
    none               450

Modifiers: -20 created within 24h, -10 amount due over 1000,
+50 per prior failure. Floored at 0.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from oathsync.canonical.values import days_until, parse_timestamp, to_amount, utcnow

NO_HEARING_SCORE = 450
NEW_RECORD_WINDOW = timedelta(hours=24)
NEW_RECORD_BONUS = 20
HIGH_BALANCE_THRESHOLD = Decimal("1000")
HIGH_BALANCE_BONUS = 10
FAILURE_PENALTY = 50


def base_score(days: int | None) -> int:
    """Tier score from whole days until the hearing (None = no hearing date)."""
    if days is None:
        return NO_HEARING_SCORE
    if days < 0:
        return 400 + min(100, abs(days))
    if days <= 7:
        return days * 10
    if days <= 30:
        return 100 + (days - 7)
    if days <= 90:
        return 200 + (days - 30) // 2
    return min(399, 300 + (days - 90) // 3)


def calculate_priority(record: Any, now: datetime | None = None) -> int:
    """Score a pending record.

    Args:
        record: Object with hearing_date, created_at, amount_due, ocr_failure_count
        now: Reference time (defaults to current UTC time)

    Returns:
        Integer priority score, >= 0
    """
    now = now or utcnow()

    hearing = parse_timestamp(getattr(record, "hearing_date", None))
    score = base_score(days_until(hearing, now) if hearing else None)

    created = parse_timestamp(getattr(record, "created_at", None))
    if created is not None and now - created <= NEW_RECORD_WINDOW:
        score -= NEW_RECORD_BONUS

    if to_amount(getattr(record, "amount_due", None)) > HIGH_BALANCE_THRESHOLD:
        score -= HIGH_BALANCE_BONUS

    failures = getattr(record, "ocr_failure_count", None) or 0
    if failures > 0:
        score += failures * FAILURE_PENALTY

    return max(0, score)


def tier_label(score: int) -> str:
    """Human label for a score, used by the queue preview."""
    if score < 100:
        return "CRITICAL"
    if score < 200:
        return "URGENT"
    if score < 300:
        return "STANDARD"
    if score < 400:
        return "LOW"
    return "ARCHIVE"
