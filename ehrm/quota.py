from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import date
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from ehrm.errors import QuotaInsufficient, ValidationError
from ehrm.models import MonthlyQuota
from ehrm.schedule import to_date

logger = logging.getLogger(__name__)

MONTH_NAMES = (
    "JANUARY",
    "FEBRUARY",
    "MARCH",
    "APRIL",
    "MAY",
    "JUNE",
    "JULY",
    "AUGUST",
    "SEPTEMBER",
    "OCTOBER",
    "NOVEMBER",
    "DECEMBER",
)


def month_label(day: date) -> str:
    return MONTH_NAMES[day.month - 1]


def parse_month(value: Any) -> str:
    """Accept a month name, a 1-12 number or a date and return the stored label."""
    if isinstance(value, date):
        return month_label(value)
    text = str(value or "").strip().upper()
    if text.isdigit() and 1 <= int(text) <= 12:
        return MONTH_NAMES[int(text) - 1]
    if text in MONTH_NAMES:
        return text
    for name in MONTH_NAMES:
        if len(text) >= 3 and name.startswith(text):
            return name
    raise ValidationError(f"Unknown month {value!r}")


def group_by_month(dates: Iterable[Any]) -> "OrderedDict[str, int]":
    counts: OrderedDict[str, int] = OrderedDict()
    unique = sorted({day for day in (to_date(value) for value in dates) if day is not None})
    for day in unique:
        label = month_label(day)
        counts[label] = counts.get(label, 0) + 1
    return counts


def get_quota(db: Session, user_id: int, month: str) -> MonthlyQuota | None:
    return db.scalar(select(MonthlyQuota).where(MonthlyQuota.user_id == user_id, MonthlyQuota.month == month))


def apply(db: Session, user_id: int, dates: Iterable[Any], sign: int, enabled: bool = True) -> dict[str, int]:
    """Consume (``sign=-1``) or refund (``sign=+1``) one quota day per leave date.

    Consumption is all-or-nothing: every short month is reported in a single
    ``QuotaInsufficient`` and no balance is touched.
    """
    if sign not in (-1, 1):
        raise ValueError("sign must be -1 or +1")
    if not enabled:
        return {}
    counts = group_by_month(dates)
    if not counts:
        return {}

    records = {month: get_quota(db, user_id, month) for month in counts}
    if sign < 0:
        shortages = []
        for month, needed in counts.items():
            available = records[month].quota_days if records[month] is not None else 0
            if available < needed:
                shortages.append({"month": month, "available": available, "requested": needed})
        if shortages:
            logger.warning("User %s has insufficient leave quota: %s", user_id, shortages)
            raise QuotaInsufficient(shortages)

    for month, days in counts.items():
        record = records[month]
        if record is None:
            record = MonthlyQuota(user_id=user_id, month=month, quota_days=0)
            db.add(record)
        record.quota_days = max(0, record.quota_days + sign * days)
    db.flush()
    return dict(counts)


def set_quota(db: Session, user_id: int, month: Any, quota_days: int) -> MonthlyQuota:
    if quota_days < 0:
        raise ValidationError("quota_days cannot be negative")
    label = parse_month(month)
    record = get_quota(db, user_id, label)
    if record is None:
        record = MonthlyQuota(user_id=user_id, month=label, quota_days=quota_days)
        db.add(record)
    else:
        record.quota_days = quota_days
    db.flush()
    return record


def list_quotas(db: Session, user_id: int) -> list[MonthlyQuota]:
    records = db.scalars(select(MonthlyQuota).where(MonthlyQuota.user_id == user_id)).all()
    return sorted(records, key=lambda record: MONTH_NAMES.index(record.month) if record.month in MONTH_NAMES else 12)


def rollover(db: Session, reference_date: date) -> dict[str, Any]:
    """Move every user's remaining balance of the previous month into the current month."""
    current = month_label(reference_date)
    previous = MONTH_NAMES[(reference_date.month - 2) % 12]
    summary = {
        "from_month": previous,
        "to_month": current,
        "processed_users": 0,
        "carried_users": 0,
        "total_carried": 0,
        "created": 0,
        "updated": 0,
        "zeroed": 0,
    }

    for record in db.scalars(select(MonthlyQuota).where(MonthlyQuota.month == previous)).all():
        summary["processed_users"] += 1
        leftover = record.quota_days
        if leftover <= 0:
            continue
        target = get_quota(db, record.user_id, current)
        if target is None:
            db.add(MonthlyQuota(user_id=record.user_id, month=current, quota_days=leftover))
            summary["created"] += 1
        else:
            target.quota_days += leftover
            summary["updated"] += 1
        record.quota_days = 0
        summary["zeroed"] += 1
        summary["carried_users"] += 1
        summary["total_carried"] += leftover

    db.flush()
    logger.info("Quota rollover %s -> %s: %s", previous, current, summary)
    return summary
