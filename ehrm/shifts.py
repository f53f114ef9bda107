from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Iterable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ehrm.errors import Conflict, NotFound, ValidationError
from ehrm.models import ShiftRecord, WorkPattern
from ehrm.schedule import (
    LegacySchedule,
    NormalizedSchedule,
    dump_schedule,
    load_schedule,
    normalize_weekly_schedule,
    summarize_schedule,
    to_date,
)

logger = logging.getLogger(__name__)

WORK = "WORK"
OFF = "OFF"


@dataclass(frozen=True)
class ShiftAdjustment:
    date: date
    status: str
    action: str
    shift_id: int
    work_pattern_id: int | None
    copied_schedule: dict[str, Any] | str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "status": self.status,
            "action": self.action,
            "shift_id": self.shift_id,
            "work_pattern_id": self.work_pattern_id,
            "copied_schedule": self.copied_schedule,
        }


def require_work_pattern(db: Session, pattern_id: int) -> WorkPattern:
    pattern = db.get(WorkPattern, pattern_id)
    if pattern is None or pattern.deleted_at is not None:
        raise NotFound(f"Work pattern {pattern_id} not found")
    return pattern


def find_keyed_shift(db: Session, user_id: int, start_date: date) -> ShiftRecord | None:
    """Record holding the (user, start date) key, soft-deleted or not."""
    return db.scalar(
        select(ShiftRecord).where(ShiftRecord.user_id == user_id, ShiftRecord.start_date == start_date)
    )


def find_covering_shift(db: Session, user_id: int, day: date) -> ShiftRecord | None:
    return db.scalar(
        select(ShiftRecord)
        .where(
            ShiftRecord.user_id == user_id,
            ShiftRecord.deleted_at.is_(None),
            or_(ShiftRecord.start_date.is_(None), ShiftRecord.start_date <= day),
            or_(ShiftRecord.end_date.is_(None), ShiftRecord.end_date >= day),
        )
        .order_by(ShiftRecord.start_date.desc().nulls_last(), ShiftRecord.updated_at.desc())
        .limit(1)
    )


def revive_or_create(db: Session, user_id: int, start_date: date, **values: Any) -> tuple[ShiftRecord, str]:
    """Write ``values`` onto the record keyed by (user, start date).

    A soft-deleted record on the key is revived instead of inserting a duplicate.
    Returns the record and ``"create"`` or ``"update"``.
    """
    record = find_keyed_shift(db, user_id, start_date)
    if record is None:
        record = ShiftRecord(user_id=user_id, start_date=start_date, **values)
        db.add(record)
        db.flush()
        return record, "create"
    for key, value in values.items():
        setattr(record, key, value)
    record.deleted_at = None
    db.flush()
    return record, "update"


def _carry_remainder(db: Session, record: ShiftRecord, day: date) -> ShiftRecord | None:
    # the keyed record spans past ``day``; keep the rest of its range as its own record,
    # starting after any live records already keyed on the following days
    end_date = record.end_date
    remainder_start = day + timedelta(days=1)
    while end_date is None or remainder_start <= end_date:
        occupant = find_keyed_shift(db, record.user_id, remainder_start)
        if occupant is None or occupant.deleted_at is not None:
            break
        remainder_start += timedelta(days=1)
    else:
        return None
    remainder, _ = revive_or_create(
        db,
        record.user_id,
        remainder_start,
        end_date=end_date,
        status=record.status,
        work_pattern_id=record.work_pattern_id,
        schedule=record.schedule,
    )
    return remainder


def ensure_status(
    db: Session,
    user_id: int,
    target_date: Any,
    desired_status: str,
    pattern_override: int | None = None,
) -> ShiftAdjustment:
    """Make the user's shift on ``target_date`` a single-day record with ``desired_status``.

    Calling it again with the same arguments is a ``noop``.
    """
    day = to_date(target_date)
    if day is None:
        raise ValidationError(f"Invalid shift date {target_date!r}")
    if desired_status not in (WORK, OFF):
        raise ValidationError(f"Invalid shift status {desired_status!r}")

    keyed = find_keyed_shift(db, user_id, day)
    if keyed is not None and keyed.deleted_at is None and keyed.end_date == day:
        pattern_id = pattern_override if pattern_override is not None else keyed.work_pattern_id
        if keyed.status == desired_status and keyed.work_pattern_id == pattern_id:
            return ShiftAdjustment(day, desired_status, "noop", keyed.id, pattern_id)
        keyed.status = desired_status
        keyed.work_pattern_id = pattern_id
        db.flush()
        return ShiftAdjustment(day, desired_status, "update", keyed.id, pattern_id)

    covering = find_covering_shift(db, user_id, day)
    copied_schedule = None
    if pattern_override is not None:
        pattern_id = pattern_override
    elif covering is not None:
        pattern_id = covering.work_pattern_id
        copied_schedule = summarize_schedule(load_schedule(covering.schedule))
    else:
        pattern_id = keyed.work_pattern_id if keyed is not None else None

    if keyed is not None and keyed.deleted_at is None:
        _carry_remainder(db, keyed, day)

    record, action = revive_or_create(
        db,
        user_id,
        day,
        end_date=day,
        status=desired_status,
        work_pattern_id=pattern_id,
        schedule=dump_schedule(LegacySchedule(day.isoformat())),
    )
    return ShiftAdjustment(day, desired_status, action, record.id, pattern_id, copied_schedule)


def summarize_adjustments(adjustments: Iterable[ShiftAdjustment]) -> dict[str, Any]:
    items = list(adjustments)
    changed = [item for item in items if item.action != "noop"]
    days = sorted(item.date for item in items)
    return {
        "created": sum(1 for item in changed if item.action == "create"),
        "updated": sum(1 for item in changed if item.action == "update"),
        "unchanged": len(items) - len(changed),
        "period_start": days[0].isoformat() if days else None,
        "period_end": days[-1].isoformat() if days else None,
        "adjustments": [item.to_dict() for item in items],
    }


def create_weekly_shift(
    db: Session,
    user_id: int,
    raw_schedule: Any,
    status: str = WORK,
    work_pattern_id: int | None = None,
    fallback_start: Any = None,
    fallback_end: Any = None,
) -> tuple[ShiftRecord, NormalizedSchedule]:
    """Store a recurring weekly plan as one ranged shift record."""
    if status not in (WORK, OFF):
        raise ValidationError(f"Invalid shift status {status!r}")
    normalized = normalize_weekly_schedule(raw_schedule, fallback_start, fallback_end)
    if work_pattern_id is not None:
        require_work_pattern(db, work_pattern_id)
    existing = find_keyed_shift(db, user_id, normalized.derived_start)
    if existing is not None and existing.deleted_at is None:
        raise Conflict(f"A shift already starts on {normalized.derived_start.isoformat()} for this user")
    record, action = revive_or_create(
        db,
        user_id,
        normalized.derived_start,
        end_date=normalized.derived_end,
        status=status,
        work_pattern_id=work_pattern_id,
        schedule=dump_schedule(normalized.pattern),
    )
    logger.info("Weekly shift %s (%s) stored for user %s from %s", record.id, action, user_id, normalized.derived_start)
    return record, normalized


def list_shifts(db: Session, user_id: int, start: date | None = None, end: date | None = None) -> list[ShiftRecord]:
    stmt = select(ShiftRecord).where(ShiftRecord.user_id == user_id, ShiftRecord.deleted_at.is_(None))
    if start is not None:
        stmt = stmt.where(or_(ShiftRecord.end_date.is_(None), ShiftRecord.end_date >= start))
    if end is not None:
        stmt = stmt.where(or_(ShiftRecord.start_date.is_(None), ShiftRecord.start_date <= end))
    return list(db.scalars(stmt.order_by(ShiftRecord.start_date.asc().nulls_first(), ShiftRecord.id.asc())).all())
