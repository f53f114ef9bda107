"""Weekly work-pattern normalization.

A weekly pattern names the weekdays an employee works and the date range the
pattern applies to. ``normalize_weekly_schedule`` turns the loosely shaped input
accepted by the API (numbers, English or Indonesian day names, objects) into
concrete calendar dates. Weekday indices are Sunday based (0 = Sunday) and all
arithmetic is done on ``date`` values so time of day never shifts a result.

Shift records persist the pattern in a text column; ``load_schedule`` and
``dump_schedule`` convert between that column and the ``WeeklyPattern`` /
``LegacySchedule`` variants used by the rest of the code.
"""

from __future__ import annotations

import json
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Union

from ehrm.errors import ValidationError

DAY_NAMES = ("SUNDAY", "MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY")
LOCAL_DAY_NAMES = ("Minggu", "Senin", "Selasa", "Rabu", "Kamis", "Jumat", "Sabtu")

DAY_TOKENS: dict[str, int] = {
    "SUNDAY": 0,
    "SUN": 0,
    "MONDAY": 1,
    "MON": 1,
    "TUESDAY": 2,
    "TUE": 2,
    "WEDNESDAY": 3,
    "WED": 3,
    "THURSDAY": 4,
    "THU": 4,
    "FRIDAY": 5,
    "FRI": 5,
    "SATURDAY": 6,
    "SAT": 6,
    "MINGGU": 0,
    "AHAD": 0,
    "SENIN": 1,
    "SELASA": 2,
    "RABU": 3,
    "KAMIS": 4,
    "JUMAT": 5,
    "SABTU": 6,
    "MIN": 0,
    "SEN": 1,
    "SEL": 2,
    "RAB": 3,
    "KAM": 4,
    "JUM": 5,
    "SAB": 6,
}

_HARI_TOKEN = re.compile(r"^HARI([1-7])$")
_APOSTROPHES = "'`´’"
_TYPE_KEYS = ("type", "pattern", "mode", "patternType", "jenis")
_START_KEYS = ("start_date", "startDate", "mulai", "referenceDate", "weekStart")
_END_KEYS = ("end_date", "endDate", "selesai", "until", "weekEnd")
_DAYS_KEYS = ("days", "day", "hari", "hari_kerja", "weekdays", "list")
_DAY_OBJECT_KEYS = ("index", "dayIndex", "day", "hari", "name")


@dataclass(frozen=True)
class WeeklyPattern:
    weekdays: tuple[int, ...]
    start_date: date | None = None
    end_date: date | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "WEEKLY",
            "weekdays": list(self.weekdays),
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WeeklyPattern":
        raw_days = _first_present(data, ("weekdays",) + _DAYS_KEYS) or []
        weekdays: set[int] = set()
        for token in raw_days if isinstance(raw_days, list) else []:
            try:
                weekdays.add(parse_weekday(token))
            except ValueError:
                continue
        return cls(
            weekdays=tuple(sorted(weekdays)),
            start_date=to_date(_first_present(data, _START_KEYS)),
            end_date=to_date(_first_present(data, _END_KEYS)),
        )


@dataclass(frozen=True)
class LegacySchedule:
    """Free-text ``hari_kerja`` value kept verbatim from older records."""

    text: str


Schedule = Union[WeeklyPattern, LegacySchedule]


@dataclass(frozen=True)
class WeekdayOccurrences:
    index: int
    first_date: date
    last_date: date | None
    dates: tuple[date, ...]
    offset_from_start: int

    @property
    def name(self) -> str:
        return DAY_NAMES[self.index]

    @property
    def local_name(self) -> str:
        return LOCAL_DAY_NAMES[self.index]


@dataclass(frozen=True)
class NormalizedSchedule:
    pattern: WeeklyPattern
    days: tuple[WeekdayOccurrences, ...]
    derived_start: date
    derived_end: date | None
    reference_week: tuple[date, date]
    ignored_tokens: tuple[Any, ...] = field(default_factory=tuple)

    @property
    def occurrences(self) -> list[date]:
        return sorted({day for entry in self.days for day in entry.dates})

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "WEEKLY",
            "start_date": self.pattern.start_date.isoformat() if self.pattern.start_date else None,
            "end_date": self.pattern.end_date.isoformat() if self.pattern.end_date else None,
            "derived_start": self.derived_start.isoformat(),
            "derived_end": self.derived_end.isoformat() if self.derived_end else None,
            "days": [
                {
                    "index": entry.index,
                    "day": entry.name,
                    "localized_name": entry.local_name,
                    "first_date": entry.first_date.isoformat(),
                    "last_date": entry.last_date.isoformat() if entry.last_date else None,
                    "offset_from_start": entry.offset_from_start,
                    "dates": [day.isoformat() for day in entry.dates],
                }
                for entry in self.days
            ],
            "reference_week": {
                "start": self.reference_week[0].isoformat(),
                "end": self.reference_week[1].isoformat(),
            },
        }


def _first_present(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _normalize_token(raw: Any) -> str:
    text = unicodedata.normalize("NFKD", str(raw))
    for mark in _APOSTROPHES:
        text = text.replace(mark, "")
    return "".join(text.split()).upper()


def parse_weekday(token: Any) -> int:
    """Return the Sunday-based index (0-6) for one weekday token."""
    if token is None or isinstance(token, bool):
        raise ValueError(f"Unsupported weekday value {token!r}")
    if isinstance(token, int):
        if 1 <= token <= 7:
            return token % 7
        if token == 0:
            return 0
        raise ValueError(f"Weekday number {token} is out of range")
    if isinstance(token, str):
        normalized = _normalize_token(token)
        if not normalized:
            raise ValueError("Weekday value cannot be empty")
        if normalized.isdigit():
            return parse_weekday(int(normalized))
        if normalized in DAY_TOKENS:
            return DAY_TOKENS[normalized]
        match = _HARI_TOKEN.match(normalized)
        if match:
            return int(match.group(1)) % 7
        raise ValueError(f"Unknown weekday {token!r}")
    if isinstance(token, dict):
        for key in _DAY_OBJECT_KEYS:
            if key in token:
                return parse_weekday(token[key])
    raise ValueError(f"Unsupported weekday value {token!r}")


def to_date(value: Any) -> date | None:
    """Coerce a date-ish value to a calendar date in UTC, dropping the time of day."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return to_date(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        return None


def sunday_index(day: date) -> int:
    return (day.weekday() + 1) % 7


def first_occurrence(start: date, weekday: int) -> date:
    return start + timedelta(days=(weekday - sunday_index(start)) % 7)


def last_occurrence(first: date, end: date) -> date | None:
    if first > end:
        return None
    return first + timedelta(weeks=(end - first).days // 7)


def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def normalize_weekly_schedule(
    raw: Any,
    fallback_start: Any = None,
    fallback_end: Any = None,
) -> NormalizedSchedule:
    if isinstance(raw, WeeklyPattern):
        raw = raw.to_dict()
    if isinstance(raw, (list, tuple)):
        raw = {"days": list(raw)}
    if not isinstance(raw, dict):
        raise ValidationError("Weekly schedule must be an object or a list of weekdays")

    kind = str(_first_present(raw, _TYPE_KEYS) or "WEEKLY").strip().upper()
    if kind != "WEEKLY":
        raise ValidationError("Only WEEKLY schedules are supported")

    start = to_date(_first_present(raw, _START_KEYS)) or to_date(fallback_start)
    if start is None:
        raise ValidationError("Weekly schedule requires a valid start_date")

    end = to_date(_first_present(raw, _END_KEYS)) or to_date(fallback_end)
    if end is not None and end < start:
        raise ValidationError("end_date cannot be earlier than start_date")

    tokens = _first_present(raw, ("weekdays",) + _DAYS_KEYS)
    if not isinstance(tokens, (list, tuple)) or not tokens:
        raise ValidationError("Weekly schedule needs at least one weekday")

    weekdays: set[int] = set()
    ignored: list[Any] = []
    for token in tokens:
        try:
            weekdays.add(parse_weekday(token))
        except ValueError:
            ignored.append(token)
    if not weekdays:
        raise ValidationError("Weekly schedule does not contain any recognizable weekday")

    entries: list[WeekdayOccurrences] = []
    for index in sorted(weekdays):
        first = first_occurrence(start, index)
        last: date | None = None
        if end is not None:
            last = last_occurrence(first, end)
            if last is None:
                raise ValidationError(
                    f"{DAY_NAMES[index].title()} does not occur between {start.isoformat()} and {end.isoformat()}"
                )
            dates = tuple(first + timedelta(weeks=week) for week in range((last - first).days // 7 + 1))
        else:
            dates = (first,)
        entries.append(
            WeekdayOccurrences(
                index=index,
                first_date=first,
                last_date=last,
                dates=dates,
                offset_from_start=(first - start).days,
            )
        )

    derived_start = min(entry.first_date for entry in entries)
    derived_end = max(entry.last_date for entry in entries if entry.last_date) if end is not None else None
    reference_start = week_start(derived_start)

    return NormalizedSchedule(
        pattern=WeeklyPattern(weekdays=tuple(sorted(weekdays)), start_date=start, end_date=end),
        days=tuple(entries),
        derived_start=derived_start,
        derived_end=derived_end,
        reference_week=(reference_start, reference_start + timedelta(days=6)),
        ignored_tokens=tuple(ignored),
    )


def load_schedule(raw: str | None) -> Schedule | None:
    if raw is None or not raw.strip():
        return None
    text = raw.strip()
    try:
        parsed = json.loads(text)
    except ValueError:
        return LegacySchedule(text)
    if isinstance(parsed, list):
        return WeeklyPattern.from_dict({"days": parsed})
    if isinstance(parsed, dict) and str(_first_present(parsed, _TYPE_KEYS) or "").upper() == "WEEKLY":
        return WeeklyPattern.from_dict(parsed)
    return LegacySchedule(text)


def dump_schedule(value: Schedule | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, WeeklyPattern):
        return json.dumps(value.to_dict())
    return value.text


def summarize_schedule(value: Schedule | None) -> dict[str, Any] | str | None:
    if value is None:
        return None
    if isinstance(value, LegacySchedule):
        return value.text
    return {"type": "WEEKLY", "days": [DAY_NAMES[index] for index in value.weekdays]}
