from __future__ import annotations

import datetime as dt
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ehrm.models import (
    USER_ROLES,
    ApprovalSlot,
    LeaveCategory,
    MonthlyQuota,
    Notification,
    ShiftRecord,
    Submission,
    User,
    WorkPattern,
)
from ehrm.schedule import load_schedule, summarize_schedule

Decision = Literal["approved", "rejected"]
ShiftStatus = Literal["WORK", "OFF"]


class AuthPayload(BaseModel):
    email: str
    password: str


class UserCreatePayload(BaseModel):
    email: str
    temporary_password: str
    name: str = ""
    role: str = "EMPLOYEE"

    @model_validator(mode="after")
    def validate_role(self) -> "UserCreatePayload":
        self.role = self.role.strip().upper()
        if self.role not in USER_ROLES:
            raise ValueError(f"role must be one of {', '.join(USER_ROLES)}")
        return self


class UserOut(BaseModel):
    id: int
    email: str
    name: str
    role: str
    is_active: bool
    created_at: datetime

    @classmethod
    def from_orm_user(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            is_active=user.is_active,
            created_at=user.created_at,
        )


class WorkPatternPayload(BaseModel):
    name: str = Field(min_length=1)
    start_time: time
    end_time: time


class WorkPatternOut(BaseModel):
    id: int
    name: str
    start_time: time
    end_time: time

    @classmethod
    def from_orm_pattern(cls, pattern: WorkPattern) -> "WorkPatternOut":
        return cls(id=pattern.id, name=pattern.name, start_time=pattern.start_time, end_time=pattern.end_time)


class LeaveCategoryPayload(BaseModel):
    name: str = Field(min_length=1)
    deducts_quota: bool = True


class LeaveCategoryOut(BaseModel):
    id: int
    name: str
    deducts_quota: bool

    @classmethod
    def from_orm_category(cls, category: LeaveCategory) -> "LeaveCategoryOut":
        return cls(id=category.id, name=category.name, deducts_quota=category.deducts_quota)


class ApprovalSlotIn(BaseModel):
    # kept loose so the chain validator can report every bad entry at once
    model_config = ConfigDict(extra="ignore")

    id: Any = None
    level: Any = None
    approver_user_id: Any = None
    approver_role: Any = None
    note: Any = None


class SwapPairIn(BaseModel):
    day_given_up: date
    day_taken: date
    day_taken_pattern_id: int | None = None


class SubmissionPayload(BaseModel):
    """Create/update body shared by every submission kind.

    On update only the fields present in the body are applied; ``approvals``
    re-syncs the chain when present.
    """

    user_id: int | None = None
    reason: str | None = None
    attachment_url: str | None = None
    category_id: int | None = None
    dates: list[date] | None = None
    return_date: date | None = None
    permit_date: date | None = None
    start_time: time | None = None
    end_time: time | None = None
    amount: Decimal | None = None
    payment_method: str | None = None
    pairs: list[SwapPairIn] | None = None
    approvals: list[ApprovalSlotIn] | None = None


class ReturnShiftIn(BaseModel):
    date: dt.date | None = None
    work_pattern_id: int | None = None


class ShiftOverridesIn(BaseModel):
    day_given_up_pattern_id: int | None = None
    day_taken_pattern_id: int | None = None


class DecisionPayload(BaseModel):
    decision: Decision
    note: str | None = None
    proof_url: str | None = None
    return_shift: ReturnShiftIn | None = None
    shift_overrides: ShiftOverridesIn | None = None


class ApprovalSlotOut(BaseModel):
    id: int
    level: int
    approver_user_id: int | None = None
    approver_role: str | None = None
    decision: str
    decided_at: datetime | None = None
    note: str | None = None
    proof_url: str | None = None

    @classmethod
    def from_orm_slot(cls, slot: ApprovalSlot) -> "ApprovalSlotOut":
        return cls(
            id=slot.id,
            level=slot.level,
            approver_user_id=slot.approver_user_id,
            approver_role=slot.approver_role,
            decision=slot.decision,
            decided_at=slot.decided_at,
            note=slot.note,
            proof_url=slot.proof_url,
        )


class SwapPairOut(BaseModel):
    day_given_up: date
    day_taken: date
    day_taken_pattern_id: int | None = None


class SubmissionOut(BaseModel):
    id: int
    kind: str
    user_id: int
    status: str
    current_level: int | None = None
    reason: str | None = None
    attachment_url: str | None = None
    category_id: int | None = None
    dates: list[date] = Field(default_factory=list)
    return_date: date | None = None
    permit_date: date | None = None
    start_time: time | None = None
    end_time: time | None = None
    amount: Decimal | None = None
    payment_method: str | None = None
    pairs: list[SwapPairOut] = Field(default_factory=list)
    approvals: list[ApprovalSlotOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


def serialize_submission(submission: Submission) -> SubmissionOut:
    return SubmissionOut(
        id=submission.id,
        kind=submission.kind,
        user_id=submission.user_id,
        status=submission.status,
        current_level=submission.current_level,
        reason=submission.reason,
        attachment_url=submission.attachment_url,
        category_id=submission.category_id,
        dates=[entry.day for entry in submission.dates],
        return_date=submission.return_date,
        permit_date=submission.permit_date,
        start_time=submission.start_time,
        end_time=submission.end_time,
        amount=submission.amount,
        payment_method=submission.payment_method,
        pairs=[
            SwapPairOut(
                day_given_up=pair.day_given_up,
                day_taken=pair.day_taken,
                day_taken_pattern_id=pair.day_taken_pattern_id,
            )
            for pair in submission.pairs
        ],
        approvals=[ApprovalSlotOut.from_orm_slot(slot) for slot in sorted(submission.approvals, key=lambda s: s.level)],
        created_at=submission.created_at,
        updated_at=submission.updated_at,
    )


class DecisionOut(BaseModel):
    submission: SubmissionOut
    slot: ApprovalSlotOut
    transitioned: bool
    shift_adjustments: list[dict[str, Any]] = Field(default_factory=list)
    quota: dict[str, int] = Field(default_factory=dict)


class PendingApprovalOut(BaseModel):
    slot: ApprovalSlotOut
    submission_id: int
    kind: str
    user_id: int


class ShiftOut(BaseModel):
    id: int
    user_id: int
    status: str
    work_pattern_id: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    schedule: dict[str, Any] | str | None = None

    @classmethod
    def from_orm_shift(cls, record: ShiftRecord) -> "ShiftOut":
        return cls(
            id=record.id,
            user_id=record.user_id,
            status=record.status,
            work_pattern_id=record.work_pattern_id,
            start_date=record.start_date,
            end_date=record.end_date,
            schedule=summarize_schedule(load_schedule(record.schedule)),
        )


class WeeklyShiftPayload(BaseModel):
    user_id: int
    schedule: Any
    status: ShiftStatus = "WORK"
    work_pattern_id: int | None = None
    start_date: date | None = None
    end_date: date | None = None


class WeeklyShiftOut(BaseModel):
    shift: ShiftOut
    normalized: dict[str, Any]
    ignored_tokens: list[Any] = Field(default_factory=list)


class EnsureShiftPayload(BaseModel):
    user_id: int
    date: dt.date
    status: ShiftStatus
    work_pattern_id: int | None = None


class ShiftAdjustmentOut(BaseModel):
    date: dt.date
    status: str
    action: str
    shift_id: int
    work_pattern_id: int | None = None
    copied_schedule: dict[str, Any] | str | None = None


class QuotaPayload(BaseModel):
    quota_days: int = Field(ge=0)


class QuotaOut(BaseModel):
    user_id: int
    month: str
    quota_days: int

    @classmethod
    def from_orm_quota(cls, record: MonthlyQuota) -> "QuotaOut":
        return cls(user_id=record.user_id, month=record.month, quota_days=record.quota_days)


class RolloverPayload(BaseModel):
    reference_date: date | None = None


class NotificationOut(BaseModel):
    id: int
    event_type: str
    title: str
    body: str
    payload: dict[str, Any]
    related_kind: str | None = None
    related_id: int | None = None
    is_read: bool
    created_at: datetime

    @classmethod
    def from_orm_notification(cls, row: Notification) -> "NotificationOut":
        return cls(
            id=row.id,
            event_type=row.event_type,
            title=row.title,
            body=row.body,
            payload=row.payload_json,
            related_kind=row.related_kind,
            related_id=row.related_id,
            is_read=row.is_read,
            created_at=row.created_at,
        )
