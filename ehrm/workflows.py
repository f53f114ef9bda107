"""Submission workflows.

Every submission kind runs through the same engine: the owner (or an admin on
their behalf) files it with an approval chain, approvers decide slots one by
one and the submission status follows the chain. A ``KindAdapter`` owns the
kind's own fields and the side effects of entering ``approved``. Each public
method is one database transaction; notifications go out only after commit.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session

from ehrm import quota
from ehrm.approvals import (
    APPROVED,
    PENDING,
    create_chain,
    decide_slot,
    pending_for,
    sync_chain,
)
from ehrm.errors import Conflict, Forbidden, NotFound, QuotaInsufficient, ValidationError
from ehrm.models import ApprovalSlot, LeaveCategory, Submission, SubmissionDate, SwapPair, User, utcnow
from ehrm.notifications import (
    APPROVAL_REQUESTED,
    QUOTA_INSUFFICIENT,
    SHIFT_LEAVE_ADJUSTMENT,
    SHIFT_SWAP_ADJUSTMENT,
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationOutbox,
    decided_event,
)
from ehrm.policy import Actor, ApprovalPolicy
from ehrm.schemas import DecisionPayload, SubmissionPayload
from ehrm.shifts import OFF, WORK, ShiftAdjustment, ensure_status, require_work_pattern, summarize_adjustments

logger = logging.getLogger(__name__)

KIND_LABELS = {
    "leave": "Leave",
    "hour_permit": "Hour permit",
    "day_swap": "Day swap",
    "payment": "Payment",
    "reimbursement": "Reimbursement",
    "pocket_money": "Pocket money",
}


def normalize_kind(kind: str) -> str:
    return (kind or "").strip().lower().replace("-", "_")


@dataclass
class SideEffects:
    event_type: str | None = None
    adjustments: list[ShiftAdjustment] = field(default_factory=list)
    quota: dict[str, int] = field(default_factory=dict)


@dataclass
class DecisionOutcome:
    submission: Submission
    slot: ApprovalSlot
    transitioned: bool
    effects: SideEffects


class KindAdapter(ABC):
    kind = ""

    @abstractmethod
    def apply_fields(
        self,
        db: Session,
        submission: Submission,
        payload: SubmissionPayload,
        fields: set[str],
        creating: bool,
    ) -> None:
        ...

    def on_approved(self, db: Session, submission: Submission, decision: DecisionPayload) -> SideEffects:
        return SideEffects()

    def on_reopened(self, db: Session, submission: Submission) -> None:
        return None

    @staticmethod
    def wants(name: str, fields: set[str], creating: bool) -> bool:
        return creating or name in fields


class LeaveAdapter(KindAdapter):
    kind = "leave"

    def apply_fields(self, db, submission, payload, fields, creating):
        if self.wants("category_id", fields, creating):
            if payload.category_id is None:
                raise ValidationError("category_id is required for leave")
            category = db.get(LeaveCategory, payload.category_id)
            if category is None or category.deleted_at is not None:
                raise NotFound(f"Leave category {payload.category_id} not found")
            submission.category_id = category.id
            submission.category = category

        if self.wants("dates", fields, creating):
            days = list(payload.dates or [])
            if not days:
                raise ValidationError("At least one leave date is required")
            if len(set(days)) != len(days):
                raise ValidationError("Leave dates must be distinct")
            if submission.dates:
                submission.dates.clear()
                db.flush()
            submission.dates.extend(SubmissionDate(day=day) for day in sorted(days))

        if self.wants("return_date", fields, creating):
            submission.return_date = payload.return_date
        last_day = max(entry.day for entry in submission.dates)
        if submission.return_date is not None and submission.return_date <= last_day:
            raise ValidationError("return_date must be after the last leave date")

    def on_approved(self, db, submission, decision):
        # the return-to-work shift is only scheduled when the decision asks for it
        return_shift = decision.return_shift
        return_date = None
        pattern_id = None
        days = [entry.day for entry in submission.dates]
        if return_shift is not None:
            return_date = return_shift.date or submission.return_date
            pattern_id = return_shift.work_pattern_id
            if return_date is None:
                raise ValidationError("return_shift.date is required when the leave has no return_date")
            if pattern_id is None:
                raise ValidationError("return_shift.work_pattern_id is required to schedule the return to work")
            if return_date in days:
                raise ValidationError("The return date cannot be one of the leave dates")
            require_work_pattern(db, pattern_id)

        category = submission.category
        effects = SideEffects(event_type=SHIFT_LEAVE_ADJUSTMENT)
        effects.quota = quota.apply(db, submission.user_id, days, -1, enabled=bool(category and category.deducts_quota))
        submission.quota_applied = bool(effects.quota)
        for day in days:
            effects.adjustments.append(ensure_status(db, submission.user_id, day, OFF))
        if return_date is not None:
            effects.adjustments.append(ensure_status(db, submission.user_id, return_date, WORK, pattern_id))
        return effects

    def on_reopened(self, db, submission):
        if not submission.quota_applied:
            return
        refunded = quota.apply(db, submission.user_id, [entry.day for entry in submission.dates], 1)
        submission.quota_applied = False
        logger.info("Refunded leave quota %s for submission %s", refunded, submission.id)


class HourPermitAdapter(KindAdapter):
    kind = "hour_permit"

    def apply_fields(self, db, submission, payload, fields, creating):
        for name in ("permit_date", "start_time", "end_time"):
            if self.wants(name, fields, creating):
                value = getattr(payload, name)
                if value is None:
                    raise ValidationError(f"{name} is required for an hour permit")
                setattr(submission, name, value)
        if submission.end_time <= submission.start_time:
            raise ValidationError("end_time must be after start_time")


class DaySwapAdapter(KindAdapter):
    kind = "day_swap"

    def apply_fields(self, db, submission, payload, fields, creating):
        if not self.wants("pairs", fields, creating):
            return
        pairs = list(payload.pairs or [])
        if not pairs:
            raise ValidationError("At least one day pair is required")
        errors: list[dict[str, Any]] = []
        seen: set[tuple] = set()
        for index, pair in enumerate(pairs):
            key = (pair.day_given_up, pair.day_taken)
            if pair.day_given_up == pair.day_taken:
                errors.append({"index": index, "message": "day_given_up and day_taken must differ"})
            elif key in seen:
                errors.append({"index": index, "message": "duplicate day pair"})
            seen.add(key)
        if errors:
            raise ValidationError("Invalid day swap pairs", errors=errors)
        for pair in pairs:
            if pair.day_taken_pattern_id is not None:
                require_work_pattern(db, pair.day_taken_pattern_id)

        if submission.pairs:
            submission.pairs.clear()
            db.flush()
        submission.pairs.extend(
            SwapPair(
                day_given_up=pair.day_given_up,
                day_taken=pair.day_taken,
                day_taken_pattern_id=pair.day_taken_pattern_id,
            )
            for pair in pairs
        )

    def on_approved(self, db, submission, decision):
        overrides = decision.shift_overrides
        given_up_pattern = overrides.day_given_up_pattern_id if overrides else None
        taken_pattern = overrides.day_taken_pattern_id if overrides else None
        for pattern_id in (given_up_pattern, taken_pattern):
            if pattern_id is not None:
                require_work_pattern(db, pattern_id)

        effects = SideEffects(event_type=SHIFT_SWAP_ADJUSTMENT)
        for pair in submission.pairs:
            effects.adjustments.append(ensure_status(db, submission.user_id, pair.day_given_up, OFF, given_up_pattern))
            pattern_id = taken_pattern if taken_pattern is not None else pair.day_taken_pattern_id
            effects.adjustments.append(ensure_status(db, submission.user_id, pair.day_taken, WORK, pattern_id))
        return effects


class FinancialAdapter(KindAdapter):
    def __init__(self, kind: str):
        self.kind = kind

    def apply_fields(self, db, submission, payload, fields, creating):
        if self.wants("amount", fields, creating):
            if payload.amount is None or payload.amount <= 0:
                raise ValidationError("amount must be greater than zero")
            submission.amount = payload.amount
        if self.wants("payment_method", fields, creating):
            submission.payment_method = payload.payment_method


def default_adapters() -> dict[str, KindAdapter]:
    adapters: list[KindAdapter] = [
        LeaveAdapter(),
        HourPermitAdapter(),
        DaySwapAdapter(),
        FinancialAdapter("payment"),
        FinancialAdapter("reimbursement"),
        FinancialAdapter("pocket_money"),
    ]
    return {adapter.kind: adapter for adapter in adapters}


class WorkflowService:
    def __init__(
        self,
        db: Session,
        policy: ApprovalPolicy | None = None,
        outbox: NotificationOutbox | None = None,
        dispatcher: NotificationDispatcher | None = None,
        adapters: dict[str, KindAdapter] | None = None,
    ):
        self.db = db
        self.policy = policy or ApprovalPolicy.from_settings()
        self.outbox = outbox if outbox is not None else NotificationOutbox()
        self.dispatcher = dispatcher if dispatcher is not None else LoggingDispatcher()
        self.adapters = adapters or default_adapters()

    def adapter(self, kind: str) -> KindAdapter:
        adapter = self.adapters.get(normalize_kind(kind))
        if adapter is None:
            raise NotFound(f"Unknown submission kind {kind!r}")
        return adapter

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.outbox.discard()
            raise

    def _deliver(self) -> None:
        if len(self.outbox):
            self.outbox.flush(self.dispatcher)

    def _load(self, kind: str, submission_id: int, lock: bool = False) -> Submission:
        stmt = select(Submission).where(Submission.id == submission_id)
        if lock:
            stmt = stmt.with_for_update()
        submission = self.db.scalar(stmt)
        if submission is None or submission.deleted_at is not None or submission.kind != kind:
            raise NotFound(f"{KIND_LABELS.get(kind, kind)} submission {submission_id} not found")
        return submission

    def _resolve_owner(self, actor: Actor, user_id: int | None) -> int:
        if user_id is None or user_id == actor.id:
            return actor.id
        if not self.policy.is_admin(actor):
            raise Forbidden("Only admins can submit on behalf of another user")
        user = self.db.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFound(f"User {user_id} not found")
        return user.id

    def _can_view(self, submission: Submission, actor: Actor) -> bool:
        if submission.user_id == actor.id or self.policy.is_admin(actor):
            return True
        return any(self.policy.can_decide(submission.kind, slot, actor) for slot in submission.approvals)

    def _link_options(self, submission: Submission) -> dict[str, Any]:
        return {
            "deeplink": f"/submissions/{submission.kind}/{submission.id}",
            "related_kind": submission.kind,
            "related_id": submission.id,
        }

    def _approver_user_ids(self, slot: ApprovalSlot) -> list[int]:
        if slot.approver_user_id is not None:
            return [slot.approver_user_id]
        return list(
            self.db.scalars(
                select(User.id).where(User.role == slot.approver_role, User.is_active.is_(True))
            ).all()
        )

    def _request_approvals(self, submission: Submission, slots: Iterable[ApprovalSlot]) -> None:
        label = KIND_LABELS[submission.kind]
        for slot in slots:
            for user_id in self._approver_user_ids(slot):
                self.outbox.publish(
                    APPROVAL_REQUESTED,
                    user_id,
                    {
                        "kind": submission.kind,
                        "submission_id": submission.id,
                        "slot_id": slot.id,
                        "level": slot.level,
                        "requested_by": submission.user_id,
                        "message": f"{label} submission #{submission.id} is waiting for your approval (level {slot.level})",
                    },
                    **self._link_options(submission),
                )

    def create(self, kind: str, actor: Actor, payload: SubmissionPayload) -> Submission:
        adapter = self.adapter(kind)
        with self._transaction():
            submission = Submission(
                kind=adapter.kind,
                user_id=self._resolve_owner(actor, payload.user_id),
                status=PENDING,
                reason=payload.reason,
                attachment_url=payload.attachment_url,
            )
            adapter.apply_fields(self.db, submission, payload, set(), creating=True)
            self.db.add(submission)
            self.db.flush()
            slots = create_chain(self.db, submission, payload.approvals or [])
            self._request_approvals(submission, slots)
        logger.info(
            "Created %s submission %s for user %s with %s approval slot(s)",
            submission.kind,
            submission.id,
            submission.user_id,
            len(slots),
        )
        self._deliver()
        return submission

    def update(self, kind: str, submission_id: int, actor: Actor, payload: SubmissionPayload) -> Submission:
        adapter = self.adapter(kind)
        fields = set(payload.model_fields_set)
        resync = "approvals" in fields and payload.approvals is not None
        with self._transaction():
            submission = self._load(adapter.kind, submission_id, lock=True)
            if submission.user_id != actor.id and not self.policy.is_admin(actor):
                raise Forbidden("Only the owner or an admin can edit this submission")
            if submission.status != PENDING and not resync:
                raise Conflict("Only pending submissions can be edited")
            if resync and submission.status == APPROVED:
                adapter.on_reopened(self.db, submission)

            if "reason" in fields:
                submission.reason = payload.reason
            if "attachment_url" in fields:
                submission.attachment_url = payload.attachment_url
            adapter.apply_fields(self.db, submission, payload, fields - {"approvals", "user_id"}, creating=False)

            if resync:
                result = sync_chain(self.db, submission, payload.approvals)
                self._request_approvals(submission, result.reset + result.created)
            self.db.flush()
        logger.info("Updated %s submission %s (chain re-synced: %s)", submission.kind, submission.id, resync)
        self._deliver()
        return submission

    def decide(self, kind: str, slot_id: int, actor: Actor, payload: DecisionPayload) -> DecisionOutcome:
        adapter = self.adapter(kind)
        owner_id: int | None = None
        try:
            with self._transaction():
                result = decide_slot(
                    self.db,
                    slot_id,
                    actor,
                    payload.decision,
                    self.policy,
                    note=payload.note,
                    proof_url=payload.proof_url,
                    kind=adapter.kind,
                )
                submission = result.submission
                owner_id = submission.user_id
                transitioned = result.transitioned
                effects = SideEffects()
                if transitioned and submission.status == APPROVED:
                    effects = adapter.on_approved(self.db, submission, payload)
                self._publish_decision(submission, result.slot, actor, effects)
        except QuotaInsufficient as exc:
            self._report_shortage(adapter.kind, slot_id, owner_id, actor, exc)
            raise

        logger.info(
            "Slot %s of %s submission %s %s by user %s; status %s (level %s)",
            result.slot.id,
            submission.kind,
            submission.id,
            result.slot.decision,
            actor.id,
            submission.status,
            submission.current_level,
        )
        self._deliver()
        return DecisionOutcome(submission=submission, slot=result.slot, transitioned=transitioned, effects=effects)

    def _publish_decision(self, submission: Submission, slot: ApprovalSlot, actor: Actor, effects: SideEffects) -> None:
        label = KIND_LABELS[submission.kind]
        options = self._link_options(submission)
        self.outbox.publish(
            decided_event(submission.kind),
            submission.user_id,
            {
                "kind": submission.kind,
                "submission_id": submission.id,
                "slot_id": slot.id,
                "level": slot.level,
                "decision": slot.decision,
                "decided_by": actor.id,
                "note": slot.note,
                "status": submission.status,
                "current_level": submission.current_level,
                "message": f"{label} submission #{submission.id}: level {slot.level} {slot.decision}",
            },
            **options,
        )
        if effects.event_type and effects.adjustments:
            summary = summarize_adjustments(effects.adjustments)
            self.outbox.publish(
                effects.event_type,
                submission.user_id,
                {
                    "kind": submission.kind,
                    "submission_id": submission.id,
                    "quota": effects.quota,
                    "message": (
                        f"Your shifts from {summary['period_start']} to {summary['period_end']} were updated"
                    ),
                    **summary,
                },
                **options,
            )

    def _report_shortage(
        self,
        kind: str,
        slot_id: int,
        owner_id: int | None,
        actor: Actor,
        exc: QuotaInsufficient,
    ) -> None:
        payload = {
            "kind": kind,
            "slot_id": slot_id,
            "shortages": exc.shortages,
            "message": exc.message,
        }
        for user_id in {owner_id, actor.id}:
            self.outbox.publish(QUOTA_INSUFFICIENT, user_id, payload, related_kind=kind)
        self._deliver()

    def delete(self, kind: str, submission_id: int, actor: Actor) -> None:
        adapter = self.adapter(kind)
        with self._transaction():
            submission = self._load(adapter.kind, submission_id, lock=True)
            is_admin = self.policy.is_admin(actor)
            if submission.user_id != actor.id and not is_admin:
                raise Forbidden("Only the owner or an admin can delete this submission")
            if submission.status != PENDING and not is_admin:
                raise Conflict("Only pending submissions can be deleted")
            if submission.status == APPROVED:
                adapter.on_reopened(self.db, submission)
            submission.deleted_at = utcnow()
        logger.info("Deleted %s submission %s", submission.kind, submission_id)

    def get(self, kind: str, submission_id: int, actor: Actor) -> Submission:
        submission = self._load(self.adapter(kind).kind, submission_id)
        if not self._can_view(submission, actor):
            raise Forbidden("You cannot view this submission")
        return submission

    def list(
        self,
        kind: str,
        actor: Actor,
        status: str | None = None,
        user_id: int | None = None,
    ) -> list[Submission]:
        adapter = self.adapter(kind)
        stmt = select(Submission).where(Submission.kind == adapter.kind, Submission.deleted_at.is_(None))
        if self.policy.is_admin(actor):
            if user_id is not None:
                stmt = stmt.where(Submission.user_id == user_id)
        else:
            stmt = stmt.where(Submission.user_id == actor.id)
        if status:
            stmt = stmt.where(Submission.status == status.lower())
        return list(self.db.scalars(stmt.order_by(Submission.created_at.desc(), Submission.id.desc())).all())

    def pending(self, actor: Actor, kind: str | None = None) -> list[ApprovalSlot]:
        return pending_for(self.db, actor, self.policy, self.adapter(kind).kind if kind else None)
