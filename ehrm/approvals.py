"""Approval chains attached to submissions.

A chain is an ordered set of slots, one per level, each owned by either a user
or a role. Slots are decided independently and in any order; the submission's
status is derived from the full set of decisions after each one (see
``summarize``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from sqlalchemy import and_, false, or_, select
from sqlalchemy.orm import Session

from ehrm.config import normalize_role
from ehrm.errors import Conflict, Forbidden, NotFound, ValidationError
from ehrm.models import ApprovalSlot, Submission, User, utcnow
from ehrm.policy import Actor, ApprovalPolicy

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
DECISIONS = (APPROVED, REJECTED)


@dataclass(frozen=True)
class SlotSpec:
    level: int
    approver_user_id: int | None = None
    approver_role: str | None = None
    note: str | None = None
    id: int | None = None


@dataclass(frozen=True)
class Aggregate:
    status: str | None
    current_level: int | None


@dataclass
class SyncResult:
    kept: list[ApprovalSlot] = field(default_factory=list)
    reset: list[ApprovalSlot] = field(default_factory=list)
    created: list[ApprovalSlot] = field(default_factory=list)
    removed_ids: list[int] = field(default_factory=list)


@dataclass
class DecisionResult:
    slot: ApprovalSlot
    submission: Submission
    previous_status: str

    @property
    def transitioned(self) -> bool:
        return self.submission.status != self.previous_status


def _as_mapping(item: Any) -> dict[str, Any] | None:
    if hasattr(item, "model_dump"):
        return item.model_dump()
    if isinstance(item, dict):
        return item
    return None


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer():
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
        return number if number > 0 else None
    return None


def normalize_slots(raw: Sequence[Any] | None, allow_ids: bool = True) -> list[SlotSpec]:
    """Validate a desired chain, reporting every bad entry in one error.

    A chain whose only fault is a repeated level is a ``Conflict``; anything
    else is a ``ValidationError``.
    """
    if not isinstance(raw, (list, tuple)) or not raw:
        raise ValidationError("At least one approval slot is required")

    errors: list[dict[str, Any]] = []
    specs: list[SlotSpec] = []
    seen_levels: dict[int, int] = {}
    seen_ids: dict[int, int] = {}
    duplicate_levels: set[int] = set()

    for index, item in enumerate(raw):
        data = _as_mapping(item)
        if data is None:
            errors.append({"index": index, "message": "Approval entry must be an object"})
            continue

        problems: list[str] = []
        level = _positive_int(data.get("level"))
        if level is None:
            problems.append("level must be a positive integer")
        elif level in seen_levels:
            problems.append(f"level {level} is already used by entry {seen_levels[level]}")
            duplicate_levels.add(index)
        else:
            seen_levels[level] = index

        raw_user = data.get("approver_user_id")
        user_id = _positive_int(raw_user)
        role = normalize_role(data.get("approver_role")) if isinstance(data.get("approver_role"), str) else None
        if raw_user not in (None, "") and user_id is None:
            problems.append("approver_user_id must be a positive integer")
        elif user_id is None and role is None:
            problems.append("either approver_user_id or approver_role is required")
        elif user_id is not None and role is not None:
            problems.append("approver_user_id and approver_role are mutually exclusive")

        slot_id = None
        if allow_ids and data.get("id") not in (None, ""):
            slot_id = _positive_int(data.get("id"))
            if slot_id is None:
                problems.append("id must be a positive integer")
            elif slot_id in seen_ids:
                problems.append(f"id {slot_id} is already used by entry {seen_ids[slot_id]}")
            else:
                seen_ids[slot_id] = index

        note = data.get("note")
        if note is not None and not isinstance(note, str):
            problems.append("note must be a string")

        if problems:
            if len(problems) > 1:
                duplicate_levels.discard(index)
            errors.append({"index": index, "message": "; ".join(problems)})
            continue
        specs.append(SlotSpec(level=level, approver_user_id=user_id, approver_role=role, note=note, id=slot_id))

    if errors and all(error["index"] in duplicate_levels for error in errors):
        raise Conflict("Duplicate approval level in chain", errors=errors)
    if errors:
        raise ValidationError("Invalid approval chain", errors=errors)
    return specs


def ensure_approvers_exist(db: Session, specs: Iterable[SlotSpec]) -> None:
    wanted = {spec.approver_user_id for spec in specs if spec.approver_user_id is not None}
    if not wanted:
        return
    found = set(db.scalars(select(User.id).where(User.id.in_(wanted), User.is_active.is_(True))).all())
    missing = sorted(wanted - found)
    if missing:
        raise NotFound(
            "Approver users not found: " + ", ".join(str(user_id) for user_id in missing),
            errors=[{"approver_user_id": user_id} for user_id in missing],
        )


def create_chain(db: Session, submission: Submission, raw: Sequence[Any]) -> list[ApprovalSlot]:
    specs = normalize_slots(raw, allow_ids=False)
    ensure_approvers_exist(db, specs)
    slots = [
        ApprovalSlot(
            level=spec.level,
            approver_user_id=spec.approver_user_id,
            approver_role=spec.approver_role,
            note=spec.note,
            decision=PENDING,
        )
        for spec in sorted(specs, key=lambda spec: spec.level)
    ]
    submission.approvals.extend(slots)
    db.flush()
    return slots


def _metadata_changed(slot: ApprovalSlot, spec: SlotSpec) -> bool:
    if slot.level != spec.level:
        return True
    if slot.approver_user_id != spec.approver_user_id or slot.approver_role != spec.approver_role:
        return True
    return spec.note is not None and spec.note != slot.note


def sync_chain(db: Session, submission: Submission, raw: Sequence[Any]) -> SyncResult:
    """Reconcile the stored chain with a desired one and restart the workflow.

    Entries carrying the id of an existing slot keep that slot; if their level,
    approver or note changed, the slot goes back to pending. Other entries become
    new slots and stored slots left out are deleted. The submission always ends
    up pending with no current level.
    """
    specs = normalize_slots(raw)
    ensure_approvers_exist(db, specs)

    existing = {slot.id: slot for slot in submission.approvals}
    matched = {spec.id: spec for spec in specs if spec.id is not None and spec.id in existing}
    result = SyncResult()

    for slot_id, slot in list(existing.items()):
        if slot_id not in matched:
            submission.approvals.remove(slot)
            result.removed_ids.append(slot_id)
    db.flush()

    changed = {slot_id: _metadata_changed(existing[slot_id], spec) for slot_id, spec in matched.items()}
    moving = [existing[slot_id] for slot_id, spec in matched.items() if existing[slot_id].level != spec.level]
    for slot in moving:
        # park on a level no real slot can hold so swaps pass the unique constraint
        slot.level = -slot.id
    if moving:
        db.flush()

    for spec in specs:
        if spec.id in matched:
            slot = existing[spec.id]
            slot.level = spec.level
            if changed[spec.id]:
                slot.approver_user_id = spec.approver_user_id
                slot.approver_role = spec.approver_role
                slot.note = spec.note
                slot.decision = PENDING
                slot.decided_at = None
                slot.proof_url = None
                result.reset.append(slot)
            else:
                result.kept.append(slot)
            continue
        slot = ApprovalSlot(
            level=spec.level,
            approver_user_id=spec.approver_user_id,
            approver_role=spec.approver_role,
            note=spec.note,
            decision=PENDING,
        )
        submission.approvals.append(slot)
        result.created.append(slot)

    submission.status = PENDING
    submission.current_level = None
    db.flush()
    logger.info(
        "Approval chain of submission %s synced: kept=%s reset=%s created=%s removed=%s",
        submission.id,
        len(result.kept),
        len(result.reset),
        len(result.created),
        len(result.removed_ids),
    )
    return result


def summarize(slots: Iterable[Any]) -> Aggregate:
    """Aggregate rule: any approval wins, unanimous rejection rejects, else no change."""
    decided = list(slots)
    approved_levels = [slot.level for slot in decided if slot.decision == APPROVED]
    if approved_levels:
        return Aggregate(APPROVED, max(approved_levels))
    if decided and all(slot.decision == REJECTED for slot in decided):
        return Aggregate(REJECTED, None)
    return Aggregate(None, None)


def load_slot_for_decision(db: Session, slot_id: int, kind: str | None = None) -> tuple[ApprovalSlot, Submission]:
    """Lock the parent submission, then read the slot fresh under that lock."""
    submission_id = db.scalar(select(ApprovalSlot.submission_id).where(ApprovalSlot.id == slot_id))
    if submission_id is None:
        raise NotFound(f"Approval slot {slot_id} not found")
    submission = db.scalar(
        select(Submission)
        .where(Submission.id == submission_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if submission is None or submission.deleted_at is not None:
        raise NotFound(f"Submission for approval slot {slot_id} not found")
    if kind is not None and submission.kind != kind:
        raise NotFound(f"Approval slot {slot_id} does not belong to a {kind} submission")
    slot = db.scalar(
        select(ApprovalSlot)
        .where(ApprovalSlot.id == slot_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if slot is None:
        raise NotFound(f"Approval slot {slot_id} not found")
    return slot, submission


def decide_slot(
    db: Session,
    slot_id: int,
    actor: Actor,
    decision: str,
    policy: ApprovalPolicy,
    note: str | None = None,
    proof_url: str | None = None,
    kind: str | None = None,
) -> DecisionResult:
    if decision not in DECISIONS:
        raise ValidationError("decision must be 'approved' or 'rejected'")
    slot, submission = load_slot_for_decision(db, slot_id, kind)

    if not policy.can_decide(submission.kind, slot, actor):
        logger.warning("User %s (%s) may not decide approval slot %s", actor.id, actor.role, slot.id)
        raise Forbidden("You are not the approver of this slot")
    if slot.decision != PENDING:
        raise Conflict(f"Approval slot {slot.id} has already been {slot.decision}")

    previous_status = submission.status
    slot.decision = decision
    slot.decided_at = utcnow()
    if note is not None:
        slot.note = note
    if proof_url is not None:
        slot.proof_url = proof_url
    db.flush()

    current = db.scalars(select(ApprovalSlot).where(ApprovalSlot.submission_id == submission.id)).all()
    aggregate = summarize(current)
    if aggregate.status is not None:
        submission.status = aggregate.status
        submission.current_level = aggregate.current_level
    db.flush()
    return DecisionResult(slot=slot, submission=submission, previous_status=previous_status)


def pending_for(db: Session, actor: Actor, policy: ApprovalPolicy, kind: str | None = None) -> list[ApprovalSlot]:
    """Undecided slots of live, pending submissions that ``actor`` may decide."""
    bypass_kinds = sorted(policy.bypass_kinds) if actor.role in policy.bypass_roles else []
    ownership = or_(
        ApprovalSlot.approver_user_id == actor.id,
        ApprovalSlot.approver_role == actor.role,
        Submission.kind.in_(bypass_kinds) if bypass_kinds else false(),
    )
    stmt = (
        select(ApprovalSlot)
        .join(Submission, Submission.id == ApprovalSlot.submission_id)
        .where(
            and_(
                ApprovalSlot.decision == PENDING,
                Submission.status == PENDING,
                Submission.deleted_at.is_(None),
                ownership,
            )
        )
        .order_by(Submission.created_at.asc(), ApprovalSlot.level.asc())
    )
    if kind is not None:
        stmt = stmt.where(Submission.kind == kind)
    return list(db.scalars(stmt).all())
