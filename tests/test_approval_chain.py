from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select

import ehrm.db as app_db
from ehrm.approvals import (
    create_chain,
    decide_slot,
    normalize_slots,
    pending_for,
    summarize,
    sync_chain,
)
from ehrm.errors import Conflict, Forbidden, NotFound, ValidationError
from ehrm.models import ApprovalSlot, Submission, User
from ehrm.policy import Actor, ApprovalPolicy

POLICY = ApprovalPolicy(
    bypass_roles=frozenset({"HR", "OPERATIONAL", "DIRECTOR", "SUPERADMIN"}),
    admin_roles=frozenset({"HR", "OPERATIONAL", "DIRECTOR", "SUPERADMIN", "SUBADMIN", "SUPERVISOR"}),
    manager_roles=frozenset({"HR", "OPERATIONAL", "SUPERADMIN"}),
)


def make_user(db, email: str, role: str = "EMPLOYEE") -> User:
    user = User(email=email, name=email.split("@")[0], password_hash="not-a-real-hash", role=role)
    db.add(user)
    db.flush()
    return user


def make_submission(db, owner: User, kind: str = "payment") -> Submission:
    submission = Submission(kind=kind, user_id=owner.id, status="pending", amount=Decimal("100000"))
    db.add(submission)
    db.flush()
    return submission


def actor_for(user: User) -> Actor:
    return Actor.from_user(user)


def slot(level: int, decision: str):
    return SimpleNamespace(level=level, decision=decision)


@pytest.mark.parametrize(
    ("slots", "expected"),
    [
        ([slot(1, "approved"), slot(2, "rejected")], ("approved", 1)),
        ([slot(1, "approved"), slot(2, "rejected"), slot(3, "approved")], ("approved", 3)),
        ([slot(1, "rejected"), slot(2, "rejected")], ("rejected", None)),
        ([slot(1, "pending"), slot(2, "rejected")], (None, None)),
        ([slot(1, "pending")], (None, None)),
        ([], (None, None)),
    ],
)
def test_aggregate_rule(slots, expected):
    aggregate = summarize(slots)
    assert (aggregate.status, aggregate.current_level) == expected


def test_chain_validation_reports_every_bad_entry():
    with pytest.raises(ValidationError) as excinfo:
        normalize_slots(
            [
                {"level": 1, "approver_user_id": 5},
                {"level": 1, "approver_role": "HR"},
                {"level": 0, "approver_role": "HR"},
                {"level": 2},
                {"level": 3, "approver_user_id": 1, "approver_role": "HR"},
                "not-an-object",
            ]
        )

    errors = excinfo.value.detail["errors"]
    assert [error["index"] for error in errors] == [1, 2, 3, 4, 5]
    assert excinfo.value.status_code == 400


def test_repeated_level_alone_is_a_conflict():
    with pytest.raises(Conflict) as excinfo:
        normalize_slots([{"level": 1, "approver_role": "HR"}, {"level": 1, "approver_role": "DIRECTOR"}])

    assert excinfo.value.status_code == 409
    assert [error["index"] for error in excinfo.value.detail["errors"]] == [1]


def test_chain_requires_at_least_one_slot():
    with pytest.raises(ValidationError):
        normalize_slots([])


def test_unknown_approver_users_are_not_found(db):
    owner = make_user(db, "owner@example.com")
    submission = make_submission(db, owner)

    with pytest.raises(NotFound) as excinfo:
        create_chain(db, submission, [{"level": 1, "approver_user_id": 999}])
    assert "999" in excinfo.value.detail["message"]


def test_any_approval_wins_and_tracks_highest_level(db):
    owner = make_user(db, "owner@example.com")
    first = make_user(db, "first@example.com", "SUPERVISOR")
    second = make_user(db, "second@example.com", "SUPERVISOR")
    submission = make_submission(db, owner)
    level_one, level_two = create_chain(
        db,
        submission,
        [{"level": 1, "approver_user_id": first.id}, {"level": 2, "approver_user_id": second.id}],
    )

    result = decide_slot(db, level_two.id, actor_for(second), "approved", POLICY)
    assert result.transitioned
    assert (submission.status, submission.current_level) == ("approved", 2)

    later = decide_slot(db, level_one.id, actor_for(first), "rejected", POLICY, note="too expensive")
    assert not later.transitioned
    assert (submission.status, submission.current_level) == ("approved", 2)
    assert level_one.note == "too expensive"


def test_all_rejections_reject_the_submission(db):
    owner = make_user(db, "owner@example.com")
    approver = make_user(db, "approver@example.com", "SUPERVISOR")
    hr = make_user(db, "hr@example.com", "HR")
    submission = make_submission(db, owner, kind="reimbursement")
    user_slot, role_slot = create_chain(
        db,
        submission,
        [{"level": 1, "approver_user_id": approver.id}, {"level": 2, "approver_role": "hr"}],
    )
    assert role_slot.approver_role == "HR"

    decide_slot(db, user_slot.id, actor_for(approver), "rejected", POLICY)
    assert submission.status == "pending"

    decide_slot(db, role_slot.id, actor_for(hr), "rejected", POLICY)
    assert (submission.status, submission.current_level) == ("rejected", None)


def test_deciding_twice_is_a_conflict_and_changes_nothing(db):
    owner = make_user(db, "owner@example.com")
    approver = make_user(db, "approver@example.com", "SUPERVISOR")
    submission = make_submission(db, owner)
    (only_slot,) = create_chain(db, submission, [{"level": 1, "approver_user_id": approver.id}])
    decide_slot(db, only_slot.id, actor_for(approver), "approved", POLICY, note="ok")
    decided_at = only_slot.decided_at

    with pytest.raises(Conflict):
        decide_slot(db, only_slot.id, actor_for(approver), "rejected", POLICY, note="changed my mind")

    assert (only_slot.decision, only_slot.note, only_slot.decided_at) == ("approved", "ok", decided_at)
    assert submission.status == "approved"


def test_only_the_designated_approver_may_decide(db):
    owner = make_user(db, "owner@example.com")
    approver = make_user(db, "approver@example.com", "SUPERVISOR")
    stranger = make_user(db, "stranger@example.com", "SUPERVISOR")
    submission = make_submission(db, owner, kind="leave")
    (only_slot,) = create_chain(db, submission, [{"level": 1, "approver_user_id": approver.id}])

    with pytest.raises(Forbidden):
        decide_slot(db, only_slot.id, actor_for(stranger), "approved", POLICY)
    assert only_slot.decision == "pending"


def test_super_roles_bypass_only_financial_kinds(db):
    owner = make_user(db, "owner@example.com")
    approver = make_user(db, "approver@example.com", "SUPERVISOR")
    director = make_user(db, "director@example.com", "DIRECTOR")
    payment = make_submission(db, owner, kind="payment")
    leave = make_submission(db, owner, kind="leave")
    (payment_slot,) = create_chain(db, payment, [{"level": 1, "approver_user_id": approver.id}])
    (leave_slot,) = create_chain(db, leave, [{"level": 1, "approver_user_id": approver.id}])

    decide_slot(db, payment_slot.id, actor_for(director), "approved", POLICY)
    assert payment.status == "approved"

    with pytest.raises(Forbidden):
        decide_slot(db, leave_slot.id, actor_for(director), "approved", POLICY)


def test_missing_or_deleted_submission_is_not_found(db):
    owner = make_user(db, "owner@example.com")
    approver = make_user(db, "approver@example.com", "SUPERVISOR")
    submission = make_submission(db, owner)
    (only_slot,) = create_chain(db, submission, [{"level": 1, "approver_user_id": approver.id}])

    with pytest.raises(NotFound):
        decide_slot(db, 12345, actor_for(approver), "approved", POLICY)
    with pytest.raises(NotFound):
        decide_slot(db, only_slot.id, actor_for(approver), "approved", POLICY, kind="leave")

    submission.deleted_at = submission.created_at
    db.flush()
    with pytest.raises(NotFound):
        decide_slot(db, only_slot.id, actor_for(approver), "approved", POLICY)


def test_editing_an_approver_reopens_the_slot_and_the_submission(db):
    owner = make_user(db, "owner@example.com")
    first = make_user(db, "first@example.com", "SUPERVISOR")
    second = make_user(db, "second@example.com", "SUPERVISOR")
    replacement = make_user(db, "replacement@example.com", "SUPERVISOR")
    submission = make_submission(db, owner)
    level_one, level_two = create_chain(
        db,
        submission,
        [{"level": 1, "approver_user_id": first.id}, {"level": 2, "approver_user_id": second.id}],
    )
    decide_slot(db, level_one.id, actor_for(first), "approved", POLICY)
    decide_slot(db, level_two.id, actor_for(second), "approved", POLICY)
    assert submission.status == "approved"

    result = sync_chain(
        db,
        submission,
        [
            {"id": level_one.id, "level": 1, "approver_user_id": first.id},
            {"id": level_two.id, "level": 2, "approver_user_id": replacement.id},
        ],
    )

    assert [kept.id for kept in result.kept] == [level_one.id]
    assert [reset.id for reset in result.reset] == [level_two.id]
    assert (level_two.decision, level_two.decided_at, level_two.approver_user_id) == ("pending", None, replacement.id)
    assert level_one.decision == "approved"
    assert (submission.status, submission.current_level) == ("pending", None)


def test_sync_swaps_levels_creates_and_removes_slots(db):
    owner = make_user(db, "owner@example.com")
    first = make_user(db, "first@example.com", "SUPERVISOR")
    second = make_user(db, "second@example.com", "SUPERVISOR")
    submission = make_submission(db, owner)
    level_one, level_two, level_three = create_chain(
        db,
        submission,
        [
            {"level": 1, "approver_user_id": first.id},
            {"level": 2, "approver_user_id": second.id},
            {"level": 3, "approver_role": "HR"},
        ],
    )

    result = sync_chain(
        db,
        submission,
        [
            {"id": level_one.id, "level": 2, "approver_user_id": first.id},
            {"id": level_two.id, "level": 1, "approver_user_id": second.id},
            {"level": 4, "approver_role": "director"},
            {"id": 98765, "level": 5, "approver_role": "HR"},
        ],
    )

    assert result.removed_ids == [level_three.id]
    assert {reset.id for reset in result.reset} == {level_one.id, level_two.id}
    assert [(created.level, created.approver_role) for created in result.created] == [(4, "DIRECTOR"), (5, "HR")]
    stored = db.scalars(
        select(ApprovalSlot).where(ApprovalSlot.submission_id == submission.id).order_by(ApprovalSlot.level)
    ).all()
    assert [(entry.level, entry.approver_user_id, entry.approver_role) for entry in stored] == [
        (1, second.id, None),
        (2, first.id, None),
        (4, None, "DIRECTOR"),
        (5, None, "HR"),
    ]


def test_pending_inbox_lists_slots_the_actor_can_decide(db):
    owner = make_user(db, "owner@example.com")
    approver = make_user(db, "approver@example.com", "SUPERVISOR")
    hr = make_user(db, "hr@example.com", "HR")
    leave = make_submission(db, owner, kind="leave")
    payment = make_submission(db, owner, kind="payment")
    (leave_slot,) = create_chain(db, leave, [{"level": 1, "approver_user_id": approver.id}])
    (payment_slot,) = create_chain(db, payment, [{"level": 1, "approver_user_id": approver.id}])

    assert {entry.id for entry in pending_for(db, actor_for(approver), POLICY)} == {leave_slot.id, payment_slot.id}
    assert [entry.id for entry in pending_for(db, actor_for(hr), POLICY)] == [payment_slot.id]
    assert [entry.id for entry in pending_for(db, actor_for(approver), POLICY, kind="leave")] == [leave_slot.id]

    decide_slot(db, payment_slot.id, actor_for(approver), "approved", POLICY)
    assert [entry.id for entry in pending_for(db, actor_for(approver), POLICY)] == [leave_slot.id]


def test_decision_rereads_a_slot_decided_by_another_session(db):
    owner = make_user(db, "owner@example.com")
    approver = make_user(db, "approver@example.com", "SUPERVISOR")
    submission = make_submission(db, owner)
    (only_slot,) = create_chain(db, submission, [{"level": 1, "approver_user_id": approver.id}])
    db.commit()
    assert db.get(ApprovalSlot, only_slot.id).decision == "pending"

    other = app_db.SessionLocal()
    try:
        decide_slot(other, only_slot.id, actor_for(approver), "approved", POLICY)
        other.commit()
    finally:
        other.close()

    with pytest.raises(Conflict):
        decide_slot(db, only_slot.id, actor_for(approver), "rejected", POLICY)
    assert only_slot.decision == "approved"
    assert submission.status == "approved"
