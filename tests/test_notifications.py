from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from ehrm.models import Notification, Submission, User
from ehrm.notifications import (
    APPROVAL_REQUESTED,
    InboxDispatcher,
    LoggingDispatcher,
    NotificationOutbox,
    decided_event,
    render,
)
from ehrm.policy import Actor
from ehrm.schemas import DecisionPayload, SubmissionPayload
from ehrm.workflows import KindAdapter, WorkflowService


class RecordingDispatcher:
    def __init__(self, fail_on: set[str] | None = None):
        self.fail_on = fail_on or set()
        self.calls: list[tuple[str, int]] = []

    def notify(self, event_type, user_id, payload, options):
        if event_type in self.fail_on:
            raise RuntimeError("mail server down")
        self.calls.append((event_type, user_id))


def make_user(db, email: str = "staff@example.com") -> User:
    user = User(email=email, name="Staff", password_hash="not-a-real-hash", role="EMPLOYEE")
    db.add(user)
    db.commit()
    return user


def test_outbox_skips_missing_recipients_and_clears_after_flush():
    outbox = NotificationOutbox()
    outbox.publish(APPROVAL_REQUESTED, 7, {"message": "hi"})
    outbox.publish(APPROVAL_REQUESTED, None, {"message": "nobody"})
    assert len(outbox) == 1

    dispatcher = RecordingDispatcher()
    assert outbox.flush(dispatcher) == 1
    assert dispatcher.calls == [(APPROVAL_REQUESTED, 7)]
    assert len(outbox) == 0


def test_failing_dispatch_does_not_stop_the_rest():
    outbox = NotificationOutbox()
    outbox.publish("BROKEN", 1, {})
    outbox.publish(APPROVAL_REQUESTED, 2, {})
    dispatcher = RecordingDispatcher(fail_on={"BROKEN"})

    assert outbox.flush(dispatcher) == 1
    assert dispatcher.calls == [(APPROVAL_REQUESTED, 2)]


def test_discard_drops_pending_events():
    outbox = NotificationOutbox()
    outbox.publish(APPROVAL_REQUESTED, 1, {})
    outbox.discard()

    assert outbox.events == []


def test_render_titles():
    assert decided_event("pocket_money") == "POCKET_MONEY_APPROVAL_DECIDED"
    assert render(decided_event("leave"), {"status": "approved", "message": "Leave #1: level 1 approved"}) == (
        "Submission approved",
        "Leave #1: level 1 approved",
    )
    assert render("SOMETHING_ELSE", {}) == ("Something else", "Something else")


def test_inbox_dispatcher_stores_a_row_with_deeplink(db):
    user = make_user(db)

    InboxDispatcher(db).notify(
        APPROVAL_REQUESTED,
        user.id,
        {"message": "Leave #3 is waiting"},
        {"deeplink": "/submissions/leave/3", "related_kind": "leave", "related_id": 3},
    )

    row = db.scalar(select(Notification).where(Notification.user_id == user.id))
    assert row.title == "Approval requested"
    assert row.body == "Leave #3 is waiting"
    assert row.payload_json["deeplink"] == "/submissions/leave/3"
    assert (row.related_kind, row.related_id, row.is_read) == ("leave", 3, False)


def test_failed_delivery_never_undoes_a_committed_decision(db):
    owner = make_user(db, "owner@example.com")
    approver = User(email="approver@example.com", name="Approver", password_hash="not-a-real-hash", role="SUPERVISOR")
    db.add(approver)
    db.commit()
    dispatcher = RecordingDispatcher(fail_on={decided_event("payment")})
    service = WorkflowService(db, dispatcher=dispatcher)

    submission = service.create(
        "payment",
        Actor.from_user(owner),
        SubmissionPayload(amount=Decimal("250000"), approvals=[{"level": 1, "approver_user_id": approver.id}]),
    )
    assert dispatcher.calls == [(APPROVAL_REQUESTED, approver.id)]

    outcome = service.decide(
        "payment",
        submission.approvals[0].id,
        Actor.from_user(approver),
        DecisionPayload(decision="approved"),
    )

    assert outcome.transitioned
    db.expire_all()
    assert db.get(Submission, submission.id).status == "approved"
    assert dispatcher.calls == [(APPROVAL_REQUESTED, approver.id)]


def test_service_defaults_to_logging_delivery(db):
    owner = make_user(db, "owner@example.com")
    service = WorkflowService(db)

    service.create(
        "reimbursement",
        Actor.from_user(owner),
        SubmissionPayload(amount=Decimal("10"), approvals=[{"level": 1, "approver_role": "HR"}]),
    )

    assert isinstance(service.dispatcher, LoggingDispatcher)
    assert len(service.outbox) == 0


def test_kind_adapters_must_apply_their_own_fields():
    class Bare(KindAdapter):
        kind = "bare"

    with pytest.raises(TypeError):
        Bare()
    with pytest.raises(TypeError):
        KindAdapter()
