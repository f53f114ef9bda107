"""Outbound events published by the workflow after a transaction commits.

Delivery is best effort: a failing dispatcher is logged and never affects the
already committed decision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.orm import Session

from ehrm.models import Notification

logger = logging.getLogger(__name__)

APPROVAL_REQUESTED = "APPROVAL_REQUESTED"
SHIFT_LEAVE_ADJUSTMENT = "SHIFT_LEAVE_ADJUSTMENT"
SHIFT_SWAP_ADJUSTMENT = "SHIFT_SWAP_ADJUSTMENT"
QUOTA_INSUFFICIENT = "QUOTA_INSUFFICIENT"


def decided_event(kind: str) -> str:
    return f"{kind.upper()}_APPROVAL_DECIDED"


@dataclass
class OutboundEvent:
    event_type: str
    user_id: int
    payload: dict[str, Any]
    options: dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    def notify(self, event_type: str, user_id: int, payload: dict[str, Any], options: dict[str, Any]) -> None:
        ...


class NotificationOutbox:
    def __init__(self) -> None:
        self._events: list[OutboundEvent] = []

    def __len__(self) -> int:
        return len(self._events)

    @property
    def events(self) -> list[OutboundEvent]:
        return list(self._events)

    def publish(self, event_type: str, user_id: int | None, payload: dict[str, Any], **options: Any) -> None:
        if user_id is None:
            return
        self._events.append(OutboundEvent(event_type, user_id, payload, options))

    def discard(self) -> None:
        self._events.clear()

    def flush(self, dispatcher: NotificationDispatcher) -> int:
        events, self._events = self._events, []
        delivered = 0
        for event in events:
            try:
                dispatcher.notify(event.event_type, event.user_id, event.payload, event.options)
            except Exception:
                logger.exception("Failed to dispatch %s to user %s", event.event_type, event.user_id)
                continue
            delivered += 1
        return delivered


_TITLES = {
    APPROVAL_REQUESTED: "Approval requested",
    SHIFT_LEAVE_ADJUSTMENT: "Shift updated for approved leave",
    SHIFT_SWAP_ADJUSTMENT: "Shift updated for approved day swap",
    QUOTA_INSUFFICIENT: "Leave quota is insufficient",
}


def render(event_type: str, payload: dict[str, Any]) -> tuple[str, str]:
    title = _TITLES.get(event_type)
    if title is None and event_type.endswith("_APPROVAL_DECIDED"):
        title = "Submission " + str(payload.get("status") or "decided")
    title = title or event_type.replace("_", " ").capitalize()
    body = payload.get("message") or title
    return title, str(body)


class InboxDispatcher:
    """Store each event as an in-app notification row and commit it."""

    def __init__(self, db: Session):
        self.db = db

    def notify(self, event_type: str, user_id: int, payload: dict[str, Any], options: dict[str, Any]) -> None:
        title, body = render(event_type, payload)
        try:
            self.db.add(
                Notification(
                    user_id=user_id,
                    event_type=event_type,
                    title=title,
                    body=body,
                    payload_json={**payload, **({"deeplink": options["deeplink"]} if options.get("deeplink") else {})},
                    related_kind=options.get("related_kind"),
                    related_id=options.get("related_id"),
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise


class LoggingDispatcher:
    def notify(self, event_type: str, user_id: int, payload: dict[str, Any], options: dict[str, Any]) -> None:
        logger.info("Notification %s for user %s: %s", event_type, user_id, payload)
