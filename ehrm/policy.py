from __future__ import annotations

from dataclasses import dataclass

from ehrm.config import Settings, get_settings, normalize_role

FINANCIAL_KINDS = frozenset({"payment", "reimbursement", "pocket_money"})


@dataclass(frozen=True)
class Actor:
    id: int
    role: str

    @classmethod
    def from_user(cls, user) -> "Actor":
        return cls(id=user.id, role=normalize_role(user.role) or "")


class ApprovalPolicy:
    """Who may decide a slot, act for another user, or manage reference data."""

    def __init__(
        self,
        bypass_roles: frozenset[str],
        admin_roles: frozenset[str],
        manager_roles: frozenset[str],
        bypass_kinds: frozenset[str] = FINANCIAL_KINDS,
    ):
        self.bypass_roles = bypass_roles
        self.admin_roles = admin_roles
        self.manager_roles = manager_roles
        self.bypass_kinds = bypass_kinds

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ApprovalPolicy":
        settings = settings or get_settings()
        return cls(
            bypass_roles=settings.bypass_roles,
            admin_roles=settings.admin_roles,
            manager_roles=settings.manager_roles,
        )

    def grants_bypass(self, kind: str, actor: Actor) -> bool:
        return kind in self.bypass_kinds and actor.role in self.bypass_roles

    def can_decide(self, kind: str, slot, actor: Actor) -> bool:
        if slot.approver_user_id is not None and slot.approver_user_id == actor.id:
            return True
        if slot.approver_role and normalize_role(slot.approver_role) == actor.role:
            return True
        return self.grants_bypass(kind, actor)

    def is_admin(self, actor: Actor) -> bool:
        return actor.role in self.admin_roles

    def is_manager(self, actor: Actor) -> bool:
        return actor.role in self.manager_roles
