from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_BYPASS_ROLES = "HR,OPERATIONAL,DIRECTOR,SUPERADMIN"
DEFAULT_ADMIN_ROLES = "HR,OPERATIONAL,DIRECTOR,SUPERADMIN,SUBADMIN,SUPERVISOR"
DEFAULT_MANAGER_ROLES = "HR,OPERATIONAL,SUPERADMIN"


def normalize_role(role: str | None) -> str | None:
    value = (role or "").strip().upper()
    return value or None


def _role_set(name: str, default: str) -> frozenset[str]:
    raw = os.getenv(name, default)
    return frozenset(role for role in (normalize_role(part) for part in raw.split(",")) if role)


@dataclass(frozen=True)
class Settings:
    environment: str
    log_level: str
    bootstrap_token: str
    session_max_age_days: int
    bypass_roles: frozenset[str]
    admin_roles: frozenset[str]
    manager_roles: frozenset[str]

    @property
    def session_max_age_seconds(self) -> int:
        return self.session_max_age_days * 24 * 60 * 60


def get_settings() -> Settings:
    return Settings(
        environment=os.getenv("ENVIRONMENT", "local"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        bootstrap_token=os.getenv("BOOTSTRAP_TOKEN", ""),
        session_max_age_days=int(os.getenv("SESSION_MAX_AGE_DAYS", "14")),
        bypass_roles=_role_set("EHRM_BYPASS_ROLES", DEFAULT_BYPASS_ROLES),
        admin_roles=_role_set("EHRM_ADMIN_ROLES", DEFAULT_ADMIN_ROLES),
        manager_roles=_role_set("EHRM_MANAGER_ROLES", DEFAULT_MANAGER_ROLES),
    )
