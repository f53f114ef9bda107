from __future__ import annotations

import logging
import secrets
from datetime import date, datetime, timedelta, timezone

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import Response
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ehrm import quota as quota_ledger
from ehrm.config import get_settings
from ehrm.db import get_db
from ehrm.errors import NotFound
from ehrm.logging_config import setup_logging
from ehrm.models import LeaveCategory, Notification, SessionRecord, User, WorkPattern
from ehrm.notifications import InboxDispatcher, NotificationOutbox
from ehrm.policy import Actor, ApprovalPolicy
from ehrm.schemas import (
    ApprovalSlotOut,
    AuthPayload,
    DecisionOut,
    DecisionPayload,
    EnsureShiftPayload,
    LeaveCategoryOut,
    LeaveCategoryPayload,
    NotificationOut,
    PendingApprovalOut,
    QuotaOut,
    QuotaPayload,
    RolloverPayload,
    ShiftAdjustmentOut,
    ShiftOut,
    SubmissionOut,
    SubmissionPayload,
    UserCreatePayload,
    UserOut,
    WeeklyShiftOut,
    WeeklyShiftPayload,
    WorkPatternOut,
    WorkPatternPayload,
    serialize_submission,
)
from ehrm.security import hash_password, verify_password
from ehrm.shifts import create_weekly_shift, ensure_status, list_shifts, require_work_pattern
from ehrm.workflows import WorkflowService

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="e-HRM Approval Workflows")

SESSION_COOKIE_NAME = "session_id"


@app.middleware("http")
async def disable_cache_for_auth_and_api(request: Request, call_next):
    response = await call_next(request)
    path = request.url.path
    if path.startswith("/api/") or path.startswith("/auth/"):
        response.headers["Cache-Control"] = "no-store, no-cache, max-age=0, must-revalidate"
        response.headers["Pragma"] = "no-cache"
    return response


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ensure_valid_email(email: str) -> str:
    normalized = normalize_email(email)
    if "@" not in normalized or normalized.startswith("@") or normalized.endswith("@"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A valid email is required")
    return normalized


def ensure_password_strength(password: str) -> None:
    if len(password) < 10:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Password must be at least 10 characters")


def request_is_https(request: Request) -> bool:
    forwarded_proto = request.headers.get("x-forwarded-proto", "")
    if forwarded_proto:
        first_proto = forwarded_proto.split(",")[0].strip().lower()
        if first_proto:
            return first_proto == "https"
    return request.url.scheme == "https"


def set_session_cookie(response: Response, request: Request, session_id: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=session_id,
        max_age=get_settings().session_max_age_seconds,
        httponly=True,
        samesite="lax",
        secure=request_is_https(request),
        path="/",
    )


def clear_session_cookie(response: Response, request: Request) -> None:
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        httponly=True,
        samesite="lax",
        secure=request_is_https(request),
        path="/",
    )


def create_session(db: Session, user_id: int) -> str:
    while True:
        session_id = secrets.token_urlsafe(32)
        if db.get(SessionRecord, session_id) is None:
            break
    db.add(
        SessionRecord(
            session_id=session_id,
            user_id=user_id,
            expires_at=utcnow() + timedelta(days=get_settings().session_max_age_days),
        )
    )
    db.commit()
    return session_id


def get_session_user(db: Session, session_id: str | None) -> User | None:
    if not session_id:
        return None
    session = db.get(SessionRecord, session_id)
    if session is None:
        return None
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at <= utcnow():
        db.delete(session)
        db.commit()
        return None
    user = db.get(User, session.user_id)
    if user is None or not user.is_active:
        db.delete(session)
        db.commit()
        return None
    return user


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    user = get_session_user(db, request.cookies.get(SESSION_COOKIE_NAME))
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return user


def get_policy() -> ApprovalPolicy:
    return ApprovalPolicy.from_settings()


def get_actor(current_user: User = Depends(get_current_user)) -> Actor:
    return Actor.from_user(current_user)


def get_manager_actor(actor: Actor = Depends(get_actor), policy: ApprovalPolicy = Depends(get_policy)) -> Actor:
    if not policy.is_manager(actor):
        logger.warning("User %s (%s) attempted a management action", actor.id, actor.role)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Manager access required")
    return actor


def get_workflow_service(db: Session = Depends(get_db), policy: ApprovalPolicy = Depends(get_policy)) -> WorkflowService:
    return WorkflowService(db, policy=policy, outbox=NotificationOutbox(), dispatcher=InboxDispatcher(db))


def ensure_self_or_admin(actor: Actor, user_id: int, policy: ApprovalPolicy) -> None:
    if actor.id != user_id and not policy.is_admin(actor):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You can only view your own records")


def require_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user


@app.post("/auth/bootstrap", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def auth_bootstrap(
    payload: AuthPayload,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    bootstrap_token: str | None = Header(default=None, alias="X-Bootstrap-Token"),
) -> UserOut:
    configured_token = get_settings().bootstrap_token
    if not configured_token:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Bootstrap token is not configured")
    if bootstrap_token != configured_token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid bootstrap token")
    existing_users = db.scalar(select(func.count(User.id))) or 0
    if existing_users > 0:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Bootstrap is only allowed before the first user exists")
    email = ensure_valid_email(payload.email)
    ensure_password_strength(payload.password)
    user = User(email=email, password_hash=hash_password(payload.password), role="SUPERADMIN", is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Bootstrapped first user %s", user.id)
    set_session_cookie(response, request, create_session(db, user.id))
    return UserOut.from_orm_user(user)


@app.get("/auth/bootstrap/status")
def auth_bootstrap_status(db: Session = Depends(get_db)) -> dict[str, bool]:
    if not get_settings().bootstrap_token:
        return {"enabled": False}
    existing_users = db.scalar(select(func.count(User.id))) or 0
    return {"enabled": existing_users == 0}


@app.post("/auth/login", response_model=UserOut)
def auth_login(
    payload: AuthPayload,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> UserOut:
    email = ensure_valid_email(payload.email)
    user = db.scalar(select(User).where(User.email == email))
    if user is None or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is disabled")
    set_session_cookie(response, request, create_session(db, user.id))
    return UserOut.from_orm_user(user)


@app.post("/auth/logout")
def auth_logout(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> dict[str, bool]:
    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    if session_id:
        session = db.get(SessionRecord, session_id)
        if session is not None:
            db.delete(session)
            db.commit()
    clear_session_cookie(response, request)
    return {"ok": True}


@app.get("/auth/me", response_model=UserOut)
def auth_me(current_user: User = Depends(get_current_user)) -> UserOut:
    return UserOut.from_orm_user(current_user)


@app.get("/api/admin/users", response_model=list[UserOut])
def admin_list_users(
    _: Actor = Depends(get_manager_actor),
    db: Session = Depends(get_db),
) -> list[UserOut]:
    users = db.scalars(select(User).order_by(User.created_at.asc(), User.id.asc())).all()
    return [UserOut.from_orm_user(user) for user in users]


@app.post("/api/admin/users", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def admin_create_user(
    payload: UserCreatePayload,
    _: Actor = Depends(get_manager_actor),
    db: Session = Depends(get_db),
) -> UserOut:
    email = ensure_valid_email(payload.email)
    ensure_password_strength(payload.temporary_password)
    if db.scalar(select(User).where(User.email == email)) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already exists")
    user = User(
        email=email,
        name=payload.name,
        password_hash=hash_password(payload.temporary_password),
        role=payload.role,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return UserOut.from_orm_user(user)


@app.get("/api/admin/work-patterns", response_model=list[WorkPatternOut])
def list_work_patterns(
    _: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> list[WorkPatternOut]:
    patterns = db.scalars(
        select(WorkPattern).where(WorkPattern.deleted_at.is_(None)).order_by(WorkPattern.name.asc())
    ).all()
    return [WorkPatternOut.from_orm_pattern(pattern) for pattern in patterns]


@app.post("/api/admin/work-patterns", response_model=WorkPatternOut, status_code=status.HTTP_201_CREATED)
def create_work_pattern(
    payload: WorkPatternPayload,
    _: Actor = Depends(get_manager_actor),
    db: Session = Depends(get_db),
) -> WorkPatternOut:
    pattern = WorkPattern(name=payload.name.strip(), start_time=payload.start_time, end_time=payload.end_time)
    db.add(pattern)
    db.commit()
    db.refresh(pattern)
    return WorkPatternOut.from_orm_pattern(pattern)


@app.get("/api/admin/leave-categories", response_model=list[LeaveCategoryOut])
def list_leave_categories(
    _: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> list[LeaveCategoryOut]:
    categories = db.scalars(
        select(LeaveCategory).where(LeaveCategory.deleted_at.is_(None)).order_by(LeaveCategory.name.asc())
    ).all()
    return [LeaveCategoryOut.from_orm_category(category) for category in categories]


@app.post("/api/admin/leave-categories", response_model=LeaveCategoryOut, status_code=status.HTTP_201_CREATED)
def create_leave_category(
    payload: LeaveCategoryPayload,
    _: Actor = Depends(get_manager_actor),
    db: Session = Depends(get_db),
) -> LeaveCategoryOut:
    name = payload.name.strip()
    if db.scalar(select(LeaveCategory).where(LeaveCategory.name == name)) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Leave category already exists")
    category = LeaveCategory(name=name, deducts_quota=payload.deducts_quota)
    db.add(category)
    db.commit()
    db.refresh(category)
    return LeaveCategoryOut.from_orm_category(category)


@app.post("/api/submissions/{kind}", response_model=SubmissionOut, status_code=status.HTTP_201_CREATED)
def create_submission(
    kind: str,
    payload: SubmissionPayload,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_workflow_service),
) -> SubmissionOut:
    return serialize_submission(service.create(kind, actor, payload))


@app.get("/api/submissions/{kind}", response_model=list[SubmissionOut])
def list_submissions(
    kind: str,
    status_filter: str | None = Query(default=None, alias="status"),
    user_id: int | None = None,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_workflow_service),
) -> list[SubmissionOut]:
    submissions = service.list(kind, actor, status=status_filter, user_id=user_id)
    return [serialize_submission(submission) for submission in submissions]


@app.get("/api/submissions/{kind}/{submission_id}", response_model=SubmissionOut)
def get_submission(
    kind: str,
    submission_id: int,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_workflow_service),
) -> SubmissionOut:
    return serialize_submission(service.get(kind, submission_id, actor))


@app.patch("/api/submissions/{kind}/{submission_id}", response_model=SubmissionOut)
def update_submission(
    kind: str,
    submission_id: int,
    payload: SubmissionPayload,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_workflow_service),
) -> SubmissionOut:
    return serialize_submission(service.update(kind, submission_id, actor, payload))


@app.delete("/api/submissions/{kind}/{submission_id}")
def delete_submission(
    kind: str,
    submission_id: int,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_workflow_service),
) -> dict[str, bool]:
    service.delete(kind, submission_id, actor)
    return {"ok": True}


@app.patch("/api/submissions/{kind}/approvals/{slot_id}", response_model=DecisionOut)
def decide_approval(
    kind: str,
    slot_id: int,
    payload: DecisionPayload,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_workflow_service),
) -> DecisionOut:
    outcome = service.decide(kind, slot_id, actor, payload)
    return DecisionOut(
        submission=serialize_submission(outcome.submission),
        slot=ApprovalSlotOut.from_orm_slot(outcome.slot),
        transitioned=outcome.transitioned,
        shift_adjustments=[adjustment.to_dict() for adjustment in outcome.effects.adjustments],
        quota=outcome.effects.quota,
    )


@app.get("/api/approvals/pending", response_model=list[PendingApprovalOut])
def list_pending_approvals(
    kind: str | None = None,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_workflow_service),
) -> list[PendingApprovalOut]:
    return [
        PendingApprovalOut(
            slot=ApprovalSlotOut.from_orm_slot(slot),
            submission_id=slot.submission_id,
            kind=slot.submission.kind,
            user_id=slot.submission.user_id,
        )
        for slot in service.pending(actor, kind)
    ]


@app.post("/api/admin/shifts", response_model=WeeklyShiftOut, status_code=status.HTTP_201_CREATED)
def create_shift_plan(
    payload: WeeklyShiftPayload,
    _: Actor = Depends(get_manager_actor),
    db: Session = Depends(get_db),
) -> WeeklyShiftOut:
    require_user(db, payload.user_id)
    record, normalized = create_weekly_shift(
        db,
        payload.user_id,
        payload.schedule,
        status=payload.status,
        work_pattern_id=payload.work_pattern_id,
        fallback_start=payload.start_date,
        fallback_end=payload.end_date,
    )
    db.commit()
    return WeeklyShiftOut(
        shift=ShiftOut.from_orm_shift(record),
        normalized=normalized.to_dict(),
        ignored_tokens=[str(token) for token in normalized.ignored_tokens],
    )


@app.post("/api/admin/shifts/ensure", response_model=ShiftAdjustmentOut)
def ensure_shift_status(
    payload: EnsureShiftPayload,
    _: Actor = Depends(get_manager_actor),
    db: Session = Depends(get_db),
) -> ShiftAdjustmentOut:
    require_user(db, payload.user_id)
    if payload.work_pattern_id is not None:
        require_work_pattern(db, payload.work_pattern_id)
    adjustment = ensure_status(db, payload.user_id, payload.date, payload.status, payload.work_pattern_id)
    db.commit()
    return ShiftAdjustmentOut(**adjustment.to_dict())


@app.get("/api/shifts/{user_id}", response_model=list[ShiftOut])
def get_user_shifts(
    user_id: int,
    start: date | None = None,
    end: date | None = None,
    actor: Actor = Depends(get_actor),
    policy: ApprovalPolicy = Depends(get_policy),
    db: Session = Depends(get_db),
) -> list[ShiftOut]:
    ensure_self_or_admin(actor, user_id, policy)
    return [ShiftOut.from_orm_shift(record) for record in list_shifts(db, user_id, start, end)]


@app.put("/api/admin/quotas/{user_id}/{month}", response_model=QuotaOut)
def put_quota(
    user_id: int,
    month: str,
    payload: QuotaPayload,
    _: Actor = Depends(get_manager_actor),
    db: Session = Depends(get_db),
) -> QuotaOut:
    require_user(db, user_id)
    record = quota_ledger.set_quota(db, user_id, month, payload.quota_days)
    db.commit()
    return QuotaOut.from_orm_quota(record)


@app.get("/api/quotas/{user_id}", response_model=list[QuotaOut])
def get_quotas(
    user_id: int,
    actor: Actor = Depends(get_actor),
    policy: ApprovalPolicy = Depends(get_policy),
    db: Session = Depends(get_db),
) -> list[QuotaOut]:
    ensure_self_or_admin(actor, user_id, policy)
    return [QuotaOut.from_orm_quota(record) for record in quota_ledger.list_quotas(db, user_id)]


@app.post("/api/admin/quotas/rollover")
def rollover_quotas(
    payload: RolloverPayload,
    _: Actor = Depends(get_manager_actor),
    db: Session = Depends(get_db),
) -> dict[str, int | str]:
    summary = quota_ledger.rollover(db, payload.reference_date or utcnow().date())
    db.commit()
    return summary


@app.get("/api/notifications", response_model=list[NotificationOut])
def list_notifications(
    unread_only: bool = False,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> list[NotificationOut]:
    stmt = select(Notification).where(Notification.user_id == actor.id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    rows = db.scalars(stmt.order_by(Notification.created_at.desc(), Notification.id.desc())).all()
    return [NotificationOut.from_orm_notification(row) for row in rows]


@app.post("/api/notifications/{notification_id}/read", response_model=NotificationOut)
def mark_notification_read(
    notification_id: int,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> NotificationOut:
    row = db.get(Notification, notification_id)
    if row is None or row.user_id != actor.id:
        raise NotFound("Notification not found")
    row.is_read = True
    db.commit()
    return NotificationOut.from_orm_notification(row)


@app.get("/health")
def health() -> dict[str, bool | str]:
    return {"ok": True, "env": get_settings().environment}
