from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, StringConstraints
from sqlalchemy.orm import Session

from cojam.auth.deps import get_current_user, get_optional_user
from cojam.auth.guards import require_session_host
from cojam.core.db import get_db
from cojam.core.deps import get_membership_service
from cojam.models import ApplicationAction, LiveSession, SessionRole, SessionStatus, User
from cojam.services import applications
from cojam.services import sessions as sessions_svc
from cojam.services.membership import MAX_PARTICIPANTS, MIN_PARTICIPANTS, MembershipService

router = APIRouter(prefix="/sessions", tags=["sessions"])


# ---------- Schemas ----------

class SessionCreateIn(BaseModel):
    title: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
    description: str | None = Field(default=None, max_length=2000)
    is_paid: bool = False
    price: float | None = Field(default=None, ge=0)
    max_participants: int | None = Field(default=None, ge=MIN_PARTICIPANTS, le=MAX_PARTICIPANTS)
    is_archive_enabled: bool = True
    scheduled_start_at: datetime | None = None


class JoinIn(BaseModel):
    role: Literal["viewer", "performer"] = "viewer"


class RespondIn(BaseModel):
    action: ApplicationAction


# ---------- Routes ----------

@router.post("", status_code=status.HTTP_201_CREATED)
def create_session(
    payload: SessionCreateIn,
    user: User = Depends(get_current_user),
    service: MembershipService = Depends(get_membership_service),
):
    session = service.create_session(
        user.id,
        title=payload.title,
        description=payload.description,
        is_paid=payload.is_paid,
        price=payload.price,
        max_participants=payload.max_participants,
        is_archive_enabled=payload.is_archive_enabled,
        scheduled_start_at=payload.scheduled_start_at,
    )
    return {"session": sessions_svc.created_session_out(session)}


@router.get("")
def list_sessions(
    status_filter: SessionStatus | None = Query(default=None, alias="status"),
    host_user_id: int | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    sort_by: Literal["scheduled_start_at", "created_at", "updated_at", "title"] = Query(default="scheduled_start_at"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return sessions_svc.list_sessions(
        db,
        status=status_filter,
        host_user_id=host_user_id,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )


@router.get("/mine")
def list_my_sessions(
    status_filter: SessionStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return {"sessions": sessions_svc.list_my_sessions(db, user_id=user.id, status=status_filter)}


@router.get("/by-token/{join_token}")
def resolve_invite(join_token: str, db: Session = Depends(get_db)):
    session = sessions_svc.find_by_join_token(db, join_token)
    return {"session_id": session.id, "title": session.title, "status": session.status}


@router.get("/{session_id}")
def get_session(
    session_id: int,
    db: Session = Depends(get_db),
    user: User | None = Depends(get_optional_user),
):
    session = sessions_svc.get_session(db, session_id)
    return sessions_svc.session_details(db, session, user)


@router.post("/{session_id}/join")
def join_session(
    session_id: int,
    payload: JoinIn,
    user: User = Depends(get_current_user),
    service: MembershipService = Depends(get_membership_service),
):
    result = service.join_session(user.id, session_id, SessionRole(payload.role))
    return {
        "session_id": result.session_id,
        "role": result.role.value,
        "already_joined": result.already_joined,
    }


@router.post("/{session_id}/leave")
def leave_session(
    session_id: int,
    user: User = Depends(get_current_user),
    service: MembershipService = Depends(get_membership_service),
):
    result = service.leave_session(user.id, session_id)
    return {"ok": True, "session_id": result.session_id, "session_ended": result.session_ended}


@router.post("/{session_id}/start")
def start_session(
    session_id: int,
    user: User = Depends(get_current_user),
    service: MembershipService = Depends(get_membership_service),
):
    result = service.start_session(user.id, session_id)
    s = result.session
    return {
        "id": s.id,
        "status": s.status,
        "started_at": s.started_at.isoformat() if s.started_at else None,
        "changed": result.changed,
    }


@router.post("/{session_id}/end")
def end_session(
    session_id: int,
    user: User = Depends(get_current_user),
    service: MembershipService = Depends(get_membership_service),
):
    s = service.end_session(user.id, session_id)
    return {"ok": True, "id": s.id, "status": s.status, "ended_at": s.ended_at.isoformat()}


@router.post("/{session_id}/apply", status_code=status.HTTP_201_CREATED)
def apply_as_performer(
    session_id: int,
    user: User = Depends(get_current_user),
    service: MembershipService = Depends(get_membership_service),
):
    application = service.apply_as_performer(user.id, session_id)
    return {"application": applications.application_out(application)}


@router.post("/{session_id}/applications/cancel")
def cancel_application(
    session_id: int,
    user: User = Depends(get_current_user),
    service: MembershipService = Depends(get_membership_service),
):
    application = service.cancel_application(user.id, session_id)
    return {"application": applications.application_out(application)}


@router.get("/{session_id}/applications")
def list_applications(
    session: LiveSession = Depends(require_session_host),
    db: Session = Depends(get_db),
):
    pending = applications.list_pending(db, session_id=session.id)
    return {"applications": [applications.application_out(a) for a in pending]}


@router.post("/{session_id}/applications/{application_id}/respond")
def respond_to_application(
    session_id: int,
    application_id: int,
    payload: RespondIn,
    user: User = Depends(get_current_user),
    service: MembershipService = Depends(get_membership_service),
):
    application = service.respond_to_application(user.id, session_id, application_id, payload.action)
    return {"application": applications.application_out(application)}
