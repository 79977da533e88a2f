from __future__ import annotations

import math
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from cojam.core.errors import NotFound
from cojam.models import (
    ApplicationStatus,
    LiveSession,
    SessionParticipant,
    SessionRole,
    SessionStatus,
    User,
)
from cojam.services import applications

SORTABLE_FIELDS = {
    "scheduled_start_at": LiveSession.scheduled_start_at,
    "created_at": LiveSession.created_at,
    "updated_at": LiveSession.updated_at,
    "title": LiveSession.title,
}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _user_brief(user: User | None) -> dict | None:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "profile_image": user.profile_image}


def session_summary(session: LiveSession) -> dict:
    return {
        "id": session.id,
        "title": session.title,
        "description": session.description,
        "host_user": _user_brief(session.host),
        "is_paid": session.is_paid,
        "price": session.price,
        "max_participants": session.max_participants,
        "current_participants": len(session.participants),
        "is_archive_enabled": session.is_archive_enabled,
        "status": session.status,
        "scheduled_start_at": _iso(session.scheduled_start_at),
        "started_at": _iso(session.started_at),
        "ended_at": _iso(session.ended_at),
        "created_at": _iso(session.created_at),
        "updated_at": _iso(session.updated_at),
    }


def created_session_out(session: LiveSession) -> dict:
    return {
        "id": session.id,
        "title": session.title,
        "description": session.description,
        "is_paid": session.is_paid,
        "price": session.price,
        "max_participants": session.max_participants,
        "is_archive_enabled": session.is_archive_enabled,
        "status": session.status,
        "scheduled_start_at": _iso(session.scheduled_start_at),
        "join_token": session.join_token,
    }


def get_session(db: Session, session_id: int) -> LiveSession:
    session = db.execute(
        select(LiveSession)
        .options(
            selectinload(LiveSession.host),
            selectinload(LiveSession.participants).selectinload(SessionParticipant.user),
        )
        .where(LiveSession.id == session_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if session is None:
        raise NotFound("SESSION_NOT_FOUND", "Session not found")
    return session


def list_sessions(
    db: Session,
    *,
    status: SessionStatus | None = None,
    host_user_id: int | None = None,
    search: str | None = None,
    sort_by: str = "scheduled_start_at",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 10,
) -> dict:
    stmt = select(LiveSession)
    count_stmt = select(func.count()).select_from(LiveSession)

    filters = []
    if status is not None:
        filters.append(LiveSession.status == status.value)
    else:
        # ended sessions are hidden unless asked for
        filters.append(LiveSession.status != SessionStatus.ENDED.value)
    if host_user_id is not None:
        filters.append(LiveSession.host_user_id == host_user_id)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        filters.append(or_(LiveSession.title.ilike(pattern), LiveSession.description.ilike(pattern)))

    for f in filters:
        stmt = stmt.where(f)
        count_stmt = count_stmt.where(f)

    column = SORTABLE_FIELDS.get(sort_by, LiveSession.scheduled_start_at)
    ordering = column.asc() if sort_order == "asc" else column.desc()
    stmt = (
        stmt.options(selectinload(LiveSession.host), selectinload(LiveSession.participants))
        .order_by(ordering, LiveSession.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )

    total = db.execute(count_stmt).scalar_one()
    rows = db.execute(stmt).scalars().all()
    return {
        "sessions": [session_summary(s) for s in rows],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if limit else 0,
        },
    }


def list_my_sessions(db: Session, *, user_id: int, status: SessionStatus | None = None) -> list[dict]:
    roster_ids = select(SessionParticipant.session_id).where(SessionParticipant.user_id == user_id)
    stmt = (
        select(LiveSession)
        .options(selectinload(LiveSession.host), selectinload(LiveSession.participants))
        .where(or_(LiveSession.host_user_id == user_id, LiveSession.id.in_(roster_ids)))
        .order_by(LiveSession.updated_at.desc(), LiveSession.id.desc())
    )
    if status is not None:
        stmt = stmt.where(LiveSession.status == status.value)
    return [session_summary(s) for s in db.execute(stmt).scalars()]


def find_by_join_token(db: Session, join_token: str) -> LiveSession:
    session = db.execute(
        select(LiveSession).where(LiveSession.join_token == join_token)
    ).scalar_one_or_none()
    if session is None:
        raise NotFound("SESSION_NOT_FOUND", "Invite link is invalid")
    return session


def user_access(db: Session, session: LiveSession, user: User | None) -> dict:
    if user is None:
        return {
            "is_host": False,
            "is_participant": False,
            "can_join": False,
            "application_status": None,
            "can_apply": False,
            "user_role": None,
        }

    is_host = session.is_host(user.id)
    is_participant = session.has_participant(user.id)
    ended = session.status == SessionStatus.ENDED.value

    application_status = None
    if not is_host and not is_participant:
        app_ = applications.find_for_user(db, session_id=session.id, user_id=user.id)
        if app_ is not None:
            application_status = app_.status

    if user.is_active_in(session.id):
        user_role = user.active_session_role
    elif is_host:
        user_role = SessionRole.HOST.value
    elif is_participant:
        user_role = SessionRole.PERFORMER.value
    else:
        user_role = None

    can_join = is_host or (
        session.status == SessionStatus.LIVE.value and (is_participant or not session.is_paid)
    )
    can_apply = (
        not is_host
        and not is_participant
        and not ended
        and application_status not in (ApplicationStatus.PENDING.value, ApplicationStatus.APPROVED.value)
        and (user.active_session_id is None or user.is_active_in(session.id))
    )
    return {
        "is_host": is_host,
        "is_participant": is_participant,
        "can_join": can_join,
        "application_status": application_status,
        "can_apply": can_apply,
        "user_role": user_role,
    }


def session_details(db: Session, session: LiveSession, user: User | None) -> dict:
    out = session_summary(session)
    access = user_access(db, session, user)
    out["user_access"] = access

    # invite token and roster are the host's business
    if access["is_host"]:
        out["join_token"] = session.join_token
        out["participants"] = [_user_brief(p.user) for p in session.participants]
    return out
