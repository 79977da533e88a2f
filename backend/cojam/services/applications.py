from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from cojam.core.errors import Conflict, InvalidState, NotFound
from cojam.models import ApplicationStatus, SessionApplication


def find_for_user(db: Session, *, session_id: int, user_id: int) -> SessionApplication | None:
    return db.execute(
        select(SessionApplication).where(
            SessionApplication.session_id == session_id,
            SessionApplication.user_id == user_id,
        )
    ).scalar_one_or_none()


def get_in_session(
    db: Session, *, session_id: int, application_id: int, for_update: bool = False
) -> SessionApplication:
    stmt = select(SessionApplication).where(SessionApplication.id == application_id)
    if for_update:
        stmt = stmt.with_for_update()
    app_ = db.execute(stmt).scalar_one_or_none()
    if app_ is None or app_.session_id != session_id:
        raise NotFound("APPLICATION_NOT_FOUND", "Application not found")
    return app_


def upsert_pending(db: Session, *, session_id: int, user_id: int, now: datetime) -> SessionApplication:
    """Create the applicant's pending record, or reopen a resolved one in place."""
    existing = find_for_user(db, session_id=session_id, user_id=user_id)
    if existing is not None and existing.status == ApplicationStatus.PENDING.value:
        raise Conflict("APPLICATION_ALREADY_PENDING", "You have already applied to this session")

    if existing is None:
        existing = SessionApplication(session_id=session_id, user_id=user_id)
        db.add(existing)

    existing.status = ApplicationStatus.PENDING.value
    existing.requested_at = now
    existing.responded_at = None
    return existing


def has_approved(db: Session, *, session_id: int, user_id: int) -> bool:
    app_ = find_for_user(db, session_id=session_id, user_id=user_id)
    return app_ is not None and app_.status == ApplicationStatus.APPROVED.value


def resolve(app_: SessionApplication, status: ApplicationStatus, *, now: datetime) -> None:
    """pending -> approved|rejected|canceled, exactly once."""
    if app_.status != ApplicationStatus.PENDING.value:
        raise InvalidState(
            "APPLICATION_ALREADY_RESPONDED",
            f"Application has already been {app_.status}",
        )
    app_.status = status.value
    app_.responded_at = now


def list_pending(db: Session, *, session_id: int) -> list[SessionApplication]:
    return list(
        db.execute(
            select(SessionApplication)
            .options(joinedload(SessionApplication.user))
            .where(
                SessionApplication.session_id == session_id,
                SessionApplication.status == ApplicationStatus.PENDING.value,
            )
            .order_by(SessionApplication.requested_at.asc(), SessionApplication.id.asc())
        ).scalars()
    )


def application_out(app_: SessionApplication) -> dict:
    user = app_.user
    return {
        "id": app_.id,
        "session_id": app_.session_id,
        "user_id": app_.user_id,
        "user_name": user.name if user is not None else None,
        "status": app_.status,
        "requested_at": app_.requested_at.isoformat() if app_.requested_at else None,
        "responded_at": app_.responded_at.isoformat() if app_.responded_at else None,
    }
