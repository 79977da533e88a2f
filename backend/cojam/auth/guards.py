from __future__ import annotations

from fastapi import Depends
from sqlalchemy.orm import Session

from cojam.auth.deps import get_current_user
from cojam.core.db import get_db
from cojam.core.errors import Forbidden, NotFound
from cojam.models import LiveSession, User


def require_session_host(
    session_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> LiveSession:
    session = db.get(LiveSession, session_id)
    if session is None:
        raise NotFound("SESSION_NOT_FOUND", "Session not found")
    if not session.is_host(user.id):
        raise Forbidden("NOT_HOST", "Only the session host can do this")
    return session
