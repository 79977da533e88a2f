"""Session status transitions: scheduled -> ready -> live -> ended.

Only forward moves exist. The scheduler performs scheduled -> ready; the
host drives scheduled|ready -> live and anything -> ended.
"""

from __future__ import annotations

from datetime import datetime

from cojam.core.errors import Conflict, InvalidState
from cojam.models import LiveSession, SessionStatus

_ORDER = {
    SessionStatus.SCHEDULED: 0,
    SessionStatus.READY: 1,
    SessionStatus.LIVE: 2,
    SessionStatus.ENDED: 3,
}


def status_of(session: LiveSession) -> SessionStatus:
    return SessionStatus(session.status)


def is_ended(session: LiveSession) -> bool:
    return status_of(session) is SessionStatus.ENDED


def can_advance(current: SessionStatus, target: SessionStatus) -> bool:
    return _ORDER[target] > _ORDER[current]


def _advance(session: LiveSession, target: SessionStatus) -> None:
    current = status_of(session)
    if not can_advance(current, target):
        raise InvalidState(
            "INVALID_TRANSITION",
            f"Cannot move session from {current.value} to {target.value}",
        )
    session.status = target.value


def ensure_not_ended(session: LiveSession, *, action: str) -> None:
    """Membership changes are closed once a session has ended."""
    if is_ended(session):
        raise Conflict("SESSION_ENDED", f"Session has already ended; cannot {action}")


def mark_ready(session: LiveSession) -> bool:
    """Scheduler transition. Returns False when the session is not scheduled."""
    if status_of(session) is not SessionStatus.SCHEDULED:
        return False
    _advance(session, SessionStatus.READY)
    return True


def start(session: LiveSession, *, now: datetime) -> bool:
    """Host start. Returns True if the status changed, False for an already-live session."""
    current = status_of(session)
    if current is SessionStatus.LIVE:
        return False
    if current is SessionStatus.ENDED:
        raise InvalidState("SESSION_ENDED", "Session has already ended and cannot be started")

    _advance(session, SessionStatus.LIVE)
    session.started_at = now
    return True


def end(session: LiveSession, *, now: datetime) -> None:
    if is_ended(session):
        raise InvalidState("SESSION_ENDED", "Session has already ended")

    _advance(session, SessionStatus.ENDED)
    session.ended_at = now
