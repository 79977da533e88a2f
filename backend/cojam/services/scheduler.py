"""Flips scheduled sessions to ready once their start time has passed.

Also re-runs the pointer clear for ended sessions, in case an earlier
end left a member pointing at a session that no longer runs.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from cojam.core.locks import KeyedLocks, session_key
from cojam.models import LiveSession, SessionStatus, User
from cojam.services import lifecycle
from cojam.services import realtime as rt
from cojam.services.membership import MembershipService, utcnow
from cojam.services.realtime import EventGateway

log = logging.getLogger("cojam.scheduler")


def due_session_ids(db: Session, *, now: datetime) -> list[int]:
    return list(
        db.execute(
            select(LiveSession.id)
            .where(
                LiveSession.status == SessionStatus.SCHEDULED.value,
                LiveSession.scheduled_start_at.is_not(None),
                LiveSession.scheduled_start_at <= now,
            )
            .order_by(LiveSession.scheduled_start_at.asc())
        ).scalars()
    )


def promote_due_sessions(
    db: Session,
    gateway: EventGateway,
    *,
    locks: KeyedLocks,
    now: datetime | None = None,
) -> list[int]:
    now = now or utcnow()
    promoted: list[int] = []

    for session_id in due_session_ids(db, now=now):
        with locks.hold(session_key(session_id)):
            session = db.execute(
                select(LiveSession)
                .where(LiveSession.id == session_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            # the host may have started it in the meantime
            if session is None or not lifecycle.mark_ready(session):
                db.rollback()
                continue
            try:
                db.commit()
            except StaleDataError:
                db.rollback()
                log.warning("session %s changed while promoting, skipped", session_id)
                continue

        promoted.append(session_id)
        log.info("session %s updated to ready", session_id)
        gateway.broadcast(
            session_id,
            rt.SESSION_STATUS_UPDATED,
            {"session_id": session_id, "status": SessionStatus.READY.value, "at": now},
        )

    return promoted


def release_ended_pointers(db: Session, gateway: EventGateway, *, locks: KeyedLocks) -> int:
    stale = list(
        db.execute(
            select(LiveSession.id)
            .join(User, User.active_session_id == LiveSession.id)
            .where(LiveSession.status == SessionStatus.ENDED.value)
            .distinct()
        ).scalars()
    )
    if not stale:
        return 0

    service = MembershipService(db, gateway, locks=locks)
    return sum(service.release_members(session_id) for session_id in stale)


def run_once(
    session_factory: Callable[[], Session],
    gateway: EventGateway,
    *,
    locks: KeyedLocks,
) -> dict[str, int]:
    with session_factory() as db:
        promoted = promote_due_sessions(db, gateway, locks=locks)
        released = release_ended_pointers(db, gateway, locks=locks)
    return {"promoted": len(promoted), "released": released}


async def run_forever(
    session_factory: Callable[[], Session],
    gateway: EventGateway,
    *,
    locks: KeyedLocks,
    interval_seconds: float,
) -> None:
    log.info("session scheduler started, interval=%ss", interval_seconds)
    while True:
        try:
            await asyncio.to_thread(run_once, session_factory, gateway, locks=locks)
        except Exception:
            log.exception("scheduled session promotion failed")
        await asyncio.sleep(interval_seconds)
