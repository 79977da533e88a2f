"""Flip due 'scheduled' sessions to 'ready'.

Run this script periodically (e.g. every minute) from the backend environment
when the in-process scheduler (SCHEDULER_ENABLED) is off.

Env:
  - DATABASE_URL (or whatever the app uses via cojam.core.db)
  - DRY_RUN=1 will not write, only print matches

Clients connected to the API process are not notified from here; they see
the new status on their next fetch.
"""

from __future__ import annotations

import logging
import os

from cojam.core.db import SessionLocal
from cojam.core.locks import KeyedLocks
from cojam.models import LiveSession
from cojam.services import scheduler
from cojam.services.membership import utcnow
from cojam.services.realtime import EventGateway

DRY_RUN = os.getenv("DRY_RUN", "").strip() in ("1", "true", "yes")


def main() -> int:
    now = utcnow()
    with SessionLocal() as db:
        if DRY_RUN:
            ids = scheduler.due_session_ids(db, now=now)
            for session_id in ids:
                s = db.get(LiveSession, session_id)
                print(f"DRY_RUN match: session_id={s.id} scheduled_start_at={s.scheduled_start_at} title=\"{s.title}\"")
            return len(ids)

        promoted = scheduler.promote_due_sessions(db, EventGateway(), locks=KeyedLocks(), now=now)
    return len(promoted)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    n = main()
    print(f"ready: {n}")
