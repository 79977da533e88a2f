"""Membership invariant engine.

Keeps three things consistent for every operation: the session roster
(``session_participants``), each user's active-session pointer and the
applicant's application record. One user holds at most one role in at
most one session.

Every operation runs under the per-session lock (then per-user locks in
ascending id order), reads its rows ``FOR UPDATE`` and commits all of its
writes at once. The session row is always touched so its version column
moves; a writer in another process that raced us fails instead of
overwriting. Notifications are queued while the operation runs and only
handed to the gateway after the commit.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from cojam.core.config import settings
from cojam.core.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from cojam.core.locks import KeyedLocks, session_key, user_key
from cojam.models import (
    ApplicationAction,
    ApplicationStatus,
    LiveSession,
    SessionApplication,
    SessionParticipant,
    SessionRole,
    SessionStatus,
    User,
)
from cojam.services import applications, lifecycle
from cojam.services import realtime as rt
from cojam.services.realtime import EventGateway

log = logging.getLogger("cojam.membership")

MIN_PARTICIPANTS = 2
MAX_PARTICIPANTS = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MembershipPolicy:
    # False: the host must end the session explicitly
    host_leave_ends_session: bool = False

    @classmethod
    def from_settings(cls) -> "MembershipPolicy":
        return cls(host_leave_ends_session=settings.HOST_LEAVE_ENDS_SESSION)


@dataclass
class JoinResult:
    session_id: int
    role: SessionRole
    already_joined: bool = False


@dataclass
class LeaveResult:
    session_id: int
    session_ended: bool = False


@dataclass
class StartResult:
    session: LiveSession
    changed: bool


@dataclass
class _Outbox:
    """Notifications produced by one operation, sent once it has committed."""

    items: list[Callable[[EventGateway], Any]] = field(default_factory=list)

    def to_user(self, user_id: int, event: str, data: dict) -> None:
        self.items.append(lambda gw: gw.send_to_user(user_id, event, data))

    def to_session(self, session_id: int, event: str, data: dict) -> None:
        self.items.append(lambda gw: gw.broadcast(session_id, event, data))

    def user_left(self, session_id: int, user_id: int) -> None:
        self.items.append(lambda gw: gw.user_left(session_id, user_id))

    def session_closed(self, session_id: int) -> None:
        self.items.append(lambda gw: gw.session_closed(session_id))

    def flush(self, gateway: EventGateway) -> None:
        for item in self.items:
            try:
                item(gateway)
            except Exception:
                log.exception("notification dropped")
        self.items.clear()


class MembershipService:
    def __init__(
        self,
        db: Session,
        gateway: EventGateway,
        *,
        locks: KeyedLocks,
        policy: Optional[MembershipPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.locks = locks
        self.policy = policy or MembershipPolicy()
        self._now = clock

    # ---------- loading ----------

    def _load_session(self, session_id: int) -> LiveSession:
        session = self.db.execute(
            select(LiveSession)
            .where(LiveSession.id == session_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if session is None:
            raise NotFound("SESSION_NOT_FOUND", "Session not found")
        return session

    def _load_users(self, user_ids: Iterable[int]) -> dict[int, User]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        rows = self.db.execute(
            select(User)
            .where(User.id.in_(ids))
            .order_by(User.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars()
        return {u.id: u for u in rows}

    def _load_user(self, user_id: int) -> User:
        user = self._load_users([user_id]).get(user_id)
        if user is None:
            raise NotFound("USER_NOT_FOUND", "User not found")
        return user

    def _roster_ids(self, session_id: int) -> set[int]:
        return set(
            self.db.execute(
                select(SessionParticipant.user_id).where(SessionParticipant.session_id == session_id)
            ).scalars()
        )

    def _roster_size(self, session_id: int) -> int:
        return self.db.execute(
            select(func.count())
            .select_from(SessionParticipant)
            .where(SessionParticipant.session_id == session_id)
        ).scalar_one()

    def _pointer_holder_ids(self, session_id: int) -> set[int]:
        return set(self.db.execute(select(User.id).where(User.active_session_id == session_id)).scalars())

    # ---------- transaction plumbing ----------

    @contextmanager
    def _users_locked(self, user_ids: Iterable[int]) -> Iterator[None]:
        keys = [user_key(uid) for uid in sorted(set(user_ids))]
        with self.locks.hold(*keys):
            yield

    def _touch(self, session: LiveSession, now: datetime) -> None:
        # forces an UPDATE of the session row so the version check runs
        session.updated_at = now

    def _commit(self, operation: str, **ctx: Any) -> None:
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            log.warning("%s lost a concurrent update %s", operation, ctx)
            raise Conflict(
                "CONCURRENT_MODIFICATION",
                "The session was modified concurrently, please retry",
            )
        except IntegrityError:
            self.db.rollback()
            log.warning("%s hit a uniqueness race %s", operation, ctx)
            raise Conflict(
                "CONCURRENT_MODIFICATION",
                "The session was modified concurrently, please retry",
            )

    @contextmanager
    def _unit(self) -> Iterator[_Outbox]:
        """Roll back on any failure; deliver notifications only after success."""
        outbox = _Outbox()
        try:
            yield outbox
        except BaseException:
            self.db.rollback()
            raise
        outbox.flush(self.gateway)

    # ---------- create ----------

    def create_session(
        self,
        user_id: int,
        *,
        title: str,
        description: str | None = None,
        is_paid: bool = False,
        price: float | None = None,
        max_participants: int | None = None,
        is_archive_enabled: bool = True,
        scheduled_start_at: datetime | None = None,
    ) -> LiveSession:
        if max_participants is None:
            max_participants = settings.DEFAULT_MAX_PARTICIPANTS
        if not (MIN_PARTICIPANTS <= max_participants <= MAX_PARTICIPANTS):
            raise ValidationFailed(
                "VALIDATION_ERROR",
                f"max_participants must be between {MIN_PARTICIPANTS} and {MAX_PARTICIPANTS}",
            )
        if price is not None and price < 0:
            raise ValidationFailed("VALIDATION_ERROR", "price must not be negative")
        title = (title or "").strip()
        if not title:
            raise ValidationFailed("VALIDATION_ERROR", "title must not be blank")

        with self._unit(), self._users_locked([user_id]):
            user = self._load_user(user_id)
            if user.active_session_id is not None:
                raise Conflict(
                    "ALREADY_IN_SESSION",
                    "You are already in a session; leave it before creating a new one",
                    {"active_session_id": user.active_session_id},
                )

            session = LiveSession(
                title=title,
                description=description,
                host_user_id=user.id,
                is_paid=is_paid,
                price=price,
                max_participants=max_participants,
                is_archive_enabled=is_archive_enabled,
                status=SessionStatus.SCHEDULED.value,
                scheduled_start_at=scheduled_start_at,
            )
            self.db.add(session)
            self.db.flush()  # session.id

            self.db.add(SessionParticipant(session_id=session.id, user_id=user.id))
            user.set_active_session(session.id, SessionRole.HOST.value)
            self._commit("create_session", user_id=user_id)

        log.info("session created session_id=%s host_user_id=%s", session.id, user_id)
        return session

    # ---------- join ----------

    def join_session(self, user_id: int, session_id: int, role: SessionRole) -> JoinResult:
        if role not in (SessionRole.VIEWER, SessionRole.PERFORMER):
            raise ValidationFailed("VALIDATION_ERROR", "role must be viewer or performer")

        with self._unit() as outbox, self.locks.hold(session_key(session_id)):
            session = self._load_session(session_id)
            lifecycle.ensure_not_ended(session, action="join")

            with self._users_locked([user_id]):
                user = self._load_user(user_id)
                roster = self._roster_ids(session_id)

                if session.is_host(user_id):
                    resolved = SessionRole.HOST
                elif user_id in roster:
                    resolved = SessionRole.PERFORMER
                elif role is SessionRole.PERFORMER:
                    if not applications.has_approved(self.db, session_id=session_id, user_id=user_id):
                        raise Conflict(
                            "NO_APPROVED_APPLICATION",
                            "Joining as performer requires an approved application",
                        )
                    resolved = SessionRole.PERFORMER
                else:
                    resolved = SessionRole.VIEWER

                if user.active_session_id is not None and user.active_session_id != session_id:
                    raise Conflict(
                        "ALREADY_IN_ANOTHER_SESSION",
                        "You are already in another session; leave it first",
                        {"active_session_id": user.active_session_id},
                    )

                if user.is_active_in(session_id):
                    if user.active_session_role == resolved.value:
                        # nothing to write; drop the row locks now
                        self.db.rollback()
                        return JoinResult(session_id=session_id, role=resolved, already_joined=True)
                    raise Conflict(
                        "ALREADY_IN_SAME_SESSION_DIFFERENT_ROLE",
                        f"You are already in this session as {user.active_session_role}; "
                        "leave and rejoin to change role",
                        {"active_session_role": user.active_session_role},
                    )

                if resolved is not SessionRole.VIEWER and user_id not in roster:
                    if resolved is SessionRole.PERFORMER and len(roster) >= session.max_participants:
                        raise Conflict("ROOM_FULL_FOR_PERFORMERS", "All performer slots are taken")
                    self.db.add(SessionParticipant(session_id=session_id, user_id=user_id))

                now = self._now()
                user.set_active_session(session_id, resolved.value)
                self._touch(session, now)
                self._commit("join_session", session_id=session_id, user_id=user_id)

            outbox.to_session(
                session_id,
                rt.USER_JOINED_SESSION,
                {
                    "session_id": session_id,
                    "user_id": user_id,
                    "user_name": user.name,
                    "role": resolved.value,
                },
            )

        log.info("joined session_id=%s user_id=%s role=%s", session_id, user_id, resolved.value)
        return JoinResult(session_id=session_id, role=resolved)

    # ---------- leave ----------

    def leave_session(self, user_id: int, session_id: int) -> LeaveResult:
        with self._unit() as outbox, self.locks.hold(session_key(session_id)):
            session = self._load_session(session_id)

            if session.is_host(user_id):
                user = self._load_user(user_id)
                if not user.is_active_in(session_id):
                    raise InvalidState("NOT_IN_SESSION", "You are not currently in this session")
                if not self.policy.host_leave_ends_session:
                    raise InvalidState(
                        "HOST_CANNOT_LEAVE",
                        "The host cannot leave; end the session instead",
                    )
                self._end_locked(session, outbox)
                log.info("host left, session ended session_id=%s host_user_id=%s", session_id, user_id)
                return LeaveResult(session_id=session_id, session_ended=True)

            with self._users_locked([user_id]):
                user = self._load_user(user_id)
                # the pointer is authoritative, the roster can lag behind it
                if not user.is_active_in(session_id):
                    raise InvalidState("NOT_IN_SESSION", "You are not currently in this session")

                role = user.active_session_role
                self.db.execute(
                    delete(SessionParticipant).where(
                        SessionParticipant.session_id == session_id,
                        SessionParticipant.user_id == user_id,
                    )
                )
                user.clear_active_session()
                self._touch(session, self._now())
                self._commit("leave_session", session_id=session_id, user_id=user_id)

            outbox.to_session(
                session_id,
                rt.USER_LEFT_SESSION,
                {"session_id": session_id, "user_id": user_id, "role": role},
            )
            outbox.user_left(session_id, user_id)

        log.info("left session_id=%s user_id=%s role=%s", session_id, user_id, role)
        return LeaveResult(session_id=session_id)

    # ---------- start / end ----------

    def _require_host(self, session: LiveSession, user_id: int, action: str) -> None:
        if not session.is_host(user_id):
            raise Forbidden("NOT_HOST", f"Only the session host can {action} the session")

    def start_session(self, user_id: int, session_id: int) -> StartResult:
        with self._unit() as outbox, self.locks.hold(session_key(session_id)):
            session = self._load_session(session_id)
            self._require_host(session, user_id, "start")

            now = self._now()
            if not lifecycle.start(session, now=now):
                self.db.rollback()
                return StartResult(session=session, changed=False)

            self._touch(session, now)
            self._commit("start_session", session_id=session_id)

            outbox.to_session(
                session_id,
                rt.SESSION_STATUS_UPDATED,
                {"session_id": session_id, "status": session.status, "at": session.started_at},
            )

        log.info("session started session_id=%s", session_id)
        return StartResult(session=session, changed=True)

    def end_session(self, user_id: int, session_id: int) -> LiveSession:
        with self._unit() as outbox, self.locks.hold(session_key(session_id)):
            session = self._load_session(session_id)
            self._require_host(session, user_id, "end")
            self._end_locked(session, outbox)

        log.info("session ended session_id=%s", session_id)
        return session

    def _end_locked(self, session: LiveSession, outbox: _Outbox) -> None:
        now = self._now()
        lifecycle.end(session, now=now)

        members = self._roster_ids(session.id) | self._pointer_holder_ids(session.id)
        members.add(session.host_user_id)
        with self._users_locked(members):
            cleared = self._clear_pointers(session.id, members)
            self._touch(session, now)
            self._commit("end_session", session_id=session.id, members=len(members))

        log.info("cleared %s active-session pointers for session_id=%s", cleared, session.id)
        outbox.to_session(
            session.id,
            rt.SESSION_STATUS_UPDATED,
            {"session_id": session.id, "status": session.status, "at": session.ended_at},
        )
        outbox.session_closed(session.id)

    def _clear_pointers(self, session_id: int, user_ids: Iterable[int]) -> int:
        cleared = 0
        for user in self._load_users(user_ids).values():
            # a pointer naming another session is not ours to clear
            if user.is_active_in(session_id):
                user.clear_active_session()
                cleared += 1
        return cleared

    def release_members(self, session_id: int) -> int:
        """Re-run the pointer clear for an ended session. Safe to repeat."""
        with self._unit(), self.locks.hold(session_key(session_id)):
            session = self._load_session(session_id)
            if not lifecycle.is_ended(session):
                raise InvalidState("SESSION_NOT_ENDED", "Session has not ended")

            holders = self._pointer_holder_ids(session_id)
            if not holders:
                self.db.rollback()
                return 0
            with self._users_locked(holders):
                cleared = self._clear_pointers(session_id, holders)
                self._commit("release_members", session_id=session_id)

        log.info("released %s stale pointers for session_id=%s", cleared, session_id)
        return cleared

    # ---------- applications ----------

    def apply_as_performer(self, user_id: int, session_id: int) -> SessionApplication:
        with self._unit() as outbox, self.locks.hold(session_key(session_id)):
            session = self._load_session(session_id)

            with self._users_locked([user_id]):
                user = self._load_user(user_id)
                roster = self._roster_ids(session_id)

                if session.is_host(user_id) or user_id in roster:
                    raise Conflict(
                        "ALREADY_PARTICIPANT",
                        "You are already the host or a performer in this session",
                    )
                lifecycle.ensure_not_ended(session, action="apply")

                if user.active_session_id is not None:
                    if user.active_session_id != session_id:
                        raise Conflict(
                            "ALREADY_IN_ANOTHER_SESSION",
                            "You are already in another session; leave it before applying",
                            {"active_session_id": user.active_session_id},
                        )
                    if user.active_session_role != SessionRole.VIEWER.value:
                        raise Conflict(
                            "ALREADY_IN_SAME_SESSION_DIFFERENT_ROLE",
                            f"You are already in this session as {user.active_session_role}",
                            {"active_session_role": user.active_session_role},
                        )

                if len(roster) >= session.max_participants:
                    raise Conflict("ROOM_FULL_FOR_PERFORMERS", "All performer slots are taken")

                now = self._now()
                application = applications.upsert_pending(
                    self.db, session_id=session_id, user_id=user_id, now=now
                )
                self._touch(session, now)
                self._commit("apply_as_performer", session_id=session_id, user_id=user_id)

            outbox.to_user(
                session.host_user_id,
                rt.PERFORMER_APPLICATION_RECEIVED,
                {
                    "application_id": application.id,
                    "session_id": session_id,
                    "user_id": user_id,
                    "user_name": user.name,
                    "status": application.status,
                    "requested_at": application.requested_at,
                },
            )

        log.info("application pending session_id=%s user_id=%s", session_id, user_id)
        return application

    def cancel_application(self, user_id: int, session_id: int) -> SessionApplication:
        with self._unit() as outbox, self.locks.hold(session_key(session_id)):
            session = self._load_session(session_id)
            application = applications.find_for_user(self.db, session_id=session_id, user_id=user_id)
            if application is None:
                raise NotFound("APPLICATION_NOT_FOUND", "You have not applied to this session")

            now = self._now()
            applications.resolve(application, ApplicationStatus.CANCELED, now=now)
            self._touch(session, now)
            self._commit("cancel_application", session_id=session_id, user_id=user_id)

            outbox.to_user(
                session.host_user_id,
                rt.PERFORMER_APPLICATION_CANCELED,
                {"application_id": application.id, "session_id": session_id, "user_id": user_id},
            )

        log.info("application canceled session_id=%s user_id=%s", session_id, user_id)
        return application

    def respond_to_application(
        self,
        host_id: int,
        session_id: int,
        application_id: int,
        action: ApplicationAction,
    ) -> SessionApplication:
        failure: Conflict | None = None

        with self._unit() as outbox, self.locks.hold(session_key(session_id)):
            session = self._load_session(session_id)
            self._require_host(session, host_id, "respond to applications for")

            application = applications.get_in_session(
                self.db, session_id=session_id, application_id=application_id, for_update=True
            )
            if application.status != ApplicationStatus.PENDING.value:
                raise InvalidState(
                    "APPLICATION_ALREADY_RESPONDED",
                    f"Application has already been {application.status}",
                )

            applicant_id = application.user_id
            with self._users_locked([applicant_id]):
                applicant = self._load_user(applicant_id)
                now = self._now()

                if action is ApplicationAction.REJECT:
                    applications.resolve(application, ApplicationStatus.REJECTED, now=now)
                else:
                    failure = self._approval_conflict(session, applicant)
                    if failure is None:
                        applications.resolve(application, ApplicationStatus.APPROVED, now=now)
                        if applicant_id not in self._roster_ids(session_id):
                            self.db.add(SessionParticipant(session_id=session_id, user_id=applicant_id))
                        applicant.set_active_session(session_id, SessionRole.PERFORMER.value)
                    else:
                        # approval is impossible now; do not leave the request dangling
                        applications.resolve(application, ApplicationStatus.REJECTED, now=now)

                self._touch(session, now)
                self._commit(
                    "respond_to_application",
                    session_id=session_id,
                    application_id=application_id,
                    action=action.value,
                )

            outbox.to_user(
                applicant_id,
                rt.APPLICATION_RESPONDED,
                {
                    "application_id": application.id,
                    "session_id": session_id,
                    "status": application.status,
                },
            )
            if application.status == ApplicationStatus.APPROVED.value:
                outbox.to_session(
                    session_id,
                    rt.SESSION_PARTICIPANT_APPROVED,
                    {
                        "session_id": session_id,
                        "user_id": applicant_id,
                        "user_name": applicant.name,
                        "role": SessionRole.PERFORMER.value,
                    },
                )

        log.info(
            "application %s session_id=%s application_id=%s user_id=%s",
            application.status,
            session_id,
            application_id,
            applicant_id,
        )
        if failure is not None:
            raise failure
        return application

    def _approval_conflict(self, session: LiveSession, applicant: User) -> Conflict | None:
        """Re-check, at commit time, everything approval depends on."""
        details = {"application_status": ApplicationStatus.REJECTED.value}
        suffix = "; the application was rejected instead"

        if lifecycle.is_ended(session):
            return Conflict("SESSION_ENDED", "Cannot approve: the session has ended" + suffix, details)

        if applicant.active_session_id is not None:
            if applicant.active_session_id != session.id:
                return Conflict(
                    "ALREADY_IN_ANOTHER_SESSION",
                    f"Cannot approve: {applicant.name} is already in another session" + suffix,
                    details,
                )
            if applicant.active_session_role != SessionRole.VIEWER.value:
                return Conflict(
                    "ALREADY_IN_SAME_SESSION_DIFFERENT_ROLE",
                    f"Cannot approve: {applicant.name} is already in this session "
                    f"as {applicant.active_session_role}" + suffix,
                    details,
                )

        if self._roster_size(session.id) >= session.max_participants:
            return Conflict(
                "ROOM_FULL_FOR_PERFORMERS",
                "Cannot approve: all performer slots are taken" + suffix,
                details,
            )
        return None
