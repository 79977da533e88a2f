from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from cojam.core.db import get_db
from cojam.core.locks import KeyedLocks
from cojam.services.membership import MembershipPolicy, MembershipService
from cojam.services.realtime import EventGateway


def get_gateway(request: Request) -> EventGateway:
    return request.app.state.gateway


def get_locks(request: Request) -> KeyedLocks:
    return request.app.state.locks


def get_policy() -> MembershipPolicy:
    return MembershipPolicy.from_settings()


def get_membership_service(
    db: Session = Depends(get_db),
    gateway: EventGateway = Depends(get_gateway),
    locks: KeyedLocks = Depends(get_locks),
    policy: MembershipPolicy = Depends(get_policy),
) -> MembershipService:
    return MembershipService(db, gateway, locks=locks, policy=policy)
