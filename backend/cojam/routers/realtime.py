from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from cojam.auth.deps import get_jwt_config, resolve_user
from cojam.auth.jwt_tokens import JwtConfig
from cojam.core.config import settings
from cojam.core.db import get_db
from cojam.core.errors import AppError
from cojam.models import User
from cojam.services.realtime import Connection, EventGateway

log = logging.getLogger("cojam.realtime")

router = APIRouter(tags=["realtime"])


# DB checks below run in the threadpool, never on the socket loop
def _authenticate(db: Session, cfg: JwtConfig, token: str) -> int:
    try:
        return resolve_user(db, cfg, token).id
    finally:
        db.rollback()


def _may_listen(db: Session, user_id: int, session_id: int) -> bool:
    user = db.get(User, user_id, populate_existing=True)
    db.rollback()
    return user is not None and user.is_active_in(session_id)


@router.websocket("/ws")
async def events_socket(
    websocket: WebSocket,
    db: Session = Depends(get_db),
    cfg: JwtConfig = Depends(get_jwt_config),
):
    token = websocket.query_params.get("token") or websocket.cookies.get(settings.COOKIE_NAME)
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    try:
        user_id = await run_in_threadpool(_authenticate, db, cfg, token)
    except AppError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    gateway: EventGateway = websocket.app.state.gateway
    await websocket.accept()
    conn = Connection(websocket, user_id, asyncio.get_running_loop())
    gateway.directory.register(conn)
    log.info("ws connected user_id=%s", user_id)

    try:
        while True:
            try:
                msg = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"event": "error", "data": {"code": "BAD_MESSAGE"}})
                continue
            kind = msg.get("type") if isinstance(msg, dict) else None

            if kind == "ping":
                await websocket.send_json({"event": "pong"})
                continue

            try:
                session_id = int(msg.get("session_id"))
            except (TypeError, ValueError, AttributeError):
                await websocket.send_json({"event": "error", "data": {"code": "BAD_MESSAGE"}})
                continue

            if kind == "subscribe":
                if not await run_in_threadpool(_may_listen, db, user_id, session_id):
                    await websocket.send_json(
                        {"event": "error", "data": {"code": "NOT_IN_SESSION", "session_id": session_id}}
                    )
                    continue
                gateway.directory.subscribe(conn, session_id)
                await websocket.send_json({"event": "subscribed", "data": {"session_id": session_id}})
            elif kind == "unsubscribe":
                gateway.directory.unsubscribe(conn, session_id)
                await websocket.send_json({"event": "unsubscribed", "data": {"session_id": session_id}})
            else:
                await websocket.send_json({"event": "error", "data": {"code": "BAD_MESSAGE"}})
    except WebSocketDisconnect:
        pass
    finally:
        gateway.directory.unregister(conn)
        log.info("ws disconnected user_id=%s", user_id)
