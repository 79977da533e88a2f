from __future__ import annotations

import jwt
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from cojam.auth.jwt_tokens import JwtConfig, default_jwt_config, user_id_from_token
from cojam.core.config import settings
from cojam.core.db import get_db
from cojam.core.errors import NotFound, Unauthenticated
from cojam.models import User


def get_jwt_config() -> JwtConfig:
    return default_jwt_config()


def extract_token(request: Request) -> str | None:
    """Bearer header wins over the cookie."""
    header = request.headers.get("Authorization") or ""
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.cookies.get(settings.COOKIE_NAME) or None


def resolve_user(db: Session, cfg: JwtConfig, token: str) -> User:
    try:
        user_id = user_id_from_token(cfg, token)
    except (jwt.PyJWTError, KeyError, ValueError):
        raise Unauthenticated("INVALID_TOKEN", "Invalid token")

    user = db.get(User, user_id)
    if user is None:
        raise NotFound("USER_NOT_FOUND", "User not found")
    return user


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    cfg: JwtConfig = Depends(get_jwt_config),
) -> User:
    token = extract_token(request)
    if not token:
        raise Unauthenticated("NOT_AUTHENTICATED", "Not authenticated")

    user = resolve_user(db, cfg, token)
    request.state.user_id = user.id
    return user


def get_optional_user(
    request: Request,
    db: Session = Depends(get_db),
    cfg: JwtConfig = Depends(get_jwt_config),
) -> User | None:
    token = extract_token(request)
    if not token:
        return None
    try:
        user = resolve_user(db, cfg, token)
    except (Unauthenticated, NotFound):
        return None
    request.state.user_id = user.id
    return user
