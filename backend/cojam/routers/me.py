from __future__ import annotations

from fastapi import APIRouter, Depends

from cojam.auth.deps import get_current_user
from cojam.models import User

router = APIRouter(tags=["me"])


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "profile_image": user.profile_image,
        "active_session_id": user.active_session_id,
        "active_session_role": user.active_session_role,
    }
