from .enums import ApplicationAction, ApplicationStatus, SessionRole, SessionStatus
from .user import User
from .live_session import LiveSession
from .session_participant import SessionParticipant
from .session_application import SessionApplication

__all__ = [
    "ApplicationAction",
    "ApplicationStatus",
    "SessionRole",
    "SessionStatus",
    "User",
    "LiveSession",
    "SessionParticipant",
    "SessionApplication",
]
