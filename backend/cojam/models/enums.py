import enum


class SessionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    READY = "ready"
    LIVE = "live"
    ENDED = "ended"


class SessionRole(str, enum.Enum):
    HOST = "host"
    PERFORMER = "performer"
    VIEWER = "viewer"


class ApplicationStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELED = "canceled"


class ApplicationAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
