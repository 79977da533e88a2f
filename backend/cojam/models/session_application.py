from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cojam.core.db import Base
from cojam.models.enums import ApplicationStatus


class SessionApplication(Base):
    __tablename__ = "session_applications"
    __table_args__ = (
        # one record per (session, applicant); re-applying overwrites it
        UniqueConstraint("session_id", "user_id", name="uq_session_application"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    session_id: Mapped[int] = mapped_column(ForeignKey("sessions.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ApplicationStatus.PENDING.value)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    session = relationship("LiveSession")
    user = relationship("User")
