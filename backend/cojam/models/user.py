from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from cojam.core.db import Base


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        # active-session pointer: both set or both null
        CheckConstraint(
            "(active_session_id IS NULL) = (active_session_role IS NULL)",
            name="ck_users_active_session_pair",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    profile_image: Mapped[str | None] = mapped_column(String(500), nullable=True)

    active_session_id: Mapped[int | None] = mapped_column(
        ForeignKey("sessions.id", use_alter=True, name="fk_users_active_session_id"),
        nullable=True,
        index=True,
    )
    # role stored as string, validated with SessionRole in code
    active_session_role: Mapped[str | None] = mapped_column(String(16), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def set_active_session(self, session_id: int, role: str) -> None:
        self.active_session_id = session_id
        self.active_session_role = role

    def clear_active_session(self) -> None:
        self.active_session_id = None
        self.active_session_role = None

    def is_active_in(self, session_id: int) -> bool:
        return self.active_session_id == session_id
