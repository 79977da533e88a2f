import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cojam.core.db import Base
from cojam.models.enums import SessionStatus


def new_join_token() -> str:
    return str(uuid.uuid4())


class LiveSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        CheckConstraint("max_participants BETWEEN 2 AND 10", name="ck_sessions_max_participants"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    host_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)

    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price: Mapped[float | None] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=True)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    is_archive_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SessionStatus.SCHEDULED.value, index=True
    )
    scheduled_start_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recording_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # invite links: /invite/{join_token}
    join_token: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False, default=new_join_token
    )

    # optimistic concurrency: every UPDATE checks and bumps it
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    host = relationship("User", foreign_keys=[host_user_id])
    participants = relationship(
        "SessionParticipant",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="SessionParticipant.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def participant_ids(self) -> list[int]:
        return [p.user_id for p in self.participants]

    def is_host(self, user_id: int | None) -> bool:
        return user_id is not None and self.host_user_id == user_id

    def has_participant(self, user_id: int | None) -> bool:
        return user_id is not None and user_id in self.participant_ids
