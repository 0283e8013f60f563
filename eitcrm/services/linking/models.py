"""Linking persistence models: inbound update inbox, pending links, invites."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from eitcrm.common.db import Base


class TelegramUpdate(Base):
    """One row per Telegram `update_id`; the webhook's dedupe inbox."""

    __tablename__ = "telegram_updates"

    update_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    payload: Mapped[dict] = mapped_column(JSON)
    kind: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="RECEIVED", index=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TelegramPendingLink(Base):
    """Unconfirmed chat-to-parent proposal; one in-flight proposal per chat."""

    __tablename__ = "telegram_pending_links"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    chat_id: Mapped[str] = mapped_column(String, unique=True)
    parent_id: Mapped[str] = mapped_column(ForeignKey("parents.id"), index=True)
    student_id: Mapped[str] = mapped_column(ForeignKey("students.id"))
    status: Mapped[str] = mapped_column(String, default="PENDING")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ParentInvite(Base):
    """One-time code that authorizes binding a chat to a student's parent."""

    __tablename__ = "parent_invites"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    code: Mapped[str] = mapped_column(String, unique=True)
    student_id: Mapped[str] = mapped_column(ForeignKey("students.id"), index=True)
    status: Mapped[str] = mapped_column(String, default="ACTIVE")
    parent_id: Mapped[str | None] = mapped_column(ForeignKey("parents.id"), nullable=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
