"""SQLAlchemy User model."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


class User(Base):
    """A phone-verified identity.

    Created on the first successful OTP verification for a phone number and
    updated in place on every later one.  Never deleted by the service.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(256), nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    crm_synced: Mapped[bool] = mapped_column(
        Boolean, default=False, doc="True only after a confirmed CRM lead creation"
    )
    crm_id: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)
    last_login: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("ix_users_created_at", "created_at"),)

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.name!r} phone={self.phone!r}>"
