"""Account profile ORM model, read for subscription tier resolution."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import String
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from keygate.db.base import Base


class Profile(Base):
    """Billing-owned account profile; only the tier column is read here."""

    __tablename__ = "profiles"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True)
    subscription_tier: Mapped[str | None] = mapped_column(String(32), nullable=True)
