"""StoredCredential model for the encrypted credential slot."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from unisearch.db.base import Base


class StoredCredential(Base):
    """Encrypted secret keyed by a (service, account) pair.

    The secret is a Fernet token wrapping the serialized OAuth token set.
    """

    __tablename__ = "stored_credentials"

    service: Mapped[str] = mapped_column(String(64), primary_key=True)
    account: Mapped[str] = mapped_column(String(64), primary_key=True)

    secret: Mapped[str] = mapped_column(Text, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
