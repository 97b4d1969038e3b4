"""Publish ORM models.

This module defines the RateLimitEntry model holding the time of each
user's last accepted publish.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from bundlepipe.db import Base


class RateLimitEntry(Base):
    """ORM model for a rate limit key.

    Attributes:
        key: Rate limit key, e.g. 'publish:<uid>'.
        ts: Time of the last accepted call in epoch ms.
        expires_at: When the entry stops limiting.
    """

    __tablename__ = "rate_limits"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    ts: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<RateLimitEntry(key={self.key!r}, ts={self.ts})>"


__all__ = ["RateLimitEntry"]
