"""Listing ORM model.

A Listing maps a logical published app to its current build and keeps a
bounded history of archived builds.
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from bundlepipe.db import Base
from bundlepipe.types import ArchivedVersion


class Listing(Base):
    """ORM model for a listing.

    Invariant: ``build_id`` never appears in ``archived_versions``.

    Attributes:
        id: Numeric listing id.
        slug: Unique URL slug derived from the title.
        owner_uid: Owning user.
        title: Display title.
        description: Display description.
        capabilities: Declared permissions and network access.
        visibility: 'public' or 'unlisted'.
        status: 'active' or 'inactive'; inactive listings do not count
            against the owner's quota.
        build_id: Current build, None until the first build is published.
        version: Current version number, 0 before the first publish.
        latest_version: Highest version ever assigned; promotion does not
            lower it.
        pending_build_id: Build submitted but not yet published.
        pending_version: Version the pending build will get.
        archived_versions: Previously-current builds.
    """

    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    owner_uid: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    capabilities: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)
    visibility: Mapped[str] = mapped_column(String(20), nullable=False, default="public")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    build_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    latest_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_build_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )
    pending_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    archived_versions: Mapped[list[ArchivedVersion]] = mapped_column(
        JSON, nullable=False, default=list
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of Listing."""
        return (
            f"<Listing(id={self.id}, slug='{self.slug}', build_id='{self.build_id}', "
            f"version={self.version})>"
        )

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "slug": self.slug,
            "ownerUid": self.owner_uid,
            "title": self.title,
            "description": self.description,
            "capabilities": self.capabilities or {},
            "visibility": self.visibility,
            "status": self.status,
            "buildId": self.build_id,
            "version": self.version,
            "pendingBuildId": self.pending_build_id,
            "pendingVersion": self.pending_version,
            "archivedVersions": list(self.archived_versions or []),
        }


__all__ = ["Listing"]
