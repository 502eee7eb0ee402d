"""Taxonomy version chain ORM models."""
from sqlalchemy import String, Text, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from src.db.base import Base, utcnow
from datetime import datetime


class TaxonomyVersion(Base):
    """One immutable taxonomy document revision.

    Rows are append-only. ``content`` holds the canonical JSON document so a
    rollback can restore the exact bytes of an earlier version.

    Attributes:
        version_id: Opaque identifier derived from parent version and proposal id
        store_id: Store scope owning the chain
        parent_version: Version this one was derived from (None for the seed)
        proposal_id: Proposal whose apply produced this version
        content: Canonical JSON document
        content_hash: sha256 of ``content``
    """

    __tablename__ = "taxonomy_versions"

    version_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    store_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    parent_version: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("taxonomy_versions.version_id", ondelete="RESTRICT"),
        nullable=True,
    )
    proposal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<TaxonomyVersion(id='{self.version_id}', store='{self.store_id}')>"


class TaxonomyHead(Base):
    """Pointer to the current taxonomy version of a store.

    Every mutation is a compare-and-set on ``current_version``.
    """

    __tablename__ = "taxonomy_heads"

    store_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    current_version: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("taxonomy_versions.version_id", ondelete="RESTRICT"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<TaxonomyHead(store='{self.store_id}', version='{self.current_version}')>"
