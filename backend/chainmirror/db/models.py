"""
Chain Mirror - SQLAlchemy ORM Models
SQL backing for the mirror store
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from chainmirror.core.types import utc_now


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class MirrorRecordRow(Base):
    """One mirrored ledger entity."""

    __tablename__ = "mirror_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    # Relationships
    blobs: Mapped[list["MirrorBlobRow"]] = relationship(
        back_populates="record", cascade="all, delete-orphan", lazy="selectin"
    )

    # Not unique; the reconciler keeps one row per key.
    __table_args__ = (
        Index("idx_mirror_records_key", "entity_type", "external_id"),
    )


class MirrorBlobRow(Base):
    """Attachment bytes for a mirrored record, tagged with their content hash."""

    __tablename__ = "mirror_blobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("mirror_records.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    record: Mapped["MirrorRecordRow"] = relationship(back_populates="blobs")

    __table_args__ = (
        Index("idx_mirror_blobs_record", "record_id", "name"),
    )
