"""
ORM models for the association-set synchronizer.

Field elements exceed 64 bits, so roots and labels are stored as decimal
strings.
"""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class AspTreeState(Base):
    """One row per pool scope: the tree summary plus the sync cursor."""

    __tablename__ = "asp_tree_state"

    scope: Mapped[str] = mapped_column(String(80), primary_key=True)
    root: Mapped[str] = mapped_column(String(80), default="0")
    size: Mapped[int] = mapped_column(Integer, default=0)
    # number of indexer deposits already consumed (ordered by block, log index)
    cursor_offset: Mapped[int] = mapped_column(Integer, default=0)
    last_block: Mapped[int] = mapped_column(BigInteger, default=0)
    last_published_root: Mapped[str] = mapped_column(String(80), default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def __repr__(self) -> str:
        return f"<AspTreeState scope={self.scope} size={self.size} cursor={self.cursor_offset}>"


class AspLabel(Base):
    """Approved label at a fixed leaf position of a scope's tree."""

    __tablename__ = "asp_labels"
    __table_args__ = (
        UniqueConstraint("scope", "label", name="uq_asp_labels_scope_label"),
        UniqueConstraint("scope", "leaf_index", name="uq_asp_labels_scope_index"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(80), index=True)
    leaf_index: Mapped[int] = mapped_column(Integer)
    label: Mapped[str] = mapped_column(String(80))
    block_number: Mapped[int] = mapped_column(BigInteger, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
