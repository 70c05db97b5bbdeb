from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


TAG_CONSTRAINT_NAME = "uq_anon_tags_window_tag"


class AnonTag(Base):
    __tablename__ = "anon_tags"
    __table_args__ = (
        # Store-level guarantee that one window never hands out the same tag twice.
        UniqueConstraint("window_start", "tag", name=TAG_CONSTRAINT_NAME),
        Index("ix_anon_tags_owner_window", "owner_id", "window_start"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Real account behind the tag; only moderators read this back.
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    tag: Mapped[int] = mapped_column(Integer, nullable=False)
    # Start of the UTC hour containing created_at.
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Set by the allocator from its time provider so windows stay consistent per call.
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AnonMute(Base):
    __tablename__ = "anon_muted"

    owner_id: Mapped[str] = mapped_column(String, primary_key=True)
    # Null end_date means muted until a moderator lifts it.
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
