"""Core SQLAlchemy models (2.x style) for submissions and admin profiles.

Tags and scores are stored as JSON so the schema runs on PostgreSQL in
production and SQLite in tests.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Institution(str, Enum):
    """Institutions an alumnus may have attended."""
    SJCBA = "SJCBA"
    SJPUC = "SJPUC"
    SJIT = "SJIT"
    OTHER = "Other"


class ReviewStatus(str, Enum):
    """Admin review state of a submission."""
    PENDING = "pending"
    APPROVED = "approved"
    FLAGGED = "flagged"


class AdminRole(str, Enum):
    """Administrator roles."""
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"
    REVIEWER = "reviewer"


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Submission(Base):
    """Alumni memory submissions."""
    __tablename__ = "alumni_submissions"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    institution: Mapped[str] = mapped_column(String(32), nullable=False)
    batch_year: Mapped[int] = mapped_column(Integer, nullable=False)
    roll_number: Mapped[str] = mapped_column(String(100), nullable=False)
    date_of_birth: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50))
    message_text: Mapped[str | None] = mapped_column(Text)
    audio_path: Mapped[str | None] = mapped_column(String(512))
    video_path: Mapped[str | None] = mapped_column(String(512))
    consent_given: Mapped[bool] = mapped_column(Boolean, nullable=False)

    # Theme tagging
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    top_tag: Mapped[str] = mapped_column(String(64), nullable=False)
    tag_scores: Mapped[dict] = mapped_column(JSON, nullable=False)

    # Review
    review_status: Mapped[str] = mapped_column(String(20), default=ReviewStatus.PENDING.value, nullable=False)
    admin_notes: Mapped[str | None] = mapped_column(Text)
    rejected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rejection_reason: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("ix_alumni_submissions_created_at", "created_at"),
        Index("ix_alumni_submissions_institution", "institution"),
        Index("ix_alumni_submissions_batch_year", "batch_year"),
        Index("ix_alumni_submissions_review_status", "review_status"),
        Index("ix_alumni_submissions_top_tag", "top_tag"),
    )

    @property
    def media_paths(self) -> list[str]:
        return [p for p in (self.audio_path, self.video_path) if p]


class AdminProfile(Base):
    """Administrator accounts known to the portal."""
    __tablename__ = "admin_profiles"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True, index=True)
    role: Mapped[str] = mapped_column(String(20), default=AdminRole.ADMIN.value, nullable=False)
    first_login: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(128))  # informational, no FK
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
