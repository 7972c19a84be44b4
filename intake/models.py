"""Core SQLAlchemy models (2.x style) for actors and their submission history.

Soft deletion is explicit: every live-row query filters ``deleted_at IS NULL``
and the email unique index only covers live rows.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from config.content_rules import GENDER_LABELS


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every datetime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_uuid() -> str:
    return str(uuid.uuid4())


class ActorStatus(str, Enum):
    """Actor extraction status."""
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class Gender(str, Enum):
    """Canonical gender values."""
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    PREFER_NOT_TO_SAY = "prefer_not_to_say"


class ProcessingStatus(str, Enum):
    """Submission record status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


MAX_SUBMISSION_RETRIES = 3


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Actor(Base):
    """Actors table."""
    __tablename__ = "actors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, default=new_uuid)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    height: Mapped[str | None] = mapped_column(String(100))
    weight: Mapped[str | None] = mapped_column(String(100))
    gender: Mapped[str | None] = mapped_column(String(20), index=True)
    age: Mapped[int | None] = mapped_column(Integer)
    original_description: Mapped[str] = mapped_column(Text, nullable=False)
    extraction_payload: Mapped[dict | None] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ActorStatus.PENDING.value)
    processed_at: Mapped[datetime | None] = mapped_column(index=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(index=True)

    # Relationships
    submissions: Mapped[list[ActorSubmission]] = relationship(
        "ActorSubmission",
        back_populates="actor",
        cascade="all, delete-orphan",
        order_by="ActorSubmission.id",
        lazy="selectin",
    )

    __table_args__ = (
        # Uniqueness only among live rows so a soft-deleted email can be reused
        Index(
            "uq_actors_email_live",
            "email",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index("ix_actors_email_status", "email", "status"),
        Index("ix_actors_name", "first_name", "last_name"),
        Index("ix_actors_created_at_status", "created_at", "status"),
    )

    @validates("email")
    def _normalize_email(self, key: str, value: str) -> str:
        return value.strip().lower()

    @validates("gender")
    def _check_gender(self, key: str, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.value if isinstance(value, Gender) else value
        if value not in {g.value for g in Gender}:
            raise ValueError(f"Unsupported gender value: {value!r}")
        return value

    @validates("status")
    def _check_status(self, key: str, value: str) -> str:
        value = value.value if isinstance(value, ActorStatus) else value
        if value not in {s.value for s in ActorStatus}:
            raise ValueError(f"Unsupported actor status: {value!r}")
        return value

    @property
    def full_name(self) -> str:
        last_name = "" if self.last_name in (None, "null") else self.last_name
        return f"{self.first_name or ''} {last_name}".strip()

    @property
    def display_gender(self) -> str:
        return GENDER_LABELS.get(self.gender or "", "Not specified")

    @property
    def is_processed(self) -> bool:
        return self.status == ActorStatus.PROCESSED.value and self.processed_at is not None

    @property
    def has_failed(self) -> bool:
        return self.status == ActorStatus.FAILED.value

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def latest_submission(self) -> ActorSubmission | None:
        live = [s for s in self.submissions if s.deleted_at is None]
        return live[-1] if live else None


class ActorSubmission(Base):
    """Audit trail: one row per extraction attempt."""
    __tablename__ = "actor_submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, default=new_uuid)
    actor_id: Mapped[int] = mapped_column(ForeignKey("actors.id", ondelete="CASCADE"), nullable=False, index=True)
    submission_email: Mapped[str] = mapped_column(String(255), nullable=False)
    original_description: Mapped[str] = mapped_column(Text, nullable=False)
    request_payload: Mapped[dict | None] = mapped_column(JSON)
    response_payload: Mapped[dict | None] = mapped_column(JSON)
    processing_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ProcessingStatus.PENDING.value,
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    submitted_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(index=True)
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(String(512))
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column()

    # Relationship
    actor: Mapped[Actor] = relationship("Actor", back_populates="submissions")

    __table_args__ = (
        Index("ix_actor_submissions_actor_status", "actor_id", "processing_status"),
        Index("ix_actor_submissions_email_submitted", "submission_email", "submitted_at"),
        Index("ix_actor_submissions_status_retry", "processing_status", "retry_count"),
        Index("ix_actor_submissions_submitted_at", "submitted_at"),
    )

    @property
    def can_retry(self) -> bool:
        return (
            self.processing_status == ProcessingStatus.FAILED.value
            and self.retry_count < MAX_SUBMISSION_RETRIES
        )

    @property
    def processing_duration(self) -> int | None:
        """Whole seconds between submission and completion."""
        if self.processed_at is None or self.submitted_at is None:
            return None
        return int((self.processed_at - self.submitted_at).total_seconds())

    def mark_processing(self, request_payload: dict | None = None) -> None:
        self.processing_status = ProcessingStatus.PROCESSING.value
        self.request_payload = request_payload

    def mark_completed(self, response_payload: dict | None) -> None:
        self.processing_status = ProcessingStatus.COMPLETED.value
        self.response_payload = response_payload
        self.error_message = None
        self.processed_at = utcnow()

    def mark_failed(self, error_message: str) -> None:
        self.processing_status = ProcessingStatus.FAILED.value
        self.response_payload = None
        self.error_message = error_message
        self.retry_count = (self.retry_count or 0) + 1
        self.processed_at = utcnow()
