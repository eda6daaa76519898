"""
Relational models for materials and the processing queue.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every column in this schema uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class MaterialStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Material(Base):
    __tablename__ = "materials"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(255))
    course_id: Mapped[str] = mapped_column(String(64), index=True)
    file_url: Mapped[str] = mapped_column(Text)
    public_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resource_type: Mapped[str] = mapped_column(String(16), default="raw")
    status: Mapped[MaterialStatus] = mapped_column(
        Enum(MaterialStatus, native_enum=False, length=16),
        default=MaterialStatus.PENDING,
        index=True,
    )
    chunks_count: Mapped[int] = mapped_column(Integer, default=0)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    processing_completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "course_id": self.course_id,
            "file_url": self.file_url,
            "public_id": self.public_id,
            "status": self.status.value,
            "chunks_count": self.chunks_count,
            "processing_error": self.processing_error,
            "processing_started_at": _iso(self.processing_started_at),
            "processing_completed_at": _iso(self.processing_completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ProcessingQueueEntry(Base):
    __tablename__ = "processing_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    # one live entry per material
    material_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("materials.id", ondelete="CASCADE"),
        unique=True,
    )
    enqueued_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    available_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "material_id": self.material_id,
            "enqueued_at": _iso(self.enqueued_at),
            "available_at": _iso(self.available_at),
            "claimed_at": _iso(self.claimed_at),
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class MaterialRecord:
    """Detached, read-only view of a material handed to the pipeline."""

    id: str
    title: str
    course_id: str
    file_url: str
    status: MaterialStatus
    public_id: str | None = None
    resource_type: str = "raw"

    @classmethod
    def from_row(cls, row: Material) -> "MaterialRecord":
        return cls(
            id=row.id,
            title=row.title,
            course_id=row.course_id,
            file_url=row.file_url,
            status=row.status,
            public_id=row.public_id,
            resource_type=row.resource_type,
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
