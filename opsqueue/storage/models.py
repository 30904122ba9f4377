from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import TIMESTAMP, CheckConstraint, Index, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from opsqueue.infra.database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class FileUploadRequest(Base):
    """Client request for an upload URL; filled in by the presign job."""

    __tablename__ = "file_upload_requests"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(Text, nullable=False, default="")
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)

    presigned_url: Mapped[str | None] = mapped_column(Text)
    file_id: Mapped[UUID | None] = mapped_column(Uuid)
    s3_key: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'completed')", name="file_upload_requests_status_check"
        ),
    )


class File(Base):
    """Uploaded object and its derived thumbnails."""

    __tablename__ = "files"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(Text, nullable=False, default="")
    s3_bucket: Mapped[str] = mapped_column(Text, nullable=False)
    s3_original_key: Mapped[str] = mapped_column(Text, nullable=False)

    thumbnail_status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    s3_thumbnail_small_key: Mapped[str | None] = mapped_column(Text)
    s3_thumbnail_medium_key: Mapped[str | None] = mapped_column(Text)
    s3_thumbnail_large_key: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "thumbnail_status IN ('pending', 'completed', 'error')",
            name="files_thumbnail_status_check",
        ),
        Index("ix_files_entity", "entity_type", "entity_id"),
    )
