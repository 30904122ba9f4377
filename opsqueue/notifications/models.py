from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsqueue.infra.database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class TimestampMixin:
    """Mixin for creation timestamp."""

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )


class NotificationTemplate(Base, TimestampMixin):
    """Authored template; edits only affect sends enqueued afterwards."""

    __tablename__ = "notification_templates"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    subject_template: Mapped[str] = mapped_column(Text, nullable=False, default="")
    html_template: Mapped[str] = mapped_column(Text, nullable=False, default="")
    text_template: Mapped[str] = mapped_column(Text, nullable=False, default="")
    sms_template: Mapped[str | None] = mapped_column(Text)


class Notification(Base, TimestampMixin):
    """
    One requested notification.

    `entity_data` is the entity snapshot captured when the send was requested;
    the sender renders against it and never re-reads the entity.
    """

    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    template_name: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    entity_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    channels: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    recipient_email: Mapped[str | None] = mapped_column(Text)
    recipient_phone: Mapped[str | None] = mapped_column(Text)

    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    error_message: Mapped[str | None] = mapped_column(Text)
    channels_sent: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    channels_failed: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    sent_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'sent', 'failed')", name="notifications_status_check"
        ),
        Index("ix_notifications_entity", "entity_type", "entity_id"),
    )


class TemplateValidation(Base, TimestampMixin):
    """Validation or preview request polled by the template editor."""

    __tablename__ = "template_validations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    error_message: Mapped[str | None] = mapped_column(Text)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True))

    parts: Mapped[list["TemplatePartResult"]] = relationship(
        back_populates="validation",
        cascade="all, delete-orphan",
        order_by="TemplatePartResult.part_name",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="template_validations_status_check",
        ),
    )


class TemplatePartResult(Base):
    """Outcome for one template part of a validation or preview."""

    __tablename__ = "template_part_results"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    validation_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("template_validations.id", ondelete="CASCADE"), nullable=False
    )
    part_name: Mapped[str] = mapped_column(Text, nullable=False)
    valid: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    rendered_output: Mapped[str | None] = mapped_column(Text)

    validation: Mapped["TemplateValidation"] = relationship(back_populates="parts")
