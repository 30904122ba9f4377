"""
Result writer: the domain-row updates job handlers make.

Writes are flushed into the handler's session and never committed here, so
the final write of a successful job commits together with its completion.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.config.logging import get_logger
from opsqueue.notifications.models import Notification, TemplatePartResult, TemplateValidation
from opsqueue.storage.models import File, FileUploadRequest

logger = get_logger(__name__)


@dataclass(frozen=True)
class PartOutcome:
    """Validation or preview outcome for one template part."""

    part_name: str
    valid: bool
    error_message: str | None = None
    rendered_output: str | None = None


@dataclass(frozen=True)
class ThumbnailKeys:
    small: str
    medium: str
    large: str


class ResultWriter:
    async def presign_completed(
        self,
        session: AsyncSession,
        request: FileUploadRequest,
        presigned_url: str,
        file_id: UUID,
        s3_key: str,
    ) -> None:
        request.presigned_url = presigned_url
        request.file_id = file_id
        request.s3_key = s3_key
        request.status = "completed"
        await session.flush()

    async def thumbnails_completed(
        self, session: AsyncSession, file: File, keys: ThumbnailKeys
    ) -> None:
        file.s3_thumbnail_small_key = keys.small
        file.s3_thumbnail_medium_key = keys.medium
        file.s3_thumbnail_large_key = keys.large
        file.thumbnail_status = "completed"
        await session.flush()

    async def thumbnails_failed(self, session: AsyncSession, file: File) -> None:
        file.thumbnail_status = "error"
        await session.flush()

    async def notification_sent(
        self,
        session: AsyncSession,
        notification: Notification,
        channels_sent: list[str],
        channels_failed: list[str],
        error_message: str | None = None,
    ) -> None:
        notification.status = "sent"
        notification.channels_sent = channels_sent
        notification.channels_failed = channels_failed
        notification.error_message = error_message
        notification.sent_at = datetime.now(UTC)
        await session.flush()

    async def notification_failed(
        self,
        session: AsyncSession,
        notification: Notification,
        error_message: str,
        channels_failed: list[str] | None = None,
    ) -> None:
        notification.status = "failed"
        notification.error_message = error_message
        notification.channels_failed = channels_failed or []
        await session.flush()
        logger.warning(
            "Notification failed",
            notification_id=str(notification.id),
            template_name=notification.template_name,
            error=error_message,
        )

    async def validation_finished(
        self,
        session: AsyncSession,
        validation: TemplateValidation,
        outcomes: list[PartOutcome],
        error_message: str | None = None,
    ) -> None:
        """Store per-part outcomes; any error message fails the whole request."""
        for outcome in outcomes:
            session.add(
                TemplatePartResult(
                    validation_id=validation.id,
                    part_name=outcome.part_name,
                    valid=outcome.valid,
                    error_message=outcome.error_message,
                    rendered_output=outcome.rendered_output,
                )
            )
        validation.status = "failed" if error_message else "completed"
        validation.error_message = error_message
        validation.completed_at = datetime.now(UTC)
        await session.flush()
