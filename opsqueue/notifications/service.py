"""
Producer helpers for notifications and template authoring.

Each helper adds the domain row and its job to the caller's transaction; the
caller commits both together.
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.jobs.models import Job
from opsqueue.jobs.schemas import PreviewTemplateArgs, SendNotificationArgs, ValidateTemplateArgs
from opsqueue.jobs.store import JobStore
from opsqueue.notifications.models import Notification, TemplateValidation


class NotificationService:
    """Enqueue sends, validations and previews."""

    def __init__(self, store: JobStore):
        self.store = store

    async def create_notification(
        self,
        session: AsyncSession,
        *,
        template_name: str,
        entity_type: str,
        entity_id: str,
        entity_data: dict[str, Any],
        channels: list[str] | None = None,
        recipient_email: str | None = None,
        recipient_phone: str | None = None,
    ) -> tuple[Notification, Job]:
        """
        Record a notification request with its entity snapshot.

        The snapshot is stored as given; later changes to the entity do not
        affect what is sent.
        """
        notification = Notification(
            template_name=template_name,
            entity_type=entity_type,
            entity_id=str(entity_id),
            entity_data=entity_data,
            channels=channels or ["email"],
            recipient_email=recipient_email,
            recipient_phone=recipient_phone,
            status="pending",
        )
        session.add(notification)
        await session.flush()

        job = await self.store.insert(
            session, SendNotificationArgs(notification_id=notification.id)
        )
        return notification, job

    async def request_validation(
        self,
        session: AsyncSession,
        *,
        subject_template: str = "",
        html_template: str = "",
        text_template: str = "",
        sms_template: str = "",
    ) -> tuple[TemplateValidation, Job]:
        validation = TemplateValidation(status="pending")
        session.add(validation)
        await session.flush()

        job = await self.store.insert(
            session,
            ValidateTemplateArgs(
                validation_id=validation.id,
                subject_template=subject_template,
                html_template=html_template,
                text_template=text_template,
                sms_template=sms_template,
            ),
        )
        return validation, job

    async def request_preview(
        self,
        session: AsyncSession,
        *,
        sample_entity_data: Any,
        template_string: str | None = None,
        is_html: bool = False,
        subject_template: str = "",
        html_template: str = "",
        text_template: str = "",
        sms_template: str = "",
    ) -> tuple[TemplateValidation, Job]:
        """Preview one template string, or the named parts when none is given."""
        validation = TemplateValidation(status="pending")
        session.add(validation)
        await session.flush()

        job = await self.store.insert(
            session,
            PreviewTemplateArgs(
                validation_id=validation.id,
                template_string=template_string,
                is_html=is_html,
                subject_template=subject_template,
                html_template=html_template,
                text_template=text_template,
                sms_template=sms_template,
                sample_entity_data=sample_entity_data,
            ),
        )
        return validation, job
