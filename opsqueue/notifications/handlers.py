"""
Job handlers for notification sending and template authoring feedback.

Content problems (missing template, bad syntax, malformed snapshot) are
written to the domain row and the job completes; only delivery failures that
a retry can fix propagate to the retry policy.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.config.logging import get_logger
from opsqueue.config.settings import Settings
from opsqueue.core.exceptions import TransientJobError
from opsqueue.infra.results import PartOutcome, ResultWriter
from opsqueue.jobs.models import Job
from opsqueue.jobs.schemas import (
    PreviewTemplateArgs,
    SendNotificationArgs,
    TemplatePartsArgs,
    ValidateTemplateArgs,
)
from opsqueue.notifications.email import EmailDeliveryError, EmailSender, is_test_email
from opsqueue.notifications.models import Notification, NotificationTemplate, TemplateValidation
from opsqueue.notifications.renderer import (
    RenderedNotification,
    Renderer,
    TemplateBodies,
    TemplateContentError,
)

logger = get_logger(__name__)


class SendNotificationHandler:
    """
    Render a notification from its stored snapshot and deliver it.

    Payload expected:
    {
        "notification_id": "uuid-string"
    }
    """

    def __init__(
        self,
        settings: Settings,
        renderer: Renderer,
        email: EmailSender,
        results: ResultWriter,
    ):
        self.settings = settings
        self.renderer = renderer
        self.email = email
        self.results = results

    async def handle(self, session: AsyncSession, job: Job) -> dict[str, Any] | None:
        args = SendNotificationArgs.model_validate(job.args)
        notification_id = args.notification_id

        notification = await session.get(Notification, notification_id)
        if notification is None:
            logger.warning("Notification not found", notification_id=str(notification_id))
            return {"status": "skipped", "reason": "notification_not_found"}
        if notification.status == "sent":
            return {"status": "skipped", "reason": "already_sent"}

        template = (
            await session.execute(
                select(NotificationTemplate).where(
                    NotificationTemplate.name == notification.template_name
                )
            )
        ).scalar_one_or_none()
        if template is None:
            await self.results.notification_failed(
                session, notification, f"template not found: {notification.template_name}"
            )
            return {"status": "failed", "reason": "template_not_found"}

        bodies = TemplateBodies(
            subject=template.subject_template,
            html=template.html_template,
            text=template.text_template,
            sms=template.sms_template,
        )
        try:
            rendered = self.renderer.render(bodies, notification.entity_data)
        except TemplateContentError as e:
            await self.results.notification_failed(session, notification, e.message)
            return {"status": "failed", "reason": "render_error", "part": e.part}

        sent, failed, errors, retry = await self._deliver(notification, rendered)

        if sent:
            await self.results.notification_sent(
                session, notification, sent, failed, "; ".join(errors) or None
            )
            return {"status": "sent", "channels_sent": sent, "channels_failed": failed}

        await self.results.notification_failed(
            session, notification, "; ".join(errors) or "no channels requested", failed
        )
        if retry:
            # Keep the failed status visible while the job backs off
            await session.commit()
            raise TransientJobError("; ".join(errors))
        return {"status": "failed", "channels_failed": failed}

    async def _deliver(
        self, notification: Notification, rendered: RenderedNotification
    ) -> tuple[list[str], list[str], list[str], bool]:
        sent: list[str] = []
        failed: list[str] = []
        errors: list[str] = []
        retry = False

        for channel in notification.channels:
            if channel == "email":
                try:
                    await self._send_email(notification, rendered)
                    sent.append(channel)
                except EmailDeliveryError as e:
                    failed.append(channel)
                    errors.append(f"email: {e.message}")
                    retry = retry or e.transient
            elif channel == "sms":
                failed.append(channel)
                errors.append("sms: no SMS transport configured")
            else:
                failed.append(channel)
                errors.append(f"{channel}: unsupported channel")

        return sent, failed, errors, retry

    async def _send_email(
        self, notification: Notification, rendered: RenderedNotification
    ) -> None:
        recipient = notification.recipient_email
        if not recipient:
            raise EmailDeliveryError("no recipient email address", transient=False)

        if self.settings.skip_test_emails and is_test_email(recipient):
            logger.info(
                "Skipping email to test domain",
                notification_id=str(notification.id),
                to=recipient,
            )
            return

        await self.email.send(recipient, rendered.subject, rendered.html, rendered.text)


class _TemplatePartsHandler:
    args_model: type[TemplatePartsArgs]

    def __init__(self, renderer: Renderer, results: ResultWriter):
        self.renderer = renderer
        self.results = results

    async def _load(self, session: AsyncSession, job: Job) -> tuple[Any, TemplateValidation | None]:
        args = self.args_model.model_validate(job.args)
        validation_id = args.validation_id
        validation = await session.get(TemplateValidation, validation_id)
        if validation is None:
            logger.warning("Template validation not found", validation_id=str(validation_id))
            return args, None
        if validation.status != "pending":
            return args, None
        return args, validation


class ValidateTemplateHandler(_TemplatePartsHandler):
    """Parse every supplied part in its flavour and report per-part errors."""

    args_model = ValidateTemplateArgs

    async def handle(self, session: AsyncSession, job: Job) -> dict[str, Any] | None:
        args, validation = await self._load(session, job)
        if validation is None:
            return {"status": "skipped"}

        parts = args.parts()
        if not parts:
            await self.results.validation_finished(
                session, validation, [], "no template parts supplied"
            )
            return {"status": "failed"}

        outcomes = []
        for name, source, is_html in parts:
            try:
                self.renderer.validate(source, is_html, name)
                outcomes.append(PartOutcome(part_name=name, valid=True))
            except TemplateContentError as e:
                outcomes.append(PartOutcome(part_name=name, valid=False, error_message=e.message))

        await self.results.validation_finished(session, validation, outcomes)
        return {
            "status": "completed",
            "invalid_parts": [o.part_name for o in outcomes if not o.valid],
        }


class PreviewTemplateHandler(_TemplatePartsHandler):
    """Render supplied parts against sample entity data."""

    args_model = PreviewTemplateArgs

    async def handle(self, session: AsyncSession, job: Job) -> dict[str, Any] | None:
        args, validation = await self._load(session, job)
        if validation is None:
            return {"status": "skipped"}

        try:
            entity = self.renderer.load_entity(args.sample_entity_data)
        except TemplateContentError as e:
            await self.results.validation_finished(session, validation, [], e.message)
            return {"status": "failed", "reason": "invalid_sample_data"}

        context = self.renderer.build_context(entity)
        outcomes = []
        for name, source, is_html in args.parts():
            try:
                output = self.renderer.render_part(source, is_html, context, name)
                outcomes.append(PartOutcome(part_name=name, valid=True, rendered_output=output))
            except TemplateContentError as e:
                outcomes.append(PartOutcome(part_name=name, valid=False, error_message=e.message))

        await self.results.validation_finished(session, validation, outcomes)
        return {"status": "completed", "parts": len(outcomes)}
