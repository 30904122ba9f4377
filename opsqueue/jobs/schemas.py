"""
Job argument and API schemas.

Each argument model names its kind and the insert options producers get by
default, so the queue, priority and retry budget of a kind live in one place.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


@dataclass(frozen=True)
class InsertOpts:
    """Queue placement and retry budget for a job kind."""

    queue: str
    priority: int
    max_attempts: int


class JobArgs(BaseModel):
    """Base class for typed job arguments."""

    model_config = ConfigDict(extra="ignore")

    kind: ClassVar[str]
    insert_opts: ClassVar[InsertOpts]


class PresignArgs(JobArgs):
    kind: ClassVar[str] = "s3_presign"
    # Presign failures are network/service errors, so the budget is large
    insert_opts: ClassVar[InsertOpts] = InsertOpts(
        queue="s3_signer", priority=1, max_attempts=25
    )

    request_id: UUID
    file_name: str
    file_type: str = ""
    entity_type: str
    entity_id: str


class ThumbnailArgs(JobArgs):
    kind: ClassVar[str] = "thumbnail_generate"
    insert_opts: ClassVar[InsertOpts] = InsertOpts(
        queue="thumbnails", priority=1, max_attempts=25
    )

    file_id: UUID
    storage_key: str | None = None
    media_kind: Literal["image", "pdf"] | None = None
    bucket: str | None = None


class SendNotificationArgs(JobArgs):
    kind: ClassVar[str] = "send_notification"
    insert_opts: ClassVar[InsertOpts] = InsertOpts(
        queue="notifications", priority=2, max_attempts=5
    )

    notification_id: UUID


class TemplatePartsArgs(JobArgs):
    """Template bodies to check, either named parts or one bare string."""

    validation_id: UUID
    subject_template: str = ""
    html_template: str = ""
    text_template: str = ""
    sms_template: str = ""
    template_string: str | None = None
    is_html: bool = False

    def parts(self) -> list[tuple[str, str, bool]]:
        """Non-empty parts as (part_name, source, is_html)."""
        if self.template_string is not None:
            return [("template", self.template_string, self.is_html)]
        named = [
            ("subject", self.subject_template, False),
            ("html", self.html_template, True),
            ("text", self.text_template, False),
            ("sms", self.sms_template, False),
        ]
        return [part for part in named if part[1]]


class ValidateTemplateArgs(TemplatePartsArgs):
    kind: ClassVar[str] = "validate_template_parts"
    # Interactive authoring feedback outranks queued sends on the same queue
    insert_opts: ClassVar[InsertOpts] = InsertOpts(
        queue="notifications", priority=1, max_attempts=3
    )


class PreviewTemplateArgs(TemplatePartsArgs):
    kind: ClassVar[str] = "preview_template_parts"
    insert_opts: ClassVar[InsertOpts] = InsertOpts(
        queue="notifications", priority=1, max_attempts=3
    )

    sample_entity_data: Any = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_entity_data_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and "sample_entity_data" not in data:
            if "entity_data" in data:
                data = {**data, "sample_entity_data": data["entity_data"]}
        return data


ARGS_BY_KIND: dict[str, type[JobArgs]] = {
    args.kind: args
    for args in (
        PresignArgs,
        ThumbnailArgs,
        SendNotificationArgs,
        ValidateTemplateArgs,
        PreviewTemplateArgs,
    )
}


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    queue: str
    priority: int
    args: dict[str, Any]
    state: str
    attempt: int
    max_attempts: int
    errors: list[dict[str, Any]]
    scheduled_at: datetime
    attempted_at: datetime | None = None
    attempted_by: str | None = None
    finalized_at: datetime | None = None
    created_at: datetime


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_state: dict[str, int]
    by_queue: dict[str, dict[str, int]]
    queue_depth: int  # available + running + retryable
