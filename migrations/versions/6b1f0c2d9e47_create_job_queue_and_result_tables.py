"""create job queue and result tables

Revision ID: 6b1f0c2d9e47
Revises:
Create Date: 2025-09-15 10:12:40.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "6b1f0c2d9e47"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("kind", sa.Text, nullable=False, comment="Handler selector"),
        sa.Column(
            "queue",
            sa.Text,
            nullable=False,
            server_default="default",
            comment="Concurrency partition",
        ),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            server_default="1",
            comment="Priority 1-4, lower is served first",
        ),
        sa.Column(
            "args",
            postgresql.JSONB,
            nullable=False,
            server_default="{}",
            comment="Kind-specific payload",
        ),
        sa.Column(
            "state",
            sa.Text,
            nullable=False,
            server_default="available",
            comment="available|running|retryable|completed|discarded",
        ),
        sa.Column(
            "attempt",
            sa.SmallInteger,
            nullable=False,
            server_default="0",
            comment="Attempts started so far",
        ),
        sa.Column(
            "max_attempts",
            sa.SmallInteger,
            nullable=False,
            server_default="25",
            comment="Attempt ceiling",
        ),
        sa.Column(
            "errors",
            postgresql.JSONB,
            nullable=False,
            server_default="[]",
            comment="One entry per failed attempt",
        ),
        sa.Column(
            "scheduled_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest time the job may be claimed",
        ),
        sa.Column(
            "attempted_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Start of the latest attempt",
        ),
        sa.Column(
            "attempted_by", sa.Text, nullable=True, comment="Worker holding the latest claim"
        ),
        sa.Column("finalized_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "state IN ('available', 'running', 'retryable', 'completed', 'discarded')",
            name="jobs_state_check",
        ),
        sa.CheckConstraint("priority BETWEEN 1 AND 4", name="jobs_priority_check"),
        sa.CheckConstraint("max_attempts > 0", name="jobs_max_attempts_check"),
        sa.CheckConstraint("attempt <= max_attempts", name="jobs_attempt_ceiling_check"),
    )

    # Claim query: state + queue equality, then priority/scheduled_at/id ordering
    op.create_index(
        "ix_jobs_prioritized_fetching",
        "jobs",
        ["state", "queue", "priority", "scheduled_at", "id"],
    )
    op.create_index("ix_jobs_kind", "jobs", ["kind"])

    op.create_table(
        "notification_templates",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text, nullable=False, unique=True),
        sa.Column("entity_type", sa.Text, nullable=False),
        sa.Column("subject_template", sa.Text, nullable=False, server_default=""),
        sa.Column("html_template", sa.Text, nullable=False, server_default=""),
        sa.Column("text_template", sa.Text, nullable=False, server_default=""),
        sa.Column("sms_template", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("template_name", sa.Text, nullable=False),
        sa.Column("entity_type", sa.Text, nullable=False),
        sa.Column("entity_id", sa.Text, nullable=False),
        sa.Column(
            "entity_data",
            sa.JSON,
            nullable=False,
            server_default="{}",
            comment="Entity snapshot captured at enqueue time",
        ),
        sa.Column("channels", sa.JSON, nullable=False, server_default='["email"]'),
        sa.Column("recipient_email", sa.Text, nullable=True),
        sa.Column("recipient_phone", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("channels_sent", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("channels_failed", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'failed')", name="notifications_status_check"
        ),
    )
    op.create_index("ix_notifications_entity", "notifications", ["entity_type", "entity_id"])

    op.create_table(
        "template_validations",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="template_validations_status_check",
        ),
    )

    op.create_table(
        "template_part_results",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "validation_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("template_validations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("part_name", sa.Text, nullable=False),
        sa.Column("valid", sa.Boolean, nullable=False),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("rendered_output", sa.Text, nullable=True),
    )

    op.create_table(
        "file_upload_requests",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("file_name", sa.Text, nullable=False),
        sa.Column("file_type", sa.Text, nullable=False, server_default=""),
        sa.Column("entity_type", sa.Text, nullable=False),
        sa.Column("entity_id", sa.Text, nullable=False),
        sa.Column("presigned_url", sa.Text, nullable=True),
        sa.Column("file_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("s3_key", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'completed')", name="file_upload_requests_status_check"
        ),
    )

    op.create_table(
        "files",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("entity_type", sa.Text, nullable=False),
        sa.Column("entity_id", sa.Text, nullable=False),
        sa.Column("file_name", sa.Text, nullable=False),
        sa.Column("file_type", sa.Text, nullable=False, server_default=""),
        sa.Column("s3_bucket", sa.Text, nullable=False),
        sa.Column("s3_original_key", sa.Text, nullable=False),
        sa.Column("thumbnail_status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("s3_thumbnail_small_key", sa.Text, nullable=True),
        sa.Column("s3_thumbnail_medium_key", sa.Text, nullable=True),
        sa.Column("s3_thumbnail_large_key", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "thumbnail_status IN ('pending', 'completed', 'error')",
            name="files_thumbnail_status_check",
        ),
    )
    op.create_index("ix_files_entity", "files", ["entity_type", "entity_id"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("files")
    op.drop_table("file_upload_requests")
    op.drop_table("template_part_results")
    op.drop_table("template_validations")
    op.drop_table("notifications")
    op.drop_table("notification_templates")
    op.drop_table("jobs")
