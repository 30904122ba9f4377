"""
Job table for the durable queue.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    CheckConstraint,
    Index,
    Integer,
    SmallInteger,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from opsqueue.infra.database import Base

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntegerPK = BigInteger().with_variant(Integer, "sqlite")
JSONDocument = JSON().with_variant(JSONB, "postgresql")


class JobState(str, Enum):
    """Job lifecycle states."""

    AVAILABLE = "available"
    RUNNING = "running"
    RETRYABLE = "retryable"
    COMPLETED = "completed"
    DISCARDED = "discarded"


FINALIZED_STATES = (JobState.COMPLETED.value, JobState.DISCARDED.value)


class Job(Base):
    """
    One unit of deferred work.

    Rows are created by producers inside their own transaction, mutated only
    by the worker holding the claim, and retained after finalization.
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(Text, nullable=False, comment="Handler selector")
    queue: Mapped[str] = mapped_column(
        Text, nullable=False, default="default", comment="Concurrency partition"
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=1,
        comment="Priority 1-4, lower is served first",
    )
    args: Mapped[dict[str, Any]] = mapped_column(
        JSONDocument, nullable=False, default=dict, comment="Kind-specific payload"
    )

    state: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobState.AVAILABLE.value,
        comment="available|running|retryable|completed|discarded",
    )
    attempt: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, comment="Attempts started so far"
    )
    max_attempts: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=25, comment="Attempt ceiling"
    )
    errors: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONDocument, nullable=False, default=list, comment="One entry per failed attempt"
    )

    scheduled_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        comment="Earliest time the job may be claimed",
    )
    attempted_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Start of the latest attempt"
    )
    attempted_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker holding the latest claim"
    )
    finalized_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        CheckConstraint(
            "state IN ('available', 'running', 'retryable', 'completed', 'discarded')",
            name="jobs_state_check",
        ),
        CheckConstraint("priority BETWEEN 1 AND 4", name="jobs_priority_check"),
        CheckConstraint("max_attempts > 0", name="jobs_max_attempts_check"),
        CheckConstraint("attempt <= max_attempts", name="jobs_attempt_ceiling_check"),
        Index(
            "ix_jobs_prioritized_fetching",
            "state",
            "queue",
            "priority",
            "scheduled_at",
            "id",
        ),
        Index("ix_jobs_kind", "kind"),
    )

    def is_finalized(self) -> bool:
        return self.state in FINALIZED_STATES

    def can_retry(self) -> bool:
        """Whether another attempt is allowed after the current one fails."""
        return self.attempt < self.max_attempts

    def last_error(self) -> str | None:
        if not self.errors:
            return None
        return self.errors[-1].get("error")
