"""
Relational job store: enqueue, exclusive claim, completion and retry policy.

Every method works inside the caller's transaction and never commits. A
producer enqueues in the same transaction as the domain row that needs the
job; the dispatcher completes a job in the same transaction as the handler's
final domain write.
"""

import random
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.config.logging import get_logger
from opsqueue.config.settings import Settings
from opsqueue.core.exceptions import ConflictError, NotFoundError
from opsqueue.jobs.models import Job, JobState
from opsqueue.jobs.schemas import JobArgs

logger = get_logger(__name__)


def calculate_retry_delay(
    attempt: int, base_delay_s: float, max_delay_s: float, jitter: bool = True
) -> float:
    """Exponential backoff: base * 2^(attempt-1), capped, with ±25% jitter."""
    delay = min(max_delay_s, base_delay_s * (2 ** max(0, attempt - 1)))
    if jitter:
        delay += delay * 0.25 * (2 * random.random() - 1)
    return max(0.0, delay)


class JobStore:
    """Job persistence and state transitions."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def _now(self, now: datetime | None = None) -> datetime:
        return now or datetime.now(UTC)

    async def enqueue(
        self,
        session: AsyncSession,
        kind: str,
        args: dict[str, Any],
        *,
        queue: str,
        priority: int = 1,
        max_attempts: int = 25,
        scheduled_at: datetime | None = None,
    ) -> Job:
        """Add one available job to the caller's transaction."""
        job = Job(
            kind=kind,
            queue=queue,
            priority=priority,
            args=args,
            state=JobState.AVAILABLE.value,
            attempt=0,
            max_attempts=max_attempts,
            errors=[],
            scheduled_at=scheduled_at or datetime.now(UTC),
        )
        session.add(job)
        await session.flush()

        logger.info(
            "Job enqueued",
            job_id=job.id,
            kind=kind,
            queue=queue,
            priority=priority,
        )
        return job

    async def insert(
        self,
        session: AsyncSession,
        args: JobArgs,
        *,
        priority: int | None = None,
        max_attempts: int | None = None,
        scheduled_at: datetime | None = None,
    ) -> Job:
        """Enqueue typed arguments using their kind's default insert options."""
        opts = args.insert_opts
        return await self.enqueue(
            session,
            args.kind,
            args.model_dump(mode="json"),
            queue=opts.queue,
            priority=priority if priority is not None else opts.priority,
            max_attempts=max_attempts if max_attempts is not None else opts.max_attempts,
            scheduled_at=scheduled_at,
        )

    async def claim(
        self, session: AsyncSession, queue: str, limit: int, worker_id: str
    ) -> list[Job]:
        """
        Claim up to `limit` available jobs in `queue`.

        Candidates are locked with FOR UPDATE SKIP LOCKED so concurrent
        claimants pass over each other's rows instead of blocking, and the
        state guard on the UPDATE keeps backends without row locks
        single-claimant as well.
        """
        if limit <= 0:
            return []

        now = datetime.now(UTC)
        candidates = (
            select(Job.id)
            .where(
                Job.state == JobState.AVAILABLE.value,
                Job.queue == queue,
                Job.scheduled_at <= now,
            )
            .order_by(Job.priority, Job.scheduled_at, Job.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await session.execute(
            update(Job)
            .where(Job.id.in_(candidates), Job.state == JobState.AVAILABLE.value)
            .values(
                state=JobState.RUNNING.value,
                attempt=Job.attempt + 1,
                attempted_at=now,
                attempted_by=worker_id,
            )
            .returning(Job)
            .execution_options(synchronize_session=False)
        )
        jobs = list(result.scalars().all())
        jobs.sort(key=lambda job: (job.priority, job.scheduled_at, job.id))
        return jobs

    async def _get_for_update(self, session: AsyncSession, job_id: int) -> Job | None:
        return await session.get(
            Job, job_id, with_for_update=True, populate_existing=True
        )

    async def complete(self, session: AsyncSession, job_id: int) -> bool:
        """Mark a running job completed. Returns False if the claim was lost."""
        result = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.state == JobState.RUNNING.value)
            .values(state=JobState.COMPLETED.value, finalized_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning("Completed job was no longer running", job_id=job_id)
            return False
        return True

    async def fail(
        self,
        session: AsyncSession,
        job_id: int,
        error: str,
        now: datetime | None = None,
    ) -> str | None:
        """
        Record a failed attempt and apply the retry policy.

        Returns the resulting state, or None when the job is no longer held.
        """
        job = await self._get_for_update(session, job_id)
        if job is None or job.state != JobState.RUNNING.value:
            logger.warning("Failed job was no longer running", job_id=job_id)
            return None

        now = self._now(now)
        job.errors = [*job.errors, self._error_entry(job, error, now)]

        if job.can_retry():
            delay = calculate_retry_delay(
                job.attempt,
                self.settings.job_backoff_base_ms / 1000,
                self.settings.job_max_backoff_s,
            )
            job.state = JobState.RETRYABLE.value
            job.scheduled_at = now + timedelta(seconds=delay)
        else:
            job.state = JobState.DISCARDED.value
            job.finalized_at = now

        await session.flush()
        return job.state

    async def discard(
        self,
        session: AsyncSession,
        job_id: int,
        error: str,
        now: datetime | None = None,
    ) -> bool:
        """Finalize a running job as discarded without further attempts."""
        job = await self._get_for_update(session, job_id)
        if job is None or job.state != JobState.RUNNING.value:
            return False

        now = self._now(now)
        job.errors = [*job.errors, self._error_entry(job, error, now)]
        job.state = JobState.DISCARDED.value
        job.finalized_at = now
        await session.flush()
        return True

    @staticmethod
    def _error_entry(job: Job, error: str, now: datetime) -> dict[str, Any]:
        return {"attempt": job.attempt, "at": now.isoformat(), "error": error}

    async def schedule_due(
        self, session: AsyncSession, now: datetime | None = None
    ) -> int:
        """Make retryable jobs whose backoff has elapsed available again."""
        result = await session.execute(
            update(Job)
            .where(
                Job.state == JobState.RETRYABLE.value,
                Job.scheduled_at <= self._now(now),
            )
            .values(state=JobState.AVAILABLE.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def rescue_stuck(
        self,
        session: AsyncSession,
        rescue_after_s: float,
        now: datetime | None = None,
    ) -> int:
        """
        Return abandoned running jobs to the retry path.

        A job still running `rescue_after_s` after its attempt started is
        assumed to belong to a dead or hard-stopped worker.
        """
        now = self._now(now)
        cutoff = now - timedelta(seconds=rescue_after_s)
        result = await session.execute(
            select(Job)
            .where(Job.state == JobState.RUNNING.value, Job.attempted_at <= cutoff)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        stuck = list(result.scalars().all())

        for job in stuck:
            job.errors = [
                *job.errors,
                self._error_entry(
                    job, f"job abandoned after {rescue_after_s}s in running state", now
                ),
            ]
            if job.can_retry():
                job.state = JobState.RETRYABLE.value
                job.scheduled_at = now
            else:
                job.state = JobState.DISCARDED.value
                job.finalized_at = now

        if stuck:
            await session.flush()
            logger.warning(
                "Rescued stuck jobs",
                job_ids=[job.id for job in stuck],
                rescue_after_s=rescue_after_s,
            )
        return len(stuck)

    async def get(self, session: AsyncSession, job_id: int) -> Job:
        job = await session.get(Job, job_id, populate_existing=True)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", {"job_id": job_id})
        return job

    async def list_jobs(
        self,
        session: AsyncSession,
        *,
        state: list[str] | None = None,
        queue: str | None = None,
        kind: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs newest first with optional filters."""
        query = select(Job)
        if state:
            query = query.where(Job.state.in_(state))
        if queue:
            query = query.where(Job.queue == queue)
        if kind:
            query = query.where(Job.kind == kind)

        total = (
            await session.execute(select(func.count()).select_from(query.subquery()))
        ).scalar() or 0

        result = await session.execute(
            query.order_by(Job.id.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars().all()), total

    async def stats(self, session: AsyncSession) -> dict[str, Any]:
        """Counts by state and by queue."""
        result = await session.execute(
            select(Job.queue, Job.state, func.count(Job.id)).group_by(Job.queue, Job.state)
        )

        by_state: dict[str, int] = {}
        by_queue: dict[str, dict[str, int]] = {}
        for queue, state, count in result.all():
            by_state[state] = by_state.get(state, 0) + count
            by_queue.setdefault(queue, {})[state] = count

        queue_depth = sum(
            by_state.get(state.value, 0)
            for state in (JobState.AVAILABLE, JobState.RUNNING, JobState.RETRYABLE)
        )
        return {
            "total_jobs": sum(by_state.values()),
            "by_state": by_state,
            "by_queue": by_queue,
            "queue_depth": queue_depth,
        }

    async def retry(self, session: AsyncSession, job_id: int) -> Job:
        """Operator re-queue of a finalized or backing-off job."""
        job = await self._get_for_update(session, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", {"job_id": job_id})
        if job.state == JobState.RUNNING.value:
            raise ConflictError(
                f"Job {job_id} is running and cannot be retried", {"job_id": job_id}
            )
        if job.state == JobState.AVAILABLE.value:
            return job

        job.state = JobState.AVAILABLE.value
        job.scheduled_at = datetime.now(UTC)
        job.finalized_at = None
        # One more attempt must fit under the ceiling
        if job.attempt >= job.max_attempts:
            job.max_attempts = job.attempt + 1
        await session.flush()

        logger.info("Job retried", job_id=job_id, kind=job.kind)
        return job
