from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.config.settings import Settings, SettingsDep
from opsqueue.core.exceptions import create_success_response
from opsqueue.infra.database import get_session
from opsqueue.jobs.models import Job, JobState

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Job queue health status."""

    active_workers: int
    running_jobs: int
    stuck_jobs_count: int
    queue_depth: int


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check with database and queue status."""

    db_health = await _check_database_health(session)

    queue_health = None
    if db_health.connected:
        queue_health = await _check_queue_health(session, settings)

    health_data = {
        "ok": db_health.connected,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": datetime.now(UTC).isoformat(),
        "database": db_health.model_dump(),
        "queue": queue_health.model_dump() if queue_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        return DatabaseHealth(connected=False, error=str(e))

    response_time_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
    return DatabaseHealth(connected=True, response_time_ms=round(response_time_ms, 2))


async def _check_queue_health(session: AsyncSession, settings: Settings) -> QueueHealth:
    """Workers holding claims, stuck jobs and outstanding work."""
    running = Job.state == JobState.RUNNING.value

    active_workers = (
        await session.execute(select(func.count(func.distinct(Job.attempted_by))).where(running))
    ).scalar() or 0

    running_jobs = (
        await session.execute(select(func.count(Job.id)).where(running))
    ).scalar() or 0

    stuck_cutoff = datetime.now(UTC) - timedelta(seconds=settings.job_rescue_after_s)
    stuck_jobs_count = (
        await session.execute(
            select(func.count(Job.id)).where(running, Job.attempted_at <= stuck_cutoff)
        )
    ).scalar() or 0

    queue_depth = (
        await session.execute(
            select(func.count(Job.id)).where(
                Job.state.in_(
                    [
                        JobState.AVAILABLE.value,
                        JobState.RUNNING.value,
                        JobState.RETRYABLE.value,
                    ]
                )
            )
        )
    ).scalar() or 0

    return QueueHealth(
        active_workers=active_workers,
        running_jobs=running_jobs,
        stuck_jobs_count=stuck_jobs_count,
        queue_depth=queue_depth,
    )
