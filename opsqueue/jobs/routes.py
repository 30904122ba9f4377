"""
Operator endpoints for job inspection and manual retry.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.config.logging import get_logger
from opsqueue.config.settings import Settings, SettingsDep
from opsqueue.core.exceptions import create_success_response
from opsqueue.infra.database import get_session
from opsqueue.jobs.models import JobState
from opsqueue.jobs.schemas import JobListResponse, JobResponse, JobStatsResponse
from opsqueue.jobs.store import JobStore

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=dict)
async def list_jobs(
    state: list[JobState] | None = Query(default=None, description="Filter by state"),
    queue: str | None = Query(default=None, description="Filter by queue"),
    kind: str | None = Query(default=None, description="Filter by job kind"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List jobs newest first with filtering and pagination."""

    jobs, total = await JobStore(settings).list_jobs(
        session,
        state=[s.value for s in state] if state else None,
        queue=queue,
        kind=kind,
        limit=limit,
        offset=offset,
    )

    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats", response_model=dict)
async def get_job_stats(
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Job counts by state and queue."""

    stats = await JobStore(settings).stats(session)
    return create_success_response(data=JobStatsResponse(**stats).model_dump())


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: int,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job, including its error history."""

    job = await JobStore(settings).get(session, job_id)
    return create_success_response(data=JobResponse.model_validate(job).model_dump(mode="json"))


@router.post("/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: int,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Make a discarded, completed or backing-off job available again."""

    job = await JobStore(settings).retry(session, job_id)
    await session.commit()

    logger.info("Job retried via API", job_id=job_id, kind=job.kind)
    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json"),
        message="Job queued for retry",
    )
