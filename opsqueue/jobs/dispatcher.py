"""
Job worker: per-queue claim loops, bounded executors and graceful shutdown.
"""

import asyncio
import os
import socket
import time
from typing import Any

from pydantic import ValidationError as ArgsValidationError

from opsqueue.config.logging import get_logger
from opsqueue.config.settings import Settings
from opsqueue.core.exceptions import PermanentJobError
from opsqueue.core.registries import JobRegistry
from opsqueue.infra.database import Database
from opsqueue.jobs.models import Job
from opsqueue.jobs.store import JobStore

logger = get_logger(__name__)


class JobWorker:
    """
    Postgres-backed job worker.

    Features:
    - One claim loop per queue, each bounded by its own slot count
    - SELECT FOR UPDATE SKIP LOCKED claiming through JobStore
    - Job completion committed with the handler's domain writes
    - Retry scheduling and rescue of abandoned jobs in a maintenance loop
    - Shutdown that stops claiming at once and waits a bounded time
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        registry: JobRegistry,
        store: JobStore | None = None,
        queues: dict[str, int] | None = None,
    ):
        self.settings = settings
        self.database = database
        self.registry = registry
        self.store = store or JobStore(settings)
        self.queues = queues if queues is not None else settings.queue_concurrency()
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False
        self._stopping = asyncio.Event()
        self._loops: list[asyncio.Task] = []
        self._active: dict[str, set[asyncio.Task]] = {queue: set() for queue in self.queues}

    @property
    def active_jobs(self) -> int:
        return sum(len(tasks) for tasks in self._active.values())

    async def start(self) -> None:
        """Start claim loops for every configured queue and the maintenance loop."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        self._stopping.clear()
        logger.info(
            "Starting job worker",
            worker_id=self.worker_id,
            queues=self.queues,
            handlers=self.registry.list(),
            poll_interval_ms=self.settings.job_poll_interval_ms,
        )

        self._loops = [
            asyncio.create_task(self._queue_loop(queue, slots), name=f"queue:{queue}")
            for queue, slots in self.queues.items()
        ]
        self._loops.append(
            asyncio.create_task(self._maintenance_loop(), name="maintenance")
        )

    async def stop(self, timeout: float | None = None) -> int:
        """
        Stop claiming and wait for in-flight jobs.

        Jobs still running after `timeout` seconds are cancelled without
        touching their rows; they stay `running` until the rescuer returns
        them to the retry path. Returns the number of abandoned jobs.
        """
        if timeout is None:
            timeout = self.settings.job_shutdown_timeout_s

        logger.info("Stopping job worker", worker_id=self.worker_id)
        self.running = False
        self._stopping.set()

        if self._loops:
            await asyncio.gather(*self._loops, return_exceptions=True)
            self._loops = []

        in_flight = [task for tasks in self._active.values() for task in tasks]
        if not in_flight:
            return 0

        _, pending = await asyncio.wait(in_flight, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "Worker stopped with active jobs",
                worker_id=self.worker_id,
                abandoned_jobs=len(pending),
            )
        return len(pending)

    async def run_once(self, queue: str, limit: int | None = None) -> int:
        """Claim one batch from `queue` and process it to the end."""
        slots = limit if limit is not None else self.queues.get(queue, 1)
        jobs = await self._claim(queue, slots)
        if jobs:
            await asyncio.gather(*(self._process_job(job) for job in jobs))
        return len(jobs)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _queue_loop(self, queue: str, max_workers: int) -> None:
        """Claim loop for one queue."""
        active = self._active.setdefault(queue, set())
        poll_interval = self.settings.job_poll_interval_ms / 1000

        while self.running:
            try:
                available_slots = max_workers - len(active)
                if available_slots <= 0:
                    await self._sleep(poll_interval)
                    continue

                jobs = await self._claim(queue, available_slots)
                for job in jobs:
                    task = asyncio.create_task(self._process_job(job))
                    active.add(task)
                    task.add_done_callback(active.discard)

                # A full batch means more work is probably waiting
                if len(jobs) < available_slots:
                    await self._sleep(poll_interval)
                else:
                    await asyncio.sleep(0)

            except Exception:
                logger.exception("Error in claim loop", queue=queue, worker_id=self.worker_id)
                await self._sleep(5)

    async def _claim(self, queue: str, limit: int) -> list[Job]:
        async with self.database.SessionLocal() as session:
            jobs = await self.store.claim(session, queue, limit, self.worker_id)
            await session.commit()

        if jobs:
            logger.info(
                "Claimed jobs",
                queue=queue,
                job_count=len(jobs),
                job_ids=[job.id for job in jobs],
            )
        return jobs

    async def _process_job(self, job: Job) -> None:
        """Run one claimed job and record its outcome."""
        job_logger = logger.bind(
            job_id=job.id, kind=job.kind, attempt=job.attempt, max_attempts=job.max_attempts
        )
        started = time.monotonic()

        if job.kind not in self.registry:
            job_logger.error("No handler registered for job kind")
            await self._record_failure(job, f"no handler registered for kind {job.kind!r}", permanent=True)
            return

        handler = self.registry.get(job.kind)
        try:
            job_logger.info("Processing job started")
            async with self.database.SessionLocal() as session:
                result = await handler.handle(session, job)
                await self.store.complete(session, job.id)
                await session.commit()

            job_logger.info(
                "Processing job completed",
                duration_ms=round((time.monotonic() - started) * 1000),
                result=result,
            )

        except asyncio.CancelledError:
            job_logger.warning("Job interrupted, left running for rescue")
            raise

        except (PermanentJobError, ArgsValidationError) as e:
            job_logger.warning("Job failed permanently", error=str(e))
            await self._record_failure(job, _describe(e), permanent=True)

        except Exception as e:
            job_logger.exception("Processing job failed", error=str(e))
            await self._record_failure(job, _describe(e), permanent=False)

    async def _record_failure(self, job: Job, error: str, permanent: bool) -> None:
        try:
            async with self.database.SessionLocal() as session:
                if permanent:
                    await self.store.discard(session, job.id, error)
                    state: Any = "discarded"
                else:
                    state = await self.store.fail(session, job.id, error)
                await session.commit()
            logger.info("Job failure recorded", job_id=job.id, kind=job.kind, state=state)
        except Exception:
            # Row stays running; the rescuer picks it up
            logger.exception("Could not record job failure", job_id=job.id)

    async def _maintenance_loop(self) -> None:
        """Promote due retries and rescue abandoned jobs."""
        interval = self.settings.job_maintenance_interval_s
        while self.running:
            try:
                await self.run_maintenance()
            except Exception:
                logger.exception("Error in maintenance loop", worker_id=self.worker_id)
            await self._sleep(interval)

    async def run_maintenance(self) -> tuple[int, int]:
        async with self.database.SessionLocal() as session:
            scheduled = await self.store.schedule_due(session)
            rescued = await self.store.rescue_stuck(
                session, self.settings.job_rescue_after_s
            )
            await session.commit()

        if scheduled or rescued:
            logger.info("Maintenance pass", scheduled=scheduled, rescued=rescued)
        return scheduled, rescued


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"
