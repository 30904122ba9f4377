import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from opsqueue.core.exceptions import ConflictError, NotFoundError
from opsqueue.jobs import store as store_module
from opsqueue.jobs.models import Job, JobState
from opsqueue.jobs.schemas import SendNotificationArgs, ValidateTemplateArgs
from opsqueue.jobs.store import calculate_retry_delay


async def enqueue(database, store, count=1, kind="noop", **kwargs):
    kwargs.setdefault("queue", "default")
    async with database.SessionLocal() as session:
        jobs = [
            await store.enqueue(session, kind, {"n": i}, **kwargs) for i in range(count)
        ]
        await session.commit()
    return jobs


async def claim(database, store, queue="default", limit=1, worker_id="worker-test"):
    async with database.SessionLocal() as session:
        jobs = await store.claim(session, queue, limit, worker_id)
        await session.commit()
    return jobs


async def fetch(database, job_id) -> Job:
    async with database.SessionLocal() as session:
        return await session.get(Job, job_id)


class TestCalculateRetryDelay:
    def test_exponential_without_jitter(self):
        assert calculate_retry_delay(1, 2.0, 3600, jitter=False) == 2.0
        assert calculate_retry_delay(2, 2.0, 3600, jitter=False) == 4.0
        assert calculate_retry_delay(4, 2.0, 3600, jitter=False) == 16.0

    def test_capped(self):
        assert calculate_retry_delay(30, 1.0, 60, jitter=False) == 60

    def test_jitter_stays_within_quarter(self):
        for _ in range(200):
            delay = calculate_retry_delay(3, 1.0, 3600)
            assert 3.0 <= delay <= 5.0


class TestEnqueue:
    async def test_enqueue_does_not_commit(self, database, store):
        async with database.SessionLocal() as session:
            job = await store.enqueue(session, "noop", {}, queue="default")
            assert job.id is not None
            await session.rollback()

        async with database.SessionLocal() as session:
            count = (await session.execute(select(func.count(Job.id)))).scalar()
        assert count == 0

    async def test_insert_uses_kind_defaults(self, database, store):
        async with database.SessionLocal() as session:
            job = await store.insert(
                session,
                SendNotificationArgs(notification_id="6f1c2a52-0000-4000-8000-000000000001"),
            )
            await session.commit()

        job = await fetch(database, job.id)
        assert job.kind == "send_notification"
        assert job.queue == "notifications"
        assert job.priority == 2
        assert job.max_attempts == 5
        assert job.state == JobState.AVAILABLE.value
        assert job.attempt == 0
        assert job.args == {"notification_id": "6f1c2a52-0000-4000-8000-000000000001"}

    async def test_enqueue_logs_structured_fields(self, database, store, monkeypatch):
        events = []

        class RecordingLogger:
            def info(self, event, **fields):
                events.append((event, fields))

        monkeypatch.setattr(store_module, "logger", RecordingLogger())
        [job] = await enqueue(database, store, kind="s3_presign", queue="s3_signer")

        assert events == [
            (
                "Job enqueued",
                {"job_id": job.id, "kind": "s3_presign", "queue": "s3_signer", "priority": 1},
            )
        ]

    async def test_attempt_ceiling_enforced_by_database(self, database):
        async with database.SessionLocal() as session:
            session.add(
                Job(kind="noop", queue="default", args={}, attempt=3, max_attempts=2)
            )
            with pytest.raises(IntegrityError):
                await session.flush()

    async def test_priority_range_enforced_by_database(self, database):
        async with database.SessionLocal() as session:
            session.add(Job(kind="noop", queue="default", args={}, priority=5))
            with pytest.raises(IntegrityError):
                await session.flush()


class TestClaim:
    async def test_claim_marks_running_and_counts_attempt(self, database, store):
        [job] = await enqueue(database, store)

        [claimed] = await claim(database, store, worker_id="host-1-a")

        assert claimed.id == job.id
        assert claimed.state == JobState.RUNNING.value
        assert claimed.attempt == 1
        assert claimed.attempted_by == "host-1-a"
        assert claimed.attempted_at is not None

        # Already running, nothing left to claim
        assert await claim(database, store) == []

    async def test_claim_respects_queue(self, database, store):
        await enqueue(database, store, queue="thumbnails")
        assert await claim(database, store, queue="s3_signer") == []
        assert len(await claim(database, store, queue="thumbnails")) == 1

    async def test_claim_skips_future_jobs(self, database, store):
        await enqueue(
            database, store, scheduled_at=datetime.now(UTC) + timedelta(hours=1)
        )
        assert await claim(database, store) == []

    async def test_lower_priority_number_claimed_first(self, database, store):
        async with database.SessionLocal() as session:
            send = await store.insert(
                session,
                SendNotificationArgs(notification_id="6f1c2a52-0000-4000-8000-000000000002"),
            )
            validate = await store.insert(
                session,
                ValidateTemplateArgs(validation_id="6f1c2a52-0000-4000-8000-000000000003"),
            )
            await session.commit()

        [first] = await claim(database, store, queue="notifications")
        [second] = await claim(database, store, queue="notifications")

        assert first.id == validate.id
        assert second.id == send.id

    async def test_claim_orders_by_scheduled_at_within_priority(self, database, store):
        now = datetime.now(UTC)
        [later] = await enqueue(database, store, scheduled_at=now - timedelta(seconds=1))
        [earlier] = await enqueue(database, store, scheduled_at=now - timedelta(seconds=10))

        claimed = await claim(database, store, limit=2)

        assert [job.id for job in claimed] == [earlier.id, later.id]

    async def test_concurrent_claimants_never_share_a_job(self, database, store):
        jobs = await enqueue(database, store, count=30)

        async def claimant(worker_id: str) -> list[int]:
            claimed = []
            while True:
                batch = await claim(database, store, limit=3, worker_id=worker_id)
                if not batch:
                    return claimed
                claimed.extend(job.id for job in batch)

        results = await asyncio.gather(*(claimant(f"worker-{i}") for i in range(5)))
        claimed_ids = [job_id for batch in results for job_id in batch]

        assert len(claimed_ids) == len(set(claimed_ids))
        assert set(claimed_ids) == {job.id for job in jobs}


class TestFailureAndRetryPolicy:
    async def test_fail_schedules_retry(self, database, store):
        [job] = await enqueue(database, store, max_attempts=3)
        await claim(database, store)

        async with database.SessionLocal() as session:
            state = await store.fail(session, job.id, "RuntimeError: boom")
            await session.commit()

        assert state == JobState.RETRYABLE.value
        job = await fetch(database, job.id)
        assert job.state == JobState.RETRYABLE.value
        assert job.attempt == 1
        assert job.finalized_at is None
        assert job.errors[0]["attempt"] == 1
        assert job.errors[0]["error"] == "RuntimeError: boom"

    async def test_attempts_never_exceed_max_and_job_is_discarded(self, database, store):
        [job] = await enqueue(database, store, max_attempts=3)
        past = datetime.now(UTC) - timedelta(minutes=1)

        states = []
        for _ in range(3):
            assert len(await claim(database, store)) == 1
            async with database.SessionLocal() as session:
                states.append(await store.fail(session, job.id, "boom", now=past))
                await store.schedule_due(session)
                await session.commit()

        assert states == ["retryable", "retryable", "discarded"]
        job = await fetch(database, job.id)
        assert job.state == JobState.DISCARDED.value
        assert job.attempt == job.max_attempts == 3
        assert [entry["attempt"] for entry in job.errors] == [1, 2, 3]
        assert job.finalized_at is not None

        # Nothing left to claim once discarded
        assert await claim(database, store) == []

    async def test_fail_ignores_jobs_not_running(self, database, store):
        [job] = await enqueue(database, store)
        async with database.SessionLocal() as session:
            assert await store.fail(session, job.id, "boom") is None

    async def test_discard_is_immediate(self, database, store):
        [job] = await enqueue(database, store, max_attempts=25)
        await claim(database, store)

        async with database.SessionLocal() as session:
            assert await store.discard(session, job.id, "PermanentJobError: bad args")
            await session.commit()

        job = await fetch(database, job.id)
        assert job.state == JobState.DISCARDED.value
        assert job.attempt == 1
        assert job.last_error() == "PermanentJobError: bad args"

    async def test_complete_requires_running(self, database, store):
        [job] = await enqueue(database, store)

        async with database.SessionLocal() as session:
            assert await store.complete(session, job.id) is False

        await claim(database, store)
        async with database.SessionLocal() as session:
            assert await store.complete(session, job.id) is True
            await session.commit()

        job = await fetch(database, job.id)
        assert job.state == JobState.COMPLETED.value
        assert job.is_finalized()

    async def test_schedule_due_only_promotes_elapsed_retries(self, database, store):
        [due, not_due] = await enqueue(database, store, count=2)
        await claim(database, store, limit=2)
        now = datetime.now(UTC)

        async with database.SessionLocal() as session:
            await store.fail(session, due.id, "boom", now=now - timedelta(hours=2))
            await store.fail(session, not_due.id, "boom", now=now + timedelta(hours=2))
            promoted = await store.schedule_due(session, now=now)
            await session.commit()

        assert promoted == 1
        assert (await fetch(database, due.id)).state == JobState.AVAILABLE.value
        assert (await fetch(database, not_due.id)).state == JobState.RETRYABLE.value


class TestRescue:
    async def test_rescue_returns_abandoned_job_to_retry_path(self, database, store):
        [job] = await enqueue(database, store, max_attempts=3)
        await claim(database, store)

        async with database.SessionLocal() as session:
            # Not old enough yet
            assert await store.rescue_stuck(session, rescue_after_s=3600) == 0
            rescued = await store.rescue_stuck(
                session, rescue_after_s=3600, now=datetime.now(UTC) + timedelta(hours=2)
            )
            await session.commit()

        assert rescued == 1
        job = await fetch(database, job.id)
        assert job.state == JobState.RETRYABLE.value
        assert "abandoned" in job.last_error()

    async def test_rescue_discards_exhausted_job(self, database, store):
        [job] = await enqueue(database, store, max_attempts=1)
        await claim(database, store)

        async with database.SessionLocal() as session:
            await store.rescue_stuck(session, rescue_after_s=0)
            await session.commit()

        job = await fetch(database, job.id)
        assert job.state == JobState.DISCARDED.value
        assert job.attempt == 1


class TestOperatorQueries:
    async def test_retry_discarded_job_extends_attempts(self, database, store):
        [job] = await enqueue(database, store, max_attempts=1)
        await claim(database, store)
        async with database.SessionLocal() as session:
            await store.fail(session, job.id, "boom")
            await session.commit()

        async with database.SessionLocal() as session:
            retried = await store.retry(session, job.id)
            await session.commit()

        assert retried.state == JobState.AVAILABLE.value
        assert retried.max_attempts == 2
        assert retried.finalized_at is None
        assert len(await claim(database, store)) == 1

    async def test_retry_running_job_conflicts(self, database, store):
        [job] = await enqueue(database, store)
        await claim(database, store)

        async with database.SessionLocal() as session:
            with pytest.raises(ConflictError):
                await store.retry(session, job.id)

    async def test_retry_missing_job(self, database, store):
        async with database.SessionLocal() as session:
            with pytest.raises(NotFoundError):
                await store.retry(session, 12345)
            with pytest.raises(NotFoundError):
                await store.get(session, 12345)

    async def test_stats_and_listing(self, database, store):
        await enqueue(database, store, count=2, queue="thumbnails", kind="thumbnail_generate")
        await enqueue(database, store, count=1, queue="s3_signer", kind="s3_presign")
        await claim(database, store, queue="thumbnails")

        async with database.SessionLocal() as session:
            stats = await store.stats(session)
            jobs, total = await store.list_jobs(session, state=["available"])
            presign_jobs, presign_total = await store.list_jobs(session, kind="s3_presign")

        assert stats["total_jobs"] == 3
        assert stats["by_state"] == {"available": 2, "running": 1}
        assert stats["by_queue"]["thumbnails"] == {"available": 1, "running": 1}
        assert stats["queue_depth"] == 3
        assert total == 2
        assert all(job.state == "available" for job in jobs)
        assert presign_total == 1
        assert presign_jobs[0].queue == "s3_signer"
