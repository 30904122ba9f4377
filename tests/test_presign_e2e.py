import re

from opsqueue.jobs.models import Job, JobState
from opsqueue.storage.handlers import original_key
from opsqueue.storage.models import FileUploadRequest
from opsqueue.storage.service import StorageService


async def request_upload(database, store, file_name="photo.jpg", file_type="image/jpeg"):
    async with database.SessionLocal() as session:
        request, job = await StorageService(store, "test-bucket").request_upload(
            session,
            file_name=file_name,
            file_type=file_type,
            entity_type="Issue",
            entity_id="42",
        )
        await session.commit()
    return request, job


async def reload(database, model, key):
    async with database.SessionLocal() as session:
        return await session.get(model, key)


class TestOriginalKey:
    def test_keeps_extension(self):
        assert original_key("Issue", "42", "abc", "scan.final.PDF") == "Issue/42/abc/original.PDF"

    def test_missing_extension(self):
        assert original_key("Issue", "42", "abc", "README") == "Issue/42/abc/original.bin"


class TestPresignUpload:
    async def test_presigned_url_recorded(self, worker, database, store, storage):
        request, job = await request_upload(database, store)

        assert await worker.run_once("s3_signer") == 1

        request = await reload(database, FileUploadRequest, request.id)
        assert request.status == "completed"
        assert re.fullmatch(r"Issue/42/[0-9a-f-]{36}/original\.jpg", request.s3_key)
        assert request.s3_key.split("/")[2] == str(request.file_id)
        assert request.presigned_url.startswith(f"https://s3.test/test-bucket/{request.s3_key}?")
        assert "X-Amz-Signature" in request.presigned_url
        assert storage.presigned == [(request.s3_key, "image/jpeg")]
        assert (await reload(database, Job, job.id)).state == JobState.COMPLETED.value

    async def test_job_uses_signer_queue(self, database, store):
        _, job = await request_upload(database, store)

        job = await reload(database, Job, job.id)
        assert job.kind == "s3_presign"
        assert job.queue == "s3_signer"
        assert job.max_attempts == 25

    async def test_name_without_extension(self, worker, database, store):
        request, _ = await request_upload(database, store, file_name="notes", file_type="")

        await worker.run_once("s3_signer")

        request = await reload(database, FileUploadRequest, request.id)
        assert request.s3_key.endswith("/original.bin")

    async def test_completed_request_not_presigned_again(
        self, worker, database, store, storage
    ):
        request, job = await request_upload(database, store)
        await worker.run_once("s3_signer")
        first = await reload(database, FileUploadRequest, request.id)

        async with database.SessionLocal() as session:
            await store.retry(session, job.id)
            await session.commit()
        await worker.run_once("s3_signer")

        second = await reload(database, FileUploadRequest, request.id)
        assert second.file_id == first.file_id
        assert second.presigned_url == first.presigned_url
        assert len(storage.presigned) == 1

    async def test_missing_request_is_skipped(self, worker, database, store, storage):
        request, job = await request_upload(database, store)
        async with database.SessionLocal() as session:
            await session.delete(await session.get(FileUploadRequest, request.id))
            await session.commit()

        await worker.run_once("s3_signer")

        assert (await reload(database, Job, job.id)).state == JobState.COMPLETED.value
        assert storage.presigned == []
