"""
Producer helpers for uploads and thumbnails.
"""

from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.jobs.models import Job
from opsqueue.jobs.schemas import PresignArgs, ThumbnailArgs
from opsqueue.jobs.store import JobStore
from opsqueue.storage.models import File, FileUploadRequest


def supports_thumbnails(file_type: str) -> bool:
    return file_type.startswith("image/") or file_type == "application/pdf"


class StorageService:
    """Enqueue presign and thumbnail work alongside the rows that need it."""

    def __init__(self, store: JobStore, bucket: str):
        self.store = store
        self.bucket = bucket

    async def request_upload(
        self,
        session: AsyncSession,
        *,
        file_name: str,
        file_type: str,
        entity_type: str,
        entity_id: str,
    ) -> tuple[FileUploadRequest, Job]:
        request = FileUploadRequest(
            file_name=file_name,
            file_type=file_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            status="pending",
        )
        session.add(request)
        await session.flush()

        job = await self.store.insert(
            session,
            PresignArgs(
                request_id=request.id,
                file_name=file_name,
                file_type=file_type,
                entity_type=entity_type,
                entity_id=str(entity_id),
            ),
        )
        return request, job

    async def record_file(
        self,
        session: AsyncSession,
        *,
        entity_type: str,
        entity_id: str,
        file_name: str,
        file_type: str,
        s3_key: str,
        file_id: UUID | None = None,
    ) -> tuple[File, Job | None]:
        """
        Record an uploaded object.

        Images and PDFs also get a thumbnail job; other types are stored with
        no job and keep thumbnail_status "pending".
        """
        file = File(
            id=file_id or uuid4(),
            entity_type=entity_type,
            entity_id=str(entity_id),
            file_name=file_name,
            file_type=file_type,
            s3_bucket=self.bucket,
            s3_original_key=s3_key,
            thumbnail_status="pending",
        )
        session.add(file)
        await session.flush()

        if not supports_thumbnails(file_type):
            return file, None

        job = await self.store.insert(
            session,
            ThumbnailArgs(
                file_id=file.id,
                storage_key=s3_key,
                media_kind="pdf" if file_type == "application/pdf" else "image",
                bucket=self.bucket,
            ),
        )
        return file, job
