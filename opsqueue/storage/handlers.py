import posixpath
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.config.logging import get_logger
from opsqueue.infra.results import ResultWriter
from opsqueue.jobs.models import Job
from opsqueue.jobs.schemas import PresignArgs
from opsqueue.storage.client import StorageBackend
from opsqueue.storage.models import FileUploadRequest

logger = get_logger(__name__)


def original_key(entity_type: str, entity_id: str, file_id: str, file_name: str) -> str:
    """{entity_type}/{entity_id}/{file_id}/original{.ext}, `.bin` without an extension."""
    extension = posixpath.splitext(file_name)[1] or ".bin"
    return f"{entity_type}/{entity_id}/{file_id}/original{extension}"


class PresignUploadHandler:
    """
    Issue a presigned PUT URL for a pending upload request.

    Payload expected:
    {
        "request_id": "uuid-string",
        "file_name": "photo.jpg",
        "file_type": "image/jpeg",
        "entity_type": "Issue",
        "entity_id": "42"
    }
    """

    def __init__(self, storage: StorageBackend, results: ResultWriter):
        self.storage = storage
        self.results = results

    async def handle(self, session: AsyncSession, job: Job) -> dict[str, Any] | None:
        args = PresignArgs.model_validate(job.args)
        request_id = args.request_id

        request = await session.get(FileUploadRequest, request_id)
        if request is None:
            logger.warning("Upload request not found", request_id=str(request_id))
            return {"status": "skipped", "reason": "request_not_found"}
        if request.status == "completed":
            return {"status": "skipped", "reason": "already_completed"}

        file_id = uuid4()
        key = original_key(args.entity_type, args.entity_id, str(file_id), args.file_name)
        url = await self.storage.presign_upload(key, args.file_type)

        await self.results.presign_completed(session, request, url, file_id, key)
        logger.info("Presigned upload URL issued", request_id=str(request_id), s3_key=key)
        return {"status": "completed", "file_id": str(file_id), "s3_key": key}
