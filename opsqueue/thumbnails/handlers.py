import asyncio
import posixpath
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.config.logging import get_logger
from opsqueue.core.exceptions import PermanentJobError
from opsqueue.infra.results import ResultWriter, ThumbnailKeys
from opsqueue.jobs.models import Job
from opsqueue.jobs.schemas import ThumbnailArgs
from opsqueue.storage.client import StorageBackend
from opsqueue.storage.models import File
from opsqueue.storage.service import supports_thumbnails
from opsqueue.thumbnails.pipeline import ThumbnailPipeline

logger = get_logger(__name__)


def thumbnail_key(original_key: str, size: str) -> str:
    return f"{posixpath.dirname(original_key)}/thumb-{size}.jpg"


class ThumbnailHandler:
    """
    Generate small, medium and large JPEG thumbnails for an uploaded file.

    Payload expected:
    {
        "file_id": "uuid-string",
        "storage_key": "Issue/42/<file_id>/original.pdf",  # optional
        "media_kind": "image" | "pdf",  # optional
        "bucket": "bucket-name"  # optional
    }

    Missing optional fields are read from the file row.
    """

    def __init__(
        self,
        storage: StorageBackend,
        pipeline: ThumbnailPipeline,
        results: ResultWriter,
    ):
        self.storage = storage
        self.pipeline = pipeline
        self.results = results

    async def handle(self, session: AsyncSession, job: Job) -> dict[str, Any] | None:
        args = ThumbnailArgs.model_validate(job.args)

        file = await session.get(File, args.file_id)
        if file is None:
            logger.warning("File not found for thumbnails", file_id=str(args.file_id))
            return {"status": "skipped", "reason": "file_not_found"}
        if file.thumbnail_status == "completed":
            return {"status": "skipped", "reason": "already_completed"}

        original_key = args.storage_key or file.s3_original_key
        bucket = args.bucket or file.s3_bucket
        media_kind = args.media_kind
        if media_kind is None:
            if not supports_thumbnails(file.file_type):
                await self.results.thumbnails_failed(session, file)
                await session.commit()
                raise PermanentJobError(
                    f"no thumbnails for file type {file.file_type!r}",
                    details={"file_id": str(file.id)},
                )
            media_kind = "pdf" if file.file_type == "application/pdf" else "image"

        try:
            data = await self.storage.download(original_key, bucket)
            # CPU-bound; keep the event loop free for other queues
            thumbnails = await asyncio.to_thread(self.pipeline.generate, data, media_kind)

            keys = {}
            for size, jpeg in thumbnails.items():
                keys[size] = thumbnail_key(original_key, size)
                await self.storage.upload(keys[size], jpeg, "image/jpeg", bucket)

        except Exception as e:
            logger.error(
                "Thumbnail generation failed",
                file_id=str(file.id),
                media_kind=media_kind,
                error=str(e),
            )
            await self.results.thumbnails_failed(session, file)
            await session.commit()
            raise  # Re-raise for job retry logic

        await self.results.thumbnails_completed(session, file, ThumbnailKeys(**keys))
        logger.info("Thumbnails generated", file_id=str(file.id), keys=keys)
        return {"status": "completed", "keys": keys}
