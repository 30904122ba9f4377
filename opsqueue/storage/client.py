"""
S3-compatible object storage adapter.

boto3 is synchronous; every call runs in a worker thread so a slow endpoint
never stalls the claim loops.
"""

import asyncio
from typing import Any, Protocol

import boto3
from botocore.config import Config

from opsqueue.config.settings import Settings


class StorageBackend(Protocol):
    bucket: str

    async def presign_upload(self, key: str, content_type: str = "") -> str: ...

    async def download(self, key: str, bucket: str | None = None) -> bytes: ...

    async def upload(
        self, key: str, data: bytes, content_type: str, bucket: str | None = None
    ) -> None: ...


class ObjectStorage:
    """Presigned uploads plus object download and upload."""

    def __init__(
        self,
        client: Any,
        presign_client: Any,
        bucket: str,
        presign_expiry_s: int = 900,
    ):
        self.client = client
        # Presigned URLs are signed for the host the browser will reach
        self.presign_client = presign_client
        self.bucket = bucket
        self.presign_expiry_s = presign_expiry_s

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStorage":
        def make_client(endpoint: str) -> Any:
            return boto3.client(
                "s3",
                endpoint_url=endpoint or None,
                region_name=settings.s3_region,
                aws_access_key_id=settings.s3_access_key_id or None,
                aws_secret_access_key=settings.s3_secret_access_key or None,
                config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
            )

        client = make_client(settings.s3_endpoint)
        if settings.s3_public_endpoint and settings.s3_public_endpoint != settings.s3_endpoint:
            presign_client = make_client(settings.s3_public_endpoint)
        else:
            presign_client = client
        return cls(client, presign_client, settings.s3_bucket, settings.presign_expiry_s)

    async def presign_upload(self, key: str, content_type: str = "") -> str:
        params = {"Bucket": self.bucket, "Key": key}
        if content_type:
            params["ContentType"] = content_type
        return await asyncio.to_thread(
            self.presign_client.generate_presigned_url,
            "put_object",
            Params=params,
            ExpiresIn=self.presign_expiry_s,
        )

    async def download(self, key: str, bucket: str | None = None) -> bytes:
        def _get() -> bytes:
            response = self.client.get_object(Bucket=bucket or self.bucket, Key=key)
            return response["Body"].read()

        return await asyncio.to_thread(_get)

    async def upload(
        self, key: str, data: bytes, content_type: str, bucket: str | None = None
    ) -> None:
        await asyncio.to_thread(
            self.client.put_object,
            Bucket=bucket or self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
