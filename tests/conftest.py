import io
import os
from collections.abc import AsyncGenerator
from datetime import timedelta, timezone
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from PIL import Image

from opsqueue.api import create_app
from opsqueue.config.settings import Settings
from opsqueue.core.registries import JobRegistry
from opsqueue.infra.database import Base, Database, get_session
from opsqueue.jobs.dispatcher import JobWorker
from opsqueue.jobs.store import JobStore
from opsqueue.notifications.renderer import Renderer
from opsqueue.registry_init import build_job_registry

# Fixed UTC-5 zone so expectations do not depend on DST
EST = timezone(timedelta(hours=-5), "EST")


class FakeObjectStorage:
    """In-memory stand-in for the S3 adapter."""

    def __init__(self, bucket: str = "test-bucket"):
        self.bucket = bucket
        self.objects: dict[tuple[str, str], bytes] = {}
        self.content_types: dict[tuple[str, str], str] = {}
        self.presigned: list[tuple[str, str]] = []

    async def presign_upload(self, key: str, content_type: str = "") -> str:
        self.presigned.append((key, content_type))
        return f"https://s3.test/{self.bucket}/{key}?X-Amz-Expires=900&X-Amz-Signature=fake"

    async def download(self, key: str, bucket: str | None = None) -> bytes:
        try:
            return self.objects[(bucket or self.bucket, key)]
        except KeyError:
            raise FileNotFoundError(f"no such object: {key}")

    async def upload(
        self, key: str, data: bytes, content_type: str, bucket: str | None = None
    ) -> None:
        self.objects[(bucket or self.bucket, key)] = data
        self.content_types[(bucket or self.bucket, key)] = content_type

    def put(self, key: str, data: bytes) -> None:
        self.objects[(self.bucket, key)] = data


class FakeEmailSender:
    """Records sends; raises `error` instead when set."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.sent: list[dict[str, Any]] = []

    async def send(self, to: str, subject: str, html: str, text: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})


class StubRasterizer:
    """Returns a fixed PNG as the rasterized first page."""

    def __init__(self, page: bytes):
        self.page = page
        self.calls = 0

    def first_page(self, pdf: bytes) -> bytes:
        self.calls += 1
        return self.page


class FailingRasterizer:
    def first_page(self, pdf: bytes) -> bytes:
        from opsqueue.thumbnails.pipeline import ThumbnailError

        raise ThumbnailError("pdftoppm failed: Syntax Error: Couldn't read xref table")


def make_png(width: int = 300, height: int = 200, color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway database with fast retries."""
    database_url = os.getenv("TEST_DATABASE_URL") or (
        f"sqlite+aiosqlite:///{tmp_path / 'opsqueue-test.db'}"
    )
    return Settings(
        database_url=database_url,
        site_url="https://app.test",
        notification_timezone="America/New_York",
        skip_test_emails=False,
        job_poll_interval_ms=20,
        job_backoff_base_ms=0,
        job_max_backoff_s=1,
        job_maintenance_interval_s=1,
        thumbnail_max_workers=2,
    )


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    """Fresh schema per test."""
    db = Database(settings)
    await db.create_all()
    yield db
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await db.close()


@pytest.fixture
def store(settings: Settings) -> JobStore:
    return JobStore(settings)


@pytest.fixture
def renderer() -> Renderer:
    return Renderer("https://app.test", EST)


@pytest.fixture
def storage() -> FakeObjectStorage:
    return FakeObjectStorage()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def rasterizer() -> StubRasterizer:
    return StubRasterizer(make_png(600, 400))


@pytest.fixture
def registry(settings, storage, email_sender, rasterizer, renderer) -> JobRegistry:
    return build_job_registry(
        settings,
        storage=storage,
        email=email_sender,
        rasterizer=rasterizer,
        renderer=renderer,
    )


@pytest.fixture
def worker(settings, database, registry, store) -> JobWorker:
    return JobWorker(settings, database, registry, store=store)


@pytest.fixture
async def async_client(database: Database) -> AsyncGenerator[AsyncClient, None]:
    """Operator API client bound to the test database."""
    app = create_app()

    async def override_session():
        async with database.SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
