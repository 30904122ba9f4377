"""
Job registry initialization.

Builds the kind → handler map once per process. The registry is frozen and
handed to the worker; nothing registers handlers at import time.
"""

from opsqueue.config.logging import get_logger
from opsqueue.config.settings import Settings
from opsqueue.core.registries import JobRegistry
from opsqueue.infra.results import ResultWriter
from opsqueue.jobs.schemas import (
    PresignArgs,
    PreviewTemplateArgs,
    SendNotificationArgs,
    ThumbnailArgs,
    ValidateTemplateArgs,
)
from opsqueue.notifications.email import EmailSender
from opsqueue.notifications.handlers import (
    PreviewTemplateHandler,
    SendNotificationHandler,
    ValidateTemplateHandler,
)
from opsqueue.notifications.renderer import Renderer
from opsqueue.storage.client import StorageBackend
from opsqueue.storage.handlers import PresignUploadHandler
from opsqueue.thumbnails.handlers import ThumbnailHandler
from opsqueue.thumbnails.pipeline import Rasterizer, ThumbnailPipeline

logger = get_logger(__name__)


def build_job_registry(
    settings: Settings,
    *,
    storage: StorageBackend,
    email: EmailSender,
    rasterizer: Rasterizer,
    renderer: Renderer | None = None,
) -> JobRegistry:
    """Register every job handler and freeze the registry."""
    renderer = renderer or Renderer(settings.site_url, settings.display_timezone)
    results = ResultWriter()

    registry = JobRegistry()

    # Notification handlers
    registry.register(
        SendNotificationArgs.kind,
        SendNotificationHandler(settings, renderer, email, results),
    )
    registry.register(ValidateTemplateArgs.kind, ValidateTemplateHandler(renderer, results))
    registry.register(PreviewTemplateArgs.kind, PreviewTemplateHandler(renderer, results))

    # Storage handlers
    registry.register(PresignArgs.kind, PresignUploadHandler(storage, results))
    registry.register(
        ThumbnailArgs.kind,
        ThumbnailHandler(storage, ThumbnailPipeline(rasterizer), results),
    )

    registry.freeze()
    logger.info("Job handlers registered", registered_handlers=registry.list())
    return registry
