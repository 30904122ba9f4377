"""opsqueue: deferred job processing for notifications, uploads and thumbnails."""

__version__ = "1.0.0"
