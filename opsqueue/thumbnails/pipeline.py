"""
Thumbnail pipeline: PDF first-page rasterization and JPEG resizing.

All work here is blocking; callers run it in a worker thread.
"""

import io
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from PIL import Image, ImageOps

from opsqueue.core.exceptions import ConfigurationError


@dataclass(frozen=True)
class ThumbnailSize:
    name: str
    width: int
    height: int
    quality: int


THUMBNAIL_SIZES = (
    ThumbnailSize("small", 150, 150, 80),
    ThumbnailSize("medium", 400, 400, 85),
    ThumbnailSize("large", 800, 800, 90),
)

BACKGROUND = (255, 255, 255)


class ThumbnailError(Exception):
    """Source could not be decoded or rasterized."""


class Rasterizer(Protocol):
    def first_page(self, pdf: bytes) -> bytes: ...


class PdfRasterizer:
    """Render page one of a PDF to PNG with poppler's pdftoppm."""

    def __init__(self, binary: str = "pdftoppm", timeout_s: float = 60.0):
        self.binary = binary
        self.timeout_s = timeout_s

    def check_available(self) -> str:
        path = shutil.which(self.binary)
        if path is None:
            raise ConfigurationError(
                f"{self.binary} not found on PATH; install poppler-utils"
            )
        return path

    def first_page(self, pdf: bytes) -> bytes:
        with tempfile.TemporaryDirectory(prefix="opsqueue-pdf-") as workdir:
            source = Path(workdir) / "input.pdf"
            source.write_bytes(pdf)
            output_prefix = Path(workdir) / "page"

            try:
                subprocess.run(
                    [
                        self.binary,
                        "-png",
                        "-singlefile",
                        "-f",
                        "1",
                        "-l",
                        "1",
                        str(source),
                        str(output_prefix),
                    ],
                    check=True,
                    capture_output=True,
                    timeout=self.timeout_s,
                )
            except subprocess.CalledProcessError as e:
                stderr = e.stderr.decode(errors="replace").strip()
                raise ThumbnailError(f"pdftoppm failed: {stderr or e}") from e

            return output_prefix.with_suffix(".png").read_bytes()


class ThumbnailPipeline:
    def __init__(self, rasterizer: Rasterizer):
        self.rasterizer = rasterizer

    def generate(self, data: bytes, media_kind: str = "image") -> dict[str, bytes]:
        """Return JPEG bytes keyed by size name."""
        if media_kind == "pdf":
            data = self.rasterizer.first_page(data)

        try:
            with Image.open(io.BytesIO(data)) as source:
                source.load()
                image = ImageOps.exif_transpose(source)
        except (OSError, Image.DecompressionBombError) as e:
            raise ThumbnailError(f"cannot decode image: {e}") from e

        if image.mode in ("RGBA", "LA", "P"):
            image = image.convert("RGBA")
            flattened = Image.new("RGB", image.size, BACKGROUND)
            flattened.paste(image, mask=image.getchannel("A"))
            image = flattened
        else:
            image = image.convert("RGB")

        thumbnails = {}
        for size in THUMBNAIL_SIZES:
            fitted = ImageOps.pad(
                image,
                (size.width, size.height),
                method=Image.Resampling.LANCZOS,
                color=BACKGROUND,
            )
            buffer = io.BytesIO()
            fitted.save(buffer, format="JPEG", quality=size.quality)
            thumbnails[size.name] = buffer.getvalue()
        return thumbnails
