from __future__ import annotations

import os
from typing import NamedTuple, Union

from ..constants import SURFACE_IMAGE, SURFACE_PDF
from ..errors import TemplateSourceError

IMAGE_FORMATS = {
    ".png": "png",
    ".jpg": "jpeg",
    ".jpeg": "jpeg",
}

CONTENT_TYPES = {
    "pdf": "application/pdf",
    "png": "image/png",
    "jpeg": "image/jpeg",
}


class PdfSurface(NamedTuple):
    data: bytes

    kind = SURFACE_PDF


class ImageSurface(NamedTuple):
    data: bytes
    format: str

    kind = SURFACE_IMAGE


TemplateSurface = Union[PdfSurface, ImageSurface]


def _sniff(data: bytes) -> str | None:
    head = data[:1024]
    if b"%PDF-" in head:
        return "pdf"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if head.startswith(b"\xff\xd8\xff"):
        return "jpeg"
    return None


def classify_surface(filename: str, data: bytes) -> TemplateSurface:
    """Decide once, at ingestion, whether a template is a PDF or a raster image."""
    sniffed = _sniff(data)
    ext = os.path.splitext(filename or "")[1].lower()
    if sniffed == "pdf" or (sniffed is None and ext == ".pdf"):
        return PdfSurface(data)
    fmt = sniffed or IMAGE_FORMATS.get(ext)
    if fmt in ("png", "jpeg"):
        return ImageSurface(data, fmt)
    raise TemplateSourceError(
        f"Unsupported template type for {filename!r}; expected PDF, PNG or JPEG"
    )


def surface_from_record(kind: str, image_format: str | None, data: bytes) -> TemplateSurface:
    if kind == SURFACE_PDF:
        return PdfSurface(data)
    if kind == SURFACE_IMAGE:
        return ImageSurface(data, image_format or "png")
    raise TemplateSourceError(f"Unknown template surface kind: {kind!r}")


def content_type_for(surface: TemplateSurface) -> str:
    if isinstance(surface, ImageSurface):
        return CONTENT_TYPES.get(surface.format, "application/octet-stream")
    return CONTENT_TYPES["pdf"]
