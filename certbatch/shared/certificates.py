from __future__ import annotations

import logging
from io import BytesIO
from typing import NamedTuple

from PIL import Image
from PyPDF2 import PdfReader, PdfWriter
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from ..errors import CertificateRenderError
from .coordinates import SurfaceMapping
from .fonts import resolve_font
from .placement import PlacementSpec, TextElementSpec
from .surfaces import ImageSurface, PdfSurface, TemplateSurface
from .text_fit import MIN_FONT_SIZE, fit_font_size

logger = logging.getLogger("certbatch.render")

# share of the surface width the name may occupy
NAME_MAX_WIDTH_RATIO = 0.8


class RenderedCertificate(NamedTuple):
    pdf_bytes: bytes
    name_font_size: float
    id_font_size: float
    surface_kind: str
    page_size: tuple[float, float]


def _open_pdf_page(data: bytes):
    try:
        reader = PdfReader(BytesIO(data))
        page = reader.pages[0]
        width = float(page.mediabox.width)
        height = float(page.mediabox.height)
    except Exception as exc:
        raise CertificateRenderError(f"Unreadable PDF template: {exc}") from exc
    if width <= 0 or height <= 0:
        raise CertificateRenderError("PDF template has an empty page")
    return page, width, height


def _open_image(data: bytes) -> Image.Image:
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except Exception as exc:
        raise CertificateRenderError(f"Unreadable image template: {exc}") from exc
    if img.mode not in ("RGB", "RGBA", "L"):
        img = img.convert("RGBA")
    return img


def _draw_element(c: canvas.Canvas, spec: TextElementSpec, font_name: str, size: float, x: float, y: float, text: str) -> None:
    c.setFillColorRGB(*spec.color.as_fractions())
    c.setFont(font_name, size)
    c.drawString(x, y, text)


def _draw_text_layer(
    c: canvas.Canvas,
    mapping: SurfaceMapping,
    placement: PlacementSpec,
    name: str,
    certificate_id: str,
) -> tuple[float, float]:
    width = mapping.output_width

    name_spec = placement.name
    name_font = resolve_font(name_spec.font_family, name_spec.bold, name_spec.italic)
    fit = fit_font_size(
        name,
        width * NAME_MAX_WIDTH_RATIO,
        mapping.scale_font(name_spec.font_size),
        name_font.name,
        MIN_FONT_SIZE,
    )
    name_x = (width - fit.width) / 2.0
    name_y = mapping.map_y(name_spec.y)
    _draw_element(c, name_spec, name_font.name, fit.size, name_x, name_y, name)

    id_spec = placement.certificate_id
    id_font = resolve_font(id_spec.font_family, id_spec.bold, id_spec.italic)
    id_x, id_y = mapping.map_point(id_spec.x or 0.0, id_spec.y)
    id_size = mapping.scale_font(id_spec.font_size)
    _draw_element(c, id_spec, id_font.name, id_size, id_x, id_y, certificate_id)

    return fit.size, id_size


def _render_on_pdf(surface: PdfSurface, name: str, certificate_id: str, placement: PlacementSpec) -> RenderedCertificate:
    base_page, w, h = _open_pdf_page(surface.data)
    mapping = SurfaceMapping.for_pdf(w, h)

    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=(w, h))
    name_pt, id_pt = _draw_text_layer(c, mapping, placement, name, certificate_id)
    c.save()
    buffer.seek(0)

    try:
        overlay_page = PdfReader(buffer).pages[0]
        base_page.merge_page(overlay_page)
        writer = PdfWriter()
        writer.add_page(base_page)
        out_buf = BytesIO()
        writer.write(out_buf)
    except Exception as exc:
        raise CertificateRenderError(f"Could not merge text onto PDF template: {exc}") from exc
    return RenderedCertificate(out_buf.getvalue(), name_pt, id_pt, surface.kind, (w, h))


def _render_on_image(surface: ImageSurface, name: str, certificate_id: str, placement: PlacementSpec) -> RenderedCertificate:
    img = _open_image(surface.data)
    w, h = float(img.width), float(img.height)
    mapping = SurfaceMapping.for_image(placement.canvas_width, placement.canvas_height, w, h)

    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=(w, h))
    c.drawImage(ImageReader(img), 0, 0, width=w, height=h, mask="auto")
    name_pt, id_pt = _draw_text_layer(c, mapping, placement, name, certificate_id)
    c.save()
    return RenderedCertificate(buffer.getvalue(), name_pt, id_pt, surface.kind, (w, h))


def render_certificate_pdf(
    surface: TemplateSurface,
    name: str,
    certificate_id: str,
    placement: PlacementSpec,
) -> RenderedCertificate:
    """Draw a participant's name and certificate ID onto a template surface.

    Returns a single-page PDF. The name is centred and shrunk to fit 80% of
    the page width; the certificate ID is drawn where it was placed.
    Unreadable template bytes raise CertificateRenderError.
    """
    if isinstance(surface, PdfSurface):
        rendered = _render_on_pdf(surface, name, certificate_id, placement)
    elif isinstance(surface, ImageSurface):
        rendered = _render_on_image(surface, name, certificate_id, placement)
    else:
        raise CertificateRenderError(f"Unsupported template surface: {type(surface).__name__}")
    logger.debug(
        "[CERT] rendered id=%s kind=%s name_pt=%.1f id_pt=%.1f",
        certificate_id,
        rendered.surface_kind,
        rendered.name_font_size,
        rendered.id_font_size,
    )
    return rendered
