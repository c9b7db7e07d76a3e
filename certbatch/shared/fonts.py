from __future__ import annotations

import logging
from enum import Enum
from typing import NamedTuple

from reportlab.pdfbase import pdfmetrics

logger = logging.getLogger("certbatch.fonts")


class FontWeight(Enum):
    REGULAR = "regular"
    ALWAYS_BOLD = "always_bold"


class FontFamily(NamedTuple):
    base: str
    weight: FontWeight = FontWeight.REGULAR


# reportlab base-14 variants keyed by (bold, italic)
_BASE_VARIANTS: dict[str, dict[tuple[bool, bool], str]] = {
    "Helvetica": {
        (False, False): "Helvetica",
        (True, False): "Helvetica-Bold",
        (False, True): "Helvetica-Oblique",
        (True, True): "Helvetica-BoldOblique",
    },
    "Times": {
        (False, False): "Times-Roman",
        (True, False): "Times-Bold",
        (False, True): "Times-Italic",
        (True, True): "Times-BoldItalic",
    },
    "Courier": {
        (False, False): "Courier",
        (True, False): "Courier-Bold",
        (False, True): "Courier-Oblique",
        (True, True): "Courier-BoldOblique",
    },
}

# Families offered by the preview editor.
FONT_FAMILIES: dict[str, FontFamily] = {
    "Arial": FontFamily("Helvetica"),
    "Helvetica": FontFamily("Helvetica"),
    "Times New Roman": FontFamily("Times"),
    "Times": FontFamily("Times"),
    "Georgia": FontFamily("Times"),
    "Verdana": FontFamily("Helvetica"),
    "Trebuchet MS": FontFamily("Helvetica"),
    "Impact": FontFamily("Helvetica", FontWeight.ALWAYS_BOLD),
    "Comic Sans MS": FontFamily("Helvetica"),
    "Courier New": FontFamily("Courier"),
    "Courier": FontFamily("Courier"),
}

DEFAULT_FAMILY = "Helvetica"
SAFE_FALLBACK_FONT = "Helvetica"


class ResolvedFont(NamedTuple):
    name: str
    family: str
    bold: bool
    italic: bool
    fallback: bool


def _lookup_family(requested: str) -> tuple[str, FontFamily, bool]:
    cleaned = (requested or "").strip()
    if cleaned in FONT_FAMILIES:
        return cleaned, FONT_FAMILIES[cleaned], False
    lowered = cleaned.lower()
    for key, family in FONT_FAMILIES.items():
        if key.lower() == lowered:
            return key, family, False
    return DEFAULT_FAMILY, FONT_FAMILIES[DEFAULT_FAMILY], True


def resolve_font(family: str | None, bold: bool = False, italic: bool = False) -> ResolvedFont:
    """Map an editor font family and style onto an embeddable PDF font.

    Unknown families resolve to Helvetica and inherently bold families always
    get the bold variant. Never raises.
    """
    key, entry, fallback = _lookup_family(family or "")
    effective_bold = bool(bold) or entry.weight is FontWeight.ALWAYS_BOLD
    effective_italic = bool(italic)
    name = _BASE_VARIANTS[entry.base][(effective_bold, effective_italic)]
    if name not in _registered_font_names():
        logger.warning("[CERT-FONT] %s not available; using %s", name, SAFE_FALLBACK_FONT)
        name = SAFE_FALLBACK_FONT
        fallback = True
    elif fallback:
        logger.warning(
            "[CERT-FONT] family %r unsupported; using %s", family or "<default>", name
        )
    return ResolvedFont(
        name=name,
        family=key,
        bold=effective_bold,
        italic=effective_italic,
        fallback=fallback,
    )


def _registered_font_names() -> set[str]:
    fonts = set(pdfmetrics.getRegisteredFontNames())
    try:
        fonts.update(pdfmetrics.standardFonts)
    except AttributeError:
        fonts.update({"Helvetica", "Times-Roman", "Courier"})
    return fonts
