from __future__ import annotations

from typing import NamedTuple

from reportlab.pdfbase.pdfmetrics import stringWidth

MIN_FONT_SIZE = 12
FONT_SIZE_STEP = 2


class FitResult(NamedTuple):
    size: float
    width: float


def fit_font_size(
    text: str,
    max_width: float,
    start_size: float,
    font_name: str,
    min_size: float = MIN_FONT_SIZE,
    step: float = FONT_SIZE_STEP,
) -> FitResult:
    """Largest size from ``start_size`` down to ``min_size`` whose width fits.

    Sizes are scanned in ``step`` decrements. When nothing fits the floor is
    returned and the text is allowed to overflow. A start size already below
    the floor is used as-is; text is never enlarged.
    """
    floor = min(min_size, start_size)
    size = start_size
    while size >= floor:
        width = stringWidth(text, font_name, size)
        if width <= max_width:
            return FitResult(size, width)
        size -= step
    return FitResult(floor, stringWidth(text, font_name, floor))
