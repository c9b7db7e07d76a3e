from __future__ import annotations

from typing import Any, NamedTuple

from ..errors import PlacementError
from .fonts import DEFAULT_FAMILY

DEFAULT_NAME_FONT_SIZE = 36.0
DEFAULT_ID_FONT_SIZE = 12.0


class RGBColor(NamedTuple):
    r: int = 0
    g: int = 0
    b: int = 0

    def as_fractions(self) -> tuple[float, float, float]:
        return self.r / 255.0, self.g / 255.0, self.b / 255.0


class TextElementSpec(NamedTuple):
    y: float
    font_size: float
    x: float | None = None
    font_family: str = DEFAULT_FAMILY
    color: RGBColor = RGBColor()
    bold: bool = False
    italic: bool = False


class PlacementSpec(NamedTuple):
    name: TextElementSpec
    certificate_id: TextElementSpec
    canvas_width: float | None = None
    canvas_height: float | None = None


def _channel(value: Any) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(number, 255))


def _color(raw: Any) -> RGBColor:
    if not isinstance(raw, dict):
        return RGBColor()
    return RGBColor(_channel(raw.get("r")), _channel(raw.get("g")), _channel(raw.get("b")))


def _number(raw: dict, key: str, element: str, *, required: bool) -> float | None:
    value = raw.get(key)
    if value is None or value == "":
        if required:
            raise PlacementError(f"{element}.{key} is required")
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise PlacementError(f"{element}.{key} must be a number, got {value!r}") from exc


def _positive_dimension(raw: dict, key: str) -> float | None:
    value = _number(raw, key, "placement", required=False)
    if value is None or value <= 0:
        return None
    return value


def _element(raw: Any, element: str, *, needs_x: bool, default_size: float) -> TextElementSpec:
    if not isinstance(raw, dict):
        raise PlacementError(f"{element} placement is missing")
    try:
        font_size = _number(raw, "fontSize", element, required=False)
    except PlacementError:
        font_size = None
    if font_size is None or font_size <= 0:
        font_size = default_size
    family = raw.get("fontFamily")
    return TextElementSpec(
        # the name is always centred, so an authored x is ignored
        x=_number(raw, "x", element, required=True) if needs_x else None,
        y=_number(raw, "y", element, required=True),
        font_size=font_size,
        font_family=family.strip() if isinstance(family, str) and family.strip() else DEFAULT_FAMILY,
        color=_color(raw.get("color")),
        bold=bool(raw.get("bold")),
        italic=bool(raw.get("italic")),
    )


def parse_placement(config: dict | None) -> PlacementSpec:
    """Build a PlacementSpec from the preview editor's JSON payload."""
    if not isinstance(config, dict):
        raise PlacementError("placement configuration must be an object")
    return PlacementSpec(
        name=_element(
            config.get("name"), "name", needs_x=False, default_size=DEFAULT_NAME_FONT_SIZE
        ),
        certificate_id=_element(
            config.get("certificateId"),
            "certificateId",
            needs_x=True,
            default_size=DEFAULT_ID_FONT_SIZE,
        ),
        canvas_width=_positive_dimension(config, "canvasWidth"),
        canvas_height=_positive_dimension(config, "canvasHeight"),
    )
