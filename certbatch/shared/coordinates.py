from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SurfaceMapping:
    """Maps positions authored on the preview canvas onto the render surface.

    Image surfaces are authored on a top-down canvas and rendered on a
    bottom-up PDF page, so Y is scaled and flipped. PDF surfaces are authored
    in page space already and pass through untouched.
    """

    output_width: float
    output_height: float
    scale_x: float = 1.0
    scale_y: float = 1.0
    flip_y: bool = False

    @classmethod
    def for_image(
        cls,
        authored_width: float | None,
        authored_height: float | None,
        output_width: float,
        output_height: float,
    ) -> "SurfaceMapping":
        canvas_w = authored_width if authored_width else output_width
        canvas_h = authored_height if authored_height else output_height
        return cls(
            output_width=output_width,
            output_height=output_height,
            scale_x=output_width / canvas_w,
            scale_y=output_height / canvas_h,
            flip_y=True,
        )

    @classmethod
    def for_pdf(cls, output_width: float, output_height: float) -> "SurfaceMapping":
        return cls(output_width=output_width, output_height=output_height)

    @property
    def size_scale(self) -> float:
        return min(self.scale_x, self.scale_y)

    def map_x(self, x: float) -> float:
        return x * self.scale_x

    def map_y(self, y: float) -> float:
        if self.flip_y:
            return self.output_height - (y * self.scale_y)
        return y

    def map_point(self, x: float, y: float) -> tuple[float, float]:
        return self.map_x(x), self.map_y(y)

    def scale_font(self, size: float) -> float:
        return size * self.size_scale
