import pytest

from certbatch.errors import PlacementError
from certbatch.shared.placement import RGBColor, parse_placement


def _config(**overrides):
    config = {
        "name": {"x": 999, "y": 300, "fontSize": 40, "fontFamily": "Georgia", "bold": True},
        "certificateId": {"x": 60, "y": 40, "fontSize": 10, "color": {"r": 300, "g": -4, "b": "12"}},
        "canvasWidth": 800,
        "canvasHeight": 600,
    }
    config.update(overrides)
    return config


def test_parse_full_config():
    spec = parse_placement(_config())
    assert spec.name.x is None
    assert spec.name.y == 300
    assert spec.name.font_size == 40
    assert spec.name.font_family == "Georgia"
    assert spec.name.bold
    assert spec.certificate_id.x == 60
    assert spec.certificate_id.color == RGBColor(255, 0, 12)
    assert (spec.canvas_width, spec.canvas_height) == (800, 600)


def test_missing_font_sizes_use_defaults():
    config = _config(
        name={"y": 200},
        certificateId={"x": 10, "y": 20, "fontSize": "big"},
    )
    spec = parse_placement(config)
    assert spec.name.font_size == 36
    assert spec.certificate_id.font_size == 12
    assert spec.name.font_family == "Helvetica"


def test_non_positive_canvas_is_ignored():
    spec = parse_placement(_config(canvasWidth=0, canvasHeight=-5))
    assert spec.canvas_width is None
    assert spec.canvas_height is None


@pytest.mark.parametrize(
    "config",
    [
        None,
        {"certificateId": {"x": 1, "y": 1}},
        {"name": {"y": 1}, "certificateId": {"y": 1}},
        {"name": {"y": "top"}, "certificateId": {"x": 1, "y": 1}},
    ],
)
def test_invalid_placement_raises(config):
    with pytest.raises(PlacementError):
        parse_placement(config)
