import logging

from certbatch.shared.fonts import resolve_font


def test_arial_maps_to_helvetica():
    font = resolve_font("Arial")
    assert font.name == "Helvetica"
    assert not font.fallback


def test_serif_families_map_to_times_variants():
    assert resolve_font("Times New Roman").name == "Times-Roman"
    assert resolve_font("Georgia", bold=True).name == "Times-Bold"
    assert resolve_font("georgia", italic=True).name == "Times-Italic"
    assert resolve_font("Times New Roman", bold=True, italic=True).name == "Times-BoldItalic"


def test_impact_is_always_bold():
    font = resolve_font("Impact")
    assert font.name == "Helvetica-Bold"
    assert font.bold
    assert resolve_font("Impact", italic=True).name == "Helvetica-BoldOblique"


def test_unknown_family_falls_back_without_raising(caplog):
    with caplog.at_level(logging.WARNING, logger="certbatch.fonts"):
        font = resolve_font("Papyrus", bold=True)
    assert font.name == "Helvetica-Bold"
    assert font.fallback
    assert "[CERT-FONT]" in caplog.text


def test_missing_family_uses_default():
    font = resolve_font(None)
    assert font.name == "Helvetica"
    assert font.family == "Helvetica"
