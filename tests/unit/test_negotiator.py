import pytest

from src.core.config import settings
from src.engines.removal.negotiator import resolve_output_spec
from src.engines.removal.schemas import OutputFormat


def test_jpeg_spellings_are_equivalent():
    assert resolve_output_spec("JPG") == resolve_output_spec("jpg") == resolve_output_spec("jpeg")


def test_missing_and_unknown_fall_back_to_png():
    png = resolve_output_spec("png")

    assert resolve_output_spec(None) == png
    assert resolve_output_spec("bogus") == png
    assert resolve_output_spec("") == png
    assert png.mime_type == "image/png"


@pytest.mark.parametrize("requested,mime_type,extension", [
    ("png", "image/png", "png"),
    (" PNG ", "image/png", "png"),
    ("jpeg", "image/jpeg", "jpg"),
    ("Jpg", "image/jpeg", "jpg"),
    ("webp", "image/webp", "webp"),
    ("WEBP", "image/webp", "webp"),
])
def test_recognised_formats(requested, mime_type, extension):
    spec = resolve_output_spec(requested)

    assert spec.mime_type == mime_type
    assert spec.extension == extension


def test_jpeg_is_lossy_png_and_webp_are_not():
    jpeg = resolve_output_spec("jpeg")
    png = resolve_output_spec("png")
    webp = resolve_output_spec("webp")

    assert jpeg.quality == settings.JPEG_QUALITY
    assert 0.6 <= jpeg.quality <= 0.9
    assert jpeg.encoder_quality == round(settings.JPEG_QUALITY * 100)
    assert not jpeg.is_lossless

    assert png.quality == 1.0 and png.is_lossless
    assert webp.quality == 1.0 and webp.is_lossless
    assert webp.encoder_quality == 100


def test_jpeg_quality_is_tunable(monkeypatch):
    monkeypatch.setattr(settings, "JPEG_QUALITY", 0.6)

    assert resolve_output_spec("jpg").encoder_quality == 60


def test_configured_default_format(monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_OUTPUT_FORMAT", "webp")
    assert resolve_output_spec(None).format == OutputFormat.WEBP

    monkeypatch.setattr(settings, "DEFAULT_OUTPUT_FORMAT", "tiff")
    assert resolve_output_spec(None).format == OutputFormat.PNG


def test_output_spec_is_immutable():
    spec = resolve_output_spec("png")

    with pytest.raises(Exception):
        spec.mime_type = "image/gif"
