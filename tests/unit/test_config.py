import pytest
from pydantic import ValidationError

from src.core.config import Settings


def test_defaults():
    config = Settings()

    assert config.PORT == 3000
    assert config.MAX_UPLOAD_SIZE_BYTES == 3 * 1024 * 1024
    assert config.allowed_mime_types == ["image/jpeg", "image/png", "image/webp"]
    assert config.max_upload_size_mb == 3


@pytest.mark.parametrize("field,value", [
    ("JPEG_QUALITY", 80),
    ("JPEG_QUALITY", 0),
    ("LOSSLESS_QUALITY", 1.5),
    ("MAX_CONCURRENT_REMOVALS", 0),
    ("MAX_UPLOAD_SIZE_BYTES", -1),
])
def test_out_of_range_values_fail_at_startup(field, value):
    with pytest.raises(ValidationError):
        Settings(**{field: value})


def test_quality_read_from_environment(monkeypatch):
    monkeypatch.setenv("JPEG_QUALITY", "0.6")

    assert Settings().JPEG_QUALITY == 0.6
