import io

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image
from typing import AsyncGenerator

from src.main import app
from src.core.config import settings
from src.core.storage import StorageFactory, TempStorage, get_temp_storage
from src.engines.removal.services import BackgroundRemovalService, get_removal_service


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(path))
    StorageFactory.reset()
    yield path
    StorageFactory.reset()


@pytest.fixture
def storage(upload_dir) -> TempStorage:
    return TempStorage(base_path=str(upload_dir))


@pytest.fixture
def make_image():
    """Build encoded image bytes for uploads."""
    def _make(fmt: str = "JPEG", size=(64, 48), color=(200, 30, 30)) -> bytes:
        mode = "RGB" if fmt == "JPEG" else "RGBA"
        buffer = io.BytesIO()
        Image.new(mode, size, color).save(buffer, format=fmt)
        return buffer.getvalue()
    return _make


@pytest.fixture
def removal_service(upload_dir) -> BackgroundRemovalService:
    """Removal service with a stand-in cut-out function instead of rembg.

    Records the upload directory contents seen while processing.
    """
    seen_uploads = []

    def remover(image: Image.Image) -> Image.Image:
        seen_uploads.append(sorted(p.name for p in upload_dir.iterdir()))
        return image.convert("RGBA")

    service = BackgroundRemovalService(remover=remover, timeout_seconds=5, max_concurrent=2)
    service.seen_uploads = seen_uploads
    return service


@pytest.fixture
async def client(storage, removal_service) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_temp_storage] = lambda: storage
    app.dependency_overrides[get_removal_service] = lambda: removal_service

    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac

    app.dependency_overrides.clear()
