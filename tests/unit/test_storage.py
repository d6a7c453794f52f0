import pytest

from src.core.exceptions import StorageError
from src.core.storage import TempAsset, TempStorage, redecode_filename, sanitize_filename


def test_redecode_filename_fixes_latin1_mangling():
    mangled = "café.png".encode("utf-8").decode("latin-1")

    assert redecode_filename(mangled) == "café.png"
    assert redecode_filename("café.png") == "café.png"
    assert redecode_filename("写真.jpg") == "写真.jpg"


@pytest.mark.parametrize("raw,expected", [
    ("photo.jpg", "photo.jpg"),
    ("../../etc/passwd", "passwd"),
    ("C:\\Users\\me\\pic.png", "pic.png"),
    ("my holiday pic.jpg", "my_holiday_pic.jpg"),
    ("", "upload"),
    (None, "upload"),
    ("...", "upload"),
])
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected


def test_sanitize_filename_bounds_length_and_keeps_extension():
    name = sanitize_filename("a" * 300 + ".jpeg")

    assert len(name) <= 100
    assert name.endswith(".jpeg")


def test_storage_creates_directory(tmp_path):
    base = tmp_path / "nested" / "uploads"

    storage = TempStorage(base_path=str(base))
    storage.ensure_directory()

    assert base.is_dir()


@pytest.mark.asyncio
async def test_store_writes_uniquely_named_file(storage, upload_dir):
    first = await storage.store(b"one", "photo.jpg", "image/jpeg")
    second = await storage.store(b"two", "photo.jpg", "image/jpeg")

    assert first.path != second.path
    assert first.path.parent == upload_dir
    assert first.path.name.endswith("-photo.jpg")
    assert first.path.name.split("-")[0].isdigit()
    assert first.path.read_bytes() == b"one"
    assert first.size_bytes == 3
    assert first.content_type == "image/jpeg"


@pytest.mark.asyncio
async def test_store_keeps_multibyte_names(storage):
    mangled = "café.png".encode("utf-8").decode("latin-1")

    asset = await storage.store(b"x", mangled)

    assert asset.original_name == "café.png"
    assert asset.path.name.endswith("-café.png")


@pytest.mark.asyncio
async def test_release_is_idempotent(storage):
    asset = await storage.store(b"data", "a.png")

    assert storage.release(asset) is True
    assert not asset.path.exists()
    assert asset.released
    assert storage.release(asset) is True
    assert storage.release(None) is True


def test_release_tolerates_missing_file(storage, upload_dir):
    ghost = TempAsset(path=upload_dir / "never-created.png", original_name="x.png")

    assert storage.release(ghost) is True


@pytest.mark.asyncio
async def test_release_failure_is_logged_not_raised(storage, monkeypatch):
    asset = await storage.store(b"data", "a.png")

    def refuse(self, missing_ok=False):
        raise PermissionError("busy")

    monkeypatch.setattr(type(asset.path), "unlink", refuse)

    assert storage.release(asset) is False
    assert not asset.released


@pytest.mark.asyncio
async def test_acquire_releases_on_success(storage, upload_dir):
    async with storage.acquire(b"data", "a.png") as asset:
        assert asset.path.exists()

    assert not asset.path.exists()
    assert list(upload_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_acquire_releases_on_error(storage, upload_dir):
    with pytest.raises(RuntimeError):
        async with storage.acquire(b"data", "a.png"):
            raise RuntimeError("processing failed")

    assert list(upload_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_failed_write_leaves_no_partial_file(storage, upload_dir, monkeypatch):
    def partial_write(file_path, data):
        file_path.write_bytes(data[:2])
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(TempStorage, "_write", staticmethod(partial_write))

    with pytest.raises(StorageError) as exc_info:
        await storage.store(b"abcdef", "a.png")

    assert exc_info.value.code == 500
    assert list(upload_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_unwritable_directory_fails_on_store_not_construction(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    storage = TempStorage(base_path=str(blocker / "uploads"))

    with pytest.raises(StorageError) as exc_info:
        await storage.store(b"data", "a.png")

    assert exc_info.value.code == 500
    assert blocker.read_text() == "not a directory"
