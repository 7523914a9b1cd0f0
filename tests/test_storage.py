"""Unit tests for image stores (lightapp.storage)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from lightapp.models import ImageArtifact, ImageRole
from lightapp.storage import FileImageStore, ImageStore, MemoryImageStore


@pytest.fixture
def image(png_bytes: bytes) -> ImageArtifact:
    return ImageArtifact(
        image_id="K3Q9Z-cover",
        role=ImageRole.COVER,
        run_id="K3Q9Z",
        data=png_bytes,
        prompt="a cartoon frog",
    )


class TestMemoryImageStore:
    @pytest.mark.unit
    async def test_save_and_load(self, image):
        store = MemoryImageStore()
        await store.save(image)
        assert await store.load("K3Q9Z-cover") == image

    @pytest.mark.unit
    async def test_load_missing(self):
        assert await MemoryImageStore().load("nope") is None

    @pytest.mark.unit
    def test_satisfies_protocol(self):
        assert isinstance(MemoryImageStore(), ImageStore)


class TestFileImageStore:
    @pytest.mark.unit
    async def test_writes_binary_and_sidecar(self, tmp_path: Path, image, png_bytes):
        store = FileImageStore(tmp_path / "images")
        await store.save(image)

        assert (tmp_path / "images" / "K3Q9Z-cover.png").read_bytes() == png_bytes
        meta = json.loads((tmp_path / "images" / "K3Q9Z-cover.json").read_text(encoding="utf-8"))
        assert meta["image_id"] == "K3Q9Z-cover"
        assert meta["role"] == "cover"
        assert meta["content_type"] == "image/png"
        assert "data" not in meta

    @pytest.mark.unit
    async def test_round_trip(self, tmp_path: Path, image):
        store = FileImageStore(tmp_path)
        await store.save(image)
        loaded = await store.load("K3Q9Z-cover")

        assert loaded is not None
        assert loaded.data == image.data
        assert loaded.role is ImageRole.COVER
        assert loaded.created_at == image.created_at

    @pytest.mark.unit
    async def test_load_missing(self, tmp_path: Path):
        assert await FileImageStore(tmp_path).load("K3Q9Z-cover") is None

    @pytest.mark.unit
    @pytest.mark.parametrize("image_id", ["", "../escape", "a/b", ".hidden", "a\\b"])
    async def test_rejects_unsafe_ids(self, tmp_path: Path, image_id):
        with pytest.raises(ValueError, match="Invalid image id"):
            await FileImageStore(tmp_path).load(image_id)

    @pytest.mark.unit
    def test_satisfies_protocol(self, tmp_path: Path):
        assert isinstance(FileImageStore(tmp_path), ImageStore)
