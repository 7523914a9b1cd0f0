"""Image sinks used by the image generation client.

The durable document store is an external collaborator; the pipeline only
needs the small :class:`ImageStore` protocol.  Two implementations ship with
the package:

* :class:`FileImageStore` -- ``<image_id>.png`` plus a JSON metadata sidecar
  in a directory.  Used as the local backup sink and by the CLI.
* :class:`MemoryImageStore` -- a dict, for in-process callers and tests.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Protocol, runtime_checkable

from lightapp.models import ImageArtifact


@runtime_checkable
class ImageStore(Protocol):
    """Anything that can persist and return image artifacts by id."""

    async def save(self, image: ImageArtifact) -> None:
        ...

    async def load(self, image_id: str) -> ImageArtifact | None:
        ...


class MemoryImageStore:
    """Keeps images in memory, keyed by ``image_id``."""

    def __init__(self) -> None:
        self.images: dict[str, ImageArtifact] = {}

    async def save(self, image: ImageArtifact) -> None:
        self.images[image.image_id] = image

    async def load(self, image_id: str) -> ImageArtifact | None:
        return self.images.get(image_id)


class FileImageStore:
    """Writes each image as ``<image_id>.png`` with a ``.json`` sidecar."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _paths(self, image_id: str) -> tuple[Path, Path]:
        if not image_id or "/" in image_id or "\\" in image_id or image_id.startswith("."):
            raise ValueError(f"Invalid image id: {image_id!r}")
        return self.directory / f"{image_id}.png", self.directory / f"{image_id}.json"

    def _write(self, image: ImageArtifact) -> None:
        binary_path, meta_path = self._paths(image.image_id)
        self.directory.mkdir(parents=True, exist_ok=True)
        binary_path.write_bytes(image.data)
        meta_path.write_text(json.dumps(image.metadata(), indent=2), encoding="utf-8")

    def _read(self, image_id: str) -> ImageArtifact | None:
        binary_path, meta_path = self._paths(image_id)
        if not binary_path.exists() or not meta_path.exists():
            return None
        metadata = json.loads(meta_path.read_text(encoding="utf-8"))
        return ImageArtifact(data=binary_path.read_bytes(), **metadata)

    async def save(self, image: ImageArtifact) -> None:
        await asyncio.to_thread(self._write, image)

    async def load(self, image_id: str) -> ImageArtifact | None:
        return await asyncio.to_thread(self._read, image_id)
