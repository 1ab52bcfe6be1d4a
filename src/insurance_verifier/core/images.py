"""Card image access by opaque reference."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol


class ImageStore(Protocol):
    def read(self, reference: str) -> bytes: ...


class LocalImageStore:
    """Images stored as files under a root directory; references are relative paths."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def read(self, reference: str) -> bytes:
        path = (self.root / reference).resolve()
        if not path.is_relative_to(self.root):
            raise ValueError(f"Image reference escapes image directory: {reference}")
        if not path.is_file():
            raise FileNotFoundError(f"Card image not found: {reference}")
        return path.read_bytes()


class InMemoryImageStore:
    def __init__(self, images: dict[str, bytes] | None = None) -> None:
        self._images = dict(images or {})

    def put(self, reference: str, data: bytes) -> str:
        self._images[reference] = data
        return reference

    def read(self, reference: str) -> bytes:
        try:
            return self._images[reference]
        except KeyError:
            raise FileNotFoundError(f"Card image not found: {reference}") from None
