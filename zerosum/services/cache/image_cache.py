"""
Local Receipt Image Cache

Receipt photos wait here, keyed by the id of their placeholder
transaction, until the scan queue has processed them. A completed scan
deletes its image; a failed one keeps it for the next attempt.

Images are stored base64-encoded, the form the OCR service consumes.
"""

import asyncio
import base64
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from zerosum.services.storage.interface import NotFoundError


_SAFE_KEY = re.compile(r"^[A-Za-z0-9_\-]+$")


def encode_image(image: Union[bytes, str]) -> str:
    """Accept raw bytes or an already base64-encoded string."""
    if isinstance(image, bytes):
        return base64.b64encode(image).decode("ascii")
    return image


class ImageCache(ABC):
    """Key-value store for pending receipt images."""

    @abstractmethod
    async def put(self, transaction_id: str, image: Union[bytes, str]) -> int:
        """
        Store an image.

        Returns:
            Size of the stored base64 payload
        """
        pass

    @abstractmethod
    async def get(self, transaction_id: str) -> str:
        """
        Return the base64 image.

        Raises:
            NotFoundError: If no image is cached for this transaction
        """
        pass

    @abstractmethod
    async def delete(self, transaction_id: str) -> None:
        pass

    async def exists(self, transaction_id: str) -> bool:
        try:
            await self.get(transaction_id)
        except NotFoundError:
            return False
        return True


class InMemoryImageCache(ImageCache):
    def __init__(self):
        self._images: dict[str, str] = {}

    async def put(self, transaction_id: str, image: Union[bytes, str]) -> int:
        encoded = encode_image(image)
        self._images[transaction_id] = encoded
        return len(encoded)

    async def get(self, transaction_id: str) -> str:
        try:
            return self._images[transaction_id]
        except KeyError:
            raise NotFoundError(f"No cached image for transaction {transaction_id}")

    async def delete(self, transaction_id: str) -> None:
        self._images.pop(transaction_id, None)


class FileImageCache(ImageCache):
    """One file per transaction id in a directory; survives restarts."""

    def __init__(self, directory: Union[str, Path]):
        self._directory = Path(directory)

    def _path(self, transaction_id: str) -> Path:
        if not _SAFE_KEY.match(transaction_id):
            raise ValueError(f"Invalid image key: {transaction_id!r}")
        return self._directory / f"{transaction_id}.b64"

    def _write(self, path: Path, encoded: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(encoded, encoding="ascii")
        tmp.replace(path)

    async def put(self, transaction_id: str, image: Union[bytes, str]) -> int:
        encoded = encode_image(image)
        await asyncio.to_thread(self._write, self._path(transaction_id), encoded)
        return len(encoded)

    async def get(self, transaction_id: str) -> str:
        path = self._path(transaction_id)
        try:
            return await asyncio.to_thread(path.read_text, encoding="ascii")
        except FileNotFoundError:
            raise NotFoundError(f"No cached image for transaction {transaction_id}")

    async def delete(self, transaction_id: str) -> None:
        path = self._path(transaction_id)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    def cached_ids(self) -> list[str]:
        if not self._directory.exists():
            return []
        return sorted(p.stem for p in self._directory.glob("*.b64"))


def image_cache_from_directory(directory: Optional[str]) -> ImageCache:
    """File-backed cache when a directory is configured, in-memory otherwise."""
    return FileImageCache(directory) if directory else InMemoryImageCache()
