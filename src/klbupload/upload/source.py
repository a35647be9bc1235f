"""Byte sources for uploads."""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from pathlib import Path

HASH_READ_SIZE = 4 * 1024 * 1024


class UploadSource(ABC):
    """Random-access reader over the bytes being uploaded."""

    @property
    @abstractmethod
    def size(self) -> int:
        """Total number of bytes."""
        pass

    @abstractmethod
    async def read(self, start: int, end: int) -> bytes:
        """Read the byte range ``[start, end)``."""
        pass

    async def sha256(self) -> str:
        """Hex SHA-256 digest of the whole source."""
        digest = hashlib.sha256()
        offset = 0
        while offset < self.size:
            end = min(offset + HASH_READ_SIZE, self.size)
            digest.update(await self.read(offset, end))
            offset = end
        return digest.hexdigest()


class BytesSource(UploadSource):
    """In-memory source."""

    def __init__(self, data: bytes):
        self._data = bytes(data)

    @property
    def size(self) -> int:
        return len(self._data)

    async def read(self, start: int, end: int) -> bytes:
        return self._data[start:end]


class FileSource(UploadSource):
    """File on local disk. Reads run in a worker thread."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._size = self.path.stat().st_size

    @property
    def size(self) -> int:
        return self._size

    async def read(self, start: int, end: int) -> bytes:
        return await asyncio.to_thread(self._read_range, start, end)

    def _read_range(self, start: int, end: int) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(start)
            return f.read(end - start)
