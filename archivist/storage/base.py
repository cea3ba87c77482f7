from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO

from archivist.errors import ArtifactNotFoundError, StorageError
from archivist.models import StatResult


class WritableHandle(ABC):
    """Handle returned by `StorageProvider.create`; data is visible after `close`."""

    @abstractmethod
    def write(self, data: bytes) -> int:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    async def __aenter__(self) -> WritableHandle:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class StorageProvider(ABC):
    """
    Hierarchical byte store addressed by relative posix paths.

    Backends provide no locking. The only concurrency guarantee is that
    `write_all` is atomic per path: readers see the previous bytes or the
    new bytes, never a mix.
    """

    name: str

    @abstractmethod
    async def stat(self, path: str) -> StatResult:
        """Raises ArtifactNotFoundError when nothing is stored at `path`."""
        raise NotImplementedError

    @abstractmethod
    async def create(self, path: str) -> WritableHandle:
        raise NotImplementedError

    @abstractmethod
    async def open(self, path: str) -> BinaryIO:
        raise NotImplementedError

    @abstractmethod
    async def remove(self, path: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def mkdir_all(self, path: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def write_all(self, path: str, data: bytes) -> None:
        raise NotImplementedError

    async def exists(self, path: str) -> bool:
        try:
            await self.stat(path)
        except ArtifactNotFoundError:
            return False
        return True

    async def file_exists(self, path: str) -> bool:
        try:
            info = await self.stat(path)
        except ArtifactNotFoundError:
            return False
        return not info.is_dir

    async def dir_exists(self, path: str) -> bool:
        try:
            info = await self.stat(path)
        except ArtifactNotFoundError:
            return False
        return info.is_dir

    async def read_all(self, path: str) -> bytes:
        with await self.open(path) as fh:
            return fh.read()

    async def write_file(self, path: str, source: Path) -> None:
        try:
            data = Path(source).read_bytes()
        except OSError as exc:
            raise StorageError(f"cannot read {source}: {exc}") from exc
        await self.write_all(path, data)
