from __future__ import annotations

import glob
import logging
import os
import tempfile
import time
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from archivist.errors import ArtifactNotFoundError, StorageError
from archivist.models import StatResult
from archivist.storage.base import StorageProvider, WritableHandle

logger = logging.getLogger(__name__)

# temp files younger than this may belong to a writer that is still running
STALE_TEMP_SECONDS = 3600


class _LocalHandle(WritableHandle):
    def __init__(self, fh: BinaryIO):
        self._fh = fh

    def write(self, data: bytes) -> int:
        return self._fh.write(data)

    async def close(self) -> None:
        self._fh.close()


class LocalStorageProvider(StorageProvider):
    name = "local"

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts:
            raise StorageError(f"path escapes storage root: {path}")
        return self.root.joinpath(*relative.parts)

    async def stat(self, path: str) -> StatResult:
        target = self._resolve(path)
        try:
            info = target.stat()
        except FileNotFoundError:
            raise ArtifactNotFoundError(path) from None
        except OSError as exc:
            raise StorageError(f"stat {path}: {exc}") from exc
        return StatResult(
            path=path,
            size=info.st_size,
            modified_at=datetime.fromtimestamp(info.st_mtime, UTC),
            is_dir=target.is_dir(),
        )

    async def create(self, path: str) -> WritableHandle:
        target = self._resolve(path)
        try:
            fh = target.open("wb")
        except FileNotFoundError as exc:
            raise StorageError(f"parent directory of {path} does not exist") from exc
        except OSError as exc:
            raise StorageError(f"create {path}: {exc}") from exc
        return _LocalHandle(fh)

    async def open(self, path: str) -> BinaryIO:
        target = self._resolve(path)
        try:
            return target.open("rb")
        except (FileNotFoundError, IsADirectoryError):
            raise ArtifactNotFoundError(path) from None
        except OSError as exc:
            raise StorageError(f"open {path}: {exc}") from exc

    async def remove(self, path: str) -> None:
        target = self._resolve(path)
        try:
            if target.is_dir():
                target.rmdir()
            else:
                target.unlink()
        except FileNotFoundError:
            raise ArtifactNotFoundError(path) from None
        except OSError as exc:
            raise StorageError(f"remove {path}: {exc}") from exc

    async def mkdir_all(self, path: str) -> None:
        try:
            self._resolve(path).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"mkdir {path}: {exc}") from exc

    def _sweep_stale_temps(self, target: Path) -> None:
        # left behind by a writer killed between mkstemp and os.replace
        cutoff = time.time() - STALE_TEMP_SECONDS
        for leftover in target.parent.glob(f".{glob.escape(target.name)}.*.tmp"):
            try:
                if leftover.stat().st_mtime < cutoff:
                    leftover.unlink()
                    logger.info("Removed stale temp file %s", leftover)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Could not remove stale temp file %s: %s", leftover, exc)

    async def write_all(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            self._sweep_stale_temps(target)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        except OSError as exc:
            raise StorageError(f"write {path}: {exc}") from exc

        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, target)
        except BaseException as exc:
            # the final path still holds the previous bytes (or nothing)
            tmp.unlink(missing_ok=True)
            if isinstance(exc, OSError):
                raise StorageError(f"write {path}: {exc}") from exc
            raise
        logger.debug("Wrote %d bytes to %s", len(data), target)
