"""
Archiver service: the entry point callers use for bookmark archives.

  download_bookmark_archive  fetch -> build -> commit archive -> thumbnail -> ebook
  get_bookmark_archive       read + decode the committed record
  has_archive / has_*        storage existence checks, never fetch

At most one download per bookmark runs at a time. With the "wait" policy
later callers share the running download; with "reject" they get
AlreadyInProgressError.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from pathlib import Path

from archivist.config import Settings
from archivist.errors import (
    AlreadyInProgressError,
    ArtifactNotFoundError,
    DownloadTimeoutError,
    GenerationSkipped,
    StorageError,
)
from archivist.models import ArchiveRecord, ArtifactKind, BookmarkDTO
from archivist.namer import bookmark_key, path_for
from archivist.services.builder import ArchiveBuilder, decode_record, encode_record
from archivist.services.ebook import EbookGenerator
from archivist.services.fetcher import Fetcher
from archivist.services.thumbnail import PlaywrightRenderer, ThumbnailGenerator
from archivist.storage.base import StorageProvider
from archivist.storage.local import LocalStorageProvider
from archivist.storage.supabase import SupabaseStorageProvider

logger = logging.getLogger(__name__)


@dataclass
class _Flight:
    task: asyncio.Task
    waiters: int = 0
    owned: bool = False    # a start_download caller holds the task and may await it later


class ArchiverService:
    def __init__(
        self,
        settings: Settings,
        storage: StorageProvider,
        fetcher: Fetcher | None = None,
        builder: ArchiveBuilder | None = None,
        thumbnailer: ThumbnailGenerator | None = None,
        ebook: EbookGenerator | None = None,
    ):
        self.settings = settings
        self.storage = storage
        self.fetcher = fetcher or Fetcher(settings)
        self.builder = builder or ArchiveBuilder()
        self.thumbnailer = thumbnailer or ThumbnailGenerator(settings)
        self.ebook = ebook or EbookGenerator()
        self._flights: dict[str, _Flight] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> ArchiverService:
        if settings.storage_backend == "supabase":
            storage: StorageProvider = SupabaseStorageProvider(settings)
        else:
            storage = LocalStorageProvider(Path(settings.base_storage_dir))
        renderer = PlaywrightRenderer(settings) if settings.render_thumbnails else None
        return cls(settings, storage, thumbnailer=ThumbnailGenerator(settings, renderer))

    # ── presence ─────────────────────────────────────────────────────────────

    async def has_archive(self, bookmark: BookmarkDTO) -> bool:
        return await self.storage.exists(path_for(bookmark.id, ArtifactKind.ARCHIVE))

    async def has_thumbnail(self, bookmark: BookmarkDTO) -> bool:
        return await self.storage.exists(path_for(bookmark.id, ArtifactKind.THUMBNAIL))

    async def has_ebook(self, bookmark: BookmarkDTO) -> bool:
        return await self.storage.exists(path_for(bookmark.id, ArtifactKind.EBOOK))

    async def with_presence(self, bookmark: BookmarkDTO) -> BookmarkDTO:
        return replace(
            bookmark,
            has_archive=await self.has_archive(bookmark),
            has_thumbnail=await self.has_thumbnail(bookmark),
            has_ebook=await self.has_ebook(bookmark),
        )

    # ── read path ────────────────────────────────────────────────────────────

    async def get_bookmark_archive(self, bookmark: BookmarkDTO) -> ArchiveRecord:
        path = path_for(bookmark.id, ArtifactKind.ARCHIVE)
        payload = await self.storage.read_all(path)
        return decode_record(payload, path)

    async def get_bookmark_thumbnail(self, bookmark: BookmarkDTO) -> bytes:
        return await self.storage.read_all(path_for(bookmark.id, ArtifactKind.THUMBNAIL))

    async def get_bookmark_ebook(self, bookmark: BookmarkDTO) -> bytes:
        return await self.storage.read_all(path_for(bookmark.id, ArtifactKind.EBOOK))

    # ── download ─────────────────────────────────────────────────────────────

    def is_downloading(self, bookmark: BookmarkDTO) -> bool:
        return bookmark_key(bookmark.id) in self._flights

    def _join(self, bookmark: BookmarkDTO, timeout: float | None) -> _Flight:
        key = bookmark_key(bookmark.id)
        flight = self._flights.get(key)
        if flight is not None:
            if self.settings.single_flight_policy == "reject":
                raise AlreadyInProgressError(bookmark.id)
            logger.info("Joining in-flight download for bookmark %s", bookmark.id)
            return flight

        task = asyncio.create_task(self._download(bookmark, timeout), name=f"archive-{key}")
        flight = _Flight(task)
        self._flights[key] = flight
        task.add_done_callback(lambda _: self._land(key, flight))
        return flight

    def _land(self, key: str, flight: _Flight) -> None:
        if self._flights.get(key) is flight:
            del self._flights[key]

    def start_download(self, bookmark: BookmarkDTO, timeout: float | None = None) -> asyncio.Task:
        """Fire-and-poll variant: returns the task running (or already running) the download."""
        flight = self._join(bookmark, timeout)
        flight.owned = True
        return flight.task

    def cancel_download(self, bookmark: BookmarkDTO) -> bool:
        flight = self._flights.get(bookmark_key(bookmark.id))
        if flight is None:
            return False
        return flight.task.cancel()

    async def download_bookmark_archive(self, bookmark: BookmarkDTO, timeout: float | None = None) -> BookmarkDTO:
        flight = self._join(bookmark, timeout)
        task = flight.task
        flight.waiters += 1
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # last interested caller gone: abort the network work too
            if flight.waiters == 1 and not flight.owned and not task.done():
                task.cancel()
            raise
        finally:
            flight.waiters -= 1

    async def _download(self, bookmark: BookmarkDTO, timeout: float | None) -> BookmarkDTO:
        deadline = timeout if timeout is not None else self.settings.download_timeout
        try:
            async with asyncio.timeout(deadline):
                record = await self._commit_archive(bookmark)
        except TimeoutError as exc:
            logger.warning("Download of bookmark %s exceeded %.1fs", bookmark.id, deadline)
            raise DownloadTimeoutError(f"download of bookmark {bookmark.id} exceeded {deadline}s") from exc

        # the archive is committed; derived artifacts run on their own budget
        await self._derive(bookmark, ArtifactKind.THUMBNAIL, lambda: self.thumbnailer.generate(record))
        await self._derive(bookmark, ArtifactKind.EBOOK, lambda: self._ebook(record))
        return await self.with_presence(bookmark)

    async def _commit_archive(self, bookmark: BookmarkDTO) -> ArchiveRecord:
        logger.info("Archiving bookmark %s: %s", bookmark.id, bookmark.url)
        fetched = await self.fetcher.fetch(bookmark.url)
        record = self.builder.build(bookmark, fetched)
        payload = encode_record(record)

        archive_path = path_for(bookmark.id, ArtifactKind.ARCHIVE)
        await self.storage.write_all(archive_path, payload)
        logger.info(
            "Committed archive %s (%d bytes, %d resources, %d omitted)",
            archive_path, len(payload), len(record.resources), len(record.omitted),
        )
        return record

    async def _ebook(self, record: ArchiveRecord) -> bytes:
        return self.ebook.generate(record)

    async def _derive(
        self, bookmark: BookmarkDTO, kind: ArtifactKind, generate: Callable[[], Awaitable[bytes]]
    ) -> None:
        path = path_for(bookmark.id, kind)
        budget = self.settings.generation_timeout
        try:
            async with asyncio.timeout(budget):
                data = await generate()
        except GenerationSkipped as exc:
            logger.warning("Bookmark %s: %s", bookmark.id, exc)
            # a derived artifact must never describe an older archive
            await self._discard(path)
            return
        except TimeoutError:
            logger.warning("Bookmark %s: %s took longer than %.1fs", bookmark.id, kind.value, budget)
            await self._discard(path)
            return
        except Exception:
            logger.exception("Bookmark %s: %s generation failed", bookmark.id, kind.value)
            await self._discard(path)
            return

        try:
            await self.storage.write_all(path, data)
        except StorageError as exc:
            logger.warning("Could not store %s for bookmark %s: %s", kind.value, bookmark.id, exc)
            return
        logger.info("Stored %s for bookmark %s (%d bytes)", kind.value, bookmark.id, len(data))

    async def _discard(self, path: str) -> None:
        try:
            await self.storage.remove(path)
        except ArtifactNotFoundError:
            pass
        except StorageError as exc:
            logger.warning("Could not remove stale %s: %s", path, exc)

    # ── lifecycle ────────────────────────────────────────────────────────────

    async def delete_bookmark_artifacts(self, bookmark: BookmarkDTO) -> None:
        """Cascade of a bookmark delete; artifacts that were never made are ignored."""
        flight = self._flights.get(bookmark_key(bookmark.id))
        if flight is not None:
            flight.task.cancel()
            await asyncio.wait([flight.task])
        for kind in ArtifactKind:
            try:
                await self.storage.remove(path_for(bookmark.id, kind))
            except ArtifactNotFoundError:
                continue
        logger.info("Removed artifacts of bookmark %s", bookmark.id)
