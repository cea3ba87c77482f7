"""
Error taxonomy of the archival engine.

Fatal kinds derive from DownloadError or StorageError and abort the
operation that hit them. ResourceSkipped and GenerationSkipped are
non-fatal: they are recorded and the pipeline continues.
"""
from __future__ import annotations


class ArchivistError(Exception):
    pass


class StorageError(ArchivistError):
    """Backend read/write failure."""


class ArtifactNotFoundError(StorageError):
    def __init__(self, path: str):
        super().__init__(f"artifact not found: {path}")
        self.path = path


class CorruptArtifactError(ArchivistError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"artifact {path or '<bytes>'} is corrupt: {reason}")
        self.path = path
        self.reason = reason


class DownloadError(ArchivistError):
    pass


class FetchError(DownloadError):
    def __init__(self, url: str, reason: str):
        super().__init__(f"fetching {url} failed: {reason}")
        self.url = url
        self.reason = reason


class TooManyRedirectsError(FetchError):
    pass


class BuildError(DownloadError):
    pass


class DownloadTimeoutError(DownloadError):
    pass


class AlreadyInProgressError(DownloadError):
    def __init__(self, bookmark_id):
        super().__init__(f"download already in progress for bookmark {bookmark_id}")
        self.bookmark_id = bookmark_id


class ResourceSkipped(ArchivistError):
    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class GenerationSkipped(ArchivistError):
    def __init__(self, kind, reason: str):
        super().__init__(f"{kind.value} skipped: {reason}")
        self.kind = kind
        self.reason = reason
