from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ArtifactKind(Enum):
    ARCHIVE = "archive"
    THUMBNAIL = "thumbnail"
    EBOOK = "ebook"


@dataclass(frozen=True)
class BookmarkDTO:
    id: int | str
    url: str
    title: str = ""
    has_archive: bool = False
    has_thumbnail: bool = False
    has_ebook: bool = False


@dataclass
class FetchedResource:
    url: str                    # as referenced by the document
    final_url: str              # after redirects
    content_type: str
    content: bytes
    fetched_at: datetime


@dataclass(frozen=True)
class OmittedResource:
    url: str
    reason: str


@dataclass
class FetchResult:
    document: FetchedResource
    resources: list[FetchedResource] = field(default_factory=list)
    omitted: list[OmittedResource] = field(default_factory=list)
    metadata_image_url: str = ""


@dataclass
class ArchivedResource:
    name: str                   # member name inside the record, e.g. res/003.png
    url: str
    content_type: str
    content: bytes


@dataclass
class ArchiveRecord:
    bookmark_id: str
    url: str
    final_url: str
    title: str
    created_at: datetime
    html: str
    resources: list[ArchivedResource] = field(default_factory=list)
    omitted: list[OmittedResource] = field(default_factory=list)
    metadata_image: str = ""    # name of the embedded og:image, if any

    def resource(self, name: str) -> ArchivedResource | None:
        for item in self.resources:
            if item.name == name:
                return item
        return None

    def resource_for_url(self, url: str) -> ArchivedResource | None:
        for item in self.resources:
            if item.url == url:
                return item
        return None


@dataclass(frozen=True)
class StatResult:
    path: str
    size: int
    modified_at: datetime | None
    is_dir: bool = False
