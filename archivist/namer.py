"""
Deterministic storage paths for bookmark artifacts.

Paths depend only on the bookmark identifier and the artifact kind, so
presence checks are plain `exists` calls and metadata edits never orphan
an artifact.
"""
from __future__ import annotations

from urllib.parse import quote

from archivist.models import ArtifactKind

_DIRS = {
    ArtifactKind.ARCHIVE: "archive",
    ArtifactKind.THUMBNAIL: "thumb",
    ArtifactKind.EBOOK: "ebook",
}
_SUFFIXES = {ArtifactKind.EBOOK: ".epub"}


def bookmark_key(bookmark_id: int | str) -> str:
    key = str(bookmark_id)
    if not key:
        raise ValueError("bookmark id must not be empty")
    # quote() keeps dots; "." and ".." must not become path components
    encoded = quote(key, safe="")
    if encoded.startswith("."):
        encoded = "%2E" + encoded[1:]
    return encoded


def path_for(bookmark_id: int | str, kind: ArtifactKind) -> str:
    return f"{_DIRS[kind]}/{bookmark_key(bookmark_id)}{_SUFFIXES.get(kind, '')}"
