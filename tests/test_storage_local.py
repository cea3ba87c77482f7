import os
import time

import pytest
from conftest import run

from archivist.errors import ArtifactNotFoundError, StorageError
from archivist.storage.local import STALE_TEMP_SECONDS


def test_write_all_then_read(storage):
    run(storage.write_all("archive/1", b"payload"))

    assert run(storage.exists("archive/1"))
    assert run(storage.file_exists("archive/1"))
    assert run(storage.dir_exists("archive"))
    assert run(storage.read_all("archive/1")) == b"payload"
    assert run(storage.stat("archive/1")).size == 7


def test_missing_paths(storage):
    assert not run(storage.exists("archive/404"))
    with pytest.raises(ArtifactNotFoundError):
        run(storage.stat("archive/404"))
    with pytest.raises(ArtifactNotFoundError):
        run(storage.open("archive/404"))
    with pytest.raises(ArtifactNotFoundError):
        run(storage.remove("archive/404"))


def test_create_requires_parent_directory(storage):
    async def scenario():
        with pytest.raises(StorageError):
            await storage.create("nested/dir/file")
        await storage.mkdir_all("nested/dir")
        async with await storage.create("nested/dir/file") as fh:
            fh.write(b"abc")
        return await storage.read_all("nested/dir/file")

    assert run(scenario()) == b"abc"


def test_remove(storage):
    run(storage.write_all("thumb/1", b"x"))
    run(storage.remove("thumb/1"))
    assert not run(storage.exists("thumb/1"))


def test_paths_cannot_escape_root(storage):
    with pytest.raises(StorageError):
        run(storage.write_all("../outside", b"x"))
    with pytest.raises(StorageError):
        run(storage.stat("/etc/passwd"))


def test_write_all_replaces_existing_bytes(storage):
    run(storage.write_all("archive/1", b"old"))
    run(storage.write_all("archive/1", b"new and longer"))
    assert run(storage.read_all("archive/1")) == b"new and longer"


def test_interrupted_write_keeps_previous_artifact(storage, monkeypatch):
    run(storage.write_all("archive/1", b"committed"))

    def crash(src, dst):
        raise OSError("power cut")

    monkeypatch.setattr(os, "replace", crash)
    with pytest.raises(StorageError):
        run(storage.write_all("archive/1", b"half-written"))

    assert run(storage.read_all("archive/1")) == b"committed"
    assert sorted(p.name for p in (storage.root / "archive").iterdir()) == ["1"]


def test_interrupted_first_write_leaves_nothing(storage, monkeypatch):
    def crash(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", crash)
    with pytest.raises(StorageError):
        run(storage.write_all("archive/2", b"data"))

    assert not run(storage.exists("archive/2"))
    assert list((storage.root / "archive").iterdir()) == []


def test_write_file_copies_local_file(storage, tmp_path):
    source = tmp_path / "book.epub"
    source.write_bytes(b"epub")
    run(storage.write_file("ebook/1.epub", source))
    assert run(storage.read_all("ebook/1.epub")) == b"epub"


def test_write_file_missing_source(storage, tmp_path):
    with pytest.raises(StorageError):
        run(storage.write_file("ebook/1.epub", tmp_path / "nope"))


def test_write_all_sweeps_stale_temp_files(storage):
    parent = storage.root / "archive"
    parent.mkdir()
    stale = parent / ".7.k3j2h1.tmp"
    fresh = parent / ".7.a9b8c7.tmp"
    other = parent / ".70.x1y2z3.tmp"
    for leftover in (stale, fresh, other):
        leftover.write_bytes(b"partial")
    old = time.time() - STALE_TEMP_SECONDS - 60
    os.utime(stale, (old, old))
    os.utime(other, (old, old))

    run(storage.write_all("archive/7", b"payload"))

    assert not stale.exists()
    assert fresh.exists()
    assert other.exists()
    assert run(storage.read_all("archive/7")) == b"payload"
