import json

import httpx
import pytest
from conftest import run

from archivist.config import Settings
from archivist.errors import ArtifactNotFoundError, StorageError
from archivist.storage.supabase import SupabaseStorageProvider

PREFIX = "/storage/v1/object/archives/"


class FakeBucket:
    def __init__(self, reject_post=False):
        self.objects = {}
        self.methods = []
        self.reject_post = reject_post

    def handler(self, request):
        path = request.url.path
        self.methods.append(request.method)
        assert request.headers["authorization"] == "Bearer secret"

        if path == "/storage/v1/object/list/archives":
            wanted = json.loads(request.content)["prefix"]
            names = [{"name": k} for k in self.objects if k.startswith(wanted + "/")]
            return httpx.Response(200, json=names)

        key = path[len(PREFIX):]
        if request.method == "HEAD":
            if key not in self.objects:
                return httpx.Response(400)
            return httpx.Response(
                200,
                headers={
                    "content-length": str(len(self.objects[key])),
                    "last-modified": "Mon, 19 Oct 2026 10:00:00 GMT",
                },
            )
        if request.method == "GET":
            if key not in self.objects:
                return httpx.Response(400, json={"error": "not_found"})
            return httpx.Response(200, content=self.objects[key])
        if request.method == "POST":
            if self.reject_post:
                return httpx.Response(409, json={"error": "Duplicate"})
            self.objects[key] = request.content
            return httpx.Response(200, json={"Key": key})
        if request.method == "PUT":
            self.objects[key] = request.content
            return httpx.Response(200, json={"Key": key})
        if request.method == "DELETE":
            if self.objects.pop(key, None) is None:
                return httpx.Response(404)
            return httpx.Response(200, json={})
        return httpx.Response(405)


@pytest.fixture
def supabase_settings():
    return Settings(_env_file=None, supabase_url="https://proj.supabase.co/", supabase_key="secret")


def make_provider(settings, bucket):
    return SupabaseStorageProvider(settings, transport=httpx.MockTransport(bucket.handler))


def test_requires_configuration():
    with pytest.raises(StorageError):
        SupabaseStorageProvider(Settings(_env_file=None))


def test_write_read_stat_remove(supabase_settings):
    bucket = FakeBucket()
    storage = make_provider(supabase_settings, bucket)

    run(storage.write_all("archive/42", b"zip-bytes"))
    assert bucket.objects == {"archive/42": b"zip-bytes"}
    assert run(storage.exists("archive/42"))
    assert run(storage.read_all("archive/42")) == b"zip-bytes"

    info = run(storage.stat("archive/42"))
    assert info.size == 9
    assert info.modified_at.year == 2026
    assert not info.is_dir

    run(storage.remove("archive/42"))
    assert not run(storage.exists("archive/42"))
    with pytest.raises(ArtifactNotFoundError):
        run(storage.remove("archive/42"))
    with pytest.raises(ArtifactNotFoundError):
        run(storage.read_all("archive/42"))


def test_directories_are_prefixes(supabase_settings):
    bucket = FakeBucket()
    storage = make_provider(supabase_settings, bucket)
    run(storage.write_all("thumb/1", b"jpeg"))

    assert run(storage.dir_exists("thumb"))
    assert not run(storage.file_exists("thumb"))
    assert not run(storage.dir_exists("ebook"))
    run(storage.mkdir_all("ebook"))  # no-op on object stores


def test_upload_falls_back_to_put(supabase_settings):
    bucket = FakeBucket(reject_post=True)
    storage = make_provider(supabase_settings, bucket)

    run(storage.write_all("archive/1", b"v2"))
    assert bucket.objects["archive/1"] == b"v2"
    assert bucket.methods == ["POST", "PUT"]


def test_create_uploads_on_close(supabase_settings):
    bucket = FakeBucket()
    storage = make_provider(supabase_settings, bucket)

    async def scenario():
        async with await storage.create("ebook/1.epub") as fh:
            fh.write(b"part one ")
            fh.write(b"part two")
            assert "ebook/1.epub" not in bucket.objects

    run(scenario())
    assert bucket.objects["ebook/1.epub"] == b"part one part two"


def test_network_failure_is_storage_error(supabase_settings):
    def broken(request):
        raise httpx.ConnectError("refused", request=request)

    storage = SupabaseStorageProvider(supabase_settings, transport=httpx.MockTransport(broken))
    with pytest.raises(StorageError):
        run(storage.write_all("archive/1", b"x"))
