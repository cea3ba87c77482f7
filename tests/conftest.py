import asyncio
import io

import httpx
import pytest
from PIL import Image

from archivist.config import Settings
from archivist.storage.local import LocalStorageProvider


def png_bytes(size=(64, 48), color=(200, 40, 40)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


class FakeSite:
    """Routes keyed by absolute URL, served through httpx.MockTransport."""

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def add(self, url, content=b"", content_type="text/html; charset=utf-8", status=200, headers=None):
        def respond(request):
            return httpx.Response(
                status, headers={"content-type": content_type, **(headers or {})}, content=content
            )

        self.routes[url] = respond

    def redirect(self, url, location, status=302):
        self.routes[url] = lambda request: httpx.Response(status, headers={"location": location})

    def timeout(self, url):
        def respond(request):
            raise httpx.ReadTimeout("timed out", request=request)

        self.routes[url] = respond

    def hang(self, url):
        async def respond(request):
            await asyncio.sleep(30)

        self.routes[url] = respond

    async def handler(self, request):
        url = str(request.url)
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            route = self.routes.get(url)
            if route is None:
                return httpx.Response(404)
            response = route(request)
            if asyncio.iscoroutine(response):
                response = await response
            return response
        finally:
            self.in_flight -= 1

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    def count(self, url):
        return self.calls.count(url)


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        base_storage_dir=str(tmp_path / "data"),
        render_thumbnails=False,
        request_timeout=5.0,
        download_timeout=10.0,
    )


@pytest.fixture
def storage(settings):
    return LocalStorageProvider(settings.base_storage_dir)


def run(coro):
    return asyncio.run(coro)
