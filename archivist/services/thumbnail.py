"""
Thumbnail generator.

Source preference: the page's own metadata image (og:image) embedded in
the archive, then a rendered capture of the archived document, otherwise
skipped. Either source is normalized to a JPEG that fits the configured box.
"""
from __future__ import annotations

import io
import logging
from typing import Protocol

from PIL import Image, UnidentifiedImageError
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from archivist.config import Settings
from archivist.errors import GenerationSkipped
from archivist.models import ArchiveRecord, ArtifactKind
from archivist.services.builder import inline_html

logger = logging.getLogger(__name__)

# DecompressionBombError is raised for images over Image.MAX_IMAGE_PIXELS
_IMAGE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError)


class PageRenderer(Protocol):
    async def capture(self, html: str) -> bytes:
        """Return a PNG/JPEG capture of `html`; raise GenerationSkipped if impossible."""
        ...


class PlaywrightRenderer:
    def __init__(self, settings: Settings):
        self.settings = settings

    async def capture(self, html: str) -> bytes:
        try:
            async with async_playwright() as p:
                browser = await p.chromium.launch(
                    headless=True,
                    args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage", "--disable-gpu"],
                )
                try:
                    context = await browser.new_context(
                        viewport={"width": 1280, "height": 960},
                        java_script_enabled=False,
                    )
                    page = await context.new_page()
                    # archived pages render offline; anything not inlined stays missing
                    await page.route("**/*", lambda route, _: route.abort())
                    await page.set_content(html, wait_until="load", timeout=self.settings.playwright_timeout_ms)
                    return await page.screenshot(full_page=False, type="png")
                finally:
                    await browser.close()
        except PlaywrightError as exc:
            logger.warning("Playwright capture failed: %s", exc)
            raise GenerationSkipped(ArtifactKind.THUMBNAIL, f"render failed: {exc}") from exc


class ThumbnailGenerator:
    def __init__(self, settings: Settings, renderer: PageRenderer | None = None):
        self.settings = settings
        self.renderer = renderer

    def _normalize(self, data: bytes) -> bytes:
        with Image.open(io.BytesIO(data)) as image:
            image = image.convert("RGB")
            image.thumbnail((self.settings.thumbnail_width, self.settings.thumbnail_height))
            out = io.BytesIO()
            image.save(out, format="JPEG", quality=self.settings.thumbnail_quality)
        return out.getvalue()

    async def generate(self, record: ArchiveRecord) -> bytes:
        image = record.resource(record.metadata_image) if record.metadata_image else None
        if image is not None:
            try:
                return self._normalize(image.content)
            except _IMAGE_ERRORS as exc:
                logger.warning("Metadata image %s unusable: %s", image.url, exc)

        if self.renderer is None:
            raise GenerationSkipped(ArtifactKind.THUMBNAIL, "no metadata image and rendering disabled")

        capture = await self.renderer.capture(inline_html(record))
        try:
            return self._normalize(capture)
        except _IMAGE_ERRORS as exc:
            raise GenerationSkipped(ArtifactKind.THUMBNAIL, f"capture unusable: {exc}") from exc
