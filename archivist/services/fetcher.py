"""
Fetcher: retrieves a page and the sub-resources it needs to render.

A failure on the root document is fatal. A failure on a sub-resource is
recorded as an OmittedResource and the page is still archived.
"""
from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterator
from datetime import UTC, datetime
from urllib.parse import urldefrag, urljoin

import httpx
from bs4 import BeautifulSoup, Tag

from archivist.config import Settings
from archivist.errors import FetchError, ResourceSkipped, TooManyRedirectsError
from archivist.models import FetchedResource, FetchResult, OmittedResource
from archivist.utils import is_valid_url

logger = logging.getLogger(__name__)

REFERENCE_ATTRS = (
    ("img", "src"),
    ("script", "src"),
    ("source", "src"),
    ("video", "poster"),
    ("link", "href"),
)
LINK_RELS = {"stylesheet", "icon", "shortcut", "apple-touch-icon"}
METADATA_IMAGE_KEYS = (("property", "og:image"), ("name", "twitter:image"))
CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)


def document_base(soup: BeautifulSoup, final_url: str) -> str:
    base = soup.find("base", href=True)
    if isinstance(base, Tag):
        return urljoin(final_url, base["href"])
    return final_url


def iter_references(soup: BeautifulSoup, base_url: str) -> Iterator[tuple[Tag, str, str]]:
    """Yield (tag, attribute, absolute url) for every sub-resource reference."""
    for name, attr in REFERENCE_ATTRS:
        for tag in soup.find_all(name, attrs={attr: True}):
            if name == "link" and not LINK_RELS.intersection(r.lower() for r in tag.get("rel") or []):
                continue
            value = tag[attr].strip()
            if not value or value.startswith("data:"):
                continue
            absolute = urldefrag(urljoin(base_url, value))[0]
            if is_valid_url(absolute):
                yield tag, attr, absolute


def css_reference(value: str, base_url: str) -> str:
    """Absolute URL of a CSS url() argument, or "" when it is not fetchable."""
    value = value.strip()
    if not value or value.startswith("data:"):
        return ""
    absolute = urldefrag(urljoin(base_url, value))[0]
    return absolute if is_valid_url(absolute) else ""


def inline_css(soup: BeautifulSoup) -> Iterator[tuple[Tag, str | None, str]]:
    """Yield (tag, attribute, css text) for <style> blocks (attribute None) and style= attributes."""
    for tag in soup.find_all("style"):
        yield tag, None, tag.string or ""
    for tag in soup.find_all(style=True):
        yield tag, "style", tag["style"]


def iter_css_references(soup: BeautifulSoup, base_url: str) -> Iterator[str]:
    for _, _, text in inline_css(soup):
        for match in CSS_URL_RE.finditer(text):
            absolute = css_reference(match.group(2), base_url)
            if absolute:
                yield absolute


def metadata_image(soup: BeautifulSoup, base_url: str) -> str:
    for key, value in METADATA_IMAGE_KEYS:
        meta = soup.find("meta", attrs={key: value, "content": True})
        if isinstance(meta, Tag) and meta["content"].strip():
            absolute = urljoin(base_url, meta["content"].strip())
            if is_valid_url(absolute):
                return absolute
    return ""


class Fetcher:
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.request_timeout,
            follow_redirects=True,
            max_redirects=self.settings.max_redirects,
            headers={
                "User-Agent": self.settings.user_agent,
                "Accept-Language": "en-US,en;q=0.9",
            },
            transport=self._transport,
        )

    async def _get(self, client: httpx.AsyncClient, url: str, accept: str) -> FetchedResource:
        limit = self.settings.max_resource_bytes
        async with client.stream("GET", url, headers={"Accept": accept}) as response:
            response.raise_for_status()
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > limit:
                raise ResourceSkipped(url, f"exceeds {limit} bytes")

            chunks = []
            size = 0
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                if size > limit:
                    raise ResourceSkipped(url, f"exceeds {limit} bytes")
                chunks.append(chunk)

            return FetchedResource(
                url=url,
                final_url=str(response.url),
                content_type=response.headers.get("content-type", "application/octet-stream"),
                content=b"".join(chunks),
                fetched_at=datetime.now(UTC),
            )

    async def _get_document(self, client: httpx.AsyncClient, url: str) -> FetchedResource:
        try:
            return await self._get(client, url, "text/html,application/xhtml+xml,*/*;q=0.8")
        except httpx.TooManyRedirects as exc:
            raise TooManyRedirectsError(url, f"more than {self.settings.max_redirects} redirects") from exc
        except httpx.HTTPStatusError as exc:
            raise FetchError(url, f"HTTP {exc.response.status_code}") from exc
        except httpx.TimeoutException as exc:
            raise FetchError(url, "timed out") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise FetchError(url, str(exc) or type(exc).__name__) from exc
        except ResourceSkipped as exc:
            raise FetchError(url, exc.reason) from exc

    async def _get_resource(
        self, client: httpx.AsyncClient, semaphore: asyncio.Semaphore, url: str
    ) -> FetchedResource | OmittedResource:
        async with semaphore:
            try:
                resource = await self._get(client, url, "*/*")
            except ResourceSkipped as exc:
                reason = exc.reason
            except httpx.HTTPStatusError as exc:
                reason = f"HTTP {exc.response.status_code}"
            except httpx.TimeoutException:
                reason = "timed out"
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                reason = str(exc) or type(exc).__name__
            else:
                logger.debug("Fetched %s (%d bytes)", url, len(resource.content))
                return resource

        logger.warning("Omitting resource %s: %s", url, reason)
        return OmittedResource(url=url, reason=reason)

    async def fetch(self, url: str) -> FetchResult:
        if not is_valid_url(url):
            raise FetchError(url, "not an http(s) URL")

        async with self._client() as client:
            document = await self._get_document(client, url)
            logger.info("Fetched %s (%d bytes)", document.final_url, len(document.content))

            soup = BeautifulSoup(document.content, "html.parser")
            base = document_base(soup, document.final_url)
            wanted = list(dict.fromkeys(absolute for _, _, absolute in iter_references(soup, base)))
            wanted += [u for u in dict.fromkeys(iter_css_references(soup, base)) if u not in wanted]
            image_url = metadata_image(soup, base)
            if image_url and image_url not in wanted:
                wanted.append(image_url)

            cap = self.settings.max_resources
            omitted = [OmittedResource(url=extra, reason="resource limit reached") for extra in wanted[cap:]]
            semaphore = asyncio.Semaphore(self.settings.max_concurrent_fetches)
            outcomes = await asyncio.gather(
                *(self._get_resource(client, semaphore, target) for target in wanted[:cap])
            )

        resources = [o for o in outcomes if isinstance(o, FetchedResource)]
        omitted = [o for o in outcomes if isinstance(o, OmittedResource)] + omitted
        logger.info("Fetched %d sub-resources for %s, %d omitted", len(resources), url, len(omitted))
        return FetchResult(
            document=document,
            resources=resources,
            omitted=omitted,
            metadata_image_url=image_url,
        )
