"""
Archive builder: packs a fetched page into one self-contained record.

Record layout (gzipped WARC, one member per record, in this order):
  metadata  application/json manifest: url, title, resource table, omitted
  resource  index.html, the root document with references rewritten to res/ names
  resource  one per embedded sub-resource, WARC-Target-URI is its original URL
"""
from __future__ import annotations

import base64
import io
import json
import logging
import re
import uuid
import zlib
from datetime import UTC, datetime

from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup
from warcio.archiveiterator import ArchiveIterator
from warcio.exceptions import ArchiveLoadFailed
from warcio.statusandheaders import StatusAndHeadersParserException
from warcio.warcwriter import WARCWriter

from archivist.errors import BuildError, CorruptArtifactError
from archivist.models import ArchivedResource, ArchiveRecord, BookmarkDTO, FetchResult, OmittedResource
from archivist.services.fetcher import CSS_URL_RE, css_reference, document_base, inline_css, iter_references
from archivist.utils import extension_for, media_type

logger = logging.getLogger(__name__)

FORMAT_VERSION = 2
_STRIP_ON_REWRITE = ("srcset", "integrity", "crossorigin")
_DECODE_ERRORS = (
    ArchiveLoadFailed,
    StatusAndHeadersParserException,
    zlib.error,
    EOFError,
    OSError,
    AttributeError,
    IndexError,
    KeyError,
    TypeError,
    ValueError,
)


class ArchiveBuilder:
    def build(self, bookmark: BookmarkDTO, fetched: FetchResult) -> ArchiveRecord:
        document = fetched.document
        try:
            soup = BeautifulSoup(document.content, "html.parser")
        except ParserRejectedMarkup as exc:
            raise BuildError(f"cannot parse {document.final_url}: {exc}") from exc

        base = document_base(soup, document.final_url)

        embedded: dict[str, ArchivedResource] = {}
        for index, item in enumerate(fetched.resources):
            name = f"res/{index:03d}{extension_for(item.content_type, item.final_url)}"
            embedded[item.url] = ArchivedResource(
                name=name,
                url=item.url,
                content_type=media_type(item.content_type),
                content=item.content,
            )
        omitted_urls = {entry.url for entry in fetched.omitted}

        for tag, attr, absolute in list(iter_references(soup, base)):
            if absolute in embedded:
                tag[attr] = embedded[absolute].name
                for extra in _STRIP_ON_REWRITE:
                    del tag[extra]
            elif absolute in omitted_urls:
                tag[attr] = absolute

        def swap(match: re.Match) -> str:
            absolute = css_reference(match.group(2), base)
            if absolute in embedded:
                return f'url("{embedded[absolute].name}")'
            if absolute in omitted_urls:
                return f'url("{absolute}")'
            return match.group(0)

        for tag, attr, text in list(inline_css(soup)):
            rewritten = CSS_URL_RE.sub(swap, text)
            if rewritten == text:
                continue
            if attr is None:
                tag.string = rewritten
            else:
                tag[attr] = rewritten

        for tag in soup.find_all("base"):
            tag.decompose()

        title = ""
        if soup.title and soup.title.string:
            title = soup.title.string.strip()

        image = embedded.get(fetched.metadata_image_url)
        try:
            html = soup.encode("utf-8").decode("utf-8")
        except (UnicodeError, ValueError) as exc:
            raise BuildError(f"cannot encode {document.final_url}: {exc}") from exc

        return ArchiveRecord(
            bookmark_id=str(bookmark.id),
            url=bookmark.url,
            final_url=document.final_url,
            title=title,
            created_at=document.fetched_at,
            html=html,
            resources=list(embedded.values()),
            omitted=list(fetched.omitted),
            metadata_image=image.name if image else "",
        )


def _record_id(record: ArchiveRecord, name: str) -> str:
    # stable ids keep re-encoding the same record byte-identical
    seed = f"{record.bookmark_id}:{record.created_at.isoformat()}:{name}"
    return f"<urn:uuid:{uuid.uuid5(uuid.NAMESPACE_URL, seed)}>"


def encode_record(record: ArchiveRecord) -> bytes:
    html = record.html.encode("utf-8")
    manifest = {
        "version": FORMAT_VERSION,
        "bookmark_id": record.bookmark_id,
        "url": record.url,
        "final_url": record.final_url,
        "title": record.title,
        "created_at": record.created_at.isoformat(),
        "metadata_image": record.metadata_image,
        "html_size": len(html),
        "resources": [
            {"name": r.name, "url": r.url, "content_type": r.content_type, "size": len(r.content)}
            for r in record.resources
        ],
        "omitted": [{"url": o.url, "reason": o.reason} for o in record.omitted],
    }
    members = [
        ("manifest", "metadata", record.final_url, "application/json",
         json.dumps(manifest, ensure_ascii=False, indent=2).encode("utf-8")),
        ("index.html", "resource", record.final_url, "text/html; charset=utf-8", html),
    ] + [(r.name, "resource", r.url, r.content_type, r.content) for r in record.resources]

    warc_date = record.created_at.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    buffer = io.BytesIO()
    writer = WARCWriter(buffer, gzip=True)
    try:
        for name, record_type, uri, content_type, data in members:
            entry = writer.create_warc_record(
                uri,
                record_type,
                payload=io.BytesIO(data),
                length=len(data),
                warc_content_type=content_type,
                warc_headers_dict={"WARC-Record-ID": _record_id(record, name), "WARC-Date": warc_date},
            )
            writer.write_record(entry)
    except (ValueError, TypeError) as exc:
        raise BuildError(f"cannot encode archive for bookmark {record.bookmark_id}: {exc}") from exc
    return buffer.getvalue()


def decode_record(payload: bytes, path: str = "") -> ArchiveRecord:
    try:
        entries = [
            (entry.rec_type, entry.rec_headers.get_header("WARC-Target-URI"), entry.content_stream().read())
            for entry in ArchiveIterator(io.BytesIO(payload))
        ]
        if not entries or entries[0][0] != "metadata":
            raise CorruptArtifactError(path, "missing manifest")
        manifest = json.loads(entries[0][2])
        if not isinstance(manifest, dict):
            raise CorruptArtifactError(path, "manifest is not an object")
        if manifest.get("version") != FORMAT_VERSION:
            raise CorruptArtifactError(path, f"unsupported format version {manifest.get('version')!r}")

        listed = manifest["resources"]
        bodies = entries[1:]
        if len(bodies) != len(listed) + 1 or any(kind != "resource" for kind, _, _ in bodies):
            raise CorruptArtifactError(path, "records do not match the manifest")
        html = bodies[0][2]
        if len(html) != manifest["html_size"]:
            raise CorruptArtifactError(path, "index.html is truncated")

        resources = []
        for entry, (_, uri, content) in zip(listed, bodies[1:]):
            if uri != entry["url"] or len(content) != entry["size"]:
                raise CorruptArtifactError(path, f"{entry['name']} does not match the manifest")
            resources.append(
                ArchivedResource(
                    name=entry["name"], url=entry["url"], content_type=entry["content_type"], content=content
                )
            )
        return ArchiveRecord(
            bookmark_id=manifest["bookmark_id"],
            url=manifest["url"],
            final_url=manifest["final_url"],
            title=manifest["title"],
            created_at=datetime.fromisoformat(manifest["created_at"]),
            html=html.decode("utf-8"),
            resources=resources,
            omitted=[OmittedResource(url=o["url"], reason=o["reason"]) for o in manifest["omitted"]],
            metadata_image=manifest.get("metadata_image", ""),
        )
    except _DECODE_ERRORS as exc:
        raise CorruptArtifactError(path, str(exc) or type(exc).__name__) from exc


def _data_uri(resource: ArchivedResource) -> str:
    return f"data:{resource.content_type};base64,{base64.b64encode(resource.content).decode()}"


def inline_html(record: ArchiveRecord) -> str:
    """
    SingleFile-style rendition: stylesheets inlined as <style>, everything
    else embedded as data: URIs. Needs no storage or network to render.
    """
    soup = BeautifulSoup(record.html, "html.parser")

    def swap(match: re.Match) -> str:
        resource = record.resource(match.group(2).strip())
        return f'url("{_data_uri(resource)}")' if resource is not None else match.group(0)

    for tag, attr, text in list(inline_css(soup)):
        if attr is None:
            tag.string = CSS_URL_RE.sub(swap, text)
        else:
            tag[attr] = CSS_URL_RE.sub(swap, text)

    for tag in soup.find_all(["img", "script", "source", "video", "link"]):
        attr = "poster" if tag.name == "video" else "href" if tag.name == "link" else "src"
        resource = record.resource(tag.get(attr, ""))
        if resource is None:
            continue
        if tag.name == "link" and "stylesheet" in [r.lower() for r in tag.get("rel") or []]:
            style = soup.new_tag("style")
            style.string = resource.content.decode("utf-8", errors="replace")
            tag.replace_with(style)
            continue
        tag[attr] = _data_uri(resource)
    return str(soup)
