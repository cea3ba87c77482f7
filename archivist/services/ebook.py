"""
EPUB export of an archive record.

Built from the stored record only, never from a fresh fetch, so the ebook
always matches the committed archive.
"""
from __future__ import annotations

import io
import logging
import posixpath
import uuid
import zipfile
from datetime import UTC, datetime
from xml.sax.saxutils import escape, quoteattr

from bs4 import BeautifulSoup

from archivist.errors import GenerationSkipped
from archivist.models import ArchiveRecord, ArtifactKind

logger = logging.getLogger(__name__)


def zip_timestamp(moment: datetime) -> tuple:
    moment = moment.astimezone(UTC)
    return (max(moment.year, 1980), moment.month, moment.day, moment.hour, moment.minute, moment.second)


_NOISE_TAGS = ["script", "style", "noscript", "form", "iframe", "object", "embed", "link", "meta", "title"]

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""

CHAPTER_XHTML = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE html>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
<head><meta charset="utf-8"/><title>{title}</title></head>
<body>
<h1>{title}</h1>
<p><a href={source}>{source_text}</a></p>
{body}
</body>
</html>
"""

NAV_XHTML = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE html>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
<head><meta charset="utf-8"/><title>{title}</title></head>
<body>
<nav epub:type="toc" id="toc"><ol><li><a href="chapter.xhtml">{title}</a></li></ol></nav>
</body>
</html>
"""

CONTENT_OPF = """<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="bookid">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    <dc:identifier id="bookid">urn:uuid:{book_id}</dc:identifier>
    <dc:title>{title}</dc:title>
    <dc:language>en</dc:language>
    <dc:source>{source}</dc:source>
    <meta property="dcterms:modified">{modified}</meta>
  </metadata>
  <manifest>
    <item id="nav" href="nav.xhtml" media-type="application/xhtml+xml" properties="nav"/>
    <item id="chapter" href="chapter.xhtml" media-type="application/xhtml+xml"/>
{images}
  </manifest>
  <spine>
    <itemref idref="chapter"/>
  </spine>
</package>
"""


class EbookGenerator:
    def _chapter_body(self, record: ArchiveRecord) -> tuple[str, dict[str, tuple[str, bytes]]]:
        soup = BeautifulSoup(record.html, "html.parser")
        for tag in soup(_NOISE_TAGS):
            tag.decompose()
        body = soup.body or soup
        for tag in body.find_all(style=True):
            del tag["style"]

        images: dict[str, tuple[str, bytes]] = {}
        for img in body.find_all("img"):
            resource = record.resource(img.get("src", ""))
            if resource is None or not resource.content_type.startswith("image/"):
                # readers are offline; remote images would render as broken boxes
                img.decompose()
                continue
            href = "images/" + posixpath.basename(resource.name)
            images[href] = (resource.content_type, resource.content)
            img["src"] = href
            img["alt"] = img.get("alt", "")
            for attr in ("srcset", "sizes", "loading", "decoding"):
                del img[attr]

        if not body.get_text(strip=True):
            raise GenerationSkipped(ArtifactKind.EBOOK, "no readable text")
        return "".join(str(child) for child in body.contents), images

    def generate(self, record: ArchiveRecord) -> bytes:
        body, images = self._chapter_body(record)
        title = escape(record.title or record.url)
        modified = record.created_at.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        book_id = uuid.uuid5(uuid.NAMESPACE_URL, f"{record.bookmark_id}:{record.url}")

        image_items = "\n".join(
            f'    <item id="img{n}" href="{href}" media-type="{content_type}"/>'
            for n, (href, (content_type, _)) in enumerate(images.items())
        )
        files = [
            ("META-INF/container.xml", CONTAINER_XML),
            (
                "OEBPS/content.opf",
                CONTENT_OPF.format(
                    book_id=book_id, title=title, source=escape(record.url), modified=modified, images=image_items
                ),
            ),
            ("OEBPS/nav.xhtml", NAV_XHTML.format(title=title)),
            (
                "OEBPS/chapter.xhtml",
                CHAPTER_XHTML.format(
                    title=title, source=quoteattr(record.url), source_text=escape(record.url), body=body
                ),
            ),
        ]

        stamp = zip_timestamp(record.created_at)
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as epub:
            # the mimetype entry must come first and stay uncompressed
            epub.writestr(zipfile.ZipInfo("mimetype", date_time=stamp), "application/epub+zip", zipfile.ZIP_STORED)
            for name, text in files:
                epub.writestr(zipfile.ZipInfo(name, date_time=stamp), text.encode("utf-8"), zipfile.ZIP_DEFLATED)
            for href, (_, data) in images.items():
                epub.writestr(zipfile.ZipInfo(f"OEBPS/{href}", date_time=stamp), data, zipfile.ZIP_DEFLATED)

        logger.info("Built ebook for bookmark %s (%d images)", record.bookmark_id, len(images))
        return buffer.getvalue()
