import mimetypes
from urllib.parse import urlparse


def is_valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def media_type(content_type: str) -> str:
    """`text/html; charset=utf-8` -> `text/html`"""
    return content_type.split(";")[0].strip().lower()


def extension_for(content_type: str, url: str = "") -> str:
    ext = mimetypes.guess_extension(media_type(content_type)) or ""
    if not ext and url:
        suffix = urlparse(url).path.rsplit("/", 1)[-1]
        if "." in suffix:
            ext = "." + suffix.rsplit(".", 1)[-1][:8].lower()
    return ext
