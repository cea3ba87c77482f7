from archivist.utils import extension_for, is_valid_url, media_type


def test_valid_url():
    assert is_valid_url("https://example.com/post/1")


def test_invalid_url_scheme():
    assert not is_valid_url("ftp://example.com/file")


def test_invalid_url_netloc():
    assert not is_valid_url("https:///abc")


def test_media_type_strips_parameters():
    assert media_type("Text/HTML; charset=utf-8") == "text/html"


def test_extension_from_content_type():
    assert extension_for("image/png") == ".png"


def test_extension_falls_back_to_url_suffix():
    assert extension_for("application/x-unknown-thing", "https://cdn.example.com/a/font.WOFF2") == ".woff2"
