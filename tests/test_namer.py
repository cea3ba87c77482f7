import pytest

from archivist.models import ArtifactKind
from archivist.namer import bookmark_key, path_for


def test_kinds_get_distinct_paths():
    paths = {path_for(42, kind) for kind in ArtifactKind}
    assert len(paths) == 3


def test_paths_are_stable():
    assert path_for(42, ArtifactKind.ARCHIVE) == path_for(42, ArtifactKind.ARCHIVE) == "archive/42"
    assert path_for(42, ArtifactKind.THUMBNAIL) == "thumb/42"
    assert path_for(42, ArtifactKind.EBOOK) == "ebook/42.epub"


def test_integer_and_string_ids_name_the_same_bookmark():
    assert path_for(7, ArtifactKind.ARCHIVE) == path_for("7", ArtifactKind.ARCHIVE)


@pytest.mark.parametrize(
    "left, right",
    [("a/b", "a%2Fb"), ("..", "%2E."), (".hidden", "%2Ehidden"), ("x y", "x%20y")],
)
def test_encoding_is_injective(left, right):
    assert bookmark_key(left) != bookmark_key(right)


def test_ids_never_leave_their_directory():
    for raw in ("..", ".", "../etc/passwd", "a/../../b"):
        path = path_for(raw, ArtifactKind.ARCHIVE)
        head, _, tail = path.partition("/")
        assert head == "archive"
        assert "/" not in tail
        assert tail not in (".", "..")


def test_empty_id_is_rejected():
    with pytest.raises(ValueError):
        path_for("", ArtifactKind.ARCHIVE)
