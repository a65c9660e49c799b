import io
import tarfile

import pytest

from pyocitool.context import Context
from pyocitool.errors import CancelledError, WalkError
from pyocitool.walker import PathWalker, TarWalker, WalkResult, clean

from conftest import Entry, make_tar


@pytest.fixture
def tree(tmp_path):
    (tmp_path / "b").mkdir()
    (tmp_path / "b" / "file").write_bytes(b"content")
    (tmp_path / "a").write_bytes(b"a")
    return tmp_path


def collect(walker, **kwargs):
    seen = []

    def visit(path, info, reader):
        seen.append((clean(path), info.is_dir, reader.read()))

    result = walker.walk(visit, **kwargs)
    return result, seen


def test_path_walker_visits_everything_sorted(tree):
    result, seen = collect(PathWalker(tree))
    assert result is WalkResult.CONTINUE
    assert seen == [
        (".", True, b""),
        ("a", False, b"a"),
        ("b", True, b""),
        ("b/file", False, b"content"),
    ]


def test_tar_walker_visits_in_archive_order():
    data = make_tar(
        [Entry("z", b"last?"), Entry("d", type=tarfile.DIRTYPE), Entry("d/f", b"x")]
    )
    result, seen = collect(TarWalker(io.BytesIO(data)))
    assert result is WalkResult.CONTINUE
    assert seen == [("z", False, b"last?"), ("d", True, b""), ("d/f", False, b"x")]


def test_tar_walker_rewinds_between_walks():
    walker = TarWalker(io.BytesIO(make_tar([Entry("a", b"1")])))
    assert collect(walker)[1] == collect(walker)[1]


@pytest.mark.parametrize("kind", ["path", "tar"])
def test_walk_stops_early(tree, kind):
    if kind == "path":
        walker = PathWalker(tree)
    else:
        walker = TarWalker(io.BytesIO(make_tar([Entry("a", b"a"), Entry("b", b"b")])))
    seen = []

    def visit(path, info, reader):
        seen.append(clean(path))
        if clean(path) == "a":
            return WalkResult.STOP

    assert walker.walk(visit) is WalkResult.STOP
    assert seen[-1] == "a"
    assert "b" not in seen


def test_visitor_errors_propagate(tree):
    def visit(path, info, reader):
        raise KeyError(path)

    with pytest.raises(KeyError):
        PathWalker(tree).walk(visit)


def test_cancelled_walk(tree):
    ctx = Context()
    ctx.cancel()
    with pytest.raises(CancelledError):
        PathWalker(tree).walk(lambda *args: None, ctx=ctx)
    with pytest.raises(CancelledError):
        TarWalker(io.BytesIO(make_tar([Entry("a", b"a")]))).walk(
            lambda *args: None, ctx=ctx
        )


def test_tar_walker_rejects_garbage():
    with pytest.raises(WalkError):
        TarWalker(io.BytesIO(b"not a tar file" * 100)).walk(lambda *args: None)


def test_clean():
    assert clean("./blobs/sha256/") == "blobs/sha256"
    assert clean("refs/../refs/v1.0") == "refs/v1.0"
