import io
import os
import tarfile

import pytest

from pyocitool.context import Context
from pyocitool.errors import (
    CancelledError,
    DuplicateEntryError,
    UnsafeLinkError,
    UnsafePathError,
)
from pyocitool.layer import create_layer, unpack_layer

from conftest import Entry, make_tar

DIR = tarfile.DIRTYPE
SYMLINK = tarfile.SYMTYPE
HARDLINK = tarfile.LNKTYPE


def unpack(dest, entries, compress=True, **kwargs):
    unpack_layer(dest, io.BytesIO(make_tar(entries, compress=compress)), **kwargs)


@pytest.mark.parametrize("compress", [True, False])
def test_unpack_file(tmp_path, compress):
    unpack(tmp_path, [Entry("test", b"test", mode=0o640)], compress=compress)
    assert (tmp_path / "test").read_bytes() == b"test"
    assert (tmp_path / "test").stat().st_mode & 0o777 == 0o640


def test_unpack_creates_missing_parents(tmp_path):
    unpack(tmp_path, [Entry("a/b/c", b"deep")])
    assert (tmp_path / "a" / "b" / "c").read_bytes() == b"deep"


def test_unpack_directory_is_idempotent(tmp_path):
    (tmp_path / "etc").mkdir()
    (tmp_path / "etc" / "existing").write_bytes(b"x")
    unpack(tmp_path, [Entry("etc", type=DIR)])
    assert (tmp_path / "etc" / "existing").read_bytes() == b"x"


def test_unpack_overwrites_file(tmp_path):
    (tmp_path / "file").write_bytes(b"a much longer original content")
    unpack(tmp_path, [Entry("file", b"new")])
    assert (tmp_path / "file").read_bytes() == b"new"


def test_unpack_replaces_file_with_directory(tmp_path):
    (tmp_path / "thing").write_bytes(b"file")
    unpack(tmp_path, [Entry("thing", type=DIR), Entry("thing/inner", b"x")])
    assert (tmp_path / "thing" / "inner").read_bytes() == b"x"


def test_unpack_directory_mtime(tmp_path):
    unpack(
        tmp_path,
        [Entry("dir", type=DIR, mtime=1_000_000_000), Entry("dir/file", b"x")],
    )
    assert int((tmp_path / "dir").stat().st_mtime) == 1_000_000_000


@pytest.mark.parametrize("name", ["../escape", "a/../../escape", "../../../../etc/passwd"])
def test_unpack_path_traversal(tmp_path, name):
    dest = tmp_path / "dest"
    with pytest.raises(UnsafePathError):
        unpack(dest, [Entry(name, b"evil")])
    assert not (tmp_path / "escape").exists()


def test_unpack_absolute_names_stay_inside(tmp_path):
    unpack(tmp_path, [Entry("/abs", b"x")])
    assert (tmp_path / "abs").read_bytes() == b"x"


def test_unpack_whiteout(tmp_path):
    (tmp_path / "etc").mkdir()
    (tmp_path / "etc" / "passwd").write_bytes(b"root")
    (tmp_path / "etc" / "group").write_bytes(b"root")
    unpack(tmp_path, [Entry("etc/.wh.passwd")])
    assert not (tmp_path / "etc" / "passwd").exists()
    assert not (tmp_path / "etc" / ".wh.passwd").exists()
    assert (tmp_path / "etc" / "group").exists()


def test_unpack_whiteout_directory(tmp_path):
    (tmp_path / "var" / "cache").mkdir(parents=True)
    (tmp_path / "var" / "cache" / "file").write_bytes(b"x")
    unpack(tmp_path, [Entry("var/.wh.cache")])
    assert not (tmp_path / "var" / "cache").exists()


def test_unpack_whiteout_missing_target(tmp_path):
    unpack(tmp_path, [Entry(".wh.nothing")])
    assert os.listdir(tmp_path) == []


def test_unpack_opaque_whiteout(tmp_path):
    (tmp_path / "opt").mkdir()
    (tmp_path / "opt" / "old").write_bytes(b"x")
    unpack(tmp_path, [Entry("opt/.wh..wh..opq"), Entry("opt/new", b"y")])
    assert os.listdir(tmp_path / "opt") == ["new"]


def test_unpack_duplicate_entry(tmp_path):
    with pytest.raises(DuplicateEntryError):
        unpack(tmp_path, [Entry("twice", b"1"), Entry("twice", b"2")])


def test_unpack_duplicate_after_normalisation(tmp_path):
    with pytest.raises(DuplicateEntryError):
        unpack(tmp_path, [Entry("a/b", b"1"), Entry("./a//b", b"2")])


def test_unpack_symlink(tmp_path):
    unpack(
        tmp_path,
        [Entry("target", b"x"), Entry("link", type=SYMLINK, linkname="target")],
    )
    assert os.readlink(tmp_path / "link") == "target"
    assert (tmp_path / "link").read_bytes() == b"x"


def test_unpack_absolute_symlink_inside(tmp_path):
    unpack(tmp_path, [Entry("bin/sh", type=SYMLINK, linkname="/bin/busybox")])
    assert os.readlink(tmp_path / "bin" / "sh") == "/bin/busybox"


@pytest.mark.parametrize("linkname", ["../../outside", "../.."])
def test_unpack_symlink_escape(tmp_path, linkname):
    with pytest.raises(UnsafeLinkError):
        unpack(tmp_path / "dest", [Entry("dir/link", type=SYMLINK, linkname=linkname)])


def test_unpack_through_symlinked_parent(tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    dest = tmp_path / "dest"
    dest.mkdir()
    os.symlink(outside, dest / "escape")
    with pytest.raises(UnsafePathError):
        unpack(dest, [Entry("escape/file", b"evil")])
    assert not (outside / "file").exists()


def test_unpack_file_below_absolute_symlink(tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    with pytest.raises(UnsafePathError):
        unpack(
            tmp_path / "dest",
            [
                Entry("escape", type=SYMLINK, linkname=str(outside)),
                Entry("escape/sub/file", b"evil"),
            ],
        )
    assert not (outside / "sub").exists()


def test_unpack_opaque_whiteout_below_absolute_symlink(tmp_path):
    outside = tmp_path / "outside"
    (outside / "sub").mkdir(parents=True)
    (outside / "sub" / "keep").write_bytes(b"keep")
    with pytest.raises(UnsafePathError):
        unpack(
            tmp_path / "dest",
            [
                Entry("escape", type=SYMLINK, linkname=str(outside)),
                Entry("escape/sub/.wh..wh..opq"),
            ],
        )
    assert (outside / "sub" / "keep").read_bytes() == b"keep"


def test_unpack_directory_below_absolute_symlink(tmp_path):
    outside = tmp_path / "outside"
    (outside / "sub").mkdir(parents=True)
    os.chmod(outside / "sub", 0o700)
    with pytest.raises(UnsafePathError):
        unpack(
            tmp_path / "dest",
            [
                Entry("escape", type=SYMLINK, linkname=str(outside)),
                Entry("escape/sub", type=DIR),
            ],
        )
    assert os.stat(outside / "sub").st_mode & 0o7777 == 0o700


def test_unpack_hardlink(tmp_path):
    unpack(
        tmp_path,
        [Entry("original", b"data"), Entry("copy", type=HARDLINK, linkname="original")],
    )
    assert (tmp_path / "copy").read_bytes() == b"data"
    assert os.stat(tmp_path / "copy").st_ino == os.stat(tmp_path / "original").st_ino


def test_unpack_hardlink_escape(tmp_path):
    with pytest.raises(UnsafeLinkError):
        unpack(
            tmp_path / "dest",
            [Entry("link", type=HARDLINK, linkname="../../etc/passwd")],
        )


def test_unpack_cancelled(tmp_path):
    ctx = Context()
    ctx.cancel()
    with pytest.raises(CancelledError):
        unpack(tmp_path, [Entry("never", b"x")], ctx=ctx)
    assert not (tmp_path / "never").exists()


def test_unpack_stops_at_global_header(tmp_path):
    first = make_tar([Entry("before", b"test")], compress=False)
    buf = io.BytesIO()
    with tarfile.open(
        fileobj=buf, mode="w", format=tarfile.PAX_FORMAT, pax_headers={"comment": "x"}
    ) as tar:
        info = tarfile.TarInfo("after")
        info.size = 4
        tar.addfile(info, io.BytesIO(b"test"))
    # header and one data block of the first archive, without its end marker
    data = first[:1024] + buf.getvalue()

    unpack_layer(tmp_path, io.BytesIO(data))
    assert (tmp_path / "before").read_bytes() == b"test"
    assert not (tmp_path / "after").exists()


def read_layer(path):
    with tarfile.open(path) as tar:
        return {m.name: (tar.extractfile(m).read() if m.isfile() else None) for m in tar}


def test_create_layer_without_parent(tmp_path):
    child = tmp_path / "child"
    (child / "etc").mkdir(parents=True)
    (child / "etc" / "hostname").write_bytes(b"box")
    output = create_layer(child)
    assert output == tmp_path / "child.tar"
    assert read_layer(output) == {"etc": None, "etc/hostname": b"box"}


def test_create_layer_changes(tmp_path):
    parent = tmp_path / "parent"
    child = tmp_path / "child"
    for root in (parent, child):
        (root / "etc").mkdir(parents=True)
        (root / "same").write_bytes(b"same")
        os.utime(root / "same", (1_000_000_000, 1_000_000_000))
    (parent / "etc" / "gone").write_bytes(b"x")
    (parent / "olddir" / "nested").mkdir(parents=True)
    (child / "etc" / "added").write_bytes(b"new")

    entries = read_layer(create_layer(child, parent, tmp_path / "out.tar"))
    assert entries == {
        "etc": None,
        "etc/added": b"new",
        "etc/.wh.gone": b"",
        ".wh.olddir": b"",
    }


def test_create_layer_round_trip(tmp_path):
    parent = tmp_path / "parent"
    child = tmp_path / "child"
    for root in (parent, child):
        root.mkdir()
        (root / "keep").write_bytes(b"keep")
        os.utime(root / "keep", (1_000_000_000, 1_000_000_000))
    (parent / "remove").write_bytes(b"x")
    (child / "add").write_bytes(b"y")

    output = create_layer(child, parent, tmp_path / "diff.tar")
    dest = tmp_path / "dest"
    unpack(dest, [Entry("keep", b"keep"), Entry("remove", b"x")], compress=False)
    with open(output, "rb") as layer:
        unpack_layer(dest, layer)
    assert sorted(os.listdir(dest)) == ["add", "keep"]
