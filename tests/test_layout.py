import io
import tarfile

import pytest

from pyocitool import layout
from pyocitool.errors import LayoutVersionError, NotFoundError, OCIError
from pyocitool.walker import PathWalker, TarWalker


def names(path):
    with tarfile.open(path) as tar:
        return tar.getnames()


def test_create_tar_file(layout_tar):
    assert names(layout_tar) == ["./blobs", "./refs", "./oci-layout"]
    with open(layout_tar, "rb") as file:
        layout.check_tar_version(file)


def test_create_tar_file_refuses_existing(layout_tar):
    with pytest.raises(OCIError):
        layout.create_tar_file(layout_tar)


def test_create_layout_dir(layout_dir):
    assert sorted(p.name for p in layout_dir.iterdir()) == ["blobs", "oci-layout", "refs"]
    layout.check_dir_version(layout_dir)
    layout.check_walker_version(PathWalker(layout_dir))
    with pytest.raises(OCIError):
        layout.create_layout_dir(layout_dir)


def test_tar_entry_by_name(layout_tar):
    with open(layout_tar, "rb") as file:
        with layout.tar_entry_by_name(file, "./oci-layout") as (member, reader):
            assert member.isfile()
            assert b"1.0.0" in reader.read()
        with pytest.raises(NotFoundError):
            with layout.tar_entry_by_name(file, "./missing"):
                pass


def test_write_tar_entry_replaces(layout_tar):
    file = open(layout_tar, "r+b")
    file = layout.write_tar_entry_by_name(file, "./refs/a", io.BytesIO(b"one"))
    file = layout.write_tar_entry_by_name(file, "./refs/a", io.BytesIO(b"two"))
    with layout.tar_entry_by_name(file, "./refs/a") as (_, reader):
        assert reader.read() == b"two"
    file.close()
    assert names(layout_tar).count("./refs/a") == 1
    assert not [p for p in layout_tar.parent.iterdir() if p.name.startswith(".tmp-")]


def test_write_tar_entry_in_memory(layout_tar):
    file = io.BytesIO(layout_tar.read_bytes())
    same = layout.write_tar_entry_by_name(file, "./x/y/z", io.BytesIO(b"deep"))
    assert same is file
    file.seek(0)
    with tarfile.open(fileobj=file) as tar:
        entries = tar.getnames()
    assert entries[-3:] == ["./x", "./x/y", "./x/y/z"]


def test_write_tar_entry_requires_relative_name(layout_tar):
    with open(layout_tar, "r+b") as file:
        with pytest.raises(OCIError):
            layout.write_tar_entry_by_name(file, "refs/a", io.BytesIO(b""))


@pytest.mark.parametrize("content", [b'{"imageLayoutVersion": "0.9"}', b"{}", b"nope"])
def test_bad_layout_version(tmp_path, content):
    (tmp_path / "oci-layout").write_bytes(content)
    with pytest.raises(LayoutVersionError):
        layout.check_dir_version(tmp_path)


def test_missing_layout_in_tar(tmp_path):
    path = tmp_path / "bare.tar"
    with tarfile.open(path, "w"):
        pass
    with open(path, "rb") as file:
        with pytest.raises(LayoutVersionError):
            layout.check_tar_version(file)
        with pytest.raises(LayoutVersionError):
            layout.check_walker_version(TarWalker(file))
