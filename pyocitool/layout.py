"""Helpers for image layouts stored as directories or tar files

ref: https://github.com/opencontainers/image-spec/blob/main/image-layout.md
"""
import io
import logging
import os
import tarfile
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator

from pydantic import BaseModel, ValidationError

from pyocitool.context import Context, check
from pyocitool.errors import LayoutVersionError, NotFoundError, OCIError
from pyocitool.walker import WalkInfo, Walker, WalkResult, clean

logger = logging.getLogger(__name__)

LAYOUT_FILE = "oci-layout"
LAYOUT_VERSION = "1.0.0"


class ImageLayout(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-layout.md#oci-layout-file
    """

    imageLayoutVersion: str


def iter_members(tar: tarfile.TarFile, ctx: Context | None) -> Iterator[tarfile.TarInfo]:
    while True:
        check(ctx)
        member = tar.next()
        if member is None:
            return
        yield member


@contextmanager
def tar_entry_by_name(
    fileobj: BinaryIO, name: str, ctx: Context | None = None
) -> Iterator[tuple[tarfile.TarInfo, BinaryIO]]:
    """Find the entry `name` in the tar file and yield its header and content

    Raises NotFoundError when the archive has no such entry.
    """
    fileobj.seek(0, os.SEEK_SET)
    target = clean(name)
    try:
        tar = tarfile.open(fileobj=fileobj, mode="r:")
    except tarfile.TarError as err:
        raise OCIError("unable to read image layout tar") from err
    with tar:
        for member in iter_members(tar, ctx):
            if clean(member.name) != target:
                continue
            reader = tar.extractfile(member) if member.isfile() else None
            with reader or io.BytesIO(b"") as reader:
                yield member, reader
            return
    raise NotFoundError(f"{name}: not found")


def _new_entry(name: str, size: int, mode: int, type: bytes) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.size = size
    info.mode = mode
    info.mtime = int(time.time())
    info.type = type
    return info


def write_tar_entry_by_name(
    fileobj: BinaryIO,
    name: str,
    reader: BinaryIO,
    size: int | None = None,
    ctx: Context | None = None,
) -> BinaryIO:
    """Write content from reader to the entry `name`, replacing any previous entry

    Missing parent directories are added to the archive. When fileobj is a
    file on disk the archive is rewritten to a temporary file next to it,
    which then atomically replaces the original. The old handle is closed and
    a handle to the new file is returned. Other file objects are rewritten
    in place from an in-memory buffer and returned as is.
    """
    components = name.split("/")
    if components[0] != ".":
        raise OCIError(f"tar name entry does not start with './': {name!r}")
    parents = ["/".join(components[:i]) for i in range(2, len(components))]

    if size is None:
        data = reader.read()
        reader = io.BytesIO(data)
        size = len(data)

    path = getattr(fileobj, "name", None)
    on_disk = isinstance(path, (str, os.PathLike)) and os.path.isfile(path)
    if on_disk:
        target = tempfile.NamedTemporaryFile(
            dir=os.path.dirname(os.path.abspath(path)),
            prefix=".tmp-",
            suffix=".tar",
            delete=False,
        )
    else:
        target = io.BytesIO()

    try:
        with tarfile.open(fileobj=target, mode="w") as out:
            found = False
            fileobj.seek(0, os.SEEK_SET)
            with tarfile.open(fileobj=fileobj, mode="r:") as tar:
                for member in iter_members(tar, ctx):
                    dir_name = member.name.rstrip("/")
                    if dir_name in parents:
                        parents.remove(dir_name)
                    if clean(member.name) == clean(name):
                        found = True
                        out.addfile(_new_entry(name, size, 0o666, tarfile.REGTYPE), reader)
                    elif member.isfile():
                        out.addfile(member, tar.extractfile(member))
                    else:
                        out.addfile(member)

            if not found:
                for parent in parents:
                    out.addfile(_new_entry(parent + "/", 0, 0o777, tarfile.DIRTYPE))
                out.addfile(_new_entry(name, size, 0o666, tarfile.REGTYPE), reader)
    except BaseException:
        if on_disk:
            target.close()
            os.unlink(target.name)
        raise

    if on_disk:
        target.close()
        mode = fileobj.mode
        fileobj.close()
        os.replace(target.name, path)
        return open(path, mode)

    fileobj.seek(0, os.SEEK_SET)
    fileobj.write(target.getvalue())
    fileobj.truncate()
    return fileobj


def read_layout_version(data: bytes | str, source: str = LAYOUT_FILE) -> str:
    try:
        return ImageLayout.model_validate_json(data).imageLayoutVersion
    except ValidationError as err:
        raise LayoutVersionError(f"{source}: invalid image layout file") from err


def _check_version(version: str):
    if version != LAYOUT_VERSION:
        raise LayoutVersionError(f"unrecognized imageLayoutVersion: {version!r}")


def check_tar_version(fileobj: BinaryIO, ctx: Context | None = None):
    """Raise LayoutVersionError if oci-layout is missing or unrecognized"""
    try:
        with tar_entry_by_name(fileobj, f"./{LAYOUT_FILE}", ctx=ctx) as (_, reader):
            version = read_layout_version(reader.read())
    except NotFoundError:
        raise LayoutVersionError(f"{LAYOUT_FILE} not found") from None
    _check_version(version)


def check_dir_version(path: str | os.PathLike):
    layout_file = Path(path) / LAYOUT_FILE
    try:
        data = layout_file.read_bytes()
    except FileNotFoundError:
        raise LayoutVersionError(f"{layout_file}: {LAYOUT_FILE} not found") from None
    _check_version(read_layout_version(data, source=str(layout_file)))


def _layout_bytes() -> bytes:
    return ImageLayout(imageLayoutVersion=LAYOUT_VERSION).model_dump_json().encode()


def create_tar_file(path: str | os.PathLike):
    """Create a new, empty image layout tar file at path"""
    layout = _layout_bytes()
    try:
        file = open(path, "xb")
    except OSError as err:
        raise OCIError(f"{path}: unable to create image layout") from err
    with file, tarfile.open(fileobj=file, mode="w") as tar:
        for name in ("./blobs/", "./refs/"):
            tar.addfile(_new_entry(name, 0, 0o777, tarfile.DIRTYPE))
        tar.addfile(
            _new_entry(f"./{LAYOUT_FILE}", len(layout), 0o666, tarfile.REGTYPE),
            io.BytesIO(layout),
        )
    logger.info("Created image layout %s", path)


def create_layout_dir(path: str | os.PathLike):
    """Create a new, empty image layout directory at path"""
    root = Path(path)
    if (root / LAYOUT_FILE).exists():
        raise OCIError(f"{root}: image layout already exists")
    (root / "blobs").mkdir(parents=True, exist_ok=True)
    (root / "refs").mkdir(exist_ok=True)
    (root / LAYOUT_FILE).write_bytes(_layout_bytes())
    logger.info("Created image layout %s", root)


def check_walker_version(walker: Walker, ctx: Context | None = None):
    """Raise LayoutVersionError unless the walked store carries a known oci-layout"""
    versions: list[str] = []

    def visit(path: str, info: WalkInfo, reader: BinaryIO):
        if info.is_dir or clean(path) != LAYOUT_FILE:
            return WalkResult.CONTINUE
        versions.append(read_layout_version(reader.read()))
        return WalkResult.STOP

    walker.walk(visit, ctx=ctx)
    if not versions:
        raise LayoutVersionError(f"{LAYOUT_FILE} not found")
    _check_version(versions[0])
