import io
import logging
import os
import tarfile
import tempfile
from pathlib import Path
from typing import BinaryIO

from pyocitool import layout
from pyocitool.context import Context, check
from pyocitool.descriptor import Descriptor, parse_descriptor
from pyocitool.errors import NotFoundError, OCIError, UnimplementedError
from pyocitool.refs import Engine, ListNameCallback, paginate, validate_name
from pyocitool.walker import clean

logger = logging.getLogger(__name__)


def _dump(descriptor: Descriptor) -> bytes:
    data = descriptor.model_dump_json(exclude_none=True, by_alias=True)
    return data.encode("utf-8")


class DirEngine(Engine):
    """A refs.Engine backed by an image layout directory"""

    def __init__(self, path: str | os.PathLike, ctx: Context | None = None):
        layout.check_dir_version(path)
        self.path = Path(path)
        self.ctx = ctx

    def _ref_path(self, name: str) -> Path:
        validate_name(name)
        return self.path / "refs" / name

    def put(self, name: str, descriptor: Descriptor):
        self._check_open()
        target = self._ref_path(name)
        target.parent.mkdir(parents=True, exist_ok=True)
        # staged in the layout root so refs/ only ever holds references
        with tempfile.NamedTemporaryFile(
            dir=self.path, prefix=".tmp-ref-", delete=False
        ) as tmp:
            tmp.write(_dump(descriptor))
        os.replace(tmp.name, target)
        logger.debug("Stored reference %s -> %s", name, descriptor.digest)

    def get(self, name: str) -> Descriptor:
        self._check_open()
        path = self._ref_path(name)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(f"refs/{name}: not found") from None
        return parse_descriptor(data, source=f"refs/{name}")

    def list(self, prefix: str, size: int, from_: int, callback: ListNameCallback):
        self._check_open()
        check(self.ctx)
        refs = self.path / "refs"
        try:
            names = [entry.name for entry in os.scandir(refs) if entry.is_file()]
        except FileNotFoundError:
            names = []
        paginate(names, prefix, size, from_, callback, ctx=self.ctx)

    def delete(self, name: str):
        self._check_open()
        try:
            self._ref_path(name).unlink()
        except FileNotFoundError:
            raise NotFoundError(f"refs/{name}: not found") from None

    def close(self):
        self.closed = True


class TarEngine(Engine):
    """A refs.Engine backed by an image layout tar file"""

    def __init__(self, file: BinaryIO, ctx: Context | None = None):
        layout.check_tar_version(file, ctx=ctx)
        self.file = file
        self.ctx = ctx

    def put(self, name: str, descriptor: Descriptor):
        self._check_open()
        validate_name(name)
        data = _dump(descriptor)
        self.file = layout.write_tar_entry_by_name(
            self.file, f"./refs/{name}", io.BytesIO(data), size=len(data), ctx=self.ctx
        )
        logger.debug("Stored reference %s -> %s", name, descriptor.digest)

    def get(self, name: str) -> Descriptor:
        self._check_open()
        validate_name(name)
        try:
            with layout.tar_entry_by_name(self.file, f"./refs/{name}", ctx=self.ctx) as (
                _,
                reader,
            ):
                data = reader.read()
        except NotFoundError:
            raise NotFoundError(f"refs/{name}: not found") from None
        return parse_descriptor(data, source=f"refs/{name}")

    def list(self, prefix: str, size: int, from_: int, callback: ListNameCallback):
        self._check_open()
        check(self.ctx)
        names = []
        self.file.seek(0, os.SEEK_SET)
        with tarfile.open(fileobj=self.file, mode="r:") as tar:
            for member in layout.iter_members(tar, self.ctx):
                path = clean(member.name)
                if not member.isfile() or not path.startswith("refs/"):
                    continue
                name = path.removeprefix("refs/")
                if "/" not in name:
                    names.append(name)
        paginate(names, prefix, size, from_, callback, ctx=self.ctx)

    def delete(self, name: str):
        raise UnimplementedError("TarEngine.delete is not supported yet")

    def close(self):
        if not self.closed:
            self.file.close()
        self.closed = True


def new_engine(path: str | os.PathLike, ctx: Context | None = None) -> Engine:
    """Open the image layout at path, a directory or a tar file"""
    if os.path.isdir(path):
        return DirEngine(path, ctx=ctx)
    try:
        file = open(os.fspath(path), "r+b")
    except OSError as err:
        raise OCIError(f"{path}: unable to open image layout") from err
    try:
        return TarEngine(file, ctx=ctx)
    except BaseException:
        file.close()
        raise
