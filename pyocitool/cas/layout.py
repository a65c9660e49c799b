import hashlib
import io
import logging
import os
import tarfile
import tempfile
from pathlib import Path
from typing import BinaryIO

from pyocitool import layout
from pyocitool.cas import Engine
from pyocitool.context import Context
from pyocitool.descriptor import CHUNK_SIZE, Digest
from pyocitool.errors import NotFoundError, OCIError, UnimplementedError
from pyocitool.walker import clean

logger = logging.getLogger(__name__)

ALGORITHM = "sha256"


class DirEngine(Engine):
    """A cas.Engine backed by an image layout directory"""

    def __init__(self, path: str | os.PathLike, ctx: Context | None = None):
        layout.check_dir_version(path)
        self.path = Path(path)
        self.ctx = ctx

    def _blob_path(self, digest: str) -> Path:
        return self.path / Digest.parse(digest).path

    def put(self, reader: BinaryIO) -> str:
        self._check_open()
        blob_dir = self.path / "blobs" / ALGORITHM
        blob_dir.mkdir(parents=True, exist_ok=True)

        h = hashlib.new(ALGORITHM)
        # Write next to the final location so the rename is atomic
        with tempfile.NamedTemporaryFile(dir=blob_dir, prefix=".tmp-", delete=False) as tmp:
            try:
                while chunk := reader.read(CHUNK_SIZE):
                    if self.ctx is not None:
                        self.ctx.check()
                    h.update(chunk)
                    tmp.write(chunk)
            except BaseException:
                tmp.close()
                os.unlink(tmp.name)
                raise

        digest = f"{ALGORITHM}:{h.hexdigest()}"
        target = self._blob_path(digest)
        if target.exists():
            logger.info("Blob already exists: %s", digest)
            os.unlink(tmp.name)
        else:
            os.replace(tmp.name, target)
            logger.debug("Stored blob %s", digest)
        return digest

    def get(self, digest: str) -> BinaryIO:
        self._check_open()
        path = self._blob_path(digest)
        try:
            return path.open("rb")
        except FileNotFoundError:
            raise NotFoundError(f"{digest}: not found") from None

    def delete(self, digest: str):
        self._check_open()
        path = self._blob_path(digest)
        try:
            path.unlink()
        except FileNotFoundError:
            raise NotFoundError(f"{digest}: not found") from None

    def close(self):
        self.closed = True


class TarEngine(Engine):
    """A cas.Engine backed by an image layout tar file"""

    def __init__(self, file: BinaryIO, ctx: Context | None = None):
        layout.check_tar_version(file, ctx=ctx)
        self.file = file
        self.ctx = ctx

    def _entry_name(self, digest: str) -> str:
        return f"./{Digest.parse(digest).path}"

    def put(self, reader: BinaryIO) -> str:
        self._check_open()
        data = reader.read()
        digest = f"{ALGORITHM}:{hashlib.new(ALGORITHM, data).hexdigest()}"
        try:
            self.get(digest).close()
        except NotFoundError:
            pass
        else:
            logger.info("Blob already exists: %s", digest)
            return digest

        self.file = layout.write_tar_entry_by_name(
            self.file,
            self._entry_name(digest),
            io.BytesIO(data),
            size=len(data),
            ctx=self.ctx,
        )
        logger.debug("Stored blob %s", digest)
        return digest

    def get(self, digest: str) -> BinaryIO:
        self._check_open()
        target = clean(self._entry_name(digest))
        self.file.seek(0, os.SEEK_SET)
        # The returned reader reads from self.file directly, it stays usable
        # after the TarFile itself is closed.
        with tarfile.open(fileobj=self.file, mode="r:") as tar:
            for member in layout.iter_members(tar, self.ctx):
                if member.isfile() and clean(member.name) == target:
                    return tar.extractfile(member)
        raise NotFoundError(f"{digest}: not found")

    def delete(self, digest: str):
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
