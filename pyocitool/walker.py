"""Uniform traversal over image layout directories and image tar files.

A walker calls `visit(path, info, reader)` for every file or directory in the
store. The visitor returns `WalkResult.STOP` once it found what it was looking
for; anything else continues the walk. Exceptions raised by the visitor halt
the walk and propagate to the caller unchanged.
"""
import enum
import io
import logging
import os
import posixpath
import stat
import tarfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, Callable

from pyocitool.context import Context, check
from pyocitool.errors import WalkError

logger = logging.getLogger(__name__)


class WalkResult(enum.Enum):
    CONTINUE = "continue"
    STOP = "stop"


@dataclass(slots=True, frozen=True)
class WalkInfo:
    """Metadata of a visited entry"""

    name: str
    is_dir: bool
    size: int = 0
    mode: int = 0
    mtime: float = 0.0


VisitFunc = Callable[[str, WalkInfo, BinaryIO], "WalkResult | None"]


def clean(path: str) -> str:
    """Normalize a walked path, './blobs/sha256/' becomes 'blobs/sha256'"""
    return posixpath.normpath(path.replace(os.sep, "/"))


def _empty_reader() -> BinaryIO:
    # behave like a tar reader for directories
    return io.BytesIO(b"")


class Walker(ABC):
    @abstractmethod
    def walk(self, visit: VisitFunc, ctx: Context | None = None) -> WalkResult:
        """Call visit for every entry in the store

        Returns WalkResult.STOP when visit stopped the walk early,
        WalkResult.CONTINUE when all entries were visited.
        """


class PathWalker(Walker):
    """Walk a directory tree starting at root, without following symlinks.

    Paths handed to the visitor are relative to root, the root itself is '.'.
    """

    def __init__(self, root: str | os.PathLike):
        self.root = os.fspath(root)

    def __repr__(self):
        return f"PathWalker({self.root!r})"

    def walk(self, visit: VisitFunc, ctx: Context | None = None) -> WalkResult:
        def onerror(err: OSError):
            raise WalkError(f"error walking path: {err}") from err

        for dirpath, dirnames, filenames in os.walk(self.root, onerror=onerror):
            # os.walk yields in OS order, sort for reproducible walks
            dirnames.sort()
            check(ctx)
            rel = os.path.relpath(dirpath, self.root)
            if visit(rel, self._info(dirpath), _empty_reader()) is WalkResult.STOP:
                return WalkResult.STOP

            for filename in sorted(filenames):
                check(ctx)
                path = os.path.join(dirpath, filename)
                rel = os.path.relpath(path, self.root)
                info = self._info(path)
                if info.is_dir:
                    # symlink to a directory, listed but not descended into
                    result = visit(rel, info, _empty_reader())
                else:
                    try:
                        file = open(path, "rb")
                    except OSError as err:
                        raise WalkError(f"{path}: unable to open file") from err
                    with file:
                        result = visit(rel, info, file)
                if result is WalkResult.STOP:
                    return WalkResult.STOP
        return WalkResult.CONTINUE

    @staticmethod
    def _info(path: str) -> WalkInfo:
        try:
            st = os.lstat(path)
        except OSError as err:
            raise WalkError(f"{path}: unable to stat") from err
        return WalkInfo(
            name=os.path.basename(path),
            is_dir=stat.S_ISDIR(st.st_mode),
            size=st.st_size,
            mode=stat.S_IMODE(st.st_mode),
            mtime=st.st_mtime,
        )


class TarWalker(Walker):
    """Walk the entries of a tar archive in archive order.

    The underlying file object is rewound before every walk so repeated
    lookups against the same archive do not interfere.
    """

    def __init__(self, fileobj: BinaryIO):
        self.fileobj = fileobj

    def __repr__(self):
        return f"TarWalker({getattr(self.fileobj, 'name', self.fileobj)!r})"

    def walk(self, visit: VisitFunc, ctx: Context | None = None) -> WalkResult:
        try:
            self.fileobj.seek(0, os.SEEK_SET)
        except OSError as err:
            raise WalkError("unable to reset") from err

        try:
            tar = tarfile.open(fileobj=self.fileobj, mode="r:*")
        except tarfile.TarError as err:
            raise WalkError(f"{self!r}: error opening tar stream") from err

        with tar:
            while True:
                check(ctx)
                try:
                    member = tar.next()
                except tarfile.TarError as err:
                    raise WalkError("error advancing tar stream") from err
                if member is None:
                    return WalkResult.CONTINUE

                info = WalkInfo(
                    name=os.path.basename(member.name.rstrip("/")),
                    is_dir=member.isdir(),
                    size=member.size,
                    mode=member.mode,
                    mtime=member.mtime,
                )
                if member.isfile():
                    with tar.extractfile(member) as reader:
                        result = visit(member.name, info, reader)
                else:
                    result = visit(member.name, info, _empty_reader())
                if result is WalkResult.STOP:
                    return WalkResult.STOP
