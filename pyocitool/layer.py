"""Unpacking and creation of image layers

ref: https://github.com/opencontainers/image-spec/blob/main/layer.md
"""
import logging
import os
import posixpath
import shutil
import stat
import tarfile
import time
from pathlib import Path
from typing import BinaryIO

from pyocitool.context import Context, check
from pyocitool.errors import (
    DuplicateEntryError,
    OCIError,
    UnsafeLinkError,
    UnsafePathError,
)

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
WHITEOUT_OPAQUE = ".wh..wh..opq"


def _within(root: str, path: str) -> bool:
    return os.path.commonpath([root, path]) == root


def _remove(path: str):
    """Remove path, recursively for directories, never following symlinks"""
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.unlink(path)


def _check_resolved(dest: str, path: str):
    """Raise UnsafePathError when path resolves outside dest through symlinks"""
    # An earlier entry may have turned a parent into a symlink
    if not _within(os.path.realpath(dest), os.path.realpath(path)):
        raise UnsafePathError(f"{path}: resolves outside {dest}")


def _prepare(dest: str, path: str):
    """Make sure the parent of path exists inside dest and path itself is free"""
    parent = os.path.dirname(path)
    _check_resolved(dest, parent)
    os.makedirs(parent, exist_ok=True)
    if os.path.lexists(path):
        _remove(path)


def _apply_whiteout(dest: str, path: str, base: str):
    parent = os.path.dirname(path)
    _check_resolved(dest, parent)
    if base == WHITEOUT_OPAQUE:
        if os.path.isdir(parent) and not os.path.islink(parent):
            for entry in os.listdir(parent):
                _remove(os.path.join(parent, entry))
        return

    name = base[len(WHITEOUT_PREFIX):]
    if not name or name in (".", ".."):
        raise UnsafePathError(f"{path}: invalid whiteout")
    target = os.path.join(parent, name)
    logger.debug("Whiteout %s", target)
    _remove(target)


def _set_mtime(path: str, mtime: float):
    if os.utime in os.supports_follow_symlinks:
        os.utime(path, (time.time(), mtime), follow_symlinks=False)
    elif not os.path.islink(path):
        os.utime(path, (time.time(), mtime))


def unpack_layer(dest: str | os.PathLike, reader: BinaryIO, ctx: Context | None = None):
    """Extract a gzip compressed (or plain) layer tar stream into dest

    Whiteout entries delete the path they mask instead of being created.
    Entries or links that would end up outside of dest raise
    UnsafePathError / UnsafeLinkError, a path occurring twice raises
    DuplicateEntryError. Directory times and permissions are applied
    after all entries are written.
    """
    dest = os.path.abspath(dest)
    os.makedirs(dest, exist_ok=True)

    try:
        tar = tarfile.open(fileobj=reader, mode="r|*")
    except tarfile.TarError as err:
        raise OCIError("error creating layer reader") from err

    directories: list[tuple[str, int, float]] = []
    seen: set[str] = set()
    with tar:
        # tarfile folds global extended headers into tar.pax_headers
        # instead of returning them as members.
        while True:
            check(ctx)
            try:
                member = tar.next()
            except tarfile.TarError as err:
                raise OCIError("error advancing tar stream") from err
            if member is None:
                break
            if tar.pax_headers:
                logger.debug("Global extended header, end of layer")
                break

            path = os.path.normpath(os.path.join(dest, member.name.lstrip("/")))
            if not _within(dest, path):
                raise UnsafePathError(
                    f"{member.name!r}: path resolves outside of {dest}"
                )
            if path == dest:
                continue

            if path in seen:
                raise DuplicateEntryError(f"duplicate entry for {member.name!r}")
            seen.add(path)

            try:
                _unpack_member(tar, member, dest, path, directories)
            except OSError as err:
                raise OCIError(f"{member.name}: unable to unpack to {dest}") from err

    # Creating entries updates the mtime of their directory,
    # so directories are finished after all entries are written.
    for path, mode, mtime in reversed(directories):
        _check_resolved(dest, path)
        try:
            os.chmod(path, mode)
            os.utime(path, (time.time(), mtime))
        except OSError as err:
            raise OCIError(f"{path}: unable to set directory attributes") from err


def _unpack_member(
    tar: tarfile.TarFile,
    member: tarfile.TarInfo,
    dest: str,
    path: str,
    directories: list,
):
    base = os.path.basename(path)
    if base.startswith(WHITEOUT_PREFIX):
        _apply_whiteout(dest, path, base)
        return

    logger.debug("Unpacking %s", member.name)
    mode = member.mode & 0o7777

    if member.isdir():
        _check_resolved(dest, os.path.dirname(path))
        if not os.path.isdir(path) or os.path.islink(path):
            _prepare(dest, path)
            os.mkdir(path)
        directories.append((path, mode, member.mtime))
        return

    if member.isreg():
        _prepare(dest, path)
        with tar.extractfile(member) as src, open(path, "wb") as dst:
            shutil.copyfileobj(src, dst)
        os.chmod(path, mode)

    elif member.islnk():
        target = os.path.normpath(os.path.join(dest, member.linkname.lstrip("/")))
        if not _within(dest, target) or not _within(
            os.path.realpath(dest), os.path.realpath(os.path.dirname(target))
        ):
            raise UnsafeLinkError(f"invalid hardlink {path!r} -> {member.linkname!r}")
        _prepare(dest, path)
        os.link(target, path, follow_symlinks=False)

    elif member.issym():
        if posixpath.isabs(member.linkname):
            target = os.path.join(dest, member.linkname.lstrip("/"))
        else:
            target = os.path.join(os.path.dirname(path), member.linkname)
        if not _within(dest, os.path.normpath(target)):
            raise UnsafeLinkError(f"invalid symlink {path!r} -> {member.linkname!r}")
        _prepare(dest, path)
        os.symlink(member.linkname, path)

    else:
        logger.debug("Skipping %s, unsupported entry type %r", member.name, member.type)
        return

    _set_mtime(path, member.mtime)


def _signature(path: str) -> tuple:
    st = os.lstat(path)
    link = os.readlink(path) if stat.S_ISLNK(st.st_mode) else None
    if stat.S_ISDIR(st.st_mode):
        return (stat.S_IFMT(st.st_mode), st.st_mode, None, None, None)
    return (stat.S_IFMT(st.st_mode), st.st_mode, st.st_size, int(st.st_mtime), link)


def _tree(root: str) -> dict[str, str]:
    """Map relative posix paths to absolute paths for everything under root"""
    entries = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(dirnames + filenames):
            path = os.path.join(dirpath, name)
            rel = os.path.relpath(path, root).replace(os.sep, "/")
            entries[rel] = path
    return entries


def _parents(rel: str) -> list[str]:
    parts = rel.split("/")[:-1]
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]


def create_layer(
    child: str | os.PathLike,
    parent: str | os.PathLike | None = None,
    output: str | os.PathLike | None = None,
) -> Path:
    """Write the changes of child relative to parent as a layer tar

    Without a parent the whole child tree is archived. Paths present in
    parent but missing from child are recorded as whiteouts. The tar is
    written to `<child>.tar` unless output is given.
    """
    child = os.path.normpath(child)
    output = Path(output or f"{child}.tar")
    child_entries = _tree(child)
    parent_entries = _tree(os.fspath(parent)) if parent is not None else {}

    changed = [
        rel
        for rel, path in child_entries.items()
        if rel not in parent_entries
        or _signature(path) != _signature(parent_entries[rel])
    ]
    deleted = []
    for rel in sorted(parent_entries):
        if rel in child_entries:
            continue
        # whiting out a directory covers everything below it
        if any(rel.startswith(d + "/") for d in deleted):
            continue
        deleted.append(rel)

    names = set(changed)
    for rel in changed + deleted:
        names.update(p for p in _parents(rel) if p in child_entries)

    logger.info(
        "Creating layer %s: %d changed, %d deleted", output, len(changed), len(deleted)
    )
    with tarfile.open(output, "w") as tar:
        for rel in sorted(names):
            tar.add(child_entries[rel], arcname=rel, recursive=False)
        for rel in deleted:
            head, tail = posixpath.split(rel)
            whiteout = tarfile.TarInfo(posixpath.join(head, WHITEOUT_PREFIX + tail))
            whiteout.mode = 0o600
            whiteout.mtime = int(time.time())
            tar.addfile(whiteout)
    return output
