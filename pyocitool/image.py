"""Validate, unpack and bundle images stored as a layout directory or a tar file

Each operation resolves the named reference to a manifest, validates the
manifest with all the blobs it references and only then touches dest.
"""
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterable, Iterator

from pyocitool import layout, mediatype
from pyocitool.config import find_config
from pyocitool.context import Context
from pyocitool.descriptor import Descriptor, find_descriptor
from pyocitool.errors import OCIError, wrap
from pyocitool.manifest import (
    Manifest,
    find_manifest,
    find_manifest_list,
    resolve_manifest,
)
from pyocitool.walker import PathWalker, TarWalker, Walker

logger = logging.getLogger(__name__)

OutputFunc = Callable[[str], None]


@contextmanager
def open_walker(path: str | os.PathLike, ctx: Context | None = None) -> Iterator[Walker]:
    """Yield a walker for an image layout directory or image tar file

    The layout version is checked before the walker is handed out.
    """
    if os.path.isdir(path):
        walker = PathWalker(path)
        layout.check_walker_version(walker, ctx=ctx)
        yield walker
        return

    try:
        file = open(path, "rb")
    except OSError as err:
        raise OCIError(f"{path}: unable to open file") from err
    with file:
        walker = TarWalker(file)
        layout.check_walker_version(walker, ctx=ctx)
        yield walker


def _find_ref(walker: Walker, name: str, ctx: Context | None) -> Descriptor:
    descriptor = find_descriptor(walker, name, ctx=ctx)
    descriptor.validate(walker, mediatype.REF_TYPES, ctx=ctx)
    return descriptor


def _load_manifest(
    walker: Walker, name: str, strict: bool, ctx: Context | None
) -> Manifest:
    descriptor = _find_ref(walker, name, ctx)
    manifest = resolve_manifest(walker, descriptor, strict=strict, ctx=ctx)
    manifest.validate(walker, ctx=ctx)
    return manifest


def validate_walker(
    walker: Walker,
    refs: Iterable[str],
    out: OutputFunc | None = None,
    strict: bool = False,
    ctx: Context | None = None,
):
    """Validate the manifests, and everything they reference, for each ref"""
    for name in refs:
        descriptor = _find_ref(walker, name, ctx)
        if descriptor.mediaType == mediatype.IMAGE_MANIFEST_LIST:
            manifests = find_manifest_list(walker, descriptor, ctx=ctx)
            manifests.validate(walker, ctx=ctx)
            children = [
                d for d in manifests.manifests if d.mediaType == mediatype.IMAGE_MANIFEST
            ]
        else:
            children = [descriptor]

        for child in children:
            manifest = find_manifest(walker, child, strict=strict, ctx=ctx)
            try:
                manifest.validate(walker, ctx=ctx)
            except OCIError as err:
                raise wrap(err, f"reference {name!r}") from err

        logger.info("Reference %s is valid", name)
        if out is not None:
            out(f"reference {name!r}: OK")


def validate_layout(
    src: str | os.PathLike,
    refs: Iterable[str],
    out: OutputFunc | None = None,
    strict: bool = False,
    ctx: Context | None = None,
):
    """Validate the manifests pointed to by refs in the image layout directory src"""
    if not os.path.isdir(src):
        raise OCIError(f"{src}: not a directory")
    with open_walker(src, ctx=ctx) as walker:
        validate_walker(walker, refs, out=out, strict=strict, ctx=ctx)


def validate(
    tar_file: str | os.PathLike,
    refs: Iterable[str],
    out: OutputFunc | None = None,
    strict: bool = False,
    ctx: Context | None = None,
):
    """Validate the manifests pointed to by refs in the image tar file"""
    with open_walker(tar_file, ctx=ctx) as walker:
        validate_walker(walker, refs, out=out, strict=strict, ctx=ctx)


def unpack_walker(
    walker: Walker,
    dest: str | os.PathLike,
    ref: str,
    strict: bool = False,
    ctx: Context | None = None,
):
    manifest = _load_manifest(walker, ref, strict, ctx)
    logger.info("Unpacking %s to %s", ref, dest)
    manifest.unpack(walker, dest, ctx=ctx)


def unpack_layout(
    src: str | os.PathLike,
    dest: str | os.PathLike,
    ref: str,
    strict: bool = False,
    ctx: Context | None = None,
):
    """Unpack the layers of the manifest `ref` in the image layout src into dest"""
    with open_walker(src, ctx=ctx) as walker:
        unpack_walker(walker, dest, ref, strict=strict, ctx=ctx)


def unpack(
    tar_file: str | os.PathLike,
    dest: str | os.PathLike,
    ref: str,
    strict: bool = False,
    ctx: Context | None = None,
):
    """Unpack the layers of the manifest `ref` in the image tar file into dest"""
    with open_walker(tar_file, ctx=ctx) as walker:
        unpack_walker(walker, dest, ref, strict=strict, ctx=ctx)


def create_runtime_bundle_walker(
    walker: Walker,
    dest: str | os.PathLike,
    ref: str,
    rootfs: str = "rootfs",
    strict: bool = False,
    ctx: Context | None = None,
):
    manifest = _load_manifest(walker, ref, strict, ctx)
    config = find_config(walker, manifest.config, ctx=ctx)
    # translated before unpacking, an unsupported config leaves dest untouched
    spec = config.runtime_spec(rootfs)

    dest = Path(dest)
    logger.info("Creating runtime bundle for %s in %s", ref, dest)
    manifest.unpack(walker, dest / rootfs, ctx=ctx)
    try:
        (dest / "config.json").write_text(
            spec.model_dump_json(exclude_none=True) + "\n", encoding="utf-8"
        )
    except OSError as err:
        raise OCIError(f"{dest}: unable to write config.json") from err


def create_runtime_bundle_layout(
    src: str | os.PathLike,
    dest: str | os.PathLike,
    ref: str,
    rootfs: str = "rootfs",
    strict: bool = False,
    ctx: Context | None = None,
):
    """Create a runtime bundle in dest from the image layout src"""
    with open_walker(src, ctx=ctx) as walker:
        create_runtime_bundle_walker(
            walker, dest, ref, rootfs=rootfs, strict=strict, ctx=ctx
        )


def create_runtime_bundle(
    tar_file: str | os.PathLike,
    dest: str | os.PathLike,
    ref: str,
    rootfs: str = "rootfs",
    strict: bool = False,
    ctx: Context | None = None,
):
    """Create a runtime bundle in dest from the image tar file"""
    with open_walker(tar_file, ctx=ctx) as walker:
        create_runtime_bundle_walker(
            walker, dest, ref, rootfs=rootfs, strict=strict, ctx=ctx
        )
