"""Guess what kind of OCI input a path holds"""
import json
import logging
import os

from pyocitool import mediatype
from pyocitool.errors import OCIError, UnknownTypeError

logger = logging.getLogger(__name__)

TYPE_IMAGE_LAYOUT = "imageLayout"
TYPE_IMAGE = "image"
TYPE_MANIFEST = "manifest"
TYPE_MANIFEST_LIST = "manifestList"
TYPE_CONFIG = "config"

TYPES = (
    TYPE_IMAGE_LAYOUT,
    TYPE_IMAGE,
    TYPE_MANIFEST,
    TYPE_MANIFEST_LIST,
    TYPE_CONFIG,
)

GZIP_MAGIC = b"\x1f\x8b"
TAR_MAGIC_OFFSET = 257
SNIFF_SIZE = 512


def _is_binary(head: bytes) -> bool:
    if head.startswith(GZIP_MAGIC):
        return True
    if head[TAR_MAGIC_OFFSET : TAR_MAGIC_OFFSET + 5] == b"ustar":
        return True
    if b"\x00" in head:
        return True
    try:
        head.decode("utf-8")
    except UnicodeDecodeError as err:
        # a multi-byte sequence cut off at the end of the sniffed block is fine
        return err.start < len(head) - 3
    return False


def autodetect(path: str | os.PathLike) -> str:
    """Return one of TYPES for path, raises UnknownTypeError if undetermined

    Directories are image layouts, gzip or tar data is an image. JSON is
    told apart by its mediaType, a document without mediaType and
    schemaVersion but with a config section is an image config.
    """
    if os.path.isdir(path):
        return TYPE_IMAGE_LAYOUT

    try:
        with open(path, "rb") as f:
            head = f.read(SNIFF_SIZE)
            if _is_binary(head):
                logger.debug("%s: binary content, assuming an image", path)
                return TYPE_IMAGE
            data = head + f.read()
    except OSError as err:
        raise OCIError(f"{path}: unable to open file") from err

    try:
        document = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as err:
        raise UnknownTypeError(f"{path}: unknown file type") from err
    if not isinstance(document, dict):
        raise UnknownTypeError(f"{path}: unknown file type")

    media_type = document.get("mediaType")
    if media_type == mediatype.IMAGE_MANIFEST:
        return TYPE_MANIFEST
    if media_type == mediatype.IMAGE_MANIFEST_LIST:
        return TYPE_MANIFEST_LIST
    if (
        media_type is None
        and "schemaVersion" not in document
        and isinstance(document.get("config"), dict)
    ):
        return TYPE_CONFIG
    raise UnknownTypeError(f"{path}: unknown media type {media_type!r}")
