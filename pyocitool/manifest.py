import json
import logging
import os
import platform as _platform
from typing import BinaryIO

from pydantic import BaseModel, ValidationError

from pyocitool import mediatype
from pyocitool.context import Context
from pyocitool.descriptor import Descriptor, read_blob
from pyocitool.errors import (
    MalformedManifestError,
    NotFoundError,
    OCIError,
    SchemaValidationError,
    wrap,
)
from pyocitool.layer import unpack_layer
from pyocitool.schema import Validator
from pyocitool.walker import WalkInfo, Walker, WalkResult, clean

logger = logging.getLogger(__name__)

# platform.machine() values mapped to GOARCH names used in image configs
_ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "i386": "386",
    "i686": "386",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}


class Manifest(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/manifest.md
    """

    config: Descriptor
    layers: list[Descriptor]
    annotations: dict[str, str] | None = None

    mediaType: str | None = None
    schemaVersion: int = 2

    def validate(self, walker: Walker, ctx: Context | None = None):
        """Validate the config and every layer against their blobs, in order"""
        try:
            self.config.validate(walker, [mediatype.IMAGE_CONFIG], ctx=ctx)
        except OCIError as err:
            raise wrap(err, "config validation failed") from err

        for i, layer in enumerate(self.layers):
            try:
                layer.validate(walker, mediatype.LAYER_TYPES, ctx=ctx)
            except OCIError as err:
                raise wrap(err, f"layer {i} validation failed") from err

    def unpack(self, walker: Walker, dest: str | os.PathLike, ctx: Context | None = None):
        """Unpack all image layers into dest, lowest layer first"""
        for layer in self.layers:
            if layer.mediaType not in mediatype.LAYER_TYPES:
                logger.warning(
                    "Skipping layer %s, unsupported media type %s",
                    layer.digest,
                    layer.mediaType,
                )
                continue
            logger.info("Unpacking layer %s", layer.digest)
            _unpack_blob(walker, layer, dest, ctx)


def _unpack_blob(walker: Walker, layer: Descriptor, dest, ctx: Context | None):
    target = layer.parsed_digest.path

    def visit(path: str, info: WalkInfo, reader: BinaryIO):
        if info.is_dir or clean(path) != target:
            return WalkResult.CONTINUE
        unpack_layer(dest, reader, ctx=ctx)
        return WalkResult.STOP

    if walker.walk(visit, ctx=ctx) is not WalkResult.STOP:
        raise NotFoundError(f"{layer.digest}: layer not found")


class ManifestList(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    manifests: list[Descriptor]
    annotations: dict[str, str] | None = None

    mediaType: str | None = None
    schemaVersion: int = 2

    def select(self, os_: str | None = None, architecture: str | None = None) -> Descriptor:
        """Return the first image manifest matching the platform

        Defaults to the platform this process runs on.
        """
        os_ = os_ or _platform.system().lower()
        machine = _platform.machine().lower()
        architecture = architecture or _ARCHITECTURES.get(machine, machine)
        for descriptor in self.manifests:
            if descriptor.mediaType != mediatype.IMAGE_MANIFEST:
                continue
            platform = descriptor.platform
            if platform is None:
                continue
            if platform.os == os_ and platform.architecture == architecture:
                return descriptor
        raise NotFoundError(f"no manifest for platform {os_}/{architecture}")

    def validate(self, walker: Walker, ctx: Context | None = None):
        """Validate every listed manifest blob"""
        for i, descriptor in enumerate(self.manifests):
            try:
                descriptor.validate(walker, [mediatype.IMAGE_MANIFEST], ctx=ctx)
            except OCIError as err:
                raise wrap(err, f"manifest {i} validation failed") from err


def _load(walker: Walker, descriptor: Descriptor, ctx: Context | None) -> bytes:
    try:
        return read_blob(walker, descriptor, ctx=ctx)
    except NotFoundError:
        raise NotFoundError(f"{descriptor.digest}: manifest not found") from None


def find_manifest(
    walker: Walker,
    descriptor: Descriptor,
    strict: bool = False,
    ctx: Context | None = None,
) -> Manifest:
    """Load and schema-validate the image manifest referenced by descriptor"""
    data = _load(walker, descriptor, ctx)
    try:
        json.loads(data)
    except ValueError as err:
        raise MalformedManifestError(
            f"{descriptor.digest}: manifest could not be decoded"
        ) from err

    try:
        Validator.MANIFEST.validate(data, strict=strict)
    except SchemaValidationError as err:
        raise wrap(err, f"{descriptor.digest}: manifest validation failed") from err

    try:
        manifest = Manifest.model_validate_json(data)
    except ValidationError as err:
        raise MalformedManifestError(
            f"{descriptor.digest}: manifest could not be decoded"
        ) from err

    if not manifest.layers:
        raise MalformedManifestError(
            f"{descriptor.digest}: manifest has no layers"
        )
    return manifest


def find_manifest_list(
    walker: Walker,
    descriptor: Descriptor,
    ctx: Context | None = None,
) -> ManifestList:
    """Load and schema-validate the manifest list referenced by descriptor"""
    data = _load(walker, descriptor, ctx)
    try:
        Validator.MANIFEST_LIST.validate(data)
    except SchemaValidationError as err:
        raise wrap(err, f"{descriptor.digest}: manifest list validation failed") from err

    try:
        return ManifestList.model_validate_json(data)
    except ValidationError as err:
        raise MalformedManifestError(
            f"{descriptor.digest}: manifest list could not be decoded"
        ) from err


def resolve_manifest(
    walker: Walker,
    descriptor: Descriptor,
    strict: bool = False,
    ctx: Context | None = None,
) -> Manifest:
    """Return the image manifest for descriptor

    A manifest list is resolved to the manifest for the current platform.
    """
    if descriptor.mediaType == mediatype.IMAGE_MANIFEST_LIST:
        manifests = find_manifest_list(walker, descriptor, ctx=ctx)
        descriptor = manifests.select()
        logger.info("Selected manifest %s", descriptor.digest)
    return find_manifest(walker, descriptor, strict=strict, ctx=ctx)
