"""JSON schema validation of OCI documents

The schema documents are bundled with the package and looked up by the
media type of the document being validated.
"""
import enum
import json
import logging
from functools import cache
from importlib import resources

from jsonschema import Draft4Validator

from pyocitool import mediatype
from pyocitool.descriptor import ALGORITHMS, Digest
from pyocitool.errors import InvalidDigestError, OCIError, SchemaValidationError

logger = logging.getLogger(__name__)

KNOWN_LAYER_TYPES = (
    mediatype.IMAGE_LAYER,
    mediatype.IMAGE_LAYER_GZIP,
    mediatype.IMAGE_LAYER_NONDISTRIBUTABLE,
    mediatype.IMAGE_LAYER_NONDISTRIBUTABLE_GZIP,
    mediatype.IMAGE_SERIALIZATION,
)


class Validator(str, enum.Enum):
    DESCRIPTOR = mediatype.DESCRIPTOR
    LAYOUT_HEADER = mediatype.LAYOUT_HEADER
    MANIFEST = mediatype.IMAGE_MANIFEST
    MANIFEST_LIST = mediatype.IMAGE_MANIFEST_LIST
    CONFIG = mediatype.IMAGE_CONFIG

    @property
    def schema_file(self) -> str:
        return SCHEMA_FILES[self]

    def validate(self, data: bytes | str, strict: bool = False):
        """Validate data against the schema of this media type

        Raises SchemaValidationError listing every violation found.
        Unknown media types inside a manifest only log a warning,
        unless strict is set.
        """
        document = _decode(data, self.value)
        check = MEDIA_TYPE_CHECKS.get(self)
        if check is not None:
            check(document, strict)

        validator = Draft4Validator(load_schema(self.schema_file))
        errors = [
            _format_error(error)
            for error in sorted(validator.iter_errors(document), key=str)
        ]
        if errors:
            raise SchemaValidationError(
                f"{self.value}: schema validation failed", errors=errors
            )


SCHEMA_FILES = {
    Validator.DESCRIPTOR: "content-descriptor.json",
    Validator.LAYOUT_HEADER: "image-layout-schema.json",
    Validator.MANIFEST: "image-manifest-schema.json",
    Validator.MANIFEST_LIST: "manifest-list-schema.json",
    Validator.CONFIG: "config-schema.json",
}


@cache
def load_schema(name: str) -> dict:
    """Load a bundled schema document by file name"""
    try:
        text = resources.files(__package__).joinpath(name).read_text("utf-8")
    except FileNotFoundError:
        raise OCIError(f"no schema available named {name!r}") from None
    return json.loads(text)


def _decode(data: bytes | str, media_type: str):
    try:
        return json.loads(data)
    except json.JSONDecodeError as err:
        raise SchemaValidationError(
            f"{media_type}: unable to parse json to validate",
            errors=[f"line {err.lineno} column {err.colno}: {err.msg}"],
        ) from err
    except UnicodeDecodeError as err:
        raise SchemaValidationError(
            f"{media_type}: document is not valid utf-8"
        ) from err


def _format_error(error) -> str:
    location = "/".join(str(p) for p in error.absolute_path)
    if location:
        return f"{location}: {error.message}"
    return error.message


def _warn_or_raise(message: str, strict: bool):
    if strict:
        raise SchemaValidationError(message)
    logger.warning(message)


def _check_manifest(document, strict: bool):
    if not isinstance(document, dict):
        return
    config = document.get("config")
    if isinstance(config, dict) and config.get("mediaType") != mediatype.IMAGE_CONFIG:
        _warn_or_raise(
            f"config {config.get('digest')} has an unknown media type: "
            f"{config.get('mediaType')}",
            strict,
        )
    for layer in document.get("layers") or []:
        if not isinstance(layer, dict):
            continue
        if layer.get("mediaType") not in KNOWN_LAYER_TYPES:
            _warn_or_raise(
                f"layer {layer.get('digest')} has an unknown media type: "
                f"{layer.get('mediaType')}",
                strict,
            )


def _check_descriptor(document, strict: bool):
    if not isinstance(document, dict) or not isinstance(document.get("digest"), str):
        return
    try:
        digest = Digest.parse(document["digest"])
    except InvalidDigestError:
        # reported by the schema pattern
        return
    if digest.algorithm not in ALGORITHMS:
        # unsupported algorithms are ignored
        logger.warning("unsupported digest: %r", document["digest"])


MEDIA_TYPE_CHECKS = {
    Validator.MANIFEST: _check_manifest,
    Validator.DESCRIPTOR: _check_descriptor,
}
