import hashlib
import logging
import re
from dataclasses import dataclass
from typing import BinaryIO, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pyocitool.context import Context, check
from pyocitool.errors import (
    DigestMismatchError,
    InvalidDigestError,
    InvalidMediaTypeError,
    NotFoundError,
    OCIError,
    SizeMismatchError,
    wrap,
)
from pyocitool.walker import WalkInfo, Walker, WalkResult, clean

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
}

# ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md#digests
ALGORITHM_RE = re.compile(r"[a-z0-9]+(?:[+._-][a-z0-9]+)*")
ENCODED_RE = re.compile(r"[a-zA-Z0-9=_-]+")


@dataclass(slots=True, frozen=True)
class Digest:
    """A content digest, '<algorithm>:<hash>'"""

    algorithm: str
    hash: str

    def __str__(self):
        return f"{self.algorithm}:{self.hash}"

    @property
    def path(self) -> str:
        """Location of the blob relative to the layout root"""
        return f"blobs/{self.algorithm}/{self.hash}"

    @classmethod
    def parse(cls, value: str) -> "Digest":
        algorithm, sep, encoded = value.partition(":")
        if not sep or not algorithm or not encoded:
            raise InvalidDigestError(f"invalid digest: {value!r}")
        if not ALGORITHM_RE.fullmatch(algorithm) or not ENCODED_RE.fullmatch(encoded):
            raise InvalidDigestError(f"invalid digest: {value!r}")
        return cls(algorithm=algorithm, hash=encoded)


def new_hash(algorithm: str):
    try:
        return ALGORITHMS[algorithm]()
    except KeyError:
        raise InvalidDigestError(
            f"unsupported digest algorithm: {algorithm!r}"
        ) from None


def compute_digest(
    reader: BinaryIO, algorithm: str = "sha256", ctx: Context | None = None
) -> tuple[str, int]:
    """Hash everything readable from reader

    Returns the digest string and the number of bytes read.
    """
    h = new_hash(algorithm)
    size = 0
    while True:
        check(ctx)
        chunk = reader.read(CHUNK_SIZE)
        if not chunk:
            break
        h.update(chunk)
        size += len(chunk)
    return f"{algorithm}:{h.hexdigest()}", size


class Platform(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    architecture: str
    os: str
    os_version: str | None = Field(default=None, alias="os.version")
    os_features: list[str] | None = Field(default=None, alias="os.features")
    variant: str | None = None


class Descriptor(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    """

    model_config = ConfigDict(frozen=True)

    mediaType: str
    digest: str
    size: int
    urls: list[str] | None = None
    annotations: dict[str, str] | None = None
    platform: Platform | None = None

    @property
    def parsed_digest(self) -> Digest:
        return Digest.parse(self.digest)

    @property
    def algorithm(self) -> str:
        return self.parsed_digest.algorithm

    @property
    def hash(self) -> str:
        return self.parsed_digest.hash

    def validate_content(self, reader: BinaryIO, ctx: Context | None = None):
        """Check that reader holds exactly the content this descriptor describes

        The digest is checked first, a size mismatch is only reported
        for content that hashes correctly.
        """
        digest = self.parsed_digest
        try:
            computed, size = compute_digest(reader, digest.algorithm, ctx=ctx)
        except OSError as err:
            raise OCIError(f"{self.digest}: error generating hash") from err

        if computed != self.digest:
            raise DigestMismatchError(
                f"digest mismatch: expected {self.digest}, got {computed}"
            )
        if size != self.size:
            raise SizeMismatchError(
                f"size mismatch: expected {self.size} bytes, got {size}"
            )

    def validate(
        self,
        walker: Walker,
        media_types: Iterable[str] | None = None,
        ctx: Context | None = None,
    ):
        """Validate the media type and the content of the referenced blob"""
        if media_types is not None:
            validate_media_type(self, media_types)

        target = self.parsed_digest.path

        def visit(path: str, info: WalkInfo, reader: BinaryIO):
            if info.is_dir or clean(path) != target:
                return WalkResult.CONTINUE
            logger.debug("Validating blob %s", path)
            try:
                self.validate_content(reader, ctx=ctx)
            except (DigestMismatchError, SizeMismatchError) as err:
                raise wrap(err, f"{self.digest}: validation failed") from err
            return WalkResult.STOP

        if walker.walk(visit, ctx=ctx) is not WalkResult.STOP:
            raise NotFoundError(f"{self.digest}: not found")


def validate_media_type(descriptor: Descriptor, allowed: Iterable[str]):
    allowed = list(allowed)
    if descriptor.mediaType not in allowed:
        raise InvalidMediaTypeError(
            f"invalid descriptor MediaType {descriptor.mediaType!r}, "
            f"expected one of {allowed}"
        )


def parse_descriptor(data: bytes | str, source: str = "descriptor") -> Descriptor:
    try:
        return Descriptor.model_validate_json(data)
    except ValidationError as err:
        raise OCIError(f"{source}: invalid descriptor: {err}") from err


def find_descriptor(
    walker: Walker, name: str, ctx: Context | None = None
) -> Descriptor:
    """Read the descriptor stored for reference `name`"""
    target = clean(f"refs/{name}")
    found: list[Descriptor] = []

    def visit(path: str, info: WalkInfo, reader: BinaryIO):
        if info.is_dir or clean(path) != target:
            return WalkResult.CONTINUE
        found.append(parse_descriptor(reader.read(), source=path))
        return WalkResult.STOP

    walker.walk(visit, ctx=ctx)
    if not found:
        raise NotFoundError(f"{target}: descriptor not found")
    return found[0]


def list_references(walker: Walker, ctx: Context | None = None) -> dict[str, Descriptor]:
    """Return all references in the store, keyed by name"""
    refs = {}

    def visit(path: str, info: WalkInfo, reader: BinaryIO):
        path = clean(path)
        if info.is_dir or not path.startswith("refs/"):
            return WalkResult.CONTINUE
        refs[path.removeprefix("refs/")] = parse_descriptor(reader.read(), source=path)
        return WalkResult.CONTINUE

    walker.walk(visit, ctx=ctx)
    return refs


def read_blob(walker: Walker, descriptor: Descriptor, ctx: Context | None = None) -> bytes:
    """Return the content of the blob referenced by descriptor

    The content is not verified, see Descriptor.validate.
    """
    target = descriptor.parsed_digest.path
    found: list[bytes] = []

    def visit(path: str, info: WalkInfo, reader: BinaryIO):
        if info.is_dir or clean(path) != target:
            return WalkResult.CONTINUE
        found.append(reader.read())
        return WalkResult.STOP

    walker.walk(visit, ctx=ctx)
    if not found:
        raise NotFoundError(f"{descriptor.digest}: not found")
    return found[0]
