"""Image configuration and its translation to a runtime bundle config

ref: https://github.com/opencontainers/image-spec/blob/main/config.md
ref: https://github.com/opencontainers/runtime-spec/blob/main/config.md
"""
import logging

from pydantic import BaseModel, Field, ValidationError

from pyocitool.context import Context
from pyocitool.descriptor import Descriptor, read_blob
from pyocitool.errors import (
    NotFoundError,
    OCIError,
    SchemaValidationError,
    UnsupportedOSError,
    wrap,
)
from pyocitool.schema import Validator
from pyocitool.walker import Walker

logger = logging.getLogger(__name__)

RUNTIME_SPEC_VERSION = "0.5.0"


class ExecutionConfig(BaseModel):
    """The `config` section of an image config, field names as in the image-spec"""

    User: str = ""
    Memory: int = 0
    MemorySwap: int = 0
    CpuShares: int = 0
    ExposedPorts: dict[str, dict] | None = None
    Env: list[str] | None = None
    Entrypoint: list[str] | None = None
    Cmd: list[str] | None = None
    Volumes: dict[str, dict] | None = None
    WorkingDir: str = ""


class User(BaseModel):
    uid: int = 0
    gid: int = 0


class Process(BaseModel):
    terminal: bool = False
    user: User = Field(default_factory=User)
    args: list[str] = []
    env: list[str] | None = None
    cwd: str = "/"


class Root(BaseModel):
    path: str
    readonly: bool | None = None


class RuntimePlatform(BaseModel):
    os: str
    arch: str


class Mount(BaseModel):
    destination: str
    type: str | None = None
    source: str | None = None
    options: list[str] | None = None


class CPU(BaseModel):
    shares: int | None = None


class Memory(BaseModel):
    limit: int | None = None
    reservation: int | None = None
    swap: int | None = None


class Resources(BaseModel):
    cpu: CPU | None = None
    memory: Memory | None = None


class Linux(BaseModel):
    resources: Resources | None = None


class Spec(BaseModel):
    """Runtime bundle configuration, written as `config.json`"""

    ociVersion: str = RUNTIME_SPEC_VERSION
    platform: RuntimePlatform
    process: Process
    root: Root
    mounts: list[Mount] | None = None
    linux: Linux | None = None


def _parse_user(user: str) -> User:
    if not user:
        return User()
    if user.isdigit():
        return User(uid=int(user))

    parts = user.split(":")
    if len(parts) != 2:
        raise OCIError("config.User: unsupported format")
    uid, gid = parts
    if not uid.isdigit():
        raise OCIError("config.User: unsupported uid format")
    if not gid.isdigit():
        raise OCIError("config.User: unsupported gid format")
    return User(uid=int(uid), gid=int(gid))


class ImageConfig(BaseModel):
    architecture: str
    os: str
    config: ExecutionConfig = Field(default_factory=ExecutionConfig)

    def runtime_spec(self, rootfs: str) -> Spec:
        """Translate the image config into a runtime bundle config rooted at rootfs"""
        if self.os != "linux":
            raise UnsupportedOSError(f"{self.os}: unsupported OS")

        c = self.config
        args = (c.Entrypoint or []) + (c.Cmd or [])
        process = Process(
            terminal=True,
            user=_parse_user(c.User),
            args=args or ["sh"],
            env=list(c.Env or []),
            cwd=c.WorkingDir or "/",
        )

        mounts = [
            Mount(destination=volume, type="bind", options=["rbind"])
            for volume in sorted(c.Volumes or {})
        ]

        return Spec(
            platform=RuntimePlatform(os=self.os, arch=self.architecture),
            process=process,
            root=Root(path=rootfs),
            mounts=mounts or None,
            linux=Linux(
                resources=Resources(
                    cpu=CPU(shares=c.CpuShares),
                    memory=Memory(
                        limit=c.Memory, reservation=c.Memory, swap=c.MemorySwap
                    ),
                )
            ),
        )


def find_config(
    walker: Walker, descriptor: Descriptor, ctx: Context | None = None
) -> ImageConfig:
    """Load and schema-validate the image config referenced by descriptor"""
    try:
        data = read_blob(walker, descriptor, ctx=ctx)
    except NotFoundError:
        raise NotFoundError(f"{descriptor.parsed_digest.path}: config not found") from None

    try:
        Validator.CONFIG.validate(data)
    except SchemaValidationError as err:
        raise wrap(err, f"{descriptor.digest}: config validation failed") from err

    try:
        return ImageConfig.model_validate_json(data)
    except ValidationError as err:
        raise OCIError(f"{descriptor.digest}: config could not be decoded") from err
