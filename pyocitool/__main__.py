import logging
import logging.config
from pathlib import Path

import click

from pyocitool import image, layout
from pyocitool.autodetect import (
    TYPE_CONFIG,
    TYPE_IMAGE,
    TYPE_IMAGE_LAYOUT,
    TYPE_MANIFEST,
    TYPE_MANIFEST_LIST,
    TYPES,
    autodetect,
)
from pyocitool.cas import layout as cas_layout
from pyocitool.context import Context
from pyocitool.descriptor import parse_descriptor
from pyocitool.errors import OCIError, SchemaValidationError
from pyocitool.layer import create_layer as _create_layer
from pyocitool.refs import layout as refs_layout
from pyocitool.schema import Validator

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "default": {
            "formatter": "default",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "pyocitool": {"handlers": ["default"], "level": "WARNING", "propagate": False},
    },
}

IMAGE_TYPES = (TYPE_IMAGE_LAYOUT, TYPE_IMAGE)
DEFAULT_REF = "v1.0"


class Tool:
    def __init__(self, debug: bool = False, strict: bool = False):
        logging.config.dictConfig(LOGGING_CONFIG)
        if debug:
            logging.getLogger("pyocitool").setLevel(logging.DEBUG)
        self.strict = strict
        self.ctx = Context()


@click.group(context_settings={"auto_envvar_prefix": "PYOCITOOL"})
@click.option("-d", "--debug", help="Debug output", is_flag=True)
@click.option(
    "--strict", help="Fail on unknown media types instead of warning", is_flag=True
)
@click.pass_context
def cli(ctx, debug: bool, strict: bool):
    """A tool for working with OCI images."""
    ctx.obj = Tool(debug=debug, strict=strict)


def _detect(path: Path, typ: str | None, allowed=TYPES) -> str:
    if typ is None:
        try:
            typ = autodetect(path)
        except OCIError as err:
            raise click.ClickException(f"{str(path)!r}: autodetection failed: {err}")
    if typ not in allowed:
        raise click.ClickException(f"{path}: type {typ!r} is not supported here")
    return typ


def _validate_path(obj: Tool, path: Path, typ: str | None, refs: tuple[str, ...]):
    if typ is None:
        try:
            typ = autodetect(path)
        except OCIError as err:
            raise OCIError(f"unable to determine type: {err}") from err

    if typ == TYPE_IMAGE_LAYOUT:
        return image.validate_layout(path, refs, strict=obj.strict, ctx=obj.ctx)
    if typ == TYPE_IMAGE:
        return image.validate(path, refs, strict=obj.strict, ctx=obj.ctx)

    try:
        data = path.read_bytes()
    except OSError as err:
        raise OCIError(f"{path}: unable to open file") from err

    validators = {
        TYPE_MANIFEST: Validator.MANIFEST,
        TYPE_MANIFEST_LIST: Validator.MANIFEST_LIST,
        TYPE_CONFIG: Validator.CONFIG,
    }
    validators[typ].validate(data, strict=obj.strict)


@cli.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(path_type=Path))
@click.option(
    "--type",
    "typ",
    type=click.Choice(TYPES),
    default=None,
    help="Type of the files to validate, auto-detected if unset.",
)
@click.option(
    "--ref",
    "refs",
    multiple=True,
    default=[DEFAULT_REF],
    show_default=True,
    help="Reference to validate, only used for image and imageLayout types.",
)
@click.pass_context
def validate(ctx, files: tuple[Path, ...], typ: str | None, refs: tuple[str, ...]):
    """Validate one or more image files."""
    obj: Tool = ctx.ensure_object(Tool)
    failed = False
    for path in files:
        try:
            _validate_path(obj, path, typ, refs)
        except SchemaValidationError as err:
            failed = True
            for message in err.errors:
                click.echo(f"{path}: validation failed: {message}", err=True)
        except OCIError as err:
            failed = True
            click.echo(f"{path}: validation failed: {err}", err=True)
        else:
            click.echo(f"{path}: OK")
    if failed:
        ctx.exit(1)


@cli.command()
@click.argument("src", type=click.Path(exists=True, path_type=Path))
@click.argument("dest", type=click.Path(path_type=Path))
@click.option(
    "--type",
    "typ",
    type=click.Choice(IMAGE_TYPES),
    default=None,
    help="Type of src, auto-detected if unset.",
)
@click.option("--ref", default=DEFAULT_REF, show_default=True, help="Reference to unpack.")
@click.pass_context
def unpack(ctx, src: Path, dest: Path, typ: str | None, ref: str):
    """Unpack an image or image layout SRC into the directory DEST."""
    obj: Tool = ctx.ensure_object(Tool)
    typ = _detect(src, typ, IMAGE_TYPES)
    try:
        if typ == TYPE_IMAGE_LAYOUT:
            image.unpack_layout(src, dest, ref, strict=obj.strict, ctx=obj.ctx)
        else:
            image.unpack(src, dest, ref, strict=obj.strict, ctx=obj.ctx)
    except OCIError as err:
        raise click.ClickException(f"unpacking failed: {err}") from err


@cli.command("create-runtime-bundle")
@click.argument("src", type=click.Path(exists=True, path_type=Path))
@click.argument("dest", type=click.Path(path_type=Path))
@click.option(
    "--type",
    "typ",
    type=click.Choice(IMAGE_TYPES),
    default=None,
    help="Type of src, auto-detected if unset.",
)
@click.option("--ref", default=DEFAULT_REF, show_default=True, help="Reference to bundle.")
@click.option(
    "--rootfs",
    default="rootfs",
    show_default=True,
    help="Root filesystem directory inside the bundle.",
)
@click.pass_context
def create_runtime_bundle(
    ctx, src: Path, dest: Path, typ: str | None, ref: str, rootfs: str
):
    """Create a runtime bundle in DEST from the image at SRC."""
    obj: Tool = ctx.ensure_object(Tool)
    typ = _detect(src, typ, IMAGE_TYPES)
    try:
        if typ == TYPE_IMAGE_LAYOUT:
            image.create_runtime_bundle_layout(
                src, dest, ref, rootfs=rootfs, strict=obj.strict, ctx=obj.ctx
            )
        else:
            image.create_runtime_bundle(
                src, dest, ref, rootfs=rootfs, strict=obj.strict, ctx=obj.ctx
            )
    except OCIError as err:
        raise click.ClickException(f"creating bundle failed: {err}") from err


@cli.command("create-layer")
@click.argument("child", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument(
    "parent",
    required=False,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
@click.option("-o", "--output", type=click.Path(path_type=Path), default=None)
def create_layer(child: Path, parent: Path | None, output: Path | None):
    """Create a layer from the changes in CHILD relative to PARENT."""
    try:
        path = _create_layer(child, parent, output)
    except (OCIError, OSError) as err:
        raise click.ClickException(f"create layer failed: {err}") from err
    click.echo(str(path))


@cli.group()
def init():
    """Initialize image layouts."""


@init.command("image-layout")
@click.argument("path", type=click.Path(path_type=Path))
def init_image_layout(path: Path):
    """Create an image layout tar file at PATH."""
    try:
        layout.create_tar_file(path)
    except OCIError as err:
        raise click.ClickException(str(err)) from err


@init.command("image-layout-dir")
@click.argument("path", type=click.Path(path_type=Path))
def init_image_layout_dir(path: Path):
    """Create an image layout directory at PATH."""
    try:
        layout.create_layout_dir(path)
    except (OCIError, OSError) as err:
        raise click.ClickException(str(err)) from err


@cli.group("cas")
def cas_group():
    """Content-addressable storage."""


@cas_group.command("get")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.argument("digest")
@click.pass_context
def cas_get(ctx, path: Path, digest: str):
    """Write the blob DIGEST to stdout."""
    obj: Tool = ctx.ensure_object(Tool)
    stdout = click.get_binary_stream("stdout")
    try:
        with cas_layout.new_engine(path, ctx=obj.ctx) as engine:
            with engine.get(digest) as reader:
                stdout.write(reader.read())
    except OCIError as err:
        raise click.ClickException(str(err)) from err
    stdout.flush()


@cas_group.command("put")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.pass_context
def cas_put(ctx, path: Path):
    """Store a blob read from stdin and print its digest."""
    obj: Tool = ctx.ensure_object(Tool)
    try:
        with cas_layout.new_engine(path, ctx=obj.ctx) as engine:
            digest = engine.put(click.get_binary_stream("stdin"))
    except OCIError as err:
        raise click.ClickException(str(err)) from err
    click.echo(digest)


@cli.group("refs")
def refs_group():
    """Name-based references."""


@refs_group.command("get")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.argument("name")
@click.pass_context
def refs_get(ctx, path: Path, name: str):
    """Print the descriptor stored for NAME."""
    obj: Tool = ctx.ensure_object(Tool)
    try:
        with refs_layout.new_engine(path, ctx=obj.ctx) as engine:
            descriptor = engine.get(name)
    except OCIError as err:
        raise click.ClickException(str(err)) from err
    click.echo(descriptor.model_dump_json(exclude_none=True, by_alias=True))


@refs_group.command("put")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.argument("name")
@click.pass_context
def refs_put(ctx, path: Path, name: str):
    """Store the descriptor JSON read from stdin as NAME."""
    obj: Tool = ctx.ensure_object(Tool)
    try:
        descriptor = parse_descriptor(click.get_binary_stream("stdin").read(), "stdin")
        with refs_layout.new_engine(path, ctx=obj.ctx) as engine:
            engine.put(name, descriptor)
    except OCIError as err:
        raise click.ClickException(str(err)) from err


@refs_group.command("list")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option("--prefix", default="", help="Only list names starting with prefix.")
@click.option("--size", default=-1, show_default=True, help="Maximum names, -1 for all.")
@click.option("--from", "from_", default=0, show_default=True, help="Matches to skip.")
@click.pass_context
def refs_list(ctx, path: Path, prefix: str, size: int, from_: int):
    """Print the names available in the store."""
    obj: Tool = ctx.ensure_object(Tool)
    try:
        with refs_layout.new_engine(path, ctx=obj.ctx) as engine:
            engine.list(prefix, size, from_, click.echo)
    except OCIError as err:
        raise click.ClickException(str(err)) from err


if __name__ == "__main__":
    cli()
