import gzip
import io
import json
import logging
import tarfile
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from pyocitool import layout, mediatype
from pyocitool.cas import put_json
from pyocitool.cas.layout import DirEngine as CASDirEngine
from pyocitool.descriptor import Descriptor
from pyocitool.refs.layout import DirEngine as RefsDirEngine


@dataclass(slots=True)
class Entry:
    """A tar entry to put into a test layer"""

    name: str
    data: bytes | None = None
    type: bytes = tarfile.REGTYPE
    linkname: str = ""
    mode: int = 0o644
    mtime: int = 1_500_000_000


def make_tar(entries: list[Entry], compress: bool = True) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for entry in entries:
            info = tarfile.TarInfo(entry.name)
            info.type = entry.type
            info.mode = entry.mode
            info.mtime = entry.mtime
            info.linkname = entry.linkname
            if entry.type == tarfile.DIRTYPE:
                info.mode = 0o755
            data = entry.data or b""
            info.size = len(data) if entry.type == tarfile.REGTYPE else 0
            tar.addfile(info, io.BytesIO(data) if info.size else None)
    raw = buf.getvalue()
    return gzip.compress(raw) if compress else raw


@dataclass
class Image:
    """An image layout directory with a single tagged manifest"""

    path: Path
    manifest: Descriptor
    config: Descriptor
    layers: list[Descriptor] = field(default_factory=list)

    def blob(self, descriptor: Descriptor) -> Path:
        return self.path / descriptor.parsed_digest.path

    def to_tar(self, path: Path) -> Path:
        with tarfile.open(path, "w") as tar:
            tar.add(self.path, arcname=".")
        return path


DEFAULT_CONFIG = {
    "architecture": "amd64",
    "os": "linux",
    "config": {"Cmd": ["/bin/sh"]},
    "rootfs": {"type": "layers", "diff_ids": []},
}


def build_image(
    root: Path,
    layers: list[bytes],
    config: dict | None = None,
    ref: str = "v1.0",
    layer_type: str = mediatype.IMAGE_LAYER_GZIP,
) -> Image:
    layout.create_layout_dir(root)
    with CASDirEngine(root) as cas:
        config_descriptor = put_json(
            cas, config or DEFAULT_CONFIG, mediatype.IMAGE_CONFIG
        )
        layer_descriptors = []
        for data in layers:
            digest = cas.put(io.BytesIO(data))
            layer_descriptors.append(
                Descriptor(mediaType=layer_type, digest=digest, size=len(data))
            )
        manifest = {
            "schemaVersion": 2,
            "mediaType": mediatype.IMAGE_MANIFEST,
            "config": config_descriptor.model_dump(exclude_none=True),
            "layers": [d.model_dump(exclude_none=True) for d in layer_descriptors],
        }
        manifest_descriptor = put_json(cas, manifest, mediatype.IMAGE_MANIFEST)
    with RefsDirEngine(root) as refs:
        refs.put(ref, manifest_descriptor)
    return Image(
        path=root,
        manifest=manifest_descriptor,
        config=config_descriptor,
        layers=layer_descriptors,
    )


@pytest.fixture
def image(tmp_path) -> Image:
    """A layout with one layer holding the file 'test' with content 'test'"""
    layer = make_tar([Entry("test", b"test")])
    return build_image(tmp_path / "layout", [layer])


@pytest.fixture
def layout_dir(tmp_path) -> Path:
    path = tmp_path / "empty"
    layout.create_layout_dir(path)
    return path


@pytest.fixture
def layout_tar(tmp_path) -> Path:
    path = tmp_path / "empty.tar"
    layout.create_tar_file(path)
    return path


@pytest.fixture(params=["dir", "tar"])
def store(request, layout_dir, layout_tar) -> Path:
    """An empty image layout, once as directory and once as tar file"""
    return layout_dir if request.param == "dir" else layout_tar


def descriptor_json(descriptor: Descriptor) -> str:
    return json.dumps(descriptor.model_dump(exclude_none=True))


@pytest.fixture(autouse=True)
def reset_logging():
    """The CLI configures the pyocitool logger, undo that between tests"""
    yield
    logger = logging.getLogger("pyocitool")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
