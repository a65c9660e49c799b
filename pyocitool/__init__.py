"""OCI image tooling for Python

Validate, unpack and bundle OCI images stored as an image layout
directory or an image tar file.
"""
from pyocitool.config import ImageConfig, find_config
from pyocitool.context import Context
from pyocitool.descriptor import Descriptor, Digest, find_descriptor
from pyocitool.errors import OCIError
from pyocitool.image import (
    create_runtime_bundle,
    create_runtime_bundle_layout,
    unpack,
    unpack_layout,
    validate,
    validate_layout,
)
from pyocitool.layer import create_layer, unpack_layer
from pyocitool.manifest import Manifest, ManifestList, find_manifest

__all__ = [
    "Context",
    "Descriptor",
    "Digest",
    "ImageConfig",
    "Manifest",
    "ManifestList",
    "OCIError",
    "create_layer",
    "create_runtime_bundle",
    "create_runtime_bundle_layout",
    "find_config",
    "find_descriptor",
    "find_manifest",
    "unpack",
    "unpack_layer",
    "unpack_layout",
    "validate",
    "validate_layout",
]
