"""
ref: https://github.com/opencontainers/image-spec/blob/main/media-types.md
"""

DESCRIPTOR = "application/vnd.oci.descriptor.v1+json"
LAYOUT_HEADER = "application/vnd.oci.layout.header.v1+json"
IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
IMAGE_MANIFEST_LIST = "application/vnd.oci.image.manifest.list.v1+json"
IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"
IMAGE_LAYER = "application/vnd.oci.image.layer.v1.tar"
IMAGE_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
IMAGE_LAYER_NONDISTRIBUTABLE = "application/vnd.oci.image.layer.nondistributable.v1.tar"
IMAGE_LAYER_NONDISTRIBUTABLE_GZIP = (
    "application/vnd.oci.image.layer.nondistributable.v1.tar+gzip"
)
# Media type used for layers by early drafts of the image-spec
IMAGE_SERIALIZATION = "application/vnd.oci.image.layer.tar+gzip"

# Docker compatibility
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"

LAYER_TYPES = frozenset(
    {
        IMAGE_LAYER,
        IMAGE_LAYER_GZIP,
        IMAGE_LAYER_NONDISTRIBUTABLE,
        IMAGE_LAYER_NONDISTRIBUTABLE_GZIP,
        IMAGE_SERIALIZATION,
        DOCKER_LAYER,
    }
)
UNCOMPRESSED_LAYER_TYPES = frozenset({IMAGE_LAYER, IMAGE_LAYER_NONDISTRIBUTABLE})
REF_TYPES = (IMAGE_MANIFEST, IMAGE_MANIFEST_LIST)
