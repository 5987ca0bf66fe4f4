from collections.abc import Mapping
from collections.abc import Sequence
from typing import Literal
from typing import NotRequired
from typing import TypedDict

Annotations = Mapping[str, str]  # typically keys/values are strings
StringSeq = Sequence[str]

# --------------------------
# Platform (OCI image-spec keys)
# --------------------------
Platform = TypedDict(
    "Platform",
    {
        "architecture": str,
        "os": str,
        "os.version": NotRequired[str],
        "os.features": NotRequired[Sequence[str]],
        "variant": NotRequired[str],
        "features": NotRequired[Sequence[str]],
    },
)


# --------------------------
# Descriptor (OCI descriptor)
# --------------------------
class Descriptor(TypedDict, total=False):
    """
    application/vnd.oci.descriptor.v1+json
    See: https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    """

    mediaType: str
    size: int
    digest: str
    urls: NotRequired[Sequence[str]]
    annotations: NotRequired[Mapping[str, str]]
    platform: NotRequired[Platform]
    artifactType: NotRequired[str]


# --------------------------
# OCI image index
# --------------------------
class OCIImageIndex(TypedDict):
    """
    application/vnd.oci.image.index.v1+json
    """

    schemaVersion: int
    mediaType: NotRequired[Literal["application/vnd.oci.image.index.v1+json"]]
    manifests: Sequence[Descriptor]
    annotations: NotRequired[Mapping[str, str]]


# --------------------------
# Docker manifest list
# --------------------------
class DockerManifestList(TypedDict):
    """
    application/vnd.docker.distribution.manifest.list.v2+json
    """

    schemaVersion: int
    mediaType: NotRequired[Literal["application/vnd.docker.distribution.manifest.list.v2+json"]]
    manifests: Sequence[Descriptor]
    annotations: NotRequired[Annotations]


# --------------------------
# OCI manifest
# --------------------------
class OCIManifest(TypedDict):
    """
    application/vnd.oci.image.manifest.v1+json
    See: https://github.com/opencontainers/image-spec/blob/main/manifest.md
    """

    schemaVersion: int
    mediaType: NotRequired[Literal["application/vnd.oci.image.manifest.v1+json"]]
    config: Descriptor
    layers: Sequence[Descriptor]
    annotations: NotRequired[Annotations]


class DockerManifestV2(TypedDict):
    """
    application/vnd.docker.distribution.manifest.v2+json
    This is similar to an OCIManifest in practice but historically different constants.
    """

    schemaVersion: int
    mediaType: NotRequired[Literal["application/vnd.docker.distribution.manifest.v2+json"]]
    config: Descriptor
    layers: Sequence[Descriptor]
    annotations: NotRequired[Annotations]


# --------------------------
# Image configuration
# --------------------------
class ContainerConfig(TypedDict, total=False):
    """
    The execution parameters of an image, the "config" member of the configuration blob.
    Docker spells these keys in PascalCase, OCI kept the spelling.
    """

    User: str
    Env: Sequence[str]
    Entrypoint: Sequence[str] | None
    Cmd: Sequence[str] | None
    WorkingDir: str
    Labels: Mapping[str, str]
    ExposedPorts: Mapping[str, Mapping]
    Volumes: Mapping[str, Mapping]
    StopSignal: str


class RootFS(TypedDict):
    type: Literal["layers"]
    diff_ids: Sequence[str]


class History(TypedDict, total=False):
    created: str
    created_by: str
    author: str
    comment: str
    empty_layer: bool


class ImageConfigFile(TypedDict):
    """
    application/vnd.oci.image.config.v1+json and application/vnd.docker.container.image.v1+json
    See: https://github.com/opencontainers/image-spec/blob/main/config.md
    """

    architecture: str
    os: str
    variant: NotRequired[str]
    created: NotRequired[str]
    author: NotRequired[str]
    config: NotRequired[ContainerConfig]
    rootfs: RootFS
    history: NotRequired[Sequence[History]]
