"""
In-memory OCI and Docker image objects.

Images and indexes are immutable, every "mutation" returns a new object whose
manifest, config and digests are recomputed from its parts.  Layers built
locally carry their uncompressed tar and compress it once on first use, layers
of a base image are only referenced by descriptor and fetched when a writer
actually needs their bytes.
"""

import copy
import functools
import gzip
import hashlib
import json
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Iterable
from collections.abc import Mapping
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Protocol
from typing import cast

from regtools.models import ContainerConfig
from regtools.models import Descriptor
from regtools.models import DockerManifestList
from regtools.models import DockerManifestV2
from regtools.models import History
from regtools.models import ImageConfigFile
from regtools.models import OCIImageIndex
from regtools.models import OCIManifest
from regtools.models import Platform
from utils.errors import MediaTypeMismatchError
from utils.errors import UnsupportedMediaTypeError

# Constants for media types and the HTTP Accept header
OCI_INDEX_MEDIA_TYPE = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.v2+json"

OCI_CONFIG_MEDIA_TYPE = "application/vnd.oci.image.config.v1+json"
DOCKER_CONFIG_MEDIA_TYPE = "application/vnd.docker.container.image.v1+json"
OCI_LAYER_MEDIA_TYPE = "application/vnd.oci.image.layer.v1.tar+gzip"
DOCKER_LAYER_MEDIA_TYPE = "application/vnd.docker.image.rootfs.diff.tar.gzip"

IMAGE_MEDIA_TYPES = {
    OCI_MANIFEST_MEDIA_TYPE,
    DOCKER_MANIFEST_MEDIA_TYPE,
}

INDEX_MEDIA_TYPES = {
    OCI_INDEX_MEDIA_TYPE,
    DOCKER_MANIFEST_LIST_MEDIA_TYPE,
}

ACCEPT_HEADER = (
    f"{OCI_INDEX_MEDIA_TYPE}, "
    f"{DOCKER_MANIFEST_LIST_MEDIA_TYPE}, "
    f"{OCI_MANIFEST_MEDIA_TYPE}, "
    f"{DOCKER_MANIFEST_MEDIA_TYPE}"
)

# The layer and config types which belong to each image manifest type
_LAYER_MEDIA_TYPES = {
    OCI_MANIFEST_MEDIA_TYPE: OCI_LAYER_MEDIA_TYPE,
    DOCKER_MANIFEST_MEDIA_TYPE: DOCKER_LAYER_MEDIA_TYPE,
}
_CONFIG_MEDIA_TYPES = {
    OCI_MANIFEST_MEDIA_TYPE: OCI_CONFIG_MEDIA_TYPE,
    DOCKER_MANIFEST_MEDIA_TYPE: DOCKER_CONFIG_MEDIA_TYPE,
}

# Appended to the history of every derived image, zero time to stay reproducible
_EPOCH = "1970-01-01T00:00:00Z"

logger = logging.getLogger(__name__)

AnyManifest = OCIImageIndex | DockerManifestList | OCIManifest | DockerManifestV2
AnyIndex = OCIImageIndex | DockerManifestList
AnyImageManifest = OCIManifest | DockerManifestV2


def get_parsed_type(media_type: str, parsed_json: dict[str, Any]) -> AnyManifest:
    """
    Casts a parsed JSON dict to the correct TypedDict model based on mediaType.
    """
    if media_type == OCI_INDEX_MEDIA_TYPE:
        return cast(OCIImageIndex, parsed_json)
    if media_type == DOCKER_MANIFEST_LIST_MEDIA_TYPE:
        return cast(DockerManifestList, parsed_json)
    if media_type == OCI_MANIFEST_MEDIA_TYPE:
        return cast(OCIManifest, parsed_json)
    if media_type == DOCKER_MANIFEST_MEDIA_TYPE:
        return cast(DockerManifestV2, parsed_json)

    raise ValueError(f"Unknown media type: {media_type}")


def sha256_digest(data: bytes) -> str:
    """Return 'sha256:<hex>' digest for *data*."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def canonical_json(data: Mapping[str, Any]) -> bytes:
    """
    Serializes a manifest or config compactly, keeping key order, so the same
    object always hashes to the same digest
    """
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def media_type_family(media_type: str) -> str | None:
    """
    Returns "oci" or "docker" for the image format family a media type belongs to
    """
    if media_type.startswith("application/vnd.oci."):
        return "oci"
    if media_type.startswith("application/vnd.docker."):
        return "docker"
    return None


def layer_media_type_for(manifest_media_type: str) -> str:
    """
    Maps an image manifest media type to the layer media type of the same family
    """
    try:
        return _LAYER_MEDIA_TYPES[manifest_media_type]
    except KeyError:
        raise UnsupportedMediaTypeError(
            f"unknown base image media type {manifest_media_type or '(none)'}, accepted types are "
            f"OCI image manifest v1 ({OCI_MANIFEST_MEDIA_TYPE}) and "
            f"Docker image manifest v2 ({DOCKER_MANIFEST_MEDIA_TYPE})",
        ) from None


class BlobLayer(Protocol):
    """
    Anything which can stand in as an image layer
    """

    @property
    def media_type(self) -> str: ...

    @property
    def digest(self) -> str: ...

    @property
    def size(self) -> int: ...

    def descriptor(self) -> Descriptor: ...

    async def compressed(self) -> bytes: ...


class Layer:
    """
    A layer built locally from an uncompressed tar archive.  The gzip form is
    computed on first use and cached, so the digest can be requested any number
    of times.
    """

    def __init__(self, tar_bytes: bytes, media_type: str = OCI_LAYER_MEDIA_TYPE) -> None:
        self._tar_bytes = tar_bytes
        self._media_type = media_type

    @property
    def media_type(self) -> str:
        return self._media_type

    @property
    def tar_bytes(self) -> bytes:
        return self._tar_bytes

    @functools.cached_property
    def diff_id(self) -> str:
        return sha256_digest(self._tar_bytes)

    @functools.cached_property
    def _compressed(self) -> bytes:
        # A fixed header timestamp keeps the compressed digest reproducible
        return gzip.compress(self._tar_bytes, mtime=0)

    @functools.cached_property
    def digest(self) -> str:
        return sha256_digest(self._compressed)

    @property
    def size(self) -> int:
        return len(self._compressed)

    def descriptor(self) -> Descriptor:
        return {"mediaType": self._media_type, "size": self.size, "digest": self.digest}

    async def compressed(self) -> bytes:
        return self._compressed

    def __repr__(self) -> str:
        return f"Layer({self.digest}, {self._media_type})"


class RemoteLayer:
    """
    A layer of an image fetched from a registry.  Only the descriptor is known
    until the blob is first read.
    """

    def __init__(
        self,
        descriptor: Descriptor,
        fetch: Callable[[str], Awaitable[bytes]],
        *,
        registry: str,
        repository: str,
    ) -> None:
        self._descriptor = dict(descriptor)
        self._fetch = fetch
        self._data: bytes | None = None
        self.registry = registry
        self.repository = repository

    @property
    def media_type(self) -> str:
        return self._descriptor["mediaType"]

    @property
    def digest(self) -> str:
        return self._descriptor["digest"]

    @property
    def size(self) -> int:
        return self._descriptor["size"]

    def descriptor(self) -> Descriptor:
        return cast(Descriptor, copy.deepcopy(self._descriptor))

    async def compressed(self) -> bytes:
        if self._data is None:
            logger.debug(f"Fetching layer {self.digest} from {self.registry}/{self.repository}")
            self._data = await self._fetch(self.digest)
        return self._data

    def __repr__(self) -> str:
        return f"RemoteLayer({self.registry}/{self.repository}@{self.digest})"


class Image:
    """
    A single platform image: its configuration blob, its layers and the
    manifest describing them
    """

    def __init__(
        self,
        media_type: str,
        config: ImageConfigFile,
        layers: Iterable[BlobLayer] = (),
        *,
        config_media_type: str | None = None,
        annotations: Mapping[str, str] | None = None,
    ) -> None:
        if media_type not in IMAGE_MEDIA_TYPES:
            raise UnsupportedMediaTypeError(f"Not an image manifest media type: {media_type}")
        self._media_type = media_type
        self._config = config
        self._layers = tuple(layers)
        self._config_media_type = config_media_type or _CONFIG_MEDIA_TYPES[media_type]
        self._annotations = dict(annotations or {})

    @classmethod
    def from_manifest(
        cls,
        manifest: AnyImageManifest,
        config: ImageConfigFile,
        layers: Iterable[BlobLayer],
        media_type: str | None = None,
    ) -> "Image":
        """
        Rebuilds an image from a parsed manifest, the media type may come from
        the registry response when the manifest itself omits it
        """
        return cls(
            manifest.get("mediaType") or media_type or "",
            config,
            layers,
            config_media_type=manifest["config"].get("mediaType"),
            annotations=manifest.get("annotations"),
        )

    @property
    def media_type(self) -> str:
        return self._media_type

    @property
    def config(self) -> ImageConfigFile:
        return copy.deepcopy(self._config)

    @property
    def layers(self) -> tuple[BlobLayer, ...]:
        return self._layers

    @property
    def annotations(self) -> dict[str, str]:
        return dict(self._annotations)

    @property
    def platform(self) -> Platform | None:
        """
        The platform declared by the image configuration, if it declares one
        """
        os_name = self._config.get("os")
        architecture = self._config.get("architecture")
        if not os_name or not architecture:
            return None
        platform: Platform = {"os": os_name, "architecture": architecture}
        if variant := self._config.get("variant"):
            platform["variant"] = variant
        return platform

    @functools.cached_property
    def raw_config(self) -> bytes:
        return canonical_json(self._config)

    @functools.cached_property
    def config_digest(self) -> str:
        return sha256_digest(self.raw_config)

    @functools.cached_property
    def manifest(self) -> AnyImageManifest:
        manifest: dict[str, Any] = {
            "schemaVersion": 2,
            "mediaType": self._media_type,
            "config": {
                "mediaType": self._config_media_type,
                "size": len(self.raw_config),
                "digest": self.config_digest,
            },
            "layers": [layer.descriptor() for layer in self._layers],
        }
        if self._annotations:
            manifest["annotations"] = dict(self._annotations)
        return cast(AnyImageManifest, manifest)

    @functools.cached_property
    def raw_manifest(self) -> bytes:
        return canonical_json(self.manifest)

    @functools.cached_property
    def digest(self) -> str:
        return sha256_digest(self.raw_manifest)

    @property
    def size(self) -> int:
        return len(self.raw_manifest)

    def _replace(self, **changes: Any) -> "Image":
        values: dict[str, Any] = {
            "config": self._config,
            "layers": self._layers,
            "annotations": self._annotations,
        }
        values.update(changes)
        return Image(
            self._media_type,
            values["config"],
            values["layers"],
            config_media_type=self._config_media_type,
            annotations=values["annotations"],
        )

    def append_layer(self, layer: Layer, history: History | None = None) -> "Image":
        """
        Returns a new image with the given layer on top.  The layer must be of
        the same image format family as this image.
        """
        if media_type_family(layer.media_type) != media_type_family(self._media_type):
            raise MediaTypeMismatchError(
                f"cannot append a {layer.media_type} layer to a {self._media_type} image",
            )

        config = copy.deepcopy(self._config)
        rootfs = config.setdefault("rootfs", {"type": "layers", "diff_ids": []})
        rootfs["diff_ids"] = [*rootfs.get("diff_ids", []), layer.diff_id]
        if history is None:
            history = {"created": _EPOCH}
        config["history"] = [*config.get("history", []), history]

        return self._replace(config=config, layers=(*self._layers, layer))

    def with_annotations(self, annotations: Mapping[str, str]) -> "Image":
        """
        Returns a new image whose manifest annotations are augmented with the given ones
        """
        if not annotations:
            return self
        return self._replace(annotations={**self._annotations, **annotations})

    def with_cmd(self, cmd: Sequence[str]) -> "Image":
        """
        Returns a new image whose default command is replaced
        """
        config = copy.deepcopy(self._config)
        container_config = cast(ContainerConfig, config.setdefault("config", {}))
        container_config["Cmd"] = list(cmd)
        return self._replace(config=config)

    def __repr__(self) -> str:
        return f"Image({self.digest}, {self._media_type})"


@dataclass(frozen=True, slots=True)
class IndexEntry:
    """
    An image plus the descriptor metadata it is listed with in an index
    """

    image: Image
    media_type: str | None = None
    urls: Sequence[str] = ()
    platform: Platform | None = None
    annotations: Mapping[str, str] = field(default_factory=dict)

    def descriptor(self) -> Descriptor:
        descriptor: Descriptor = {
            "mediaType": self.media_type or self.image.media_type,
            "size": self.image.size,
            "digest": self.image.digest,
        }
        if self.urls:
            descriptor["urls"] = list(self.urls)
        if self.annotations:
            descriptor["annotations"] = dict(self.annotations)
        if self.platform:
            descriptor["platform"] = cast(Platform, dict(self.platform))
        return descriptor


class ImageIndex:
    """
    A multi-platform index (or Docker manifest list) over a set of images
    """

    def __init__(
        self,
        media_type: str,
        entries: Iterable[IndexEntry] = (),
        annotations: Mapping[str, str] | None = None,
    ) -> None:
        if media_type not in INDEX_MEDIA_TYPES:
            raise UnsupportedMediaTypeError(
                f"unknown index media type {media_type}, accepted types are "
                f"OCI image index ({OCI_INDEX_MEDIA_TYPE}) and "
                f"Docker manifest list ({DOCKER_MANIFEST_LIST_MEDIA_TYPE})",
            )
        self._media_type = media_type
        self._entries = tuple(entries)
        self._annotations = dict(annotations or {})

    @property
    def media_type(self) -> str:
        return self._media_type

    @property
    def entries(self) -> tuple[IndexEntry, ...]:
        return self._entries

    @property
    def images(self) -> list[Image]:
        return [entry.image for entry in self._entries]

    @property
    def annotations(self) -> dict[str, str]:
        return dict(self._annotations)

    def with_annotations(self, annotations: Mapping[str, str]) -> "ImageIndex":
        if not annotations:
            return self
        return ImageIndex(self._media_type, self._entries, {**self._annotations, **annotations})

    @functools.cached_property
    def manifest(self) -> AnyIndex:
        manifest: dict[str, Any] = {
            "schemaVersion": 2,
            "mediaType": self._media_type,
            "manifests": [entry.descriptor() for entry in self._entries],
        }
        if self._annotations:
            manifest["annotations"] = dict(self._annotations)
        return cast(AnyIndex, manifest)

    @functools.cached_property
    def raw_manifest(self) -> bytes:
        return canonical_json(self.manifest)

    @functools.cached_property
    def digest(self) -> str:
        return sha256_digest(self.raw_manifest)

    @property
    def size(self) -> int:
        return len(self.raw_manifest)

    def __repr__(self) -> str:
        return f"ImageIndex({self.digest}, {len(self._entries)} manifests)"
