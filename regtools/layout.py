"""
Writers which put images on the local filesystem instead of a registry:
an OCI image layout directory for indexes, and a ``docker load`` compatible
tarball for single images.

See https://github.com/opencontainers/image-spec/blob/main/image-layout.md
"""

import io
import json
import logging
import tarfile
from pathlib import Path
from typing import BinaryIO

from regtools.images import Image
from regtools.images import ImageIndex
from regtools.reference import Reference

logger = logging.getLogger(__name__)

OCI_LAYOUT_VERSION = "1.0.0"
IMAGE_TARBALL_NAME = "image.tar"


def create_out_directory(path: Path) -> None:
    """
    Makes sure the path is a directory, creating it when missing
    """
    if path.exists() and not path.is_dir():
        raise NotADirectoryError(f"out must be a directory: {path}")
    path.mkdir(parents=True, exist_ok=True)


def _write_blob(blobs_dir: Path, digest: str, data: bytes) -> None:
    algorithm, _, hex_digest = digest.partition(":")
    blob_path = blobs_dir / algorithm / hex_digest
    if blob_path.exists():
        return
    blob_path.parent.mkdir(parents=True, exist_ok=True)
    blob_path.write_bytes(data)


async def _write_image_blobs(blobs_dir: Path, image: Image) -> None:
    for layer in image.layers:
        _write_blob(blobs_dir, layer.digest, await layer.compressed())
    _write_blob(blobs_dir, image.config_digest, image.raw_config)
    _write_blob(blobs_dir, image.digest, image.raw_manifest)


async def write_layout(path: Path, index: ImageIndex) -> None:
    """
    Writes an index and every blob it references as an OCI image layout.
    The layout's ``index.json`` is the index itself.
    """
    create_out_directory(path)
    blobs_dir = path / "blobs"

    for image in index.images:
        logger.debug(f"Writing blobs of {image.digest}")
        await _write_image_blobs(blobs_dir, image)

    (path / "oci-layout").write_text(json.dumps({"imageLayoutVersion": OCI_LAYOUT_VERSION}))
    (path / "index.json").write_bytes(index.raw_manifest)
    logger.info(f"Wrote OCI layout for {index.digest} to {path}")


def _add_file(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    info.mode = 0o644
    info.mtime = 0
    tar.addfile(info, io.BytesIO(data))


async def write_tarball(fileobj: BinaryIO, tag: Reference, image: Image) -> None:
    """
    Writes a single image in the format ``docker save`` produces and
    ``docker load`` accepts.  The outer archive is uncompressed, layers keep
    their gzip compression.
    """
    layer_names = []
    with tarfile.open(fileobj=fileobj, mode="w|") as tar:
        config_name = image.config_digest
        _add_file(tar, config_name, image.raw_config)

        for layer in image.layers:
            layer_name = f"{layer.digest.partition(':')[2]}.tar.gz"
            _add_file(tar, layer_name, await layer.compressed())
            layer_names.append(layer_name)

        manifest = [
            {
                "Config": config_name,
                "RepoTags": [str(tag)],
                "Layers": layer_names,
            },
        ]
        _add_file(tar, "manifest.json", json.dumps(manifest).encode("utf-8"))


async def tarball_bytes(tag: Reference, image: Image) -> bytes:
    buffer = io.BytesIO()
    await write_tarball(buffer, tag, image)
    return buffer.getvalue()


async def write_image_to_file(path: Path, tag: Reference, image: Image) -> Path:
    """
    Writes a single image as ``image.tar`` inside the given directory
    """
    create_out_directory(path)
    tarball = path / IMAGE_TARBALL_NAME
    with tarball.open("wb") as fh:
        await write_tarball(fh, tag, image)
    logger.info(f"Wrote {image.digest} as {tag} to {tarball}")
    return tarball
