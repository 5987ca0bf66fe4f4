"""
Reproducible filesystem layers.

A layer's bytes depend only on the destination paths and the file contents:
entries are written in sorted order with fixed ownership, permissions and
timestamps, whatever the order sources are given in and whatever metadata
they carry on disk.
"""

import io
import logging
import os
import posixpath
import tarfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from regtools.images import OCI_LAYER_MEDIA_TYPE
from regtools.images import Layer
from utils import bytes_to_human_readable
from utils.errors import LayerBuildError

logger = logging.getLogger(__name__)

# Images are meant to be immutable, nothing in the layer is writable
ENTRY_MODE: Final[int] = 0o555


@dataclass(frozen=True, slots=True)
class LayerEntry:
    """
    One archive member: a directory when source is None, a regular file otherwise
    """

    destination: str
    source: Path | None = None

    @property
    def is_dir(self) -> bool:
        return self.source is None


def _archive_name(destination: str) -> str:
    # Layers use relative member names
    return posixpath.normpath(destination).lstrip("/")


class LayerSpec:
    """
    The ordered set of entries a layer will contain, keyed by archive name.
    Parent directories are added automatically, each exactly once.
    """

    def __init__(self) -> None:
        self._entries: dict[str, LayerEntry] = {}
        self._sources: dict[str, Path] = {}

    @classmethod
    def from_files(cls, files: Mapping[str | Path, str]) -> "LayerSpec":
        """
        Builds a spec from a mapping of source path on disk to destination path in
        the image.  Directory sources are walked recursively.
        """
        spec = cls()
        for src, dst in files.items():
            spec.add(Path(src), dst)
        return spec

    def add(self, src: Path, dst: str) -> None:
        if src.is_dir():
            self._add_tree(src, dst)
        else:
            self.add_file(src, dst)

    def _add_tree(self, root: Path, dst: str) -> None:
        self.add_dir(dst)
        for dirpath, dirnames, filenames in os.walk(root):
            # Sorted for stable logging, the archive order is sorted regardless
            dirnames.sort()
            relative = Path(dirpath).relative_to(root).as_posix()
            base = dst if relative == "." else posixpath.join(dst, relative)
            for dirname in dirnames:
                self.add_dir(posixpath.join(base, dirname))
            for filename in sorted(filenames):
                self.add_file(Path(dirpath) / filename, posixpath.join(base, filename))

    def add_dir(self, destination: str) -> None:
        name = _archive_name(destination)
        if name in ("", "."):
            return
        existing = self._entries.get(name)
        if existing is not None:
            if not existing.is_dir:
                raise LayerBuildError(f"{destination} is both a file from {existing.source} and a directory")
            return
        self._parent(name)
        logger.debug(f"creating dir {name}")
        self._entries[name] = LayerEntry(name)

    def add_file(self, src: Path, destination: str) -> None:
        name = _archive_name(destination)
        if name in ("", "."):
            raise LayerBuildError(f"invalid destination {destination!r} for {src}")
        existing = self._entries.get(name)
        if existing is not None:
            if existing.is_dir:
                raise LayerBuildError(f"{destination} from {src} collides with a directory")
            raise LayerBuildError(f"{destination} is claimed by both {existing.source} and {src}")
        self._parent(name)
        logger.debug(f"copying {src} -> {name}")
        self._entries[name] = LayerEntry(name, src)

    def _parent(self, name: str) -> None:
        parent = posixpath.dirname(name)
        if parent:
            existing = self._entries.get(parent)
            if existing is None:
                logger.debug(f"creating dir {parent}")
                self._entries[parent] = LayerEntry(parent)
            elif not existing.is_dir:
                raise LayerBuildError(f"{parent} is a file from {existing.source}, it cannot hold {name}")

    @property
    def entries(self) -> list[LayerEntry]:
        return [self._entries[name] for name in sorted(self._entries)]

    def __len__(self) -> int:
        return len(self._entries)


def _tar_info(name: str, *, is_dir: bool, size: int = 0) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name=name)
    info.type = tarfile.DIRTYPE if is_dir else tarfile.REGTYPE
    info.size = size
    info.mode = ENTRY_MODE
    # Zero time makes the images reproducible
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def write_layer(spec: LayerSpec, fileobj: io.BufferedIOBase) -> None:
    """
    Writes the spec as an uncompressed tar stream
    """
    with tarfile.open(fileobj=fileobj, mode="w|", format=tarfile.PAX_FORMAT) as tar:
        for entry in spec.entries:
            if entry.source is None:
                tar.addfile(_tar_info(entry.destination, is_dir=True))
                continue
            try:
                with entry.source.open("rb") as fh:
                    # Size comes from the open file, content is streamed
                    size = os.fstat(fh.fileno()).st_size
                    tar.addfile(_tar_info(entry.destination, is_dir=False, size=size), fh)
                    grown = fh.read(1)
            except OSError as e:
                raise LayerBuildError(f"copying {entry.source} -> {entry.destination}: {e}") from e
            if grown:
                raise LayerBuildError(f"copying {entry.source} -> {entry.destination}: file changed size while reading")


def build_layer(files: Mapping[str | Path, str], media_type: str = OCI_LAYER_MEDIA_TYPE) -> Layer:
    """
    Builds a single layer holding every source at its destination
    """
    spec = LayerSpec.from_files(files)
    buffer = io.BytesIO()
    write_layer(spec, buffer)
    layer = Layer(buffer.getvalue(), media_type)
    logger.debug(
        f"Built layer of {len(spec)} entries, {bytes_to_human_readable(len(layer.tar_bytes))} uncompressed",
    )
    return layer
