"""
Parsing of image references such as ``ghcr.io/owner/image:tag`` or
``alpine@sha256:...``, following the same defaulting rules as the docker CLI.
"""

import re
from dataclasses import dataclass
from typing import Final

DEFAULT_REGISTRY: Final[str] = "index.docker.io"
DEFAULT_TAG: Final[str] = "latest"

# Hostnames the docker CLI also treats as the default registry
_DOCKER_HUB_ALIASES: Final[set[str]] = {"docker.io", "index.docker.io", "registry-1.docker.io"}

_REPOSITORY_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]{32,}$")


@dataclass(frozen=True, slots=True)
class Repository:
    registry: str
    name: str

    @property
    def scheme(self) -> str:
        """
        Local registries are assumed to speak plain HTTP, everything else HTTPS
        """
        if self.registry.startswith("["):
            host = self.registry[: self.registry.index("]") + 1]
        else:
            host = self.registry.rsplit(":", 1)[0]
        if host in {"localhost", "127.0.0.1", "[::1]"} or host.endswith(".local"):
            return "http"
        return "https"

    def tag(self, tag: str) -> "Reference":
        if not _TAG_RE.match(tag):
            raise ValueError(f"Invalid tag: {tag!r}")
        return Reference(self, tag)

    def digest(self, digest: str) -> "Reference":
        if not _DIGEST_RE.match(digest):
            raise ValueError(f"Invalid digest: {digest!r}")
        return Reference(self, digest)

    def __str__(self) -> str:
        return f"{self.registry}/{self.name}"


@dataclass(frozen=True, slots=True)
class Reference:
    """
    A repository plus a tag or a digest
    """

    repository: Repository
    identifier: str

    @property
    def is_digest(self) -> bool:
        return ":" in self.identifier

    @property
    def registry(self) -> str:
        return self.repository.registry

    @property
    def name(self) -> str:
        return self.repository.name

    def __str__(self) -> str:
        separator = "@" if self.is_digest else ":"
        return f"{self.repository}{separator}{self.identifier}"


def parse_repository(value: str) -> Repository:
    """
    Splits a repository string into registry host and repository path.

    The first path component is a registry when it looks like a hostname, that is
    it contains a dot or a port, or it is ``localhost``.  Otherwise the repository
    lives on Docker Hub, where single component names are official images under
    ``library/``.
    """
    value = value.strip()
    if not value:
        raise ValueError("Empty repository name")

    first, sep, rest = value.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        registry, name = first, rest
    else:
        registry, name = DEFAULT_REGISTRY, value

    if registry in _DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY
        if "/" not in name:
            name = f"library/{name}"

    if not _REPOSITORY_RE.match(name):
        raise ValueError(f"Invalid repository name: {value!r}")

    return Repository(registry=registry, name=name)


def parse_reference(value: str) -> Reference:
    """
    Parses a full image reference, defaulting the tag to ``latest``
    """
    value = value.strip()
    if "@" in value:
        repository, _, digest = value.partition("@")
        return parse_repository(repository).digest(digest)

    # A colon after the last slash separates the tag, anything before is a port
    slash = value.rfind("/")
    colon = value.rfind(":")
    if colon > slash:
        return parse_repository(value[:colon]).tag(value[colon + 1 :])
    return parse_repository(value).tag(DEFAULT_TAG)
