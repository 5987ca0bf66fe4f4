"""
Deciding which platforms of a base image get built.

The decision is a pure function of the platform, the target profile and the
host the build runs on, so it can be evaluated for every entry of an index up
front, before any work starts.
"""

import enum
import logging
import platform as host_platform
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from typing import Final
from typing import Self

from regtools.models import Platform as PlatformDict
from utils.errors import ConfigurationError
from utils.errors import VariantDecodeError

SUPPORTED_ARCHITECTURES: Final[frozenset[str]] = frozenset({"arm", "arm64", "amd64", "386"})

# Normalizes what the host reports into the names images use
_MACHINE_ALIASES: Final[dict[str, str]] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv6l": "arm",
    "armv7l": "arm",
    "i386": "386",
    "i686": "386",
    "x86": "386",
}


@dataclass(frozen=True, slots=True)
class Platform:
    os: str
    architecture: str
    variant: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        return cls(
            os=data.get("os", ""),
            architecture=data.get("architecture", ""),
            variant=data.get("variant", "") or "",
        )

    def to_dict(self) -> PlatformDict:
        data: PlatformDict = {"os": self.os, "architecture": self.architecture}
        if self.variant:
            data["variant"] = self.variant
        return data

    def __str__(self) -> str:
        if self.variant:
            return f"{self.os}/{self.architecture}/{self.variant}"
        return f"{self.os}/{self.architecture}"


class TargetProfile(enum.Enum):
    """
    The deployment context, narrowing which platforms are worth building
    """

    NONE = ""
    RESTRICTED_AMD64 = "restricted-amd64"
    LOCAL_RUNTIME = "local-runtime"

    @classmethod
    def parse(cls, value: str | None) -> "TargetProfile":
        aliases = {"none": cls.NONE, "flyio": cls.RESTRICTED_AMD64, "local": cls.LOCAL_RUNTIME}
        value = (value or "").strip().lower()
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            raise ConfigurationError(f"unsupported target {value!r}") from None


class Action(enum.Enum):
    BUILD = "build"
    SKIP = "skip"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class Decision:
    action: Action
    reason: str = ""

    @property
    def build(self) -> bool:
        return self.action is Action.BUILD

    @classmethod
    def skip(cls, reason: str) -> "Decision":
        return cls(Action.SKIP, reason)

    @classmethod
    def reject(cls, reason: str) -> "Decision":
        return cls(Action.REJECT, reason)


BUILD: Final[Decision] = Decision(Action.BUILD)


@dataclass(frozen=True, slots=True)
class Host:
    """
    The OS and architecture of the machine running the build, in image naming
    """

    os: str
    architecture: str

    @classmethod
    def current(cls) -> "Host":
        machine = host_platform.machine().lower()
        return cls(
            os=host_platform.system().lower(),
            architecture=_MACHINE_ALIASES.get(machine, machine),
        )


def can_run_local(platform: Platform, host: Host) -> bool:
    """
    Reports whether images of the platform can be run by a container runtime on
    the host, to be used by the local-runtime target
    """
    if platform.os != "linux":
        return False
    if host.os == "linux":
        return platform.architecture == host.architecture
    if host.os == "darwin":
        # Container runtimes on macOS emulate amd64 linux
        return platform.architecture == "amd64"
    return False


def evaluate(platform: Platform, target: TargetProfile, host: Host | None = None) -> Decision:
    """
    Decides whether to build, skip or reject a platform for a target profile
    """
    if platform.os != "linux":
        return Decision.reject(f"unsupported OS: {platform.os}")
    if target is TargetProfile.LOCAL_RUNTIME and not can_run_local(platform, host or Host.current()):
        return Decision.skip(f"not required for target {target.value!r}")
    if target is TargetProfile.RESTRICTED_AMD64 and platform.architecture != "amd64":
        return Decision.skip(f"not required for target {target.value!r}")
    if platform.architecture not in SUPPORTED_ARCHITECTURES:
        return Decision.reject(f"unsupported arch: {platform.architecture}")
    return BUILD


def arm_version(platform: Platform) -> str:
    """
    Extracts the ARM revision from a variant such as "v7"
    """
    if platform.architecture != "arm":
        raise VariantDecodeError(f"not arm: {platform.architecture}")
    variant = platform.variant
    if len(variant) != 2 or variant[0] != "v" or variant[1] not in "0123456789":
        raise VariantDecodeError(f"unexpected variant: {variant!r}")
    return variant[1]
