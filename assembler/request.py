import enum
import logging
from collections.abc import Iterable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from types import MappingProxyType

from assembler.compiler import CompilerFlags
from assembler.platform import TargetProfile
from regtools.reference import Reference
from regtools.reference import parse_reference
from regtools.reference import parse_repository
from utils import coerce_to_bool
from utils.errors import ConfigurationError

logger = logging.getLogger(__name__)


class DeliveryMode(enum.Enum):
    NONE = "none"
    PUBLISH = "publish"
    EXPORT_DIRECTORY = "export-directory"
    EXPORT_LOCAL = "export-local"


@dataclass(frozen=True, slots=True)
class BuildRequest:
    """
    Everything one build needs to know, fixed for its whole duration
    """

    base: str
    image_refs: tuple[Reference, ...]
    artifacts: Mapping[str, str] = field(default_factory=dict)
    static_files: Mapping[str, str] = field(default_factory=dict)
    target: TargetProfile = TargetProfile.NONE
    compiler_flags: CompilerFlags = CompilerFlags()
    annotations: Mapping[str, str] = field(default_factory=dict)
    cmd: tuple[str, ...] = ()
    mode: DeliveryMode = DeliveryMode.NONE
    out_path: str = ""

    def __post_init__(self) -> None:
        # Read-only views, callers cannot change the request behind our back
        for name in ("artifacts", "static_files", "annotations"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))
        object.__setattr__(self, "image_refs", tuple(self.image_refs))
        object.__setattr__(self, "cmd", tuple(self.cmd))


def parse_files(value: str) -> dict[str, str]:
    """
    Parses a comma-separated list of colon-separated pairs into a mapping of
    path on disk (or package) to path in the image
    """
    files: dict[str, str] = {}
    if not value:
        return files
    for item in value.split(","):
        item = item.strip()
        parts = item.split(":")
        if len(parts) != 2 or not all(parts):
            raise ConfigurationError(f"unparseable file field {item!r}")
        files[parts[0]] = parts[1]
    return files


def parse_repos(repos: Iterable[str], tags: Iterable[str]) -> list[Reference]:
    """
    Every repository gets every tag
    """
    tags = [tag.strip() for tag in tags]
    refs = []
    for repo in repos:
        try:
            repository = parse_repository(repo)
            refs.extend(repository.tag(tag) for tag in tags)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
    return refs


def parse_annotations(value: str) -> dict[str, str]:
    """
    Parses comma separated key=value pairs, i.e key1=val1,key2=val2.
    Pairs without a "=" or with an empty value are ignored.
    """
    annotations = {}
    for item in value.split(","):
        key, sep, val = item.partition("=")
        key = key.strip()
        if not sep or not key or not val:
            if item.strip():
                logger.warning(f"Ignoring annotation {item!r}")
            continue
        annotations[key] = val
    return annotations


def delivery_mode(push: bool, out_path: str, target: TargetProfile) -> DeliveryMode:
    if push and out_path:
        raise ConfigurationError("--push and --out cannot be combined")
    if push:
        return DeliveryMode.EXPORT_LOCAL if target is TargetProfile.LOCAL_RUNTIME else DeliveryMode.PUBLISH
    if out_path:
        return DeliveryMode.EXPORT_DIRECTORY
    return DeliveryMode.NONE


def request_from_args(args) -> BuildRequest:
    """
    Validates parsed command line arguments into a BuildRequest
    """
    if not args.tags:
        raise ConfigurationError("tags must be set")
    if not args.repos:
        raise ConfigurationError("registries must be set")
    if not args.base:
        raise ConfigurationError("base image must be set")
    try:
        parse_reference(args.base)
    except ValueError as e:
        raise ConfigurationError(f"invalid base image: {e}") from e

    target = TargetProfile.parse(args.target)
    artifacts = parse_files(args.gopaths)
    static_files = parse_files(args.files)
    if not artifacts and not static_files:
        raise ConfigurationError("at least one of --files or --gopaths must be set")

    return BuildRequest(
        base=args.base,
        image_refs=tuple(parse_repos(args.repos.split(","), args.tags.split(","))),
        artifacts=artifacts,
        static_files=static_files,
        target=target,
        compiler_flags=CompilerFlags(
            ldflags=args.ldflags,
            tags=args.gotags,
            verbose=coerce_to_bool(args.verbose),
        ),
        annotations=parse_annotations(args.annotations),
        cmd=tuple(args.cmd or ()),
        mode=delivery_mode(coerce_to_bool(args.push), args.out, target),
        out_path=args.out,
    )
