"""
Deriving images from a base.

``assemble_image`` builds one platform: it compiles the requested artifacts for
it, layers them together with the static files on top of the base image of
that platform.  ``assemble_single`` and ``assemble_index`` drive it for the two
shapes a base can have, and collect what they build into an ``OutputSet``.
"""

import logging
import tempfile
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Mapping
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

from assembler.compiler import CompileTarget
from assembler.compiler import Compiler
from assembler.layer import build_layer
from assembler.platform import Action
from assembler.platform import Host
from assembler.platform import Platform
from assembler.platform import TargetProfile
from assembler.platform import evaluate
from assembler.request import BuildRequest
from regtools.images import Image
from regtools.images import ImageIndex
from regtools.images import IndexEntry
from regtools.images import layer_media_type_for
from regtools.models import Descriptor
from utils import bytes_to_human_readable
from utils.errors import ConfigurationError
from utils.errors import PlatformRejectedError

logger = logging.getLogger(__name__)


class PlatformLogger(logging.LoggerAdapter):
    """
    Prefixes every message with the platform it concerns
    """

    def process(self, msg, kwargs):
        return f"{self.extra['platform']}: {msg}", kwargs


def platform_logger(platform: Platform) -> PlatformLogger:
    return PlatformLogger(logger, {"platform": str(platform)})


@dataclass(frozen=True, slots=True)
class ImageResult:
    """
    A derived image and the descriptor metadata of the base entry it came from
    """

    platform: Platform
    image: Image
    descriptor: Descriptor = field(default_factory=dict)

    def index_entry(self, annotations: Mapping[str, str] | None = None) -> IndexEntry:
        """
        The entry for this image in a rebuilt index.  Annotations augment those
        the base entry already carried.
        """
        return IndexEntry(
            image=self.image,
            media_type=self.descriptor.get("mediaType"),
            urls=tuple(self.descriptor.get("urls", ())),
            platform=self.descriptor.get("platform") or self.platform.to_dict(),
            annotations={**self.descriptor.get("annotations", {}), **(annotations or {})},
        )


@dataclass(frozen=True, slots=True)
class OutputSet:
    """
    What a build produced: nothing, a single image, or several images and the
    index which lists them
    """

    results: tuple[ImageResult, ...] = ()
    index: ImageIndex | None = None

    @property
    def empty(self) -> bool:
        return not self.results

    @property
    def image(self) -> Image | None:
        if len(self.results) == 1:
            return self.results[0].image
        return None


async def assemble_image(
    base: Image,
    platform: Platform,
    request: BuildRequest,
    compiler: Compiler,
) -> Image:
    """
    Compiles the requested artifacts for the platform and appends them, along
    with the static files, as a new layer on top of the base image
    """
    log = platform_logger(platform)
    # Decodes the arm variant before anything is compiled
    target = CompileTarget.for_platform(platform)
    layer_media_type = layer_media_type_for(base.media_type)

    with tempfile.TemporaryDirectory(prefix="assembler") as tmp_dir:
        files: dict[str | Path, str] = dict(request.static_files)

        for package, dst in request.artifacts.items():
            log.info(f"compiling {package}")
            output = await compiler.compile(package, Path(tmp_dir), target, request.compiler_flags)
            log.info(f"output {package} -> {output}")
            files[output] = dst

        # Built while the compiled outputs still exist
        layer = build_layer(files, layer_media_type)

    log.info(f"layer {layer.digest} ({bytes_to_human_readable(layer.size)})")
    return base.append_layer(layer)


def _finish(image: Image, request: BuildRequest) -> Image:
    image = image.with_annotations(request.annotations)
    if request.cmd:
        image = image.with_cmd(request.cmd)
    return image


async def assemble_single(
    base: Image,
    request: BuildRequest,
    *,
    compiler: Compiler,
    host: Host | None = None,
) -> OutputSet:
    """
    Builds for the one platform a single image base declares.  A rejected
    platform is fatal, a skipped one produces nothing.
    """
    if base.platform is None:
        raise PlatformRejectedError(request.base, "unknown platform for image")
    platform = Platform.from_dict(base.platform)
    log = platform_logger(platform)

    decision = evaluate(platform, request.target, host)
    if decision.action is Action.REJECT:
        raise PlatformRejectedError(platform, decision.reason)
    if decision.action is Action.SKIP:
        log.info(f"skipping: {decision.reason}")
        return OutputSet()

    log.info("building")
    image = _finish(await assemble_image(base, platform, request, compiler), request)
    log.info(f"image digest: {image.digest}")
    return OutputSet(
        results=(ImageResult(platform, image, {"mediaType": image.media_type, "platform": platform.to_dict()}),),
    )


async def assemble_index(
    media_type: str,
    entries: Sequence[Descriptor],
    request: BuildRequest,
    *,
    fetch_image: Callable[[Descriptor], Awaitable[Image]],
    compiler: Compiler,
    host: Host | None = None,
) -> OutputSet:
    """
    Builds every platform of a base index the policy allows, in the index's
    order, and reassembles the results
    """
    survivors: list[tuple[Platform, Descriptor]] = []
    for entry in entries:
        if not entry.get("platform"):
            raise PlatformRejectedError(entry.get("digest", request.base), "unknown platform for image")
        platform = Platform.from_dict(entry["platform"])
        decision = evaluate(platform, request.target, host)
        if not decision.build:
            platform_logger(platform).info(f"skipping: {decision.reason}")
            continue
        survivors.append((platform, entry))

    if len(survivors) > 1 and request.target is TargetProfile.LOCAL_RUNTIME:
        raise ConfigurationError(
            f"cannot build multi-platform images for local target, "
            f"{len(survivors)} platforms match: {', '.join(str(p) for p, _ in survivors)}",
        )

    results: list[ImageResult] = []
    for platform, entry in survivors:
        log = platform_logger(platform)
        log.info(f"base digest: {entry.get('digest')}")
        base = await fetch_image(entry)
        log.info("building")
        image = _finish(await assemble_image(base, platform, request, compiler), request)
        log.info(f"new digest: {image.digest}")
        results.append(ImageResult(platform, image, entry))

    return collect(media_type, results, request.annotations)


def collect(media_type: str, results: Sequence[ImageResult], annotations: Mapping[str, Any]) -> OutputSet:
    """
    Turns the built images into an OutputSet.  A single image is returned as is,
    a one entry index would be pointless.
    """
    match len(results):
        case 0:
            logger.info("no images")
            return OutputSet()
        case 1:
            logger.info(f"image digest: {results[0].image.digest}")
            return OutputSet(results=tuple(results))

    index = ImageIndex(media_type, (result.index_entry(annotations) for result in results))
    index = index.with_annotations(annotations)
    logger.info(f"index digest: {index.digest}")
    return OutputSet(results=tuple(results), index=index)
