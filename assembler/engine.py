import logging
from dataclasses import dataclass

from assembler.assemble import OutputSet
from assembler.assemble import assemble_index
from assembler.assemble import assemble_single
from assembler.compiler import Compiler
from assembler.compiler import GoCompiler
from assembler.platform import Host
from assembler.publish import LoaderProbe
from assembler.publish import Publisher
from assembler.request import BuildRequest
from regtools.client import RegistryClient
from regtools.client import Registries
from regtools.images import IMAGE_MEDIA_TYPES
from regtools.images import INDEX_MEDIA_TYPES
from regtools.images import AnyIndex
from regtools.images import Image
from regtools.models import Descriptor
from regtools.reference import Reference
from regtools.reference import parse_reference
from utils.errors import UnsupportedMediaTypeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BaseImage:
    reference: Reference
    image: Image


@dataclass(frozen=True, slots=True)
class BaseIndex:
    reference: Reference
    media_type: str
    manifests: tuple[Descriptor, ...]
    client: RegistryClient

    async def image(self, descriptor: Descriptor) -> Image:
        return await self.client.image(self.reference.name, descriptor["digest"])


async def resolve_base(registries: Registries, reference: Reference) -> BaseImage | BaseIndex:
    """
    Fetches the base and decides, once, which shape it has
    """
    client = registries.client(reference)
    descriptor = await client.get_descriptor(reference.name, reference.identifier)
    logger.info(f"base {reference} is {descriptor.media_type} {descriptor.digest}")

    if descriptor.media_type in IMAGE_MEDIA_TYPES:
        return BaseImage(reference, await client.image(reference.name, descriptor.digest))
    if descriptor.media_type in INDEX_MEDIA_TYPES:
        manifest: AnyIndex = descriptor.manifest()  # type: ignore[assignment]
        return BaseIndex(reference, descriptor.media_type, tuple(manifest.get("manifests", [])), client)

    raise UnsupportedMediaTypeError(f"failed to interpret base as index or image: {descriptor.media_type}")


async def build(
    request: BuildRequest,
    registries: Registries,
    *,
    compiler: Compiler | None = None,
    host: Host | None = None,
) -> OutputSet:
    """
    Builds every image the request asks for, without delivering anything
    """
    compiler = compiler or GoCompiler()
    base = await resolve_base(registries, parse_reference(request.base))

    match base:
        case BaseImage(image=image):
            # Special case it to only build for that one platform
            return await assemble_single(image, request, compiler=compiler, host=host)
        case BaseIndex():
            return await assemble_index(
                base.media_type,
                base.manifests,
                request,
                fetch_image=base.image,
                compiler=compiler,
                host=host,
            )


async def run(
    request: BuildRequest,
    registries: Registries,
    *,
    compiler: Compiler | None = None,
    host: Host | None = None,
    probes: list[LoaderProbe] | None = None,
) -> OutputSet:
    """
    Builds, then delivers.  Nothing is delivered unless every platform built.
    """
    output = await build(request, registries, compiler=compiler, host=host)
    await Publisher(request, registries, probes).deliver(output)
    return output
