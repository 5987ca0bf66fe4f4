"""
Delivering an OutputSet: pushing it to registries, writing it to a
directory, or loading it into a local container runtime.
"""

import asyncio
import logging
import shutil
from collections.abc import Sequence
from pathlib import Path
from typing import Final
from typing import Protocol

import httpx

from assembler.assemble import OutputSet
from assembler.request import BuildRequest
from assembler.request import DeliveryMode
from regtools.client import Registries
from regtools.daemon import DaemonClient
from regtools.daemon import DaemonError
from regtools.images import Image
from regtools.layout import tarball_bytes
from regtools.layout import write_image_to_file
from regtools.layout import write_layout
from regtools.reference import Reference
from utils.errors import LocalLoaderNotFoundError
from utils.errors import PublishError

logger = logging.getLogger(__name__)

# Tried in this order when the daemon API is not reachable
CLI_LOADERS: Final[tuple[str, ...]] = ("docker", "podman", "nerdctl")


class LocalLoader(Protocol):
    async def load(self, tag: Reference, image: Image) -> None: ...


class LoaderProbe(Protocol):
    name: str

    async def __call__(self) -> LocalLoader | None: ...


class DaemonLoader:
    def __init__(self, client: DaemonClient) -> None:
        self._client = client

    async def load(self, tag: Reference, image: Image) -> None:
        try:
            output = await self._client.load(await tarball_bytes(tag, image))
        except (httpx.HTTPError, DaemonError) as e:
            raise PublishError(str(tag), f"docker daemon failed to load image: {e}") from e
        finally:
            await self._client.close()
        logger.info(f"output: {output}")


class DaemonProbe:
    """
    Offers the Docker Engine API when a daemon answers on its socket
    """

    name = "docker daemon API"

    def __init__(self, docker_host: str | None = None) -> None:
        self._docker_host = docker_host

    async def __call__(self) -> DaemonLoader | None:
        client = DaemonClient(self._docker_host)
        if await client.ping():
            return DaemonLoader(client)
        await client.close()
        return None


class CliLoader:
    """
    Streams the image into ``<binary> image load``, which docker, podman and
    nerdctl all understand
    """

    def __init__(self, binary: str) -> None:
        self.binary = binary

    async def load(self, tag: Reference, image: Image) -> None:
        tarball = await tarball_bytes(tag, image)
        logger.info(f"running command: {self.binary} image load")
        proc = await asyncio.create_subprocess_exec(
            self.binary,
            "image",
            "load",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await proc.communicate(tarball)
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        output = stdout.decode("utf-8", errors="replace").strip()
        logger.info(f"output: {output}")
        if proc.returncode != 0:
            raise PublishError(str(tag), f"{self.binary} image load exited with {proc.returncode}: {output}")


class CliProbe:
    """
    Offers a CLI when the binary is on the PATH
    """

    def __init__(self, name: str) -> None:
        self.name = name

    async def __call__(self) -> CliLoader | None:
        if path := shutil.which(self.name):
            return CliLoader(path)
        return None


def default_probes() -> list[LoaderProbe]:
    return [DaemonProbe(), *(CliProbe(name) for name in CLI_LOADERS)]


async def load_local_image(tag: Reference, image: Image, probes: Sequence[LoaderProbe] | None = None) -> None:
    """
    Loads an image into the first local runtime found available.  A daemon that
    answers but fails to load the image gives way to the command line loaders.
    """
    attempted = []
    daemon_error = None
    for probe in probes if probes is not None else default_probes():
        attempted.append(probe.name)
        loader = await probe()
        if loader is None:
            logger.debug(f"{probe.name} is not available")
            continue
        logger.info(f"loading {tag} with {probe.name}")
        try:
            await loader.load(tag, image)
        except PublishError as e:
            if not isinstance(loader, DaemonLoader):
                raise
            logger.warning(f"{e}, falling back to the command line")
            daemon_error = e
            continue
        return
    raise LocalLoaderNotFoundError(str(tag), attempted) from daemon_error


class Publisher:
    """
    Delivers an OutputSet the way the request asks for
    """

    def __init__(
        self,
        request: BuildRequest,
        registries: Registries,
        probes: Sequence[LoaderProbe] | None = None,
    ) -> None:
        self.request = request
        self.registries = registries
        self.probes = probes

    async def deliver(self, output: OutputSet) -> None:
        if output.empty:
            logger.info("nothing was built, nothing to deliver")
            return

        match self.request.mode:
            case DeliveryMode.PUBLISH:
                await self.publish(output)
            case DeliveryMode.EXPORT_DIRECTORY:
                await self.export_directory(output, Path(self.request.out_path))
            case DeliveryMode.EXPORT_LOCAL:
                await self.export_local(output)
            case _:
                logger.info("not pushing or writing to file")

    async def publish(self, output: OutputSet) -> None:
        for ref in self.request.image_refs:
            logger.info(f"pushing to {ref}")
            client = self.registries.client(ref)
            try:
                if output.index is not None:
                    await client.write_index(ref.name, ref.identifier, output.index)
                else:
                    await client.write_image(ref.name, ref.identifier, output.results[0].image)
            except httpx.HTTPError as e:
                raise PublishError(str(ref), f"push failed: {e}") from e

    async def export_directory(self, output: OutputSet, path: Path) -> None:
        try:
            if output.index is not None:
                await write_layout(path, output.index)
            else:
                await write_image_to_file(path, self.request.image_refs[0], output.results[0].image)
        except (OSError, httpx.HTTPError) as e:
            raise PublishError(str(path), f"export failed: {e}") from e

    async def export_local(self, output: OutputSet) -> None:
        if output.index is not None:
            raise PublishError("local runtime", "cannot load a multi-platform index")
        image = output.results[0].image
        for ref in self.request.image_refs:
            await load_local_image(ref, image, self.probes)
