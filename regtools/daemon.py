import json
import logging
import os
from typing import Final
from typing import Self

import httpx

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_HOST: Final[str] = "unix:///var/run/docker.sock"


class DaemonError(Exception):
    """
    The daemon answered, but reported a failure
    """


class DaemonClient:
    """
    A minimal client for the Docker Engine API, only what loading an image needs.

    See https://docs.docker.com/reference/api/engine/
    """

    def __init__(
        self,
        docker_host: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.docker_host = docker_host or os.getenv("DOCKER_HOST") or DEFAULT_DOCKER_HOST
        if self.docker_host.startswith("unix://"):
            base_url = "http://docker"
            if transport is None:
                transport = httpx.AsyncHTTPTransport(uds=self.docker_host.removeprefix("unix://"))
        elif self.docker_host.startswith("tcp://"):
            base_url = "http://" + self.docker_host.removeprefix("tcp://")
        else:
            base_url = self.docker_host

        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            # Loading large images can take a while
            timeout=httpx.Timeout(timeout=300.0, connect=5.0),
        )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def ping(self) -> bool:
        """
        Returns True when a daemon is listening and answering
        """
        try:
            resp = await self._client.get("/_ping")
        except httpx.TransportError as e:
            logger.debug(f"Docker daemon at {self.docker_host} is not reachable: {e}")
            return False
        return resp.status_code == httpx.codes.OK

    async def load(self, tarball: bytes) -> str:
        """
        Loads an image tarball, as written by ``docker save``, into the daemon.
        Returns the daemon's progress messages.
        """
        resp = await self._client.post(
            "/images/load",
            params={"quiet": "1"},
            content=tarball,
            headers={"Content-Type": "application/x-tar"},
        )
        resp.raise_for_status()

        messages = []
        # The body is a stream of JSON objects, one per line
        for line in resp.text.splitlines():
            if not line.strip():
                continue
            message = json.loads(line)
            if "error" in message:
                raise DaemonError(message["error"])
            if stream := message.get("stream"):
                messages.append(stream.strip())
        return "\n".join(messages)

    async def close(self) -> None:
        await self._client.aclose()
