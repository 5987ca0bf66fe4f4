import base64
import json
import logging
import os
import re
import time
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from http import HTTPStatus
from pathlib import Path
from typing import Self
from typing import cast

import httpx
from httpx_retries import Retry
from httpx_retries import RetryTransport

from regtools.images import ACCEPT_HEADER
from regtools.images import IMAGE_MEDIA_TYPES
from regtools.images import AnyImageManifest
from regtools.images import AnyManifest
from regtools.images import BlobLayer
from regtools.images import Image
from regtools.images import ImageIndex
from regtools.images import RemoteLayer
from regtools.images import get_parsed_type
from regtools.images import sha256_digest
from regtools.models import ImageConfigFile
from regtools.reference import DEFAULT_REGISTRY
from regtools.reference import Reference
from regtools.reference import Repository

logger = logging.getLogger(__name__)

# The key docker login uses for Docker Hub credentials
_DOCKER_HUB_AUTH_KEY = "https://index.docker.io/v1/"


@dataclass(frozen=True, slots=True)
class CachedToken:
    """
    A cached bearer token with expiration tracking.
    """

    token: str
    expires_at: float


@dataclass(frozen=True, slots=True)
class RemoteDescriptor:
    """
    The result of resolving a reference: what the registry says the manifest is,
    along with its raw bytes
    """

    repository: str
    media_type: str
    digest: str
    size: int
    raw: bytes

    def manifest(self) -> AnyManifest:
        return get_parsed_type(self.media_type, json.loads(self.raw))


def load_docker_credentials(registry: str, config_dir: str | None = None) -> tuple[str, str] | None:
    """
    Looks up the username and password ``docker login`` stored for the registry.
    Credential helpers are not consulted.
    """
    config_dir = config_dir or os.getenv("DOCKER_CONFIG") or str(Path.home() / ".docker")
    config_file = Path(config_dir) / "config.json"
    if not config_file.is_file():
        return None

    try:
        auths: dict[str, dict[str, str]] = json.loads(config_file.read_text()).get("auths", {})
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring unparseable {config_file}: {e}")
        return None

    keys = [registry, f"https://{registry}", f"http://{registry}"]
    if registry == DEFAULT_REGISTRY:
        keys.insert(0, _DOCKER_HUB_AUTH_KEY)

    for key in keys:
        encoded = auths.get(key, {}).get("auth")
        if not encoded:
            continue
        username, _, password = base64.b64decode(encoded).decode("utf-8").partition(":")
        return username, password
    return None


def basic_auth_header(username: str, password: str) -> str:
    encoded = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
    return f"Basic {encoded}"


class BearerAuth(httpx.Auth):
    """
    Custom authentication handler for httpx to manage registry bearer tokens.
    It automatically fetches and caches tokens based on the repository scope,
    with expiration tracking to avoid using stale tokens.  Registries asking
    for basic auth get the stored credentials directly.
    """

    __slots__ = ("_client", "_credentials", "_token", "_tokens")

    def __init__(
        self,
        client: httpx.AsyncClient,
        token: str | None = None,
        credentials: tuple[str, str] | None = None,
    ) -> None:
        self._tokens: dict[str, CachedToken] = {}
        self._client = client
        self._token = token or os.getenv("GITHUB_TOKEN")
        self._credentials = credentials

    @staticmethod
    def scope_for(request: httpx.Request) -> str:
        # Extract the repository from the URL
        repo_match = re.search(r"/v2/(.+?)/(manifests|blobs)/", request.url.path)
        if not repo_match:
            raise ValueError(f"Could not determine repository from URL: {request.url.path}")
        actions = "pull" if request.method in {"GET", "HEAD"} else "pull,push"
        return f"repository:{repo_match.group(1)}:{actions}"

    async def async_auth_flow(
        self,
        request: httpx.Request,
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        """
        Handles the full authentication flow, including token acquisition.
        """
        scope = self.scope_for(request)

        # Check if we have a valid cached token for this scope
        if (cached := self._tokens.get(scope)) and time.time() < cached.expires_at:
            request.headers["Authorization"] = f"Bearer {cached.token}"
            yield request
            return

        # Try the request unauthenticated first to get the auth challenge
        response: httpx.Response = yield request

        if response.status_code != httpx.codes.UNAUTHORIZED or "Www-Authenticate" not in response.headers:
            return

        auth_header = response.headers["Www-Authenticate"]
        if auth_header.lower().startswith("basic"):
            if not self._credentials:
                return
            request.headers["Authorization"] = basic_auth_header(*self._credentials)
            yield request
            return

        # Parse the authentication challenge
        realm_match = re.search(r'Bearer realm="([^"]+)"', auth_header)
        service_match = re.search(r'service="([^"]+)"', auth_header)

        if not realm_match:
            raise ValueError("Invalid Www-Authenticate header")

        token_url = realm_match.group(1)
        params = {"scope": scope}
        if service_match:
            params["service"] = service_match.group(1)

        # Request a new token, stored credentials first, then a PAT as Bearer
        token_auth: httpx.Auth | None = None
        headers = {}
        if self._credentials:
            token_auth = httpx.BasicAuth(*self._credentials)
        elif self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        token_resp = await self._client.get(
            token_url,
            params=params,
            headers=headers,
            auth=token_auth,
        )
        token_resp.raise_for_status()

        token_data = token_resp.json()
        new_token = token_data.get("token") or token_data.get("access_token")
        if not new_token:
            raise ValueError(f"Token response missing 'token' field: {token_data}")

        # Registries commonly hand out tokens valid for 300 seconds
        # Use a 30 second buffer to avoid edge cases
        expires_in = token_data.get("expires_in", 300)
        expires_at = time.time() + expires_in - 30

        # Cache the token and retry the original request
        self._tokens[scope] = CachedToken(token=new_token, expires_at=expires_at)
        request.headers["Authorization"] = f"Bearer {new_token}"
        yield request


class RegistryClient:
    """A client for interacting with an OCI container registry via HTTP."""

    def __init__(
        self,
        host: str = "ghcr.io",
        *,
        scheme: str = "https",
        transport: httpx.AsyncBaseTransport | None = None,
        credentials: tuple[str, str] | None = None,
    ) -> None:
        self.host = host
        self.base_url = f"{scheme}://{self.host}"
        if transport is None:
            # Use a transport with retries for network resilience
            transport = RetryTransport(
                retry=Retry(
                    total=5,
                    backoff_factor=0.5,
                ),
            )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=httpx.Timeout(timeout=60.0, pool=20.0),
            follow_redirects=True,
        )
        if credentials is None:
            credentials = load_docker_credentials(host)
        self._client.auth = BearerAuth(self._client, credentials=credentials)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit the async context manager and close the client."""
        await self.close()

    async def get_descriptor(self, repository: str, reference: str) -> RemoteDescriptor:
        """
        Resolves a tag or digest to the manifest it currently points at.

        Args:
            repository: The name of the repository (e.g., 'owner/image').
            reference: The tag or digest (e.g., 'latest' or 'sha256:...').
        """
        manifest_url = f"/v2/{repository}/manifests/{reference}"
        headers = {"Accept": ACCEPT_HEADER}

        logger.debug(f"Requesting manifest: {self.base_url}{manifest_url}")
        resp = await self._client.get(manifest_url, headers=headers)
        resp.raise_for_status()

        raw = resp.content
        media_type = (resp.headers.get("Content-Type") or "").split(";")[0].strip()
        if not media_type or media_type == "application/json":
            media_type = json.loads(raw).get("mediaType", "")

        digest = sha256_digest(raw)
        if reference.startswith("sha256:") and reference != digest:
            raise ValueError(f"Manifest digest mismatch for {repository}: expected {reference}, got {digest}")

        return RemoteDescriptor(
            repository=repository,
            media_type=media_type,
            digest=digest,
            size=len(raw),
            raw=raw,
        )

    async def get_blob(self, repository: str, digest: str) -> bytes:
        """
        Downloads a blob, verifying its content matches the digest
        """
        resp = await self._client.get(f"/v2/{repository}/blobs/{digest}")
        resp.raise_for_status()
        if (actual := sha256_digest(resp.content)) != digest:
            raise ValueError(f"Blob digest mismatch for {repository}: expected {digest}, got {actual}")
        return resp.content

    async def blob_exists(self, repository: str, digest: str) -> bool:
        resp = await self._client.head(f"/v2/{repository}/blobs/{digest}")
        if resp.status_code == HTTPStatus.NOT_FOUND:
            return False
        resp.raise_for_status()
        return True

    async def mount_blob(self, repository: str, digest: str, from_repository: str) -> bool:
        """
        Asks the registry to link a blob from another repository it already holds.
        Returns False when the registry wants an upload instead.
        """
        resp = await self._client.post(
            f"/v2/{repository}/blobs/uploads/",
            params={"mount": digest, "from": from_repository},
        )
        if resp.status_code == HTTPStatus.CREATED:
            return True
        resp.raise_for_status()
        return False

    async def upload_blob(self, repository: str, digest: str, data: bytes) -> None:
        """
        Uploads a blob in a single request after opening an upload session
        """
        resp = await self._client.post(f"/v2/{repository}/blobs/uploads/")
        resp.raise_for_status()
        location = resp.headers.get("Location")
        if not location:
            raise ValueError(f"Registry did not return an upload location for {repository}")

        resp = await self._client.put(
            location,
            params={"digest": digest},
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        resp.raise_for_status()

    async def put_manifest(self, repository: str, reference: str, raw: bytes, media_type: str) -> None:
        resp = await self._client.put(
            f"/v2/{repository}/manifests/{reference}",
            content=raw,
            headers={"Content-Type": media_type},
        )
        resp.raise_for_status()

    async def image(self, repository: str, reference: str) -> Image:
        """
        Fetches the manifest and configuration of a single platform image.  Layer
        contents stay in the registry until something reads them.
        """
        descriptor = await self.get_descriptor(repository, reference)
        if descriptor.media_type not in IMAGE_MEDIA_TYPES:
            raise ValueError(f"{repository}@{descriptor.digest} is not an image: {descriptor.media_type}")
        manifest = cast(AnyImageManifest, descriptor.manifest())

        config = cast(ImageConfigFile, json.loads(await self.get_blob(repository, manifest["config"]["digest"])))

        async def fetch(digest: str) -> bytes:
            return await self.get_blob(repository, digest)

        layers = [
            RemoteLayer(layer, fetch, registry=self.host, repository=repository) for layer in manifest["layers"]
        ]
        return Image.from_manifest(manifest, config, layers, media_type=descriptor.media_type)

    async def _push_layer(self, repository: str, layer: BlobLayer) -> None:
        if await self.blob_exists(repository, layer.digest):
            logger.debug(f"Layer {layer.digest} already exists in {repository}")
            return
        if (
            isinstance(layer, RemoteLayer)
            and layer.registry == self.host
            and await self.mount_blob(repository, layer.digest, layer.repository)
        ):
            logger.debug(f"Mounted layer {layer.digest} from {layer.repository}")
            return
        logger.debug(f"Uploading layer {layer.digest}")
        await self.upload_blob(repository, layer.digest, await layer.compressed())

    async def write_image(self, repository: str, reference: str, image: Image) -> None:
        """
        Pushes every blob of an image which the repository lacks, then its manifest
        """
        for layer in image.layers:
            await self._push_layer(repository, layer)
        if not await self.blob_exists(repository, image.config_digest):
            await self.upload_blob(repository, image.config_digest, image.raw_config)
        await self.put_manifest(repository, reference, image.raw_manifest, image.media_type)

    async def write_index(self, repository: str, reference: str, index: ImageIndex) -> None:
        """
        Pushes every image of an index by digest, then the index itself
        """
        for image in index.images:
            await self.write_image(repository, image.digest, image)
        await self.put_manifest(repository, reference, index.raw_manifest, index.media_type)

    async def close(self) -> None:
        """Closes the underlying HTTP client."""
        await self._client.aclose()


class Registries:
    """
    Hands out one client per registry host, closing them all on exit
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport
        self._clients: dict[str, RegistryClient] = {}

    def client(self, repository: Repository | Reference) -> RegistryClient:
        if isinstance(repository, Reference):
            repository = repository.repository
        if repository.registry not in self._clients:
            self._clients[repository.registry] = RegistryClient(
                repository.registry,
                scheme=repository.scheme,
                transport=self._transport,
            )
        return self._clients[repository.registry]

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
