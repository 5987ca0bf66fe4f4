import gzip
import hashlib
import json
import re
import uuid
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from assembler.compiler import CompilerFlags
from assembler.compiler import CompileTarget
from assembler.layer import build_layer
from regtools.client import Registries
from regtools.images import OCI_INDEX_MEDIA_TYPE
from regtools.images import OCI_MANIFEST_MEDIA_TYPE
from regtools.images import Image
from regtools.images import Layer
from regtools.images import layer_media_type_for

# --- Constants for Mock Fixtures ---
REGISTRY = "registry.test"
BASE_REPO = "base/image"
OUT_REPO = "out/tool"


def sha256(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


class FakeRegistry:
    """
    Just enough of the distribution API to pull and push images, kept in memory
    """

    _UPLOAD_RE = re.compile(r"^/v2/(?P<repo>.+)/blobs/uploads/(?P<session>[^/]*)$")
    _BLOB_RE = re.compile(r"^/v2/(?P<repo>.+)/blobs/(?P<digest>sha256:[0-9a-f]{64})$")
    _MANIFEST_RE = re.compile(r"^/v2/(?P<repo>.+)/manifests/(?P<ref>[^/]+)$")

    def __init__(self) -> None:
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.manifests: dict[tuple[str, str], tuple[str, bytes]] = {}
        self.requests: list[httpx.Request] = []

    def add_blob(self, repo: str, data: bytes) -> str:
        digest = sha256(data)
        self.blobs[(repo, digest)] = data
        return digest

    def add_manifest(self, repo: str, media_type: str, raw: bytes, tag: str | None = None) -> str:
        digest = sha256(raw)
        self.manifests[(repo, digest)] = (media_type, raw)
        if tag:
            self.manifests[(repo, tag)] = (media_type, raw)
        return digest

    def add_image(self, repo: str, image: Image, tag: str | None = None) -> dict:
        """
        Stores an image built from local layers, returning its descriptor
        """
        for layer in image.layers:
            assert isinstance(layer, Layer)
            self.add_blob(repo, gzip.compress(layer.tar_bytes, mtime=0))
        self.add_blob(repo, image.raw_config)
        digest = self.add_manifest(repo, image.media_type, image.raw_manifest, tag)
        return {"mediaType": image.media_type, "size": image.size, "digest": digest}

    def add_index(self, repo: str, media_type: str, manifests: list[dict], tag: str, **extra) -> str:
        raw = json.dumps({"schemaVersion": 2, "mediaType": media_type, "manifests": manifests, **extra}).encode()
        return self.add_manifest(repo, media_type, raw, tag)

    def manifest_json(self, repo: str, reference: str) -> dict:
        return json.loads(self.manifests[(repo, reference)][1])

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if match := self._UPLOAD_RE.match(path):
            repo = match["repo"]
            if request.method == "POST":
                mount = request.url.params.get("mount")
                source = request.url.params.get("from")
                if mount and (source, mount) in self.blobs:
                    self.blobs[(repo, mount)] = self.blobs[(source, mount)]
                    return httpx.Response(201)
                return httpx.Response(202, headers={"Location": f"/v2/{repo}/blobs/uploads/{uuid.uuid4().hex}"})
            if request.method == "PUT":
                digest = request.url.params["digest"]
                if sha256(request.content) != digest:
                    return httpx.Response(400, json={"errors": [{"code": "DIGEST_INVALID"}]})
                self.blobs[(repo, digest)] = request.content
                return httpx.Response(201)

        if match := self._BLOB_RE.match(path):
            data = self.blobs.get((match["repo"], match["digest"]))
            if data is None:
                return httpx.Response(404)
            if request.method == "HEAD":
                return httpx.Response(200, headers={"Content-Length": str(len(data))})
            return httpx.Response(200, content=data)

        if match := self._MANIFEST_RE.match(path):
            repo, ref = match["repo"], match["ref"]
            if request.method == "PUT":
                self.add_manifest(repo, request.headers["Content-Type"], request.content, tag=ref)
                return httpx.Response(201)
            if (repo, ref) not in self.manifests:
                return httpx.Response(404)
            media_type, raw = self.manifests[(repo, ref)]
            return httpx.Response(
                200,
                content=raw,
                headers={"Content-Type": media_type, "Docker-Content-Digest": sha256(raw)},
            )

        return httpx.Response(404)


class FakeCompiler:
    """
    Writes a small file per package instead of running go
    """

    def __init__(self, fail_on: str | None = None) -> None:
        self.calls: list[tuple[str, Path, CompileTarget, CompilerFlags]] = []
        self.fail_on = fail_on

    async def compile(self, package: str, out_dir: Path, target: CompileTarget, flags: CompilerFlags) -> Path:
        from utils.errors import CompileError

        self.calls.append((package, out_dir, target, flags))
        if self.fail_on == target.arch:
            raise CompileError(package, 2, "build failed")
        output = out_dir / package.replace("/", "_")
        output.write_bytes(f"{package} for {target.os}/{target.arch}{target.arm}".encode())
        return output


def make_base_image(
    os: str = "linux",
    architecture: str = "amd64",
    variant: str | None = None,
    media_type: str = OCI_MANIFEST_MEDIA_TYPE,
    tmp_path: Path | None = None,
) -> Image:
    config = {
        "architecture": architecture,
        "os": os,
        "config": {"Env": ["PATH=/usr/local/bin:/usr/bin:/bin"], "Cmd": ["/bin/sh"]},
        "rootfs": {"type": "layers", "diff_ids": []},
        "history": [{"created": "2024-01-01T00:00:00Z", "created_by": "base"}],
    }
    if variant:
        config["variant"] = variant
    image = Image(media_type, config)
    if tmp_path is not None:
        release = tmp_path / f"os-release-{os}-{architecture}{variant or ''}"
        release.write_text(f"ID=base\nARCH={architecture}\n")
        image = image.append_layer(build_layer({release: "/etc/os-release"}, layer_media_type_for(media_type)))
    return image


def push_base_index(
    registry: FakeRegistry,
    tmp_path: Path,
    platforms: list[tuple[str, str, str | None]],
    *,
    index_media_type: str = OCI_INDEX_MEDIA_TYPE,
    image_media_type: str = OCI_MANIFEST_MEDIA_TYPE,
    tag: str = "latest",
    entry_annotations: dict[str, str] | None = None,
) -> list[dict]:
    """
    Pushes one image per platform plus an index over them, returns the index entries
    """
    entries = []
    for os, arch, variant in platforms:
        image = make_base_image(os, arch, variant, image_media_type, tmp_path)
        descriptor = registry.add_image(BASE_REPO, image)
        descriptor["platform"] = {"os": os, "architecture": arch}
        if variant:
            descriptor["platform"]["variant"] = variant
        if entry_annotations:
            descriptor["annotations"] = dict(entry_annotations)
        entries.append(descriptor)
    registry.add_index(BASE_REPO, index_media_type, entries, tag)
    return entries


@pytest.fixture(autouse=True)
def isolated_credentials(tmp_path_factory, monkeypatch):
    """Keeps real docker credentials and tokens out of the tests."""
    monkeypatch.setenv("DOCKER_CONFIG", str(tmp_path_factory.mktemp("docker-config")))
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)


@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry()


@pytest_asyncio.fixture
async def registries(fake_registry: FakeRegistry):
    """Provides a Registries pool wired to the in-memory registry."""
    async with Registries(transport=httpx.MockTransport(fake_registry.handler)) as pool:
        yield pool


@pytest.fixture
def compiler() -> FakeCompiler:
    return FakeCompiler()


@pytest.fixture
def static_file(tmp_path: Path) -> Path:
    path = tmp_path / "static" / "motd"
    path.parent.mkdir()
    path.write_text("welcome\n")
    return path


@pytest.fixture
def make_image():
    """Factory for base images, with a small layer when given a directory."""
    return make_base_image


@pytest.fixture
def push_index(fake_registry: FakeRegistry, tmp_path: Path):
    """Factory which pushes a multi-platform base to the in-memory registry."""

    def _push(platforms: list[tuple[str, str, str | None]], **kwargs) -> list[dict]:
        return push_base_index(fake_registry, tmp_path, platforms, **kwargs)

    return _push


@pytest.fixture
def failing_compiler() -> FakeCompiler:
    """A compiler which fails for arm64 and succeeds for everything else."""
    return FakeCompiler(fail_on="arm64")
