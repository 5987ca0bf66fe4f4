import io
import logging
import tarfile
from pathlib import Path

import pytest

from assembler.assemble import ImageResult
from assembler.assemble import assemble_image
from assembler.assemble import assemble_index
from assembler.assemble import assemble_single
from assembler.assemble import collect
from assembler.platform import Host
from assembler.platform import Platform
from assembler.platform import TargetProfile
from assembler.request import BuildRequest
from regtools.images import DOCKER_LAYER_MEDIA_TYPE
from regtools.images import DOCKER_MANIFEST_LIST_MEDIA_TYPE
from regtools.images import DOCKER_MANIFEST_MEDIA_TYPE
from regtools.images import OCI_INDEX_MEDIA_TYPE
from regtools.images import OCI_LAYER_MEDIA_TYPE
from regtools.images import Image
from regtools.reference import parse_reference
from utils.errors import CompileError
from utils.errors import ConfigurationError
from utils.errors import PlatformRejectedError
from utils.errors import VariantDecodeError

HOST = Host("linux", "amd64")


def make_request(**kwargs) -> BuildRequest:
    values = {
        "base": "registry.test/base/image:latest",
        "image_refs": (parse_reference("registry.test/out/tool:v1"),),
        "artifacts": {"example.com/cmd/tool": "/usr/bin/tool"},
    }
    values.update(kwargs)
    return BuildRequest(**values)


def top_layer_names(image) -> list[str]:
    with tarfile.open(fileobj=io.BytesIO(image.layers[-1].tar_bytes)) as tar:
        return tar.getnames()


def index_entries(make_image, platforms):
    """Index descriptors plus a fetcher resolving them to in-memory images."""
    images = {}
    entries = []
    for os_name, arch, variant in platforms:
        image = make_image(os_name, arch, variant)
        images[image.digest] = image
        platform = {"os": os_name, "architecture": arch}
        if variant:
            platform["variant"] = variant
        entries.append(
            {"mediaType": image.media_type, "size": image.size, "digest": image.digest, "platform": platform},
        )

    async def fetch(descriptor):
        return images[descriptor["digest"]]

    return entries, fetch


class TestAssembleImage:
    @pytest.mark.asyncio
    async def test_layers_artifacts_and_static_files(self, make_image, compiler, static_file: Path):
        base = make_image(architecture="arm64")
        request = make_request(static_files={str(static_file): "/etc/motd"})

        image = await assemble_image(base, Platform("linux", "arm64"), request, compiler)

        assert len(image.layers) == len(base.layers) + 1
        assert top_layer_names(image) == ["etc", "etc/motd", "usr/bin", "usr/bin/tool"]
        assert image.layers[-1].media_type == OCI_LAYER_MEDIA_TYPE
        package, _, target, _ = compiler.calls[0]
        assert package == "example.com/cmd/tool"
        assert (target.os, target.arch, target.arm) == ("linux", "arm64", "")

    @pytest.mark.asyncio
    async def test_docker_base_gets_docker_layer(self, make_image, compiler):
        base = make_image(media_type=DOCKER_MANIFEST_MEDIA_TYPE)

        image = await assemble_image(base, Platform("linux", "amd64"), make_request(), compiler)

        assert image.media_type == DOCKER_MANIFEST_MEDIA_TYPE
        assert image.layers[-1].media_type == DOCKER_LAYER_MEDIA_TYPE

    @pytest.mark.asyncio
    async def test_arm_variant(self, make_image, compiler):
        base = make_image(architecture="arm", variant="v6")

        await assemble_image(base, Platform("linux", "arm", "v6"), make_request(), compiler)

        assert compiler.calls[0][2].arm == "6"

    @pytest.mark.asyncio
    async def test_bad_variant_fails_before_compiling(self, make_image, compiler):
        """
        GIVEN:
            - An arm platform with the variant "7" instead of "v7"
        WHEN:
            - The image is assembled
        THEN:
            - The variant error is raised and nothing is compiled
        """
        base = make_image(architecture="arm", variant="7")

        with pytest.raises(VariantDecodeError):
            await assemble_image(base, Platform("linux", "arm", "7"), make_request(), compiler)

        assert compiler.calls == []

    @pytest.mark.asyncio
    async def test_temporary_directory_removed(self, make_image, compiler):
        await assemble_image(make_image(), Platform("linux", "amd64"), make_request(), compiler)

        out_dir = compiler.calls[0][1]
        assert not out_dir.exists()

    @pytest.mark.asyncio
    async def test_temporary_directory_removed_on_failure(self, make_image, failing_compiler):
        with pytest.raises(CompileError):
            await assemble_image(
                make_image(architecture="arm64"),
                Platform("linux", "arm64"),
                make_request(),
                failing_compiler,
            )

        out_dir = failing_compiler.calls[0][1]
        assert not out_dir.exists()

    @pytest.mark.asyncio
    async def test_static_files_only(self, make_image, compiler, static_file: Path):
        request = make_request(artifacts={}, static_files={str(static_file): "/etc/motd"})

        image = await assemble_image(make_image(), Platform("linux", "amd64"), request, compiler)

        assert compiler.calls == []
        assert top_layer_names(image) == ["etc", "etc/motd"]


class TestAssembleSingle:
    @pytest.mark.asyncio
    async def test_builds(self, make_image, compiler):
        request = make_request(annotations={"org.opencontainers.image.source": "https://example.com/tool"})

        output = await assemble_single(make_image(), request, compiler=compiler, host=HOST)

        assert output.index is None
        assert len(output.results) == 1
        assert output.image is output.results[0].image
        assert output.image.manifest["annotations"] == {
            "org.opencontainers.image.source": "https://example.com/tool",
        }

    @pytest.mark.asyncio
    async def test_cmd(self, make_image, compiler):
        output = await assemble_single(
            make_image(),
            make_request(cmd=("/usr/bin/tool", "serve")),
            compiler=compiler,
            host=HOST,
        )

        assert output.image.config["config"]["Cmd"] == ["/usr/bin/tool", "serve"]

    @pytest.mark.asyncio
    async def test_rejected_platform_is_fatal(self, make_image, compiler):
        with pytest.raises(PlatformRejectedError) as exc_info:
            await assemble_single(make_image("windows"), make_request(), compiler=compiler, host=HOST)

        assert "unsupported OS: windows" in str(exc_info.value)
        assert compiler.calls == []

    @pytest.mark.asyncio
    async def test_skipped_platform_builds_nothing(self, make_image, compiler, caplog):
        caplog.set_level(logging.INFO)

        output = await assemble_single(
            make_image(architecture="arm64"),
            make_request(target=TargetProfile.RESTRICTED_AMD64),
            compiler=compiler,
            host=HOST,
        )

        assert output.empty
        assert compiler.calls == []
        assert "linux/arm64: skipping" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_platform(self, make_image, compiler):
        with pytest.raises(PlatformRejectedError, match="unknown platform"):
            await assemble_single(Image(make_image().media_type, {}), make_request(), compiler=compiler, host=HOST)


class TestAssembleIndex:
    @pytest.mark.asyncio
    async def test_restricted_target(self, make_image, compiler, caplog):
        """
        GIVEN:
            - An index of linux/amd64, linux/arm64, linux/arm/v7 and windows/amd64
        WHEN:
            - It is assembled for the restricted-amd64 target
        THEN:
            - Only amd64 is built, returned as a single image rather than an index
            - The other three are logged as skipped
        """
        caplog.set_level(logging.INFO)
        entries, fetch = index_entries(
            make_image,
            [("linux", "amd64", None), ("linux", "arm64", None), ("linux", "arm", "v7"), ("windows", "amd64", None)],
        )

        output = await assemble_index(
            OCI_INDEX_MEDIA_TYPE,
            entries,
            make_request(target=TargetProfile.RESTRICTED_AMD64),
            fetch_image=fetch,
            compiler=compiler,
            host=HOST,
        )

        assert output.index is None
        assert [str(result.platform) for result in output.results] == ["linux/amd64"]
        assert len(compiler.calls) == 1
        assert caplog.text.count("skipping") == 3

    @pytest.mark.asyncio
    async def test_all_supported(self, make_image, compiler):
        entries, fetch = index_entries(
            make_image,
            [("linux", "amd64", None), ("linux", "arm64", None), ("linux", "arm", "v7"), ("linux", "s390x", None)],
        )

        output = await assemble_index(
            OCI_INDEX_MEDIA_TYPE,
            entries,
            make_request(),
            fetch_image=fetch,
            compiler=compiler,
            host=HOST,
        )

        assert output.index is not None
        assert output.index.media_type == OCI_INDEX_MEDIA_TYPE
        assert [str(result.platform) for result in output.results] == ["linux/amd64", "linux/arm64", "linux/arm/v7"]
        assert [call[2].arch for call in compiler.calls] == ["amd64", "arm64", "arm"]

    @pytest.mark.asyncio
    async def test_local_runtime_multiple_matches(self, make_image, compiler):
        """
        GIVEN:
            - An index with two platforms which can both run on the host
        WHEN:
            - It is assembled for the local-runtime target
        THEN:
            - The build is refused before anything is compiled
        """
        entries, fetch = index_entries(make_image, [("linux", "amd64", None), ("linux", "amd64", "v3")])

        with pytest.raises(ConfigurationError, match="multi-platform"):
            await assemble_index(
                OCI_INDEX_MEDIA_TYPE,
                entries,
                make_request(target=TargetProfile.LOCAL_RUNTIME),
                fetch_image=fetch,
                compiler=compiler,
                host=HOST,
            )

        assert compiler.calls == []

    @pytest.mark.asyncio
    async def test_local_runtime_single_match(self, make_image, compiler):
        entries, fetch = index_entries(make_image, [("linux", "amd64", None), ("linux", "arm64", None)])

        output = await assemble_index(
            OCI_INDEX_MEDIA_TYPE,
            entries,
            make_request(target=TargetProfile.LOCAL_RUNTIME),
            fetch_image=fetch,
            compiler=compiler,
            host=Host("linux", "arm64"),
        )

        assert output.image is not None
        assert output.image.platform == {"os": "linux", "architecture": "arm64"}

    @pytest.mark.asyncio
    async def test_no_survivors(self, make_image, compiler):
        entries, fetch = index_entries(make_image, [("windows", "amd64", None)])

        output = await assemble_index(
            OCI_INDEX_MEDIA_TYPE,
            entries,
            make_request(),
            fetch_image=fetch,
            compiler=compiler,
            host=HOST,
        )

        assert output.empty
        assert output.image is None
        assert compiler.calls == []

    @pytest.mark.asyncio
    async def test_compile_failure_aborts(self, make_image, failing_compiler):
        compiler = failing_compiler
        entries, fetch = index_entries(make_image, [("linux", "amd64", None), ("linux", "arm64", None)])

        with pytest.raises(CompileError):
            await assemble_index(
                OCI_INDEX_MEDIA_TYPE,
                entries,
                make_request(),
                fetch_image=fetch,
                compiler=compiler,
                host=HOST,
            )

        assert all(not call[1].exists() for call in compiler.calls)

    @pytest.mark.asyncio
    async def test_entry_without_platform(self, make_image, compiler):
        entries, fetch = index_entries(make_image, [("linux", "amd64", None)])
        del entries[0]["platform"]

        with pytest.raises(PlatformRejectedError):
            await assemble_index(
                OCI_INDEX_MEDIA_TYPE,
                entries,
                make_request(),
                fetch_image=fetch,
                compiler=compiler,
                host=HOST,
            )


class TestCollect:
    def test_empty(self):
        output = collect(OCI_INDEX_MEDIA_TYPE, [], {})

        assert output.empty
        assert output.index is None

    def test_single_image_not_wrapped(self, make_image):
        result = ImageResult(Platform("linux", "amd64"), make_image())

        output = collect(OCI_INDEX_MEDIA_TYPE, [result], {"k": "v"})

        assert output.index is None
        assert output.image is result.image

    def test_index_keeps_entry_metadata(self, make_image):
        """
        GIVEN:
            - Two results whose base entries carried media type, urls and annotations
        WHEN:
            - They are collected into a Docker manifest list
        THEN:
            - Each entry keeps its base metadata, with request annotations merged in
            - The index carries the request annotations too
        """
        amd64 = make_image()
        arm64 = make_image(architecture="arm64")
        results = [
            ImageResult(
                Platform("linux", "amd64"),
                amd64,
                {
                    "mediaType": DOCKER_MANIFEST_MEDIA_TYPE,
                    "platform": {"os": "linux", "architecture": "amd64"},
                    "urls": ["https://mirror.test/a"],
                    "annotations": {"base": "1", "shared": "base"},
                },
            ),
            ImageResult(Platform("linux", "arm64"), arm64, {"platform": {"os": "linux", "architecture": "arm64"}}),
        ]

        output = collect(DOCKER_MANIFEST_LIST_MEDIA_TYPE, results, {"shared": "request"})

        manifest = output.index.manifest
        assert manifest["mediaType"] == DOCKER_MANIFEST_LIST_MEDIA_TYPE
        assert manifest["annotations"] == {"shared": "request"}
        first, second = manifest["manifests"]
        assert first["mediaType"] == DOCKER_MANIFEST_MEDIA_TYPE
        assert first["digest"] == amd64.digest
        assert first["urls"] == ["https://mirror.test/a"]
        assert first["annotations"] == {"base": "1", "shared": "request"}
        assert second["platform"] == {"os": "linux", "architecture": "arm64"}
        assert output.index.images == [amd64, arm64]
