import asyncio
import logging
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from assembler.platform import Platform
from assembler.platform import arm_version
from utils.errors import CompileError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CompileTarget:
    """
    The platform a binary is compiled for.  Passed explicitly to the compiler,
    the process environment is never modified.
    """

    os: str
    arch: str
    arm: str = ""

    @classmethod
    def for_platform(cls, platform: Platform) -> "CompileTarget":
        """
        Raises VariantDecodeError for arm platforms without a usable variant
        """
        arm = arm_version(platform) if platform.architecture == "arm" else ""
        return cls(os=platform.os, arch=platform.architecture, arm=arm)

    def env(self) -> dict[str, str]:
        env = {
            "CGO_ENABLED": "0",
            "GOOS": self.os,
            "GOARCH": self.arch,
        }
        if self.arm:
            env["GOARM"] = self.arm
        return env


@dataclass(frozen=True, slots=True)
class CompilerFlags:
    ldflags: str = ""
    tags: str = ""
    verbose: bool = False


class Compiler(Protocol):
    async def compile(self, package: str, out_dir: Path, target: CompileTarget, flags: CompilerFlags) -> Path:
        """
        Compiles the package into a new file inside out_dir and returns its path
        """
        ...


class GoCompiler:
    """
    Builds static binaries with ``go build``
    """

    def __init__(self, go: str = "go", environ: Mapping[str, str] | None = None) -> None:
        self.go = go
        self._environ = environ

    def command(self, package: str, output: Path, flags: CompilerFlags) -> list[str]:
        args = [self.go, "build", "-trimpath"]
        if flags.verbose:
            args.append("-v")
        if flags.tags:
            args.append(f"--tags={flags.tags}")
        if flags.ldflags:
            args.append(f"--ldflags={flags.ldflags}")
        args.extend([f"-o={output}", package])
        return args

    async def compile(self, package: str, out_dir: Path, target: CompileTarget, flags: CompilerFlags) -> Path:
        fd, name = tempfile.mkstemp(dir=out_dir, prefix="out")
        os.close(fd)
        output = Path(name)

        environ = os.environ if self._environ is None else self._environ
        env = {**environ, **target.env()}
        args = self.command(package, output, flags)
        logger.debug(f"running {' '.join(args)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            # Same status a shell reports for a missing command
            raise CompileError(package, 127, f"cannot run {self.go}: {e}") from e
        try:
            stdout, _ = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        text = stdout.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            logger.error(f"go build {package} failed:\n{text}")
            raise CompileError(package, proc.returncode, text)
        if text.strip():
            logger.log(logging.INFO if flags.verbose else logging.DEBUG, text.rstrip())
        return output
