class BuildError(Exception):
    """
    Base class for every fatal error raised while assembling or delivering images
    """


class ConfigurationError(BuildError):
    """
    Missing, conflicting or unparseable inputs, detected before any build work starts
    """


class PlatformRejectedError(BuildError):
    def __init__(self, platform, reason: str) -> None:
        super().__init__(f"{platform}: {reason}")
        self.platform = platform
        self.reason = reason


class VariantDecodeError(BuildError, ValueError):
    """
    The platform variant could not be turned into a compiler sub-architecture
    """


class CompileError(BuildError):
    def __init__(self, package: str, returncode: int, output: str) -> None:
        super().__init__(f"compiling {package} failed with exit status {returncode}")
        self.package = package
        self.returncode = returncode
        self.output = output


class LayerBuildError(BuildError):
    """
    Reading a layer source failed, or two sources claimed the same destination
    """


class UnsupportedMediaTypeError(BuildError):
    pass


class MediaTypeMismatchError(BuildError):
    pass


class PublishError(BuildError):
    def __init__(self, destination: str, message: str) -> None:
        super().__init__(f"{destination}: {message}")
        self.destination = destination


class LocalLoaderNotFoundError(PublishError):
    def __init__(self, destination: str, attempted: list[str]) -> None:
        super().__init__(
            destination,
            f"no local image loader available, tried: {', '.join(attempted)}",
        )
        self.attempted = attempted
