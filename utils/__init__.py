import logging
import math
from argparse import ArgumentParser
from typing import Final


def get_log_level(level_name: str) -> int:
    """
    Returns a logging level, based on the given name, defaulting to INFO
    for anything unknown
    """
    levels = {
        "critical": logging.CRITICAL,
        "error": logging.ERROR,
        "warn": logging.WARNING,
        "warning": logging.WARNING,
        "info": logging.INFO,
        "debug": logging.DEBUG,
    }
    level = levels.get(level_name.lower())
    if level is None:
        level = logging.INFO
    return level


def coerce_to_bool(value) -> bool:
    """
    Given a thing, try hard to convert it from something which looks boolean
    like, but it actually a string or something, to a boolean
    """
    if not isinstance(value, bool):
        if isinstance(value, str):
            return value.lower() in {"true", "1"}
        else:
            raise TypeError(type(value))
    return value


def common_args(description: str) -> ArgumentParser:
    """
    Constructs an ArgumentParser with the args shared by every build entry
    """
    parser = ArgumentParser(
        description=description,
    )

    # The image everything is layered on top of
    parser.add_argument(
        "--base",
        default="",
        help="Base image for the container, either a single image or a multi-platform index",
    )

    # Where the results go
    parser.add_argument(
        "--repos",
        default="",
        help="Comma-separated list of image repositories",
    )

    parser.add_argument(
        "--tags",
        default="",
        help="Comma-separated list of tags, applied to every repository",
    )

    # Requires an affirmative command to actually publish
    parser.add_argument(
        "--push",
        default=False,
        help="If provided, publish the image (or load it locally for the local-runtime target)",
    )

    parser.add_argument(
        "--out",
        default="",
        help="Write the image(s) to the given directory instead of publishing",
    )

    parser.add_argument(
        "--target",
        default="",
        help="Build for a specific environment (options: restricted-amd64, local-runtime)",
    )

    parser.add_argument(
        "--annotations",
        default="",
        help="OCI image annotations as comma separated key=value pairs, i.e key1=val1,key2=val2",
    )

    # Allows configuration of log level for debugging
    parser.add_argument(
        "--loglevel",
        default="info",
        help="Configures the logging level",
    )

    return parser


def bytes_to_human_readable(size_bytes: int | float, precision: int = 2) -> str:
    """
    Converts a size in bytes to a human-readable string (e.g., 1024 -> 1.00 KiB).

    Args:
        size_bytes: The size in bytes (int or float).
        precision: The number of decimal places for the result.

    Returns:
        A string representing the size in a human-readable format.
    """
    if size_bytes < 0:
        return "Invalid size"
    if size_bytes == 0:
        return "0 Bytes"

    UNITS: Final[list[str]] = ["Bytes", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB", "YiB"]
    BASE: Final[int] = 1024

    # Each unit is another factor of 2^10
    unit_index: int = max(0, math.floor(math.log2(size_bytes) / 10))
    unit_index = min(unit_index, len(UNITS) - 1)

    converted_size: float = size_bytes / (BASE**unit_index)
    unit: str = UNITS[unit_index]

    return f"{converted_size:.{precision}f} {unit}"
