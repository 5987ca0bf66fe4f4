#!/usr/bin/env python3

import asyncio
import logging
import signal
import sys

import github_action_utils as gha_utils
import httpx

from assembler.engine import run
from assembler.request import BuildRequest
from assembler.request import request_from_args
from regtools.client import Registries
from utils import common_args
from utils import get_log_level
from utils.errors import BuildError

logger = logging.getLogger("image-assembler")


def parse_args(argv: list[str] | None = None):
    parser = common_args(
        "Layer freshly compiled binaries and static files onto every supported platform"
        " of a base image, then publish or export the result",
    )

    parser.add_argument(
        "--gopaths",
        default="",
        help="Comma-separated list of go packages to compile, in src:dst form",
    )

    parser.add_argument(
        "--files",
        default="",
        help="Comma-separated list of static files or directories, in src:dst form",
    )

    parser.add_argument(
        "--ldflags",
        default="",
        help="The --ldflags value to pass to go",
    )

    parser.add_argument(
        "--gotags",
        default="",
        help="The --tags value to pass to go",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Verbose build output",
    )

    parser.add_argument(
        "cmd",
        nargs="*",
        help="If given, replaces the default command of the built images",
    )

    return parser.parse_args(argv)


async def _main(request: BuildRequest) -> None:
    # SIGTERM cancels the build the same way Ctrl-C does
    task = asyncio.current_task()
    if task is not None:
        asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, task.cancel)

    logger.info("Starting processing")
    async with Registries() as registries:
        await run(request, registries)
    logger.info("Done")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=get_log_level(args.loglevel),
        datefmt="%Y-%m-%d %H:%M:%S",
        format="[%(asctime)s] [%(levelname)-8s] [%(name)-10s] %(message)s",
    )
    # https likes to log at INFO, reduce that
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    try:
        request = request_from_args(args)
        asyncio.run(_main(request))
    except (BuildError, httpx.HTTPError, ValueError) as e:
        msg = str(e)
        logger.error(msg)
        gha_utils.error(msg, title="Image build failed")
        return 1
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.error("Build cancelled")
        return 1
    return 0


if __name__ == "__main__":
    try:
        exit_code = main()
    finally:
        logging.shutdown()
    sys.exit(exit_code)
