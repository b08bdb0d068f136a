import asyncio
import sys

from syncilias.cli import main


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
