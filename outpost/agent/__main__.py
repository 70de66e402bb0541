"""Outpost agent entry point.

Usage:
    outpost-agent --stdio
    outpost-agent --version
    python -m outpost.agent --stdio

Standard output carries protocol records only; logs go to standard error.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from outpost import __version__
from outpost.agent.service import AgentService
from outpost.protocol import MAX_RECORD_BYTES


class _StdoutWriter:
    """Blocking writer over the stdout buffer with the StreamWriter surface."""

    def __init__(self, stream) -> None:
        self._stream = stream

    def write(self, data: bytes) -> None:
        self._stream.write(data)

    async def drain(self) -> None:
        self._stream.flush()


async def _serve_stdio() -> None:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_RECORD_BYTES)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    service = AgentService(reader, _StdoutWriter(sys.stdout.buffer))
    await service.serve()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="outpost-agent", description="Outpost discovery agent")
    parser.add_argument(
        "--stdio",
        action="store_true",
        help="Serve the protocol over standard input/output",
    )
    parser.add_argument(
        "--version", "-V",
        action="store_true",
        help="Print the agent version and exit",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging (to stderr)",
    )
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return 0

    if not args.stdio:
        parser.print_usage(sys.stderr)
        print("outpost-agent: refusing to start without an explicit mode (--stdio)", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    try:
        asyncio.run(_serve_stdio())
    except KeyboardInterrupt:
        pass
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
