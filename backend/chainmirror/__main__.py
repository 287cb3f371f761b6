"""
Chain Mirror - command line entrypoint

    python -m chainmirror                 headless synchronizer
    python -m chainmirror serve           synchronizer + HTTP API
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import uvicorn

from chainmirror.core.config import Settings, get_settings
from chainmirror.core.errors import SyncError
from chainmirror.core.logging import configure_logging
from chainmirror.services.runtime import build_runtime

logger = logging.getLogger("chainmirror")


async def run_headless(settings: Settings) -> None:
    """Run the synchronizer until SIGINT/SIGTERM."""
    runtime = await build_runtime(settings)

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await runtime.start()
        await shutdown_event.wait()
    finally:
        await runtime.stop()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="chainmirror",
        description="Mirror ledger application state into a queryable store",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    commands = parser.add_subparsers(dest="command")
    serve = commands.add_parser("serve", help="Run the HTTP API alongside the synchronizer")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(args.log_level or settings.LOG_LEVEL)

    try:
        if args.command == "serve":
            # log_config=None keeps the handler installed above
            uvicorn.run("chainmirror.main:app", host=args.host, port=args.port, log_config=None)
        else:
            asyncio.run(run_headless(settings))
    except SyncError as e:
        logger.error(f"Startup failed: {e}")
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
