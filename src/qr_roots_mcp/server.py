"""Main FastMCP server: mounts the roots sub-server."""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager

from fastmcp import FastMCP

from .config import get_config
from .roots_manager import build_roots_manager
from .tools.roots import bind_roots_manager, get_roots_manager, roots_server

logger = logging.getLogger(__name__)

_SHUTDOWN_DRAIN_TIMEOUT = 2.0


@asynccontextmanager
async def _lifespan(server: FastMCP):
    """Startup/shutdown hook; drains pending configuration observers."""
    manager = get_roots_manager()
    logger.info(
        "QR directory at startup: %s (%s)",
        manager.configuration_provider.get_current_qr_directory(),
        manager.configuration_provider.get_configuration_source().value,
    )
    yield {}
    dropped = await manager.configuration_provider.wait_for_observers(timeout=_SHUTDOWN_DRAIN_TIMEOUT)
    if dropped:
        logger.warning("Lifespan shutdown: dropped %d pending observer delivery(ies)", dropped)
    logger.info("Lifespan shutdown complete")


app = FastMCP(
    "qr-roots",
    instructions=(
        "Chooses and guards the local directory QR images are written to. "
        "Directories proposed by the client (MCP roots) are validated against "
        "traversal, injection, critical system paths and the configured policy."
    ),
    lifespan=_lifespan,
)

app.mount(roots_server)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="qr-roots-mcp", description=app.instructions)
    parser.add_argument(
        "--qr-directory",
        "--qr-dir",
        dest="qr_directory",
        default=None,
        help="Directory for QR images (overridden by RADIX_QR_DIR and MCP roots)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Entry-point for ``qr-roots-mcp`` console script."""
    args = parse_args(argv)
    bind_roots_manager(build_roots_manager(get_config(), args.qr_directory))
    app.run()


if __name__ == "__main__":
    main()
