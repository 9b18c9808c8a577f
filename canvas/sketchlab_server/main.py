"""
SketchLab Server - Main entry point.

This module starts the server with all components:
- Document store and size-tiered blob store (SQLite per project)
- Connection registry, version tracker and broadcaster
- aiohttp application serving REST endpoints and the WebSocket channel

Usage:
    python -m canvas.sketchlab_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The notes/ and blobs/ directories under DATA_DIR exist before the
      first request is served
    - Graceful shutdown closes every WebSocket channel before the runner
      stops, so clients see a close frame rather than a reset
    - Pushes still in flight are awaited before the runner stops

How to change safely:
    - Wire new stores in build_service() so tests can build the same graph
    - SIGTERM and SIGINT only set the shutdown event; cleanup stays in stop()
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter
from aiohttp import web

from .api import CanvasService, create_http_app
from .config import ServerConfig
from .store import BlobStore, DocumentStore

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def build_service(config: ServerConfig) -> CanvasService:
    """Create the stores and the service from configuration."""
    data_dir = Path(config.storage.data_dir)
    notes_dir = data_dir / "notes"
    blobs_dir = data_dir / "blobs"
    notes_dir.mkdir(parents=True, exist_ok=True)
    blobs_dir.mkdir(parents=True, exist_ok=True)

    documents = DocumentStore(
        data_dir=str(notes_dir),
        wal_mode=config.storage.wal_mode,
        busy_timeout_ms=config.storage.busy_timeout_ms,
    )
    blobs = BlobStore.open(
        str(blobs_dir),
        wal_mode=config.storage.wal_mode,
        busy_timeout_ms=config.storage.busy_timeout_ms,
        chunk_size=config.storage.chunk_size_bytes,
    )
    return CanvasService(
        documents=documents,
        blobs=blobs,
        send_timeout=config.http.ws_send_timeout_seconds,
    )


class Server:
    """SketchLab server orchestrator.

    Attributes:
        config: Server configuration
        service: Request service (stores + sync)

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.service: CanvasService | None = None
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting SketchLab server")
        self.config.log_config()

        try:
            self.service = build_service(self.config)

            app = create_http_app(self.service, self.config.http)
            self._runner = web.AppRunner(app)
            await self._runner.setup()

            site = web.TCPSite(self._runner, self.config.http.host, self.config.http.port)
            await site.start()

            self._running = True
            logger.info(
                "SketchLab server started",
                extra={
                    "http_bind": f"{self.config.http.host}:{self.config.http.port}",
                    "ws_path": self.config.http.ws_path,
                },
            )

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping SketchLab server")

        if self.service:
            await self.service.registry.close_all()
            await self.service.broadcaster.drain()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        self._running = False
        logger.info("SketchLab server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
