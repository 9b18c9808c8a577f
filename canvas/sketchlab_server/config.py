"""
Configuration management for SketchLab Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

The inline/chunked blob threshold is deliberately absent: it is a code
constant (store.blobs.MAX_INLINE_BLOB_SIZE) and changes only with a deploy.

Invariants:
    - Every setting has a default that runs a single local server
    - Production deployments set CORS_ORIGINS to the canvas front-end origin
      and DATA_DIR to persistent storage
    - validate() rejects values that would only fail later at request time
      (bad port, WS_PATH without a leading slash, non-positive chunk size
      or send timeout)

How to change safely:
    - New settings need a default that keeps existing deployments working
    - Changing STORAGE_CHUNK_SIZE_BYTES only affects files uploaded afterwards
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class HttpConfig:
    """HTTP and WebSocket server configuration.

    Attributes:
        host: Address to bind
        port: Port for both REST endpoints and the WebSocket route
        cors_origins: Allowed CORS origins ("*" allows any)
        ws_path: Route of the bidirectional channel
        ws_heartbeat_seconds: Ping interval for idle channels (0 disables)
        ws_send_timeout_seconds: Longest a single client may take to accept a frame
        max_request_bytes: Largest accepted request body (blob uploads)
    """

    host: str = "0.0.0.0"
    port: int = 5002
    cors_origins: tuple[str, ...] = ("*",)
    ws_path: str = "/ws"
    ws_heartbeat_seconds: float = 30.0
    ws_send_timeout_seconds: float = 10.0
    max_request_bytes: int = 512 * 1024 * 1024  # 512MB

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "5002")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            ws_path=os.getenv("WS_PATH", "/ws"),
            ws_heartbeat_seconds=float(os.getenv("WS_HEARTBEAT_SECONDS", "30")),
            ws_send_timeout_seconds=float(os.getenv("WS_SEND_TIMEOUT_SECONDS", "10")),
            max_request_bytes=int(os.getenv("MAX_REQUEST_BYTES", str(512 * 1024 * 1024))),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for the per-project SQLite databases
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        chunk_size_bytes: Segment size for the chunked blob tier
    """

    data_dir: str = "/var/lib/sketchlab"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    chunk_size_bytes: int = 255 * 1024  # GridFS default

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/sketchlab"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            chunk_size_bytes=int(os.getenv("STORAGE_CHUNK_SIZE_BYTES", str(255 * 1024))),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        http: HTTP/WebSocket server configuration
        storage: Local storage configuration
        observability: Logging configuration
    """

    http: HttpConfig = field(default_factory=HttpConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            http=HttpConfig.from_env(),
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not 0 < self.http.port < 65536:
            raise ValueError(f"HTTP_PORT out of range: {self.http.port}")
        if not self.http.ws_path.startswith("/"):
            raise ValueError(f"WS_PATH must start with '/': {self.http.ws_path}")
        if self.http.ws_send_timeout_seconds <= 0:
            raise ValueError("WS_SEND_TIMEOUT_SECONDS must be positive")
        if not self.http.cors_origins:
            raise ValueError("CORS_ORIGINS must list at least one origin")
        if self.storage.chunk_size_bytes <= 0:
            raise ValueError("STORAGE_CHUNK_SIZE_BYTES must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "http_bind": f"{self.http.host}:{self.http.port}",
                "ws_path": self.http.ws_path,
                "ws_send_timeout_seconds": self.http.ws_send_timeout_seconds,
                "cors_origins": ",".join(self.http.cors_origins),
                "data_dir": self.storage.data_dir,
                "chunk_size_bytes": self.storage.chunk_size_bytes,
                "log_level": self.observability.log_level,
            },
        )
