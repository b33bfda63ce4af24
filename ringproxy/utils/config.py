import os
from dataclasses import dataclass
import yaml

from ..core.consistent_hash import (
    DEFAULT_LOAD_BOUND_FACTOR,
    DEFAULT_REPLICA_NUM,
    RingConfig,
)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class NodeConfig:
    """Configuration for a proxy or cache node"""

    node_id: str
    host: str
    port: int
    log_level: str

    # Ring configuration (proxy)
    replica_num: int = DEFAULT_REPLICA_NUM
    load_bound_factor: float = DEFAULT_LOAD_BOUND_FACTOR
    release_after: float = 10.0  # seconds a bounded reservation is held

    # Cache configuration
    cache_expire: float = 10.0  # seconds
    proxy_url: str | None = None  # e.g. "http://localhost:18888"

    # General settings
    request_timeout: float = 10.0  # seconds
    log_dir: str = "logs"

    @classmethod
    def from_env(cls) -> "NodeConfig":
        """Load configuration from environment variables"""
        return cls(
            node_id=os.getenv("NODE_ID", "proxy"),
            host=os.getenv("NODE_HOST", "0.0.0.0"),
            port=int(os.getenv("NODE_PORT", "18888")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            replica_num=int(
                os.getenv("RING_REPLICA_NUM", str(DEFAULT_REPLICA_NUM))
            ),
            load_bound_factor=float(
                os.getenv("RING_LOAD_BOUND_FACTOR", str(DEFAULT_LOAD_BOUND_FACTOR))
            ),
            release_after=float(os.getenv("PROXY_RELEASE_AFTER", "10")),
            cache_expire=float(os.getenv("CACHE_EXPIRE", "10")),
            proxy_url=os.getenv("PROXY_URL") or None,
            request_timeout=float(os.getenv("REQUEST_TIMEOUT", "10")),
            log_dir=os.getenv("LOG_DIR", "logs"),
        )

    @classmethod
    def from_file(cls, filepath: str) -> "NodeConfig":
        """Load configuration from YAML file"""
        with open(filepath, "r") as f:
            data = yaml.safe_load(f)

        return cls(**data)

    @property
    def advertise_address(self) -> str:
        """The host:port name this node is reachable under"""
        host = "localhost" if self.host in ("", "0.0.0.0") else self.host
        return f"{host}:{self.port}"

    def ring_config(self) -> RingConfig:
        return RingConfig(
            replica_num=self.replica_num,
            load_bound_factor=self.load_bound_factor,
        )

    def validate(self) -> None:
        """Validate configuration parameters"""
        if self.port < 1024 or self.port > 65535:
            raise ValueError(f"Invalid port: {self.port}")

        if self.replica_num < 1:
            raise ValueError("replica_num must be at least 1")

        if self.load_bound_factor < 0:
            raise ValueError("load_bound_factor must be non-negative")

        if self.release_after < 0:
            raise ValueError("release_after must be non-negative")

        if self.cache_expire <= 0:
            raise ValueError("cache_expire must be positive")

        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")

        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.log_level}")
