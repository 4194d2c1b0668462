"""
Modbus Client Configuration
Connection defaults, overridable from the environment
"""

import os
import logging
from dataclasses import dataclass
from typing import Dict

# ==================== CLIENT DEFAULTS ====================

def load_client_config() -> Dict:
    """Read MODBUS_* environment variables, falling back to protocol defaults.

    The read timeout follows the connect timeout unless set on its own.
    """
    connect_timeout_ms = int(os.getenv("MODBUS_TIMEOUT_MS", 3000))
    return {
        "host": os.getenv("MODBUS_HOST", "127.0.0.1"),
        "port": int(os.getenv("MODBUS_PORT", 502)),
        "unit_id": int(os.getenv("MODBUS_UNIT_ID", 1)),
        "connect_timeout_ms": connect_timeout_ms,
        "read_timeout_ms": int(os.getenv("MODBUS_READ_TIMEOUT_MS", connect_timeout_ms)),
        "liveness_interval_ms": int(os.getenv("MODBUS_LIVENESS_INTERVAL_MS", 8000)),
    }


CLIENT_CONFIG = load_client_config()

# ==================== LOGGING CONFIGURATION ====================

LOGGING_CONFIG = {
    "level": os.getenv("LOG_LEVEL", "INFO"),
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


def setup_logging(level: str = None):
    """Configure root logging from LOGGING_CONFIG."""
    logging.basicConfig(
        level=getattr(logging, (level or LOGGING_CONFIG["level"]).upper(), logging.INFO),
        format=LOGGING_CONFIG["format"],
    )


@dataclass
class ClientConfig:
    """Connection parameters of one Modbus TCP client"""

    host: str = "127.0.0.1"
    port: int = 502
    unit_id: int = 1
    connect_timeout_ms: int = 3000
    read_timeout_ms: int = 3000
    liveness_interval_ms: int = 8000

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ValueError on out-of-range settings."""
        if not self.host:
            raise ValueError("host must not be empty")
        if not 1 <= self.port <= 65535:
            raise ValueError(f"port {self.port} out of range [1, 65535]")
        if not 0 <= self.unit_id <= 255:
            raise ValueError(f"unit_id {self.unit_id} out of range [0, 255]")
        for name in ("connect_timeout_ms", "read_timeout_ms", "liveness_interval_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @property
    def connect_timeout_s(self) -> float:
        return self.connect_timeout_ms / 1000.0

    @property
    def read_timeout_s(self) -> float:
        return self.read_timeout_ms / 1000.0

    @property
    def liveness_interval_s(self) -> float:
        return self.liveness_interval_ms / 1000.0

    @classmethod
    def default(cls) -> 'ClientConfig':
        """Create default client configuration"""
        return cls()

    @classmethod
    def from_env(cls) -> 'ClientConfig':
        """Create configuration from MODBUS_* environment variables"""
        return cls(**load_client_config())
