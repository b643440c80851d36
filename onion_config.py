"""
==============================================
ONION_CONFIG.PY - Network Configuration
==============================================
Protocol constants + per-process settings loaded from ONR_* env vars
"""
import os
import logging
from dataclasses import dataclass
from typing import Optional


# ==================== PROTOCOL CONSTANTS ====================

DEFAULT_PATH_LENGTH = 3

# Address field: width of the largest unsigned 32-bit value (4294967295)
ADDRESS_FIELD_WIDTH = 10
MAX_ADDRESS = 10 ** ADDRESS_FIELD_WIDTH - 1

# RSA-OAEP ciphertext is always modulus-sized
RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
ENCRYPTED_KEY_LEN = RSA_KEY_SIZE // 8

# ChaCha20-Poly1305
SYMMETRIC_KEY_LEN = 32
NONCE_LEN = 12
TAG_LEN = 16

LOG_FORMAT = '[%(asctime)s] [%(name)s] %(levelname)s - %(message)s'


# ==================== RUNTIME CONFIG ====================

@dataclass
class NetworkConfig:
    """Where things live on the network and how long hops may block"""
    host: str = "localhost"
    registry_port: int = 8080
    base_router_port: int = 4000
    base_user_port: int = 3000
    path_length: int = DEFAULT_PATH_LENGTH
    forward_timeout: float = 5.0
    log_level: str = "INFO"
    metrics_port: Optional[int] = None

    @staticmethod
    def from_env() -> "NetworkConfig":
        metrics_port = os.getenv("ONR_METRICS_PORT")
        return NetworkConfig(
            host=os.getenv("ONR_HOST", "localhost"),
            registry_port=int(os.getenv("ONR_REGISTRY_PORT", "8080")),
            base_router_port=int(os.getenv("ONR_BASE_ROUTER_PORT", "4000")),
            base_user_port=int(os.getenv("ONR_BASE_USER_PORT", "3000")),
            path_length=int(os.getenv("ONR_PATH_LENGTH", str(DEFAULT_PATH_LENGTH))),
            forward_timeout=float(os.getenv("ONR_FORWARD_TIMEOUT", "5.0")),
            log_level=os.getenv("ONR_LOG_LEVEL", "INFO").upper(),
            metrics_port=int(metrics_port) if metrics_port else None,
        )

    @property
    def registry_url(self) -> str:
        return f"http://{self.host}:{self.registry_port}"

    def router_port(self, node_id: int) -> int:
        """Default listen port for a router launched with this node id"""
        return self.base_router_port + node_id

    def user_port(self, user_id: int) -> int:
        """Routable port of a user; the only id-to-port mapping in the system"""
        return self.base_user_port + user_id

    def endpoint_url(self, port: int) -> str:
        return f"http://{self.host}:{port}/message"


def setup_logging(level: str = "INFO"):
    """Configure root logging once per daemon process"""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    # Suppress per-request httpx logging
    logging.getLogger('httpx').setLevel(logging.WARNING)
