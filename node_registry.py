"""
==========================================
NODE_REGISTRY.PY - Node Directory Service
==========================================
Holds (nodeId, public key, port) for every onion router.
Private keys never reach the directory.

Usage:
    python node_registry.py --port 8080
"""
import argparse
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, StrictInt, StrictStr

from onion_address import encode_address
from onion_config import NetworkConfig, setup_logging
from onion_crypto import CryptoProvider
from onion_errors import DuplicateNode, ValidationError
from onion_http import install_error_handlers
from onion_metrics import C_REGISTRATIONS, C_REGISTRATIONS_REJECTED, start_exporter

logger = logging.getLogger("REGISTRY")


# ==================== DATA STRUCTURES ====================

@dataclass(frozen=True)
class NodeRecord:
    """One registered router; never mutated after registration"""
    node_id: int
    pub_key: str
    port: int

    @property
    def address(self) -> str:
        return encode_address(self.port)

    def to_dict(self) -> Dict[str, Any]:
        return {"nodeId": self.node_id, "pubKey": self.pub_key, "port": self.port}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "NodeRecord":
        try:
            return NodeRecord(node_id=int(d["nodeId"]), pub_key=str(d["pubKey"]), port=int(d["port"]))
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed node record {d!r}: {e}")


# ==================== DIRECTORY ====================

class NodeDirectory:
    """
    Registry of known routers

    Writers are serialized by a lock and publish a fresh immutable tuple;
    readers take whatever tuple is current without locking, so a reader
    never sees a half-applied registration.
    """

    def __init__(self, crypto: Optional[CryptoProvider] = None):
        self.crypto = crypto
        self._lock = threading.Lock()
        self._snapshot: Tuple[NodeRecord, ...] = ()
        self._ids = set()

    def register(self, node_id: int, pub_key: str, port: int) -> NodeRecord:
        """
        Add a router

        Raises:
            DuplicateNode: node_id already registered
            ValidationError: bad id, key or port
        """
        if isinstance(node_id, bool) or not isinstance(node_id, int) or node_id < 0:
            raise ValidationError(f"nodeId must be a non-negative integer, got {node_id!r}")
        if not isinstance(pub_key, str) or not pub_key:
            raise ValidationError("pubKey must be a non-empty string")
        encode_address(port)
        if self.crypto is not None:
            self.crypto.import_public_key(pub_key)

        record = NodeRecord(node_id=node_id, pub_key=pub_key, port=port)

        with self._lock:
            if node_id in self._ids:
                raise DuplicateNode(f"Node {node_id} already registered")
            self._ids.add(node_id)
            self._snapshot = self._snapshot + (record,)

        logger.info(f"Registered node {node_id} on port {port} ({len(self._snapshot)} nodes)")
        return record

    def list(self) -> Tuple[NodeRecord, ...]:
        return self._snapshot

    def get(self, node_id: int) -> Optional[NodeRecord]:
        for record in self._snapshot:
            if record.node_id == node_id:
                return record
        return None

    def __len__(self) -> int:
        return len(self._snapshot)


# ==================== HTTP API ====================

class RegisterNodeBody(BaseModel):
    nodeId: StrictInt
    pubKey: StrictStr
    port: StrictInt


def create_registry_app(directory: Optional[NodeDirectory] = None) -> FastAPI:
    directory = directory if directory is not None else NodeDirectory(CryptoProvider())

    app = FastAPI(title="Onion Node Registry")
    app.state.directory = directory
    install_error_handlers(app, logger)

    @app.get("/status")
    async def status():
        return PlainTextResponse("live")

    @app.post("/registerNode")
    async def register_node(body: RegisterNodeBody):
        try:
            directory.register(body.nodeId, body.pubKey, body.port)
        except ValidationError as e:
            C_REGISTRATIONS_REJECTED.labels(reason=type(e).__name__).inc()
            raise
        C_REGISTRATIONS.inc()
        return JSONResponse(status_code=201, content={"message": "Node registered successfully"})

    @app.get("/getNodeRegistry")
    async def get_node_registry():
        return {"nodes": [record.to_dict() for record in directory.list()]}

    return app


def main():
    config = NetworkConfig.from_env()

    parser = argparse.ArgumentParser(description="Onion node registry")
    parser.add_argument("--host", default="0.0.0.0", help="Listen host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=config.registry_port,
                        help=f"Listen port (default: {config.registry_port})")
    args = parser.parse_args()

    setup_logging(config.log_level)
    if config.metrics_port:
        start_exporter(config.metrics_port)

    logger.info(f"Registry is listening on port {args.port}")
    uvicorn.run(create_registry_app(), host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()
