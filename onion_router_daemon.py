"""
ONION_ROUTER_DAEMON.PY - Onion Router (Relay) Node

Peels exactly one layer off every incoming onion and forwards the remainder
to the address found inside it. The router never knows whether that address
is another router or the final user. An onion is acknowledged as soon as its
layer is off; the forward runs as a background task with its own timeout.

Usage:
    python onion_router_daemon.py --node-id 0
    python onion_router_daemon.py --node-id 7 --port 4107
"""
import argparse
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Optional, Set

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from onion_address import decode_address
from onion_config import NetworkConfig, setup_logging
from onion_crypto import CryptoProvider, b64encode
from onion_errors import CryptoError, NetworkError, NextHopUnreachable, ValidationError
from onion_http import OCTET_STREAM, install_error_handlers, make_http_client
from onion_layers import PeeledLayer, peel_layer
from onion_metrics import C_ONIONS_DROPPED, C_ONIONS_IN, C_ONIONS_OUT, start_exporter

logger = logging.getLogger("ROUTER")


class RouterState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    SERVING = "serving"


class OnionRouter:
    """Onion router node"""

    def __init__(self, node_id: int, port: int, config: Optional[NetworkConfig] = None,
                 crypto: Optional[CryptoProvider] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize router

        Args:
            node_id: Identity registered with the directory
            port: Routable port other nodes forward to
            config: Network config (defaults from env)
            crypto: Crypto provider
            http_client: Shared client for registry calls and forwards;
                created on first use when not given
        """
        self.node_id = node_id
        self.port = port
        self.config = config or NetworkConfig.from_env()
        self.crypto = crypto or CryptoProvider()
        self.state = RouterState.UNREGISTERED

        # Private key stays in this object; only the public half is exported
        self.public_key, self._private_key = self.crypto.generate_asymmetric_keypair()
        self.pub_key = self.crypto.export_public_key(self.public_key)

        self._http = http_client
        self._owns_http = http_client is None

        # Diagnostics (observability only)
        self.last_received_encrypted: Optional[bytes] = None
        self.last_received_decrypted: Optional[bytes] = None
        self.last_destination: Optional[str] = None

        # Stats
        self.onions_received = 0
        self.onions_forwarded = 0
        self.onions_dropped = 0
        self.forward_failures = 0
        self.started_at = time.time()

        self._forwards: Set[asyncio.Task] = set()

    @property
    def label(self) -> str:
        return str(self.node_id)

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = make_http_client(self.config.forward_timeout)
        return self._http

    async def close(self):
        await self.drain()
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def register(self) -> bool:
        """Publish (nodeId, pubKey, port) to the directory"""
        body = {"nodeId": self.node_id, "pubKey": self.pub_key, "port": self.port}
        try:
            response = await self.http.post(f"{self.config.registry_url}/registerNode", json=body)
        except httpx.HTTPError as e:
            logger.error(f"Error registering node {self.node_id}: {e}")
            return False

        if response.status_code != 201:
            logger.error(f"Error registering node {self.node_id}: {response.status_code} {response.text}")
            return False

        self.state = RouterState.REGISTERED
        logger.info(f"Node {self.node_id} registered successfully")
        return True

    def peel(self, onion: bytes) -> PeeledLayer:
        """
        Remove this router's layer and record diagnostics

        Raises:
            ValidationError: empty body
            CryptoError: the layer could not be decrypted; nothing is forwarded
        """
        if not onion:
            raise ValidationError("Empty onion")

        self.onions_received += 1
        C_ONIONS_IN.labels(node=self.label).inc()
        self.last_received_encrypted = onion

        try:
            peeled = peel_layer(self.crypto, self._private_key, onion)
        except CryptoError as e:
            self.onions_dropped += 1
            C_ONIONS_DROPPED.labels(node=self.label, reason="crypto").inc()
            logger.warning(f"Node {self.node_id} dropped onion ({len(onion)} bytes): {e}")
            raise

        self.last_received_decrypted = peeled.remainder
        self.last_destination = peeled.address
        return peeled

    async def handle_onion(self, onion: bytes) -> PeeledLayer:
        """Peel one layer and forward what is left, waiting for the forward"""
        peeled = self.peel(onion)
        await self._forward_logged(peeled)
        return peeled

    def accept_onion(self, onion: bytes) -> PeeledLayer:
        """
        Peel one layer and schedule the forward in the background

        The caller is answered as soon as the layer is off, so a slow or dead
        next hop is only ever seen by this router.
        """
        peeled = self.peel(onion)
        task = asyncio.create_task(self._forward_logged(peeled),
                                   name=f"forward-{self.node_id}-{peeled.address}")
        self._forwards.add(task)
        task.add_done_callback(self._forward_done)
        return peeled

    @property
    def pending_forwards(self) -> int:
        return len(self._forwards)

    async def drain(self):
        """Wait for every scheduled forward to finish"""
        while self._forwards:
            await asyncio.gather(*list(self._forwards), return_exceptions=True)

    def _forward_done(self, task: asyncio.Task):
        self._forwards.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Node {self.node_id} forward task crashed: {task.exception()!r}")

    async def _forward_logged(self, peeled: PeeledLayer):
        try:
            await self.forward(peeled.remainder, peeled.address)
        except NetworkError as e:
            self.forward_failures += 1
            C_ONIONS_DROPPED.labels(node=self.label, reason="network").inc()
            logger.error(f"Node {self.node_id} forward to {peeled.address} failed: {e}")

    async def forward(self, payload: bytes, address: str):
        """Forward payload to address; blocks until the next hop answers or times out"""
        url = self.config.endpoint_url(decode_address(address))
        try:
            response = await self.http.post(url, content=payload, headers=OCTET_STREAM)
        except httpx.HTTPError as e:
            raise NextHopUnreachable(f"{url}: {type(e).__name__}: {e}")

        if response.status_code // 100 != 2:
            raise NetworkError(f"{url} answered {response.status_code}")

        self.onions_forwarded += 1
        C_ONIONS_OUT.labels(node=self.label).inc()
        logger.debug(f"Node {self.node_id} forwarded {len(payload)} bytes to {address}")

    def get_stats(self) -> dict:
        return {
            "nodeId": self.node_id,
            "port": self.port,
            "state": self.state.value,
            "onions_received": self.onions_received,
            "onions_forwarded": self.onions_forwarded,
            "onions_dropped": self.onions_dropped,
            "forward_failures": self.forward_failures,
            "uptime_seconds": time.time() - self.started_at
        }


def render_payload(payload: Optional[bytes]) -> dict:
    """JSON view of a diagnostic payload: text when it is UTF-8, else base64"""
    if payload is None:
        return {"result": None}
    try:
        return {"result": payload.decode("utf-8"), "encoding": "utf-8"}
    except UnicodeDecodeError:
        return {"result": b64encode(payload), "encoding": "base64"}


def create_router_app(router: OnionRouter) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if await router.register():
            router.state = RouterState.SERVING
            logger.info(f"Onion router {router.node_id} is serving on port {router.port}")
        else:
            logger.warning(f"Onion router {router.node_id} registration failed; staying {router.state.value}")
        yield
        await router.close()

    app = FastAPI(title=f"Onion Router {router.node_id}", lifespan=lifespan)
    app.state.router = router
    install_error_handlers(app, logger)

    @app.get("/status")
    async def status():
        return PlainTextResponse("live")

    @app.post("/message")
    async def message(request: Request):
        onion = await request.body()
        router.accept_onion(onion)
        return {"status": "accepted"}

    @app.get("/getLastReceivedEncryptedMessage")
    async def last_encrypted():
        data = router.last_received_encrypted
        return {"result": b64encode(data) if data is not None else None}

    @app.get("/getLastReceivedDecryptedMessage")
    async def last_decrypted():
        return render_payload(router.last_received_decrypted)

    @app.get("/getLastMessageDestination")
    async def last_destination():
        return {"result": router.last_destination}

    @app.get("/stats")
    async def stats():
        return router.get_stats()

    return app


def main():
    config = NetworkConfig.from_env()

    parser = argparse.ArgumentParser(description="Onion router")
    parser.add_argument("--node-id", type=int, required=True, help="Node id to register")
    parser.add_argument("--port", type=int, default=None,
                        help=f"Listen port (default: {config.base_router_port} + node id)")
    parser.add_argument("--host", default="0.0.0.0", help="Listen host (default: 0.0.0.0)")
    args = parser.parse_args()

    setup_logging(config.log_level)
    if config.metrics_port:
        start_exporter(config.metrics_port)

    port = args.port if args.port is not None else config.router_port(args.node_id)
    router = OnionRouter(args.node_id, port, config)
    uvicorn.run(create_router_app(router), host=args.host, port=port, log_level="warning")


if __name__ == "__main__":
    main()
