"""
ONION_USER_DAEMON.PY - Onion Routing Client

Sends messages through a random circuit and receives plaintext delivered by
exit routers.

Usage:
    python onion_user_daemon.py --user-id 0

    curl -X POST localhost:3000/sendMessage \\
         -H 'Content-Type: application/json' \\
         -d '{"message": "hello", "destinationUserId": 1}'
"""
import argparse
import logging
import random
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, StrictInt, StrictStr

from circuit_selection import select_circuit
from node_registry import NodeRecord
from onion_address import encode_address
from onion_builder import build_onion
from onion_config import NetworkConfig, setup_logging
from onion_crypto import CryptoProvider
from onion_errors import (
    DirectoryError,
    DirectoryUnreachable,
    NextHopUnreachable,
    OnionRoutingError,
    ValidationError,
)
from onion_http import OCTET_STREAM, install_error_handlers, make_http_client
from onion_metrics import C_MSG_RECEIVED, C_MSG_SENT, C_SEND_FAILED, start_exporter

logger = logging.getLogger("USER")


class OnionUser:
    """Sender / receiver endpoint of the overlay"""

    def __init__(self, user_id: int, port: Optional[int] = None,
                 config: Optional[NetworkConfig] = None,
                 crypto: Optional[CryptoProvider] = None,
                 http_client: Optional[httpx.AsyncClient] = None,
                 rng: Optional[random.Random] = None):
        self.user_id = user_id
        self.config = config or NetworkConfig.from_env()
        self.port = port if port is not None else self.config.user_port(user_id)
        self.crypto = crypto or CryptoProvider()
        self.rng = rng

        self._http = http_client
        self._owns_http = http_client is None

        self.last_received_message: Optional[str] = None
        self.last_sent_message: Optional[str] = None
        self.last_circuit: Optional[List[int]] = None

    @property
    def label(self) -> str:
        return f"user-{self.user_id}"

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = make_http_client(self.config.forward_timeout)
        return self._http

    async def close(self):
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def fetch_nodes(self) -> Tuple[NodeRecord, ...]:
        """Directory snapshot"""
        url = f"{self.config.registry_url}/getNodeRegistry"
        try:
            response = await self.http.get(url)
            response.raise_for_status()
            nodes = response.json()["nodes"]
            return tuple(NodeRecord.from_dict(n) for n in nodes)
        except httpx.HTTPError as e:
            raise DirectoryUnreachable(f"{url}: {type(e).__name__}: {e}")
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise DirectoryUnreachable(f"{url}: malformed registry response: {e}")

    async def send_message(self, destination_id: int, message: str,
                           destination_port: Optional[int] = None) -> List[int]:
        """
        Wrap message for a fresh random circuit and hand it to the entry node

        Returns:
            Node ids of the circuit, entry first

        Raises:
            ValidationError: empty message or bad destination
            DirectoryUnreachable / InsufficientNodes: no usable circuit
            NextHopUnreachable: entry node did not accept the onion
        """
        if not message:
            raise ValidationError("Message must be a non-empty string")
        if destination_port is None:
            destination_port = self.config.user_port(destination_id)
        destination_address = encode_address(destination_port)

        try:
            nodes = await self.fetch_nodes()
            circuit = select_circuit(nodes, self.config.path_length, self.rng)
        except DirectoryError as e:
            C_SEND_FAILED.labels(node=self.label, reason=type(e).__name__).inc()
            logger.error(f"User {self.user_id} cannot build circuit: {e}")
            raise

        onion = build_onion(message.encode("utf-8"), destination_address, circuit, self.crypto)
        entry = circuit[0]
        url = self.config.endpoint_url(entry.port)

        try:
            response = await self.http.post(url, content=onion, headers=OCTET_STREAM)
        except httpx.HTTPError as e:
            C_SEND_FAILED.labels(node=self.label, reason="NextHopUnreachable").inc()
            raise NextHopUnreachable(f"Entry node {entry.node_id} at {url}: {type(e).__name__}: {e}")

        if response.status_code == 400 and _error_kind(response) == "CryptoError":
            # Entry took the onion and dropped it; that stays its business
            logger.warning(f"User {self.user_id}: entry node {entry.node_id} dropped the onion")
        elif response.status_code // 100 != 2:
            C_SEND_FAILED.labels(node=self.label, reason="NextHopUnreachable").inc()
            raise NextHopUnreachable(f"Entry node {entry.node_id} answered {response.status_code}")

        self.last_circuit = [node.node_id for node in circuit]
        self.last_sent_message = message
        C_MSG_SENT.labels(node=self.label).inc()
        logger.info(f"User {self.user_id} sent {len(onion)}-byte onion via {self.last_circuit}")
        return self.last_circuit

    def receive_message(self, plaintext: str):
        """Inbound delivery from an exit router; nothing is acknowledged back"""
        if not plaintext:
            raise ValidationError("Empty message")
        self.last_received_message = plaintext
        C_MSG_RECEIVED.labels(node=self.label).inc()
        logger.info(f"User {self.user_id} received {len(plaintext)} chars")


def _error_kind(response: httpx.Response) -> Optional[str]:
    try:
        return response.json().get("kind")
    except (ValueError, AttributeError):
        return None


# ==================== HTTP API ====================

class SendMessageBody(BaseModel):
    message: StrictStr
    destinationUserId: StrictInt
    destinationPort: Optional[StrictInt] = None


def create_user_app(user: OnionUser) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"User {user.user_id} is listening on port {user.port}")
        yield
        await user.close()

    app = FastAPI(title=f"Onion User {user.user_id}", lifespan=lifespan)
    app.state.user = user
    install_error_handlers(app, logger)

    @app.get("/status")
    async def status():
        return PlainTextResponse("live")

    @app.post("/message")
    async def message(request: Request):
        raw = await request.body()
        try:
            plaintext = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError("Delivered message is not UTF-8")
        user.receive_message(plaintext)
        return {"message": "Message received successfully"}

    @app.post("/sendMessage")
    async def send_message(body: SendMessageBody):
        try:
            circuit = await user.send_message(body.destinationUserId, body.message, body.destinationPort)
        except OnionRoutingError as e:
            logger.error(f"Error sending message: {e}")
            raise
        return {"message": "Message sent successfully", "circuit": circuit}

    @app.get("/getLastReceivedMessage")
    async def last_received():
        return {"result": user.last_received_message}

    @app.get("/getLastSentMessage")
    async def last_sent():
        return {"result": user.last_sent_message}

    @app.get("/getLastCircuit")
    async def last_circuit():
        return {"result": user.last_circuit}

    return app


def main():
    config = NetworkConfig.from_env()

    parser = argparse.ArgumentParser(description="Onion routing user")
    parser.add_argument("--user-id", type=int, required=True, help="User id")
    parser.add_argument("--port", type=int, default=None,
                        help=f"Listen port (default: {config.base_user_port} + user id)")
    parser.add_argument("--host", default="0.0.0.0", help="Listen host (default: 0.0.0.0)")
    args = parser.parse_args()

    setup_logging(config.log_level)
    if config.metrics_port:
        start_exporter(config.metrics_port)

    user = OnionUser(args.user_id, args.port, config)
    uvicorn.run(create_user_app(user), host=args.host, port=user.port, log_level="warning")


if __name__ == "__main__":
    main()
