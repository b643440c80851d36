"""
Shared fixtures: key material and an in-process onion network
"""
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

import httpx
import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from node_registry import NodeDirectory, NodeRecord, create_registry_app
from onion_config import NetworkConfig
from onion_crypto import CryptoProvider
from onion_router_daemon import OnionRouter, create_router_app
from onion_user_daemon import OnionUser, create_user_app


class PortRoutingTransport(httpx.AsyncBaseTransport):
    """
    Dispatch each request to the ASGI app mounted on the request's port

    Unmounted ports behave like a refused connection. Every request is
    recorded, including refused ones.
    """

    def __init__(self):
        self.apps: Dict[int, httpx.ASGITransport] = {}
        self.requests: List[httpx.Request] = []

    def mount(self, port: int, app):
        self.apps[port] = httpx.ASGITransport(app=app)

    def unmount(self, port: int):
        self.apps.pop(port, None)

    def ports_posted(self, path: str = "/message") -> List[int]:
        return [r.url.port for r in self.requests if r.method == "POST" and r.url.path == path]

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        transport = self.apps.get(request.url.port)
        if transport is None:
            raise httpx.ConnectError(f"Connection refused: {request.url}", request=request)
        return await transport.handle_async_request(request)


@dataclass
class LocalNetwork:
    config: NetworkConfig
    directory: NodeDirectory
    transport: PortRoutingTransport
    client: httpx.AsyncClient
    routers: List[OnionRouter] = field(default_factory=list)
    users: List[OnionUser] = field(default_factory=list)

    def router(self, node_id: int) -> OnionRouter:
        return next(r for r in self.routers if r.node_id == node_id)

    async def settle(self):
        """Run background forwards until the whole circuit has been walked"""
        while any(r.pending_forwards for r in self.routers):
            for router in self.routers:
                await router.drain()


def make_config() -> NetworkConfig:
    return NetworkConfig(
        host="localhost",
        registry_port=8080,
        base_router_port=4000,
        base_user_port=3000,
        path_length=3,
        forward_timeout=2.0,
    )


@asynccontextmanager
async def local_network(n_routers: int, n_users: int, crypto: CryptoProvider, rng=None):
    """
    Registry + routers + users wired through one PortRoutingTransport

    Routers are registered directly in the directory: ASGITransport does not
    run lifespan handlers, so startup registration is skipped.
    """
    config = make_config()
    transport = PortRoutingTransport()
    directory = NodeDirectory(crypto)

    async with httpx.AsyncClient(transport=transport) as client:
        net = LocalNetwork(config=config, directory=directory, transport=transport, client=client)
        transport.mount(config.registry_port, create_registry_app(directory))

        for node_id in range(n_routers):
            router = OnionRouter(node_id, config.router_port(node_id), config, crypto, http_client=client)
            directory.register(router.node_id, router.pub_key, router.port)
            transport.mount(router.port, create_router_app(router))
            net.routers.append(router)

        for user_id in range(n_users):
            user = OnionUser(user_id, config=config, crypto=crypto, http_client=client, rng=rng)
            transport.mount(user.port, create_user_app(user))
            net.users.append(user)

        yield net


@pytest.fixture(scope="session")
def crypto():
    return CryptoProvider()


@pytest.fixture(scope="session")
def hop_keys(crypto):
    """Three router keypairs, reused across tests to keep RSA keygen cheap"""
    records, private_keys = [], {}
    for node_id in range(3):
        public_key, private_key = crypto.generate_asymmetric_keypair()
        records.append(NodeRecord(node_id=node_id, pub_key=crypto.export_public_key(public_key),
                                  port=4000 + node_id))
        private_keys[node_id] = private_key
    return records, private_keys
