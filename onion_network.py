"""
==================================================
ONION_NETWORK.PY - Local Network Launcher
==================================================
Runs a registry, N onion routers and M users as uvicorn servers in one
asyncio loop. Routers are started only once the registry answers, so their
startup registration cannot race it.

Usage:
    python onion_network.py --relays 10 --users 2
"""
import argparse
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import uvicorn

from node_registry import NodeDirectory, create_registry_app
from onion_config import NetworkConfig, setup_logging
from onion_crypto import CryptoProvider
from onion_metrics import start_exporter
from onion_router_daemon import OnionRouter, create_router_app
from onion_user_daemon import OnionUser, create_user_app

logger = logging.getLogger("NETWORK")


@dataclass
class OnionNetwork:
    """Handles to everything launch_network started"""
    config: NetworkConfig
    directory: NodeDirectory
    routers: List[OnionRouter] = field(default_factory=list)
    users: List[OnionUser] = field(default_factory=list)
    servers: List[uvicorn.Server] = field(default_factory=list)
    tasks: List[asyncio.Task] = field(default_factory=list)

    async def shutdown(self):
        for server in self.servers:
            server.should_exit = True
        await asyncio.gather(*self.tasks, return_exceptions=True)
        logger.info("Network stopped")


async def _start_server(network: OnionNetwork, app, host: str, port: int, name: str):
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    task = asyncio.create_task(server.serve(), name=name)
    network.servers.append(server)
    network.tasks.append(task)

    while not server.started:
        if task.done():
            raise RuntimeError(f"{name} failed to start on port {port}")
        await asyncio.sleep(0.05)


async def launch_network(n_routers: int, n_users: int, config: Optional[NetworkConfig] = None,
                         host: str = "127.0.0.1") -> OnionNetwork:
    config = config or NetworkConfig.from_env()
    crypto = CryptoProvider()
    network = OnionNetwork(config=config, directory=NodeDirectory(crypto))

    try:
        await _start_server(network, create_registry_app(network.directory),
                            host, config.registry_port, "registry")

        for node_id in range(n_routers):
            router = OnionRouter(node_id, config.router_port(node_id), config, crypto)
            network.routers.append(router)
            await _start_server(network, create_router_app(router),
                                host, router.port, f"router-{node_id}")

        for user_id in range(n_users):
            user = OnionUser(user_id, config=config, crypto=crypto)
            network.users.append(user)
            await _start_server(network, create_user_app(user),
                                host, user.port, f"user-{user_id}")
    except RuntimeError:
        await network.shutdown()
        raise

    logger.info(
        f"Network up: registry:{config.registry_port}, "
        f"{n_routers} routers from :{config.base_router_port}, "
        f"{n_users} users from :{config.base_user_port}"
    )
    return network


def main():
    config = NetworkConfig.from_env()

    parser = argparse.ArgumentParser(description="Launch a local onion routing network")
    parser.add_argument("--relays", type=int, default=10, help="Number of onion routers (default: 10)")
    parser.add_argument("--users", type=int, default=2, help="Number of users (default: 2)")
    parser.add_argument("--host", default="127.0.0.1", help="Listen host (default: 127.0.0.1)")
    args = parser.parse_args()

    setup_logging(config.log_level)
    if config.metrics_port:
        start_exporter(config.metrics_port)

    async def run():
        network = await launch_network(args.relays, args.users, config, args.host)
        try:
            await asyncio.gather(*network.tasks)
        finally:
            await network.shutdown()

    asyncio.run(run())


if __name__ == "__main__":
    main()
