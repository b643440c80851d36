"""
Live launcher test: real uvicorn servers on loopback

Needs a block of free local ports; picks them at random.
"""
import asyncio
import random
import socket
import time

import httpx
from fastapi import FastAPI

import onion_network
from node_registry import NodeDirectory
from onion_address import encode_address
from onion_builder import build_onion
from onion_config import NetworkConfig
from onion_errors import NextHopUnreachable
from onion_network import OnionNetwork, _start_server, launch_network


def _ports_free(ports) -> bool:
    for port in ports:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind(("127.0.0.1", port))
            except OSError:
                return False
    return True


def _free_config(n_routers: int, n_users: int, forward_timeout: float = 5.0) -> NetworkConfig:
    for _ in range(50):
        base = random.randrange(20000, 60000, 100)
        registry, routers, users = base, base + 10, base + 50
        wanted = [registry] + list(range(routers, routers + n_routers)) + list(range(users, users + n_users))
        if _ports_free(wanted):
            return NetworkConfig(host="127.0.0.1", registry_port=registry, base_router_port=routers,
                                 base_user_port=users, forward_timeout=forward_timeout)
    raise RuntimeError("No free port block found")


def test_launch_network_and_send():
    config = _free_config(4, 2)

    async def scenario():
        network = await launch_network(4, 2, config)
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                registry = (await client.get(f"{config.registry_url}/getNodeRegistry")).json()
                assert sorted(n["nodeId"] for n in registry["nodes"]) == [0, 1, 2, 3]
                assert all("privateKey" not in n for n in registry["nodes"])

                sender = f"http://127.0.0.1:{config.user_port(0)}"
                receiver = f"http://127.0.0.1:{config.user_port(1)}"

                response = await client.post(f"{sender}/sendMessage",
                                             json={"message": "live hello", "destinationUserId": 1})
                assert response.status_code == 200

                received = (await client.get(f"{receiver}/getLastReceivedMessage")).json()
                assert received == {"result": "live hello"}

                exit_id = response.json()["circuit"][-1]
                exit_url = f"http://127.0.0.1:{config.router_port(exit_id)}"
                decrypted = (await client.get(f"{exit_url}/getLastReceivedDecryptedMessage")).json()
                assert decrypted["result"] == "live hello"
        finally:
            await network.shutdown()

        assert all(r.state.value == "serving" for r in network.routers)

    asyncio.run(scenario())


def _slow_destination(delay: float) -> FastAPI:
    app = FastAPI()

    @app.post("/message")
    async def message():
        await asyncio.sleep(delay)
        return {"message": "too late"}

    return app


def test_slow_destination_stays_at_exit_router():
    """
    A destination slower than the forward timeout costs only the exit
    router a failed forward; the sender and earlier hops see success
    """
    config = _free_config(3, 2, forward_timeout=0.5)
    slow_port = config.user_port(1)

    async def scenario():
        network = await launch_network(3, 1, config)
        try:
            await _start_server(network, _slow_destination(1.5), "127.0.0.1", slow_port, "slow-destination")
            sender = network.users[0]

            started = time.monotonic()
            circuit = await sender.send_message(1, "hi", destination_port=slow_port)
            assert time.monotonic() - started < config.forward_timeout
            assert sender.last_sent_message == "hi"

            routers = {r.node_id: r for r in network.routers}
            for node_id in circuit:
                await routers[node_id].drain()

            entry, middle, exit_ = (routers[node_id] for node_id in circuit)
            assert (entry.forward_failures, middle.forward_failures) == (0, 0)
            assert (entry.onions_forwarded, middle.onions_forwarded) == (1, 1)
            assert exit_.forward_failures == 1
            assert exit_.onions_forwarded == 0
            assert exit_.last_received_decrypted == b"hi"
        finally:
            await network.shutdown()

    asyncio.run(scenario())


def test_forward_timeout_is_bounded():
    config = _free_config(1, 2, forward_timeout=0.5)
    slow_port = config.user_port(1)

    async def scenario():
        network = await launch_network(1, 0, config)
        try:
            await _start_server(network, _slow_destination(1.5), "127.0.0.1", slow_port, "slow-destination")
            router = network.routers[0]
            record = network.directory.get(router.node_id)

            started = time.monotonic()
            try:
                await router.forward(b"payload", encode_address(slow_port))
            except NextHopUnreachable:
                pass
            else:
                raise AssertionError("forward to a hanging hop returned")
            assert time.monotonic() - started < config.forward_timeout + 0.5

            # Upstream is answered straight away while the forward times out
            onion = build_onion(b"late", encode_address(slow_port), [record], router.crypto)
            async with httpx.AsyncClient(timeout=10.0) as client:
                started = time.monotonic()
                response = await client.post(f"http://127.0.0.1:{router.port}/message", content=onion,
                                             headers={"Content-Type": "application/octet-stream"})
                assert time.monotonic() - started < config.forward_timeout
            assert response.json() == {"status": "accepted"}

            await router.drain()
            assert router.forward_failures == 1
        finally:
            await network.shutdown()

    asyncio.run(scenario())


def test_cli_takes_relay_and_user_counts(monkeypatch):
    launched = []

    async def fake_launch(n_relays, n_users, config, host):
        launched.append((n_relays, n_users, host))
        return OnionNetwork(config=config, directory=NodeDirectory())

    monkeypatch.setattr(onion_network, "launch_network", fake_launch)
    monkeypatch.setattr("sys.argv", ["onion_network.py", "--relays", "4", "--users", "3"])
    onion_network.main()

    assert launched == [(4, 3, "127.0.0.1")]
