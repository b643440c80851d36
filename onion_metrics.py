"""
Prometheus counters for registry, routers and users.

Router and user counters carry a `node` label so several nodes can share one
process (and one default registry) without mixing their numbers. Registry
counters have no `node` label; there is one registry per network.
"""
import logging

from prometheus_client import Counter, start_http_server

logger = logging.getLogger("METRICS")

C_REGISTRATIONS = Counter("onr_registrations", "Accepted node registrations")
C_REGISTRATIONS_REJECTED = Counter("onr_registrations_rejected", "Rejected registrations", ["reason"])

C_ONIONS_IN = Counter("onr_onions_received", "Onions received by a router", ["node"])
C_ONIONS_OUT = Counter("onr_onions_forwarded", "Onion remainders forwarded", ["node"])
C_ONIONS_DROPPED = Counter("onr_onions_dropped", "Onions dropped at a router", ["node", "reason"])

C_MSG_SENT = Counter("onr_messages_sent", "Messages sent into a circuit", ["node"])
C_MSG_RECEIVED = Counter("onr_messages_received", "Plaintext messages delivered to a user", ["node"])
C_SEND_FAILED = Counter("onr_send_failures", "Failed sendMessage calls", ["node", "reason"])


def start_exporter(port: int):
    """Serve /metrics on its own port (daemon thread)"""
    start_http_server(port)
    logger.info(f"Metrics exporter listening on port {port}")
