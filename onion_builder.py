"""
==============================================
ONION_BUILDER.PY - Sender-Side Onion Construction
==============================================
Wraps a message for a circuit, exit layer first, entry layer last.

Each layer's address field names the hop that will receive what the
layer's owner forwards, so a router learns its successor and nothing else.
"""
import logging
from typing import Sequence

from onion_crypto import CryptoProvider
from onion_layers import wrap_layer

logger = logging.getLogger("BUILDER")


def build_onion(message: bytes, destination_address: str, circuit: Sequence,
                crypto: CryptoProvider) -> bytes:
    """
    Build the wire-ready onion for circuit (entry-first order)

    Right-to-left fold with an (address, payload) accumulator:
    the exit node's layer carries the destination address and the plain
    message; every earlier node's layer carries the address of the node
    after it and that node's complete layer.

    Args:
        message: plaintext delivered to the destination
        destination_address: fixed-width address of the destination
        circuit: node records with .pub_key and .address, entry first
        crypto: provider used for key generation and encryption

    Returns:
        Onion bytes, to be sent to circuit[0]'s address
    """
    if not circuit:
        raise ValueError("Cannot build an onion for an empty circuit")

    address, payload = destination_address, message
    for node in reversed(circuit):
        public_key = crypto.import_public_key(node.pub_key)
        payload = wrap_layer(crypto, public_key, address, payload)
        address = node.address

    logger.debug(f"Built {len(circuit)}-layer onion: {len(payload)} bytes")
    return payload


__all__ = ['build_onion']
