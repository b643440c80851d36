"""
==============================================
ONION_LAYERS.PY - One Layer, Wrapped or Peeled
==============================================
Layer format (no length prefixes):

    [ENCRYPTED_KEY:256][SYM(key, ADDRESS:10 || INNER_PAYLOAD)]

ENCRYPTED_KEY is RSA-OAEP of the exported symmetric key, so its length is
fixed by the modulus and the split offset never changes.
"""
from dataclasses import dataclass

from onion_address import address_from_bytes, address_to_bytes
from onion_config import ADDRESS_FIELD_WIDTH, ENCRYPTED_KEY_LEN, NONCE_LEN, TAG_LEN
from onion_crypto import CryptoProvider
from onion_errors import CryptoError, ValidationError


# Key block + nonce + tag, nothing encrypted
MIN_LAYER_LEN = ENCRYPTED_KEY_LEN + NONCE_LEN + TAG_LEN


@dataclass(frozen=True)
class PeeledLayer:
    """What a router learns by removing its layer"""
    address: str
    remainder: bytes


def split_layer(onion: bytes):
    """Cut an onion into (encrypted_key, encrypted_payload)"""
    if len(onion) < MIN_LAYER_LEN:
        raise CryptoError(
            f"Onion too short: {len(onion)} bytes (min {MIN_LAYER_LEN})"
        )
    return onion[:ENCRYPTED_KEY_LEN], onion[ENCRYPTED_KEY_LEN:]


def wrap_layer(crypto: CryptoProvider, public_key, address: str, payload: bytes) -> bytes:
    """Encrypt (address || payload) for the holder of public_key"""
    key = crypto.generate_symmetric_key()
    encrypted_payload = crypto.symmetric_encrypt(key, address_to_bytes(address) + payload)

    exported_key = crypto.export_symmetric_key(key).encode("ascii")
    encrypted_key = crypto.asymmetric_encrypt(exported_key, public_key)

    return encrypted_key + encrypted_payload


def peel_layer(crypto: CryptoProvider, private_key, onion: bytes) -> PeeledLayer:
    """
    Remove exactly one layer

    Raises:
        CryptoError: wrong key, corrupted ciphertext, or a plaintext too short
            to hold the address field
    """
    encrypted_key, encrypted_payload = split_layer(onion)

    exported_key = crypto.asymmetric_decrypt(encrypted_key, private_key)
    try:
        key = crypto.import_symmetric_key(exported_key.decode("ascii"))
    except UnicodeDecodeError:
        raise CryptoError("Decrypted layer key is not ASCII")

    plaintext = crypto.symmetric_decrypt(key, encrypted_payload)

    if len(plaintext) < ADDRESS_FIELD_WIDTH:
        raise CryptoError(
            f"Decrypted layer too short for address field: {len(plaintext)} bytes"
        )

    try:
        address = address_from_bytes(plaintext[:ADDRESS_FIELD_WIDTH])
    except ValidationError as e:
        raise CryptoError(f"Invalid address in decrypted layer: {e}")

    return PeeledLayer(address=address, remainder=plaintext[ADDRESS_FIELD_WIDTH:])


__all__ = [
    'PeeledLayer',
    'MIN_LAYER_LEN',
    'split_layer',
    'wrap_layer',
    'peel_layer',
]
