"""
==============================================
ONION_CRYPTO.PY - Layer Crypto Provider
==============================================
RSA-2048 OAEP (SHA-256) for wrapping per-layer keys
ChaCha20-Poly1305 AEAD for layer payloads
"""
import os
import base64
import binascii
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from onion_config import (
    ENCRYPTED_KEY_LEN,
    NONCE_LEN,
    RSA_KEY_SIZE,
    RSA_PUBLIC_EXPONENT,
    SYMMETRIC_KEY_LEN,
    TAG_LEN,
)
from onion_errors import CryptoError, ValidationError


# ==================== UTILITIES ====================

def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """Strict base64 decode, raising ValidationError on garbage"""
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise ValidationError(f"Invalid base64: {e}")


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None
    )


# ==================== PROVIDER ====================

class CryptoProvider:
    """
    Black-box primitives consumed by the onion builder and the routers

    Asymmetric ciphertexts are always ENCRYPTED_KEY_LEN bytes, which is what
    lets a router split a layer at a fixed offset. Symmetric ciphertexts are
    [NONCE:12][CIPHERTEXT+TAG].
    """

    # ---------- asymmetric ----------

    def generate_asymmetric_keypair(self) -> Tuple[rsa.RSAPublicKey, rsa.RSAPrivateKey]:
        private_key = rsa.generate_private_key(
            public_exponent=RSA_PUBLIC_EXPONENT,
            key_size=RSA_KEY_SIZE
        )
        return private_key.public_key(), private_key

    def export_public_key(self, key: rsa.RSAPublicKey) -> str:
        """Export to base64 DER SubjectPublicKeyInfo"""
        der = key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        )
        return b64encode(der)

    def import_public_key(self, text: str) -> rsa.RSAPublicKey:
        der = b64decode(text)
        try:
            key = serialization.load_der_public_key(der)
        except ValueError as e:
            raise ValidationError(f"Invalid public key: {e}")

        if not isinstance(key, rsa.RSAPublicKey) or key.key_size != RSA_KEY_SIZE:
            raise ValidationError(f"Public key must be RSA-{RSA_KEY_SIZE}")
        return key

    def asymmetric_encrypt(self, data: bytes, public_key: rsa.RSAPublicKey) -> bytes:
        try:
            ciphertext = public_key.encrypt(data, _oaep())
        except ValueError as e:
            raise CryptoError(f"RSA encryption failed: {e}")

        if len(ciphertext) != ENCRYPTED_KEY_LEN:
            raise CryptoError(f"Encrypted key is {len(ciphertext)} bytes, expected {ENCRYPTED_KEY_LEN}")
        return ciphertext

    def asymmetric_decrypt(self, data: bytes, private_key: rsa.RSAPrivateKey) -> bytes:
        if len(data) != ENCRYPTED_KEY_LEN:
            raise CryptoError(f"Encrypted key must be {ENCRYPTED_KEY_LEN} bytes, got {len(data)}")
        try:
            return private_key.decrypt(data, _oaep())
        except ValueError as e:
            raise CryptoError(f"RSA decryption failed: {e}")

    # ---------- symmetric ----------

    def generate_symmetric_key(self) -> bytes:
        return ChaCha20Poly1305.generate_key()

    def export_symmetric_key(self, key: bytes) -> str:
        return b64encode(key)

    def import_symmetric_key(self, text: str) -> bytes:
        try:
            key = b64decode(text)
        except ValidationError as e:
            raise CryptoError(f"Invalid symmetric key encoding: {e}")

        if len(key) != SYMMETRIC_KEY_LEN:
            raise CryptoError(f"Symmetric key must be {SYMMETRIC_KEY_LEN} bytes, got {len(key)}")
        return key

    def symmetric_encrypt(self, key: bytes, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_LEN)
        return nonce + ChaCha20Poly1305(key).encrypt(nonce, plaintext, None)

    def symmetric_decrypt(self, key: bytes, blob: bytes) -> bytes:
        if len(blob) < NONCE_LEN + TAG_LEN:
            raise CryptoError(f"Symmetric ciphertext too short: {len(blob)} bytes")

        nonce = blob[:NONCE_LEN]
        try:
            return ChaCha20Poly1305(key).decrypt(nonce, blob[NONCE_LEN:], None)
        except InvalidTag:
            raise CryptoError("Symmetric decryption failed: authentication tag mismatch")


__all__ = [
    'CryptoProvider',
    'b64encode',
    'b64decode',
]
