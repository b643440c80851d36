"""
Error taxonomy shared by registry, routers and users.

Core code raises these; the HTTP layer turns them into JSON error
responses. None of them is allowed to stop a serving process.
"""


class OnionRoutingError(Exception):
    """Base class for every protocol-level failure"""
    status_code = 500


class ValidationError(OnionRoutingError):
    """Malformed request: missing or ill-typed fields"""
    status_code = 400


class DuplicateNode(ValidationError):
    """A node id is registered twice"""
    status_code = 409


class CryptoError(OnionRoutingError):
    """Decryption failure: wrong key, corrupted ciphertext or bad offsets"""
    status_code = 400


class DirectoryError(OnionRoutingError):
    """The directory cannot provide a usable circuit"""
    status_code = 502


class DirectoryUnreachable(DirectoryError):
    status_code = 502


class InsufficientNodes(DirectoryError):
    """Fewer distinct nodes than the path length"""
    status_code = 409


class NetworkError(OnionRoutingError):
    """A forward to the next hop failed"""
    status_code = 502


class NextHopUnreachable(NetworkError):
    status_code = 502


__all__ = [
    'OnionRoutingError',
    'ValidationError',
    'DuplicateNode',
    'CryptoError',
    'DirectoryError',
    'DirectoryUnreachable',
    'InsufficientNodes',
    'NetworkError',
    'NextHopUnreachable',
]
