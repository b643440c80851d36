"""
Fixed-width routable addresses.

An address is the TCP port of an endpoint written as a zero-padded decimal
string of ADDRESS_FIELD_WIDTH characters, so every hop can cut it off the
front of a decrypted layer without a length prefix.
"""
from onion_config import ADDRESS_FIELD_WIDTH, MAX_ADDRESS
from onion_errors import ValidationError


def encode_address(value: int) -> str:
    """12 -> '0000000012'"""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Address must be an integer, got {type(value).__name__}")
    if not 0 <= value <= MAX_ADDRESS:
        raise ValidationError(f"Address {value} outside 0..{MAX_ADDRESS}")
    return str(value).zfill(ADDRESS_FIELD_WIDTH)


def decode_address(field: str) -> int:
    if len(field) != ADDRESS_FIELD_WIDTH or not field.isdigit() or not field.isascii():
        raise ValidationError(f"Malformed address field: {field!r}")
    return int(field)


def address_to_bytes(address: str) -> bytes:
    return address.encode("ascii")


def address_from_bytes(raw: bytes) -> str:
    """Parse the address prefix of a decrypted layer"""
    if len(raw) != ADDRESS_FIELD_WIDTH:
        raise ValidationError(f"Address field must be {ADDRESS_FIELD_WIDTH} bytes, got {len(raw)}")
    try:
        address = raw.decode("ascii")
    except UnicodeDecodeError:
        raise ValidationError("Address field is not ASCII")
    decode_address(address)
    return address
