"""
UUIDv7 helpers: time-ordered identifiers for pipeline rows and correlation ids
"""
import uuid
import time
import random


def uuid7() -> uuid.UUID:
    """
    Generate a UUIDv7.

    Layout: 48-bit millisecond timestamp, version nibble 0111, variant bits 10,
    the remaining bits random. Rows inserted later sort later, which keeps
    order and audit ids clustered in B-tree indexes.
    """
    timestamp_ms = int(time.time() * 1000)
    uuid_bytes = bytearray(timestamp_ms.to_bytes(6, byteorder='big') + random.randbytes(10))

    # version 7
    uuid_bytes[6] = (uuid_bytes[6] & 0x0f) | 0x70
    # RFC 4122 variant
    uuid_bytes[8] = (uuid_bytes[8] & 0x3f) | 0x80

    return uuid.UUID(bytes=bytes(uuid_bytes))


def uuid7_str() -> str:
    """Generate UUIDv7 as string"""
    return str(uuid7())
