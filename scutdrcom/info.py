"""Client settings and hex string decoding."""

from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv4Address

DEFAULT_UDP_SERVER = IPv4Address("202.38.210.131")
DEFAULT_DNS = IPv4Address("222.201.130.30")
DEFAULT_HASH = "2ec15ad258aee9604b18f2f8114da38db16efd00"
DEFAULT_VERSION = bytes([0x44, 0x72, 0x43, 0x4F, 0x4D, 0x00, 0x96, 0x02, 0x2A])
VERSION_SIZE = 64


def _nibble(char: str) -> int:
    code = ord(char.upper())
    return (code - 0x37 if code > 0x39 else code - 0x30) & 0xFF


def hex_to_bytes(source: str, limit: int = VERSION_SIZE) -> bytes:
    """Decode pairs of hex digits from ``source``, at most ``limit`` bytes.

    A trailing unpaired digit is ignored.
    """
    pairs = zip(source[0::2], source[1::2])
    return bytes(
        ((_nibble(high) << 4) | _nibble(low)) & 0xFF
        for _, (high, low) in zip(range(limit), pairs)
    )


@dataclass
class Settings:
    """Everything the client needs to know to authenticate."""

    username: str = ""
    password: str = ""
    device: str = "eth0"
    hostname: str = ""
    udp_server: IPv4Address = DEFAULT_UDP_SERVER
    dns: IPv4Address = DEFAULT_DNS
    hash: str = DEFAULT_HASH
    version: bytes = DEFAULT_VERSION
    online_hook: str | None = None
    offline_hook: str | None = None