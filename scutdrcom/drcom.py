"""Packet builders for the EAPOL and UDP keep-alive protocol."""

from __future__ import annotations

import hashlib
import re
import struct
import time
from dataclasses import dataclass, field
from ipaddress import IPv4Address

from .info import Settings

PACKET_MIN_LEN = 96
_CRC_MULTIPLIER = 19680126

EAP_RESPONSE = 2
EAP_TYPE_IDENTITY = 1
EAP_TYPE_MD5 = 4


def drcom_crc32(data: bytes) -> int:
    """Checksum of little-endian 32-bit words, as the server expects it."""
    data = bytes(data)
    padded = data + bytes(-len(data) % 4)
    acc = 0
    for (word,) in struct.iter_unpack("<I", padded):
        acc ^= word
    return (acc * _CRC_MULTIPLIER) & 0xFFFFFFFF


def encrypt_info(info: bytes) -> bytes:
    """Rotate byte ``i`` of a 16-byte block left by ``i % 8`` bits."""
    if len(info) < 16:
        raise ValueError("info block must hold 16 bytes")
    return bytes(
        ((b << (i & 7)) + (b >> (8 - (i & 7)))) & 0xFF
        for i, b in enumerate(bytes(info[:16]))
    )


def fill_md5_area(ident: int, password: str, challenge: bytes) -> bytes:
    """MD5 of the EAP id, the password and the 16-byte challenge."""
    message = bytes([ident & 0xFF]) + password.encode() + bytes(challenge[:16])
    return hashlib.md5(message).digest()


def _ip_bytes(ip: IPv4Address | str) -> bytes:
    return IPv4Address(ip).packed


def _eapol(header: bytes, body: bytes, fill: int = 0x00) -> bytes:
    packet = bytes(header[:14]) + body
    if len(packet) < PACKET_MIN_LEN:
        packet += bytes([fill]) * (PACKET_MIN_LEN - len(packet))
    return packet


def start_packet(header: bytes) -> bytes:
    """EAPOL-Start frame, zero-padded to 96 bytes."""
    return _eapol(header, b"\x01\x01\x00\x00")


def logoff_packet(header: bytes) -> bytes:
    """EAPOL-Logoff frame, padded with 0xa5 to 96 bytes."""
    return _eapol(header, b"\x01\x02\x00\x00", fill=0xA5)


def response_identity(
    request: bytes, header: bytes, username: str, ip: IPv4Address | str
) -> bytes:
    """EAP Response/Identity answering ``request``."""
    user = username.encode()
    length = struct.pack(">H", (len(user) + 14) & 0xFFFF)
    body = (
        b"\x01\x00" + length
        + bytes([EAP_RESPONSE, request[19]]) + length
        + bytes([EAP_TYPE_IDENTITY])
        + user
        + b"\x00\x44\x61\x00\x00"
        + _ip_bytes(ip)
    )
    return _eapol(header, body)


@dataclass(frozen=True)
class EapFailure:
    """Reason reported by the switch in a failing notification."""

    reason: str
    time_not_allowed: bool = False


_USERID_RE = re.compile(r"userid error\s*([+-]?\d+)")
_AUTHFAIL_RE = re.compile(r"Authentication Fail\s*ErrCode=\s*([+-]?\d+)")

_USERID_REASONS = {
    1: "Account does not exist.",
    2: "Username or password invalid.",
    3: "Username or password invalid.",
    4: "This account might be expended.",
}

_AUTHFAIL_REASONS = {
    0: "Username or password invalid.",
    5: "This account is suspended.",
    9: "This account might be expended.",
    11: "You are not allowed to perform a radius authentication.",
    16: "You are not allowed to access the internet now.",
    30: "No more time available for this account.",
    63: "No more time available for this account.",
}


def _code(pattern: re.Pattern, text: str) -> int | None:
    match = pattern.match(text)
    return int(match.group(1)) if match else None


def parse_eap_error(text: str) -> EapFailure | None:
    """Interpret a notification string; ``None`` if it is not a failure."""
    if text.startswith("userid error"):
        code = _code(_USERID_RE, text)
        return EapFailure(_USERID_REASONS.get(code, text))
    if text.startswith("Authentication Fail"):
        code = _code(_AUTHFAIL_RE, text)
        return EapFailure(_AUTHFAIL_REASONS.get(code, text), time_not_allowed=code == 16)
    if text.startswith("AdminReset"):
        return EapFailure(text)
    if "Mac, IP, NASip, PORT" in text:
        return EapFailure("You are not allowed to login using current IP/MAC address.")
    if "flowover" in text:
        return EapFailure("Data usage has reached the limit.")
    if "In use" in text:
        return EapFailure("This account is in use.")
    return None


@dataclass
class DrcomSession:
    """State carried between the packets of one authenticated session."""

    package_id: int = 0
    crc_md5_info: bytearray = field(default_factory=lambda: bytearray(16))
    misc1_flux: bytes = bytes(4)
    misc3_flux: bytes = bytes(4)
    tail_info: bytes = bytes(16)

    def __init__(self) -> None:
        self.package_id = 0
        self.crc_md5_info = bytearray(16)
        self.misc1_flux = bytes(4)
        self.misc3_flux = bytes(4)
        self.tail_info = bytes(16)

    def _next_id(self) -> int:
        ident = self.package_id & 0xFF
        self.package_id += 1
        return ident

    def response_md5(
        self,
        request: bytes,
        header: bytes,
        username: str,
        password: str,
        ip: IPv4Address | str,
    ) -> bytes:
        """EAP Response/MD5-Challenge; remembers the digest for keep-alives."""
        user = username.encode()
        digest = fill_md5_area(request[19], password, request[24:40])
        self.crc_md5_info[:] = digest
        length = struct.pack(">H", (len(user) + 31) & 0xFFFF)
        body = (
            b"\x01\x00" + length
            + bytes([EAP_RESPONSE, request[19]]) + length
            + bytes([EAP_TYPE_MD5, 0x10])
            + digest
            + user
            + b"\x00\x44\x61\x2a\x00"
            + _ip_bytes(ip)
        )
        return _eapol(header, body)

    def misc_start_alive(self) -> bytes:
        """First UDP packet after EAP success."""
        return bytes([0x07, 0x00, 0x08, 0x00, 0x01, 0x00, 0x00, 0x00])

    def misc_info(
        self, recv_data: bytes, settings: Settings, mac: bytes, ip: IPv4Address | str
    ) -> bytes:
        """MISC_INFO packet describing this host, with its checksum filled in."""
        user = settings.username.encode()
        if len(user) > 32:
            raise ValueError("username longer than 32 bytes")
        host = settings.hostname.encode()[:32].ljust(32, b"\x00")
        packet = bytearray()
        packet += bytes([0x07, 0x01, 0xF4, 0x00, 0x03, len(user)])
        packet += bytes(mac[:6])
        packet += _ip_bytes(ip)
        packet += b"\x02\x22\x00\x2a"
        packet += bytes(recv_data[8:12])
        packet += b"\xc7\x2f\x31\x01\x7e\x00\x00\x00"
        packet += user + host[: 32 - len(user)]
        packet += bytes(12)
        packet += settings.dns.packed
        packet += bytes(16)
        packet += bytes.fromhex("94000000" "06000000" "02000000" "f0230000" "02000000")
        packet += bytes(settings.version[:64]).ljust(64, b"\x00")
        packet += settings.hash.encode()[:64].ljust(64, b"\x00")
        packet += bytes(-len(packet) % 4)
        packet[2:4] = struct.pack("<H", len(packet) & 0xFFFF)
        crc = struct.pack("<I", drcom_crc32(packet))
        packet[24:28] = crc
        self.crc_md5_info[:4] = crc
        packet[28] = 0x00
        return bytes(packet)

    def store_tail(self, recv_data: bytes) -> None:
        """Keep the decoded tail of a MISC_RESPONSE_INFO packet."""
        self.tail_info = encrypt_info(recv_data[16:32])

    def _heart_beat(self, step: int, flux: bytes) -> bytearray:
        packet = bytearray(40)
        packet[:8] = bytes([0x07, self._next_id(), 0x28, 0x00, 0x0B, step, 0xDC, 0x02])
        packet[16:20] = bytes(flux[:4]).ljust(4, b"\x00")
        return packet

    def heart_beat_01(self) -> bytes:
        """First packet of a heart-beat exchange."""
        return bytes(self._heart_beat(0x01, self.misc1_flux))

    def heart_beat_03(self, recv_data: bytes, ip: IPv4Address | str) -> bytes:
        """Answer to the server's second heart-beat packet."""
        self.misc3_flux = bytes(recv_data[16:20])
        packet = self._heart_beat(0x03, self.misc3_flux)
        packet[28:32] = _ip_bytes(ip)
        return bytes(packet)

    def alive_heartbeat(self, now: float | None = None) -> bytes:
        """Periodic keep-alive carrying the session digest and tail."""
        stamp = int(time.time() if now is None else now)
        return (
            b"\xff"
            + bytes(self.crc_md5_info)
            + b"\x00\x00\x00"
            + self.tail_info
            + struct.pack("<H", stamp & 0xFFFF)
        )