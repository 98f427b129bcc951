"""802.1X (EAPOL) authentication and the UDP keep-alive loop that follows it."""

from __future__ import annotations

import contextlib
import fcntl
import select
import socket
import struct
import subprocess
import time
from enum import Enum, IntEnum, auto
from ipaddress import IPv4Address

from .drcom import (
    DrcomSession,
    logoff_packet,
    parse_eap_error,
    response_identity,
    start_packet,
)
from .info import Settings
from .tracelog import LogLevel, LogType, TraceLog

SERVER_PORT = 61440
ETH_P_PAE = 0x888E
ETH_FRAME_LEN = 1514

BROADCAST_ADDR = b"\xff" * 6
MULTICAST_ADDR = bytes.fromhex("0180c2000003")
UNICAST_ADDR = bytes.fromhex("01d0f8000003")

HEARTBEAT_DELAY = 12
HEARTBEAT_TIMEOUT = 2
LOGOFF_WAIT = 0.5
RECV_DELAY = 1
RECV_TIMES = 3

_SIOCGIFFLAGS = 0x8913
_SIOCGIFADDR = 0x8915
_SIOCGIFHWADDR = 0x8927
_IFF_RUNNING = 0x40
_ARPHRD_ETHER = 1
_SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)


class EapCode(IntEnum):
    REQUEST = 1
    RESPONSE = 2
    SUCCESS = 3
    FAILURE = 4
    H3CDATA = 10


class EapType(IntEnum):
    IDENTITY = 1
    NOTIFICATION = 2
    MD5 = 4
    ALLOCATED_0X07 = 7
    ALLOCATED_0X08 = 8
    AVAILABLE = 20


class Outcome(Enum):
    """How a handler or an authentication attempt ended."""

    CONTINUE = auto()
    DONE = auto()
    RESTART = auto()
    UNREACHABLE = auto()
    FAILED = auto()
    TIME_NOT_ALLOWED = auto()


class AuthError(Exception):
    """Authentication cannot proceed at all."""


def eth_header(dest: bytes, src: bytes) -> bytes:
    """Ethernet header carrying an EAPOL payload."""
    dest, src = bytes(dest), bytes(src)
    if len(dest) != 6 or len(src) != 6:
        raise ValueError("MAC addresses must be 6 bytes long")
    return dest + src + struct.pack(">H", ETH_P_PAE)


def _ifreq(name: str, request: int, family: int = 0) -> bytes:
    ifr = struct.pack("16sH", name.encode()[:15], family).ljust(40, b"\x00")
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            return fcntl.ioctl(sock.fileno(), request, ifr)
        except OSError as exc:
            raise AuthError(f"{name}: {exc.strerror or exc}") from exc


def interface_running(name: str) -> bool:
    """Whether the interface reports its link as running."""
    (flags,) = struct.unpack_from("H", _ifreq(name, _SIOCGIFFLAGS), 16)
    return bool(flags & _IFF_RUNNING)


def interface_mac(name: str) -> bytes:
    """Hardware address of the interface."""
    return bytes(_ifreq(name, _SIOCGIFHWADDR, _ARPHRD_ETHER)[18:24])


def interface_ip(name: str) -> IPv4Address:
    """IPv4 address assigned to the interface."""
    return IPv4Address(bytes(_ifreq(name, _SIOCGIFADDR, socket.AF_INET)[20:24]))


def _cstring(data: bytes) -> str:
    return data.split(b"\x00", 1)[0].decode("utf-8", "replace")


class Authenticator:
    """Runs one authentication session over a raw EAPOL and a UDP socket."""

    def __init__(self, settings: Settings, log: TraceLog | None = None) -> None:
        self.settings = settings
        self.log = log if log is not None else TraceLog()
        self.session = DrcomSession()
        self.server_port = SERVER_PORT
        self.eap_socket: socket.socket | None = None
        self.udp_socket: socket.socket | None = None
        self.mac = bytes(6)
        self.server_mac = bytes(6)
        self.ip = IPv4Address("0.0.0.0")
        self.tries = RECV_TIMES
        self.success = False
        self.need_heartbeat = False
        self.last_hb_done = True
        self.base_heartbeat_time = 0.0
        self.time_not_allowed = False

    @property
    def header(self) -> bytes:
        return eth_header(self.server_mac, self.mac)

    @property
    def multicast_header(self) -> bytes:
        return eth_header(MULTICAST_ADDR, self.mac)

    @property
    def broadcast_header(self) -> bytes:
        return eth_header(BROADCAST_ADDR, self.mac)

    @property
    def unicast_header(self) -> bytes:
        return eth_header(UNICAST_ADDR, self.mac)

    def _write(self, logtype: LogType, level: LogLevel, message: str) -> None:
        self.log.write(logtype, level, message)

    # --- sockets -----------------------------------------------------------

    def _open_eap(self) -> None:
        device = self.settings.device
        if not hasattr(socket, "AF_PACKET"):
            raise AuthError("Raw packet sockets are not available on this platform.")
        try:
            sock = socket.socket(
                socket.AF_PACKET, socket.SOCK_RAW, socket.htons(ETH_P_PAE)
            )
        except OSError as exc:
            self._write(LogType.DOT1X, LogLevel.ERROR, f"Unable to create raw socket: {exc}")
            raise AuthError("Unable to initialize 802.1x socket.") from exc
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if not interface_running(device):
                self._write(LogType.INIT, LogLevel.ERROR, f"{device} link down. Please check it.")
                raise AuthError(f"{device} link down.")
            self._write(LogType.INIT, LogLevel.INF, f"{device} link up.")
            self.mac = interface_mac(device)
            sock.bind((device, ETH_P_PAE))
        except (OSError, AuthError) as exc:
            sock.close()
            self._write(LogType.DOT1X, LogLevel.ERROR, f"Unable to initialize 802.1x socket: {exc}")
            if isinstance(exc, AuthError):
                raise
            raise AuthError("Unable to initialize 802.1x socket.") from exc
        self.eap_socket = sock

    def _open_udp(self) -> None:
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as exc:
            self._write(LogType.DRCOM, LogLevel.ERROR, f"Create UDP socket failed: {exc}")
            raise AuthError("Unable to initialize UDP socket.") from exc
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setsockopt(
                socket.SOL_SOCKET, _SO_BINDTODEVICE, self.settings.device.encode()
            )
            sock.bind((str(self.ip), SERVER_PORT))
        except OSError as exc:
            sock.close()
            self._write(LogType.DRCOM, LogLevel.ERROR, f"UDP socket setup failed: {exc}")
            raise AuthError("Unable to initialize UDP socket.") from exc
        self.udp_socket = sock

    def _close_udp(self) -> None:
        if self.udp_socket is not None:
            self.udp_socket.close()
            self.udp_socket = None

    def _close_eap(self) -> None:
        if self.eap_socket is not None:
            self.eap_socket.close()
            self.eap_socket = None

    def close(self) -> None:
        """Close both sockets; safe to call more than once."""
        self._close_udp()
        self._close_eap()

    def _send_eap(self, packet: bytes) -> bool:
        if self.eap_socket is None:
            self._write(LogType.DOT1X, LogLevel.ERROR, "auth_8021x_Sender error: socket closed")
            return False
        try:
            sent = self.eap_socket.send(packet)
        except OSError as exc:
            self._write(LogType.DOT1X, LogLevel.ERROR, f"auth_8021x_Sender error: {exc}")
            return False
        if sent != len(packet):
            self._write(LogType.DOT1X, LogLevel.ERROR, "auth_8021x_Sender error: short write")
            return False
        self.log.hexdump(LogType.DOT1X, "Packet sent", packet)
        return True

    def _send_udp(self, packet: bytes) -> bool:
        if self.udp_socket is None:
            self._write(LogType.DRCOM, LogLevel.ERROR, "auth_UDP_Sender error: socket closed")
            return False
        target = (str(self.settings.udp_server), self.server_port)
        try:
            sent = self.udp_socket.sendto(packet, target)
        except OSError as exc:
            self._write(LogType.DRCOM, LogLevel.ERROR, f"auth_UDP_Sender error: {exc}")
            return False
        if sent != len(packet):
            self._write(LogType.DRCOM, LogLevel.ERROR, "auth_UDP_Sender error: short write")
            return False
        self.log.hexdump(LogType.DRCOM, "Packet sent", packet)
        return True

    def _receive_eap(self) -> bytes | None:
        try:
            data = self.eap_socket.recv(ETH_FRAME_LEN)
        except OSError:
            return None
        if len(data) >= 14 and data[0:6] == self.mac and data[12:14] == b"\x88\x8e":
            self.log.hexdump(LogType.DOT1X, "Packet received", data)
            return data
        return None

    def _receive_udp(self) -> bytes | None:
        try:
            data, addr = self.udp_socket.recvfrom(ETH_FRAME_LEN)
        except OSError:
            return None
        if (
            data
            and addr[0] == str(self.settings.udp_server)
            and (data[0] == 0x07 or data[:2] == b"\x4d\x38")
        ):
            self.log.hexdump(LogType.DRCOM, "Packet received", data)
            return data
        return None

    # --- protocol ----------------------------------------------------------

    def logoff(self) -> bool:
        """Send EAPOL-Logoff twice; True if the switch confirmed with a failure."""
        self._write(LogType.DOT1X, LogLevel.INF, "Client: Send Logoff.")
        logged_off = False
        for _ in range(2):
            self._write(LogType.DOT1X, LogLevel.DEBUG, "Sending logoff packet.")
            self._send_eap(logoff_packet(self.multicast_header))
            try:
                readable, _, _ = select.select([self.eap_socket], [], [], LOGOFF_WAIT)
            except (OSError, TypeError, ValueError) as exc:
                self._write(LogType.DOT1X, LogLevel.ERROR, f"Logoff: select socket failed: {exc}")
                raise AuthError("Logoff: select socket failed.") from exc
            if readable:
                frame = self._receive_eap()
                if frame is not None and len(frame) > 18 and frame[18] == EapCode.FAILURE:
                    self._write(LogType.DOT1X, LogLevel.INF, "Logged off.")
                    logged_off = True
        return logged_off

    def handle_eap(self, frame: bytes) -> Outcome:
        """React to one EAP frame from the switch, answering where needed."""
        frame = bytes(frame).ljust(ETH_FRAME_LEN, b"\x00")
        (pkg_len,) = struct.unpack(">H", frame[20:22])
        reply = b""
        code = frame[18]
        if code == EapCode.REQUEST:
            eap_type = frame[22]
            if eap_type == EapType.IDENTITY:
                self._write(LogType.DOT1X, LogLevel.INF, "Server: Request Identity.")
                reply = response_identity(
                    frame, self.header, self.settings.username, self.ip
                )
                self._write(LogType.DOT1X, LogLevel.INF, "Client: Response Identity.")
            elif eap_type == EapType.MD5:
                self._write(LogType.DOT1X, LogLevel.INF, "Server: Request MD5-Challenge.")
                reply = self.session.response_md5(
                    frame, self.header, self.settings.username,
                    self.settings.password, self.ip,
                )
                self._write(LogType.DOT1X, LogLevel.INF, "Client: Response MD5-Challenge.")
            elif eap_type == EapType.NOTIFICATION:
                text = _cstring(frame[23:23 + max(0, pkg_len - 5)])
                failure = parse_eap_error(text)
                if failure is not None:
                    self._write(
                        LogType.DOT1X, LogLevel.ERROR,
                        f"Server: Authentication failed: {failure.reason}",
                    )
                    if failure.time_not_allowed:
                        self.time_not_allowed = True
                        return Outcome.TIME_NOT_ALLOWED
                    return Outcome.FAILED
                self._write(LogType.DOT1X, LogLevel.INF, f"Server: Notification: {text}")
            elif eap_type == EapType.AVAILABLE:
                self._write(LogType.DOT1X, LogLevel.ERROR,
                            "Unexpected request type (AVAILABLE). Pls report it.")
            elif eap_type == EapType.ALLOCATED_0X07:
                self._write(LogType.DOT1X, LogLevel.ERROR,
                            "Unexpected request type (0x07). Pls report it.")
            elif eap_type == EapType.ALLOCATED_0X08:
                self._write(LogType.DOT1X, LogLevel.ERROR,
                            "Unexpected request type (0x08). Pls report it.")
            else:
                self._write(LogType.DOT1X, LogLevel.ERROR,
                            f"Unexpected request type (0x{eap_type:02x}). Pls report it.")
                self._write(LogType.DOT1X, LogLevel.ERROR, "Exit.")
                return Outcome.FAILED
        elif code == EapCode.FAILURE:
            self.success = False
            self.need_heartbeat = False
            errtype = frame[22]
            self._write(LogType.DOT1X, LogLevel.ERROR, "Server: Failure.")
            if self.tries > 0:
                self.tries -= 1
                time.sleep(RECV_DELAY)
                return Outcome.RESTART
            self._write(LogType.DOT1X, LogLevel.ERROR,
                        f"Reconnection failed. Server: errtype=0x{errtype:02x}")
            raise AuthError(f"Reconnection failed. Server: errtype=0x{errtype:02x}")
        elif code == EapCode.SUCCESS:
            self._write(LogType.DOT1X, LogLevel.INF, "Server: Success.")
            self.tries = RECV_TIMES
            self.success = True
            packet = self.session.misc_start_alive()
            time.sleep(RECV_DELAY)
            if self.settings.online_hook:
                subprocess.run(self.settings.online_hook, shell=True, check=False)
            self.need_heartbeat = True
            self.base_heartbeat_time = time.time()
            self.last_hb_done = False
            self._send_udp(packet)
        if reply:
            self._send_eap(reply)
        return Outcome.CONTINUE

    def handle_udp(self, data: bytes) -> bytes:
        """React to one UDP packet; return the reply to send, or b'' for none."""
        data = bytes(data).ljust(ETH_FRAME_LEN, b"\x00")
        reply = b""
        if data[0] == 0x07:
            kind = data[4]
            if kind == 0x02:
                time.sleep(1)
                self.need_heartbeat = False
                self.base_heartbeat_time = time.time()
                self.last_hb_done = True
                reply = self.session.misc_info(data, self.settings, self.mac, self.ip)
                self._write(LogType.DRCOM, LogLevel.INF,
                            "Server: MISC_RESPONSE_FOR_ALIVE. Send MISC_INFO.")
            elif kind == 0x04:
                self.session.store_tail(data)
                reply = self.session.heart_beat_01()
                self.need_heartbeat = True
                self._write(LogType.DRCOM, LogLevel.INF,
                            "Server: MISC_RESPONSE_INFO. Send MISC_HEART_BEAT_01.")
            elif kind == 0x0B:
                step = data[5]
                if step == 0x06:
                    reply = self.session.heart_beat_01()
                    self._write(LogType.DRCOM, LogLevel.INF,
                                "Server: MISC_FILE_TYPE. Send MISC_HEART_BEAT_01.")
                elif step == 0x02:
                    reply = self.session.heart_beat_03(data, self.ip)
                    self._write(LogType.DRCOM, LogLevel.INF,
                                "Server: MISC_HEART_BEAT_02. Send MISC_HEART_BEAT_03.")
                elif step == 0x04:
                    self.base_heartbeat_time = time.time()
                    self.last_hb_done = True
                    self._write(LogType.DRCOM, LogLevel.INF,
                                "Server: MISC_HEART_BEAT_04. Waiting next heart beat cycle.")
                else:
                    self._write(LogType.DRCOM, LogLevel.ERROR,
                                f"Server: Unexpected heart beat request (type:0x{step:02x})!")
            elif kind == 0x06:
                reply = self.session.heart_beat_01()
                self._write(LogType.DRCOM, LogLevel.INF,
                            "Server: MISC_RESPONSE_HEART_BEAT. Send MISC_HEART_BEAT_01.")
            else:
                self._write(LogType.DRCOM, LogLevel.ERROR,
                            f"UDP Server: Unexpected request (type:0x{kind:02x})!")
        if data[:2] == b"\x4d\x38":
            self._write(LogType.DRCOM, LogLevel.INF,
                        f"Server: Server Information: {_cstring(data[4:])}")
        return reply

    # --- session -----------------------------------------------------------

    def _print_info(self) -> None:
        self._write(LogType.INIT, LogLevel.INF, f"Hostname: {self.settings.hostname}")
        self._write(LogType.INIT, LogLevel.INF, f"IP: {self.ip}")
        self._write(LogType.INIT, LogLevel.INF, f"DNS: {self.settings.dns}")
        self._write(LogType.INIT, LogLevel.INF, f"UDP server: {self.settings.udp_server}")
        self._write(LogType.INIT, LogLevel.INF, "MAC: " + ":".join(f"{b:02x}" for b in self.mac))

    def _first_request(self) -> Outcome:
        packet = start_packet(self.multicast_header)
        self._send_eap(packet)
        self._write(LogType.DOT1X, LogLevel.INF, "Client: Multcast Start.")
        self.tries = RECV_TIMES
        while True:
            try:
                readable, _, _ = select.select([self.eap_socket], [], [], RECV_DELAY)
            except OSError as exc:
                self._write(LogType.DOT1X, LogLevel.ERROR,
                            f"Select socket for first packet failed: {exc}")
                readable = []
            if readable:
                frame = self._receive_eap()
                if frame is None:
                    continue
                self._write(LogType.DOT1X, LogLevel.INF, "Received the first request.")
                self.tries = RECV_TIMES
                self.server_mac = bytes(frame[6:12])
                outcome = self.handle_eap(frame)
                if outcome in (Outcome.CONTINUE, Outcome.TIME_NOT_ALLOWED):
                    return outcome
                return Outcome.FAILED
            if self.tries <= 0:
                self._write(LogType.DOT1X, LogLevel.ERROR, "Error! No Response")
                return Outcome.UNREACHABLE
            self.tries -= 1
            if packet[1] == 0xFF:
                packet = start_packet(self.multicast_header)
                self._send_eap(packet)
                self._write(LogType.DOT1X, LogLevel.INF, "Client: Multcast Start.")
            elif packet[1] == 0x80:
                packet = start_packet(self.broadcast_header)
                self._send_eap(packet)
                self._write(LogType.DOT1X, LogLevel.INF, "Client: Broadcast Start.")

    def _check_heartbeat(self) -> Outcome:
        if not (self.success and self.need_heartbeat):
            return Outcome.CONTINUE
        if not self.last_hb_done and time.time() - self.base_heartbeat_time > HEARTBEAT_TIMEOUT:
            self._write(LogType.DRCOM, LogLevel.ERROR, "Client: No response to last heartbeat.")
            return Outcome.RESTART
        if time.time() - self.base_heartbeat_time > HEARTBEAT_DELAY:
            packet = self.session.alive_heartbeat()
            self._write(LogType.DRCOM, LogLevel.INF, "Client: Send alive heartbeat.")
            if not self._send_udp(packet):
                return Outcome.RESTART
            self.base_heartbeat_time = time.time()
            self.last_hb_done = False
        return Outcome.CONTINUE

    def _session_loop(self) -> Outcome:
        outcome = self._first_request()
        if outcome is not Outcome.CONTINUE:
            return outcome
        self.base_heartbeat_time = time.time()
        while True:
            try:
                readable, _, _ = select.select(
                    [self.eap_socket, self.udp_socket], [], [], RECV_DELAY
                )
            except OSError as exc:
                self._write(LogType.ALL, LogLevel.ERROR, f"select socket failed: {exc}")
                return Outcome.FAILED
            if self.eap_socket in readable:
                frame = self._receive_eap()
                if frame is not None:
                    outcome = self.handle_eap(frame)
                    if outcome is not Outcome.CONTINUE:
                        return outcome
            if self.udp_socket in readable:
                data = self._receive_udp()
                if data is not None:
                    reply = self.handle_udp(data)
                    if self.success and reply:
                        self._send_udp(reply)
            outcome = self._check_heartbeat()
            if outcome is not Outcome.CONTINUE:
                return outcome

    def run(self, logoff: bool = False) -> Outcome:
        """Authenticate and keep the session alive until it ends.

        With ``logoff`` set, only log the interface off and return.
        """
        self._open_eap()
        try:
            logged_off = self.logoff()
            if logoff:
                return Outcome.DONE
            if logged_off:
                time.sleep(2)
            self.ip = interface_ip(self.settings.device)
            self._print_info()
            self._open_udp()
            try:
                return self._session_loop()
            finally:
                self.success = False
                self.need_heartbeat = False
                self.last_hb_done = True
                self._close_udp()
                with contextlib.suppress(AuthError):
                    self.logoff()
        finally:
            self._close_eap()