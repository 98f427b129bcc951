import socket
import struct
from ipaddress import IPv4Address
from unittest import mock

import pytest

from scutdrcom.auth import (
    MULTICAST_ADDR,
    AuthError,
    Authenticator,
    Outcome,
    eth_header,
    interface_mac,
)
from scutdrcom.drcom import encrypt_info, fill_md5_area, logoff_packet, response_identity
from scutdrcom.info import Settings
from scutdrcom.tracelog import LogLevel, TraceLog

CLIENT_MAC = bytes.fromhex("020000000001")
SERVER_MAC = bytes.fromhex("020000000002")
CLIENT_IP = IPv4Address("10.0.0.2")


def eap_frame(code, ident=5, eap_type=0, payload=b""):
    length = struct.pack(">H", 5 + len(payload))
    return (
        CLIENT_MAC + SERVER_MAC + b"\x88\x8e"
        + b"\x01\x00" + length
        + bytes([code, ident]) + length
        + bytes([eap_type]) + payload
    )


@pytest.fixture
def pair():
    ours, peer = socket.socketpair(socket.AF_UNIX, socket.SOCK_DGRAM)
    peer.settimeout(2)
    yield ours, peer
    ours.close()
    peer.close()


@pytest.fixture
def udp_server():
    server = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    server.bind(("127.0.0.1", 0))
    server.settimeout(2)
    yield server
    server.close()


@pytest.fixture
def auth(tmp_path, pair, udp_server):
    password = "password"
    settings = Settings(
        username="student",
        password=password,
        hostname="host",
        udp_server=IPv4Address("127.0.0.1"),
    )
    client = Authenticator(settings, TraceLog(tmp_path / "client.log", LogLevel.INF))
    client.eap_socket = pair[0]
    client.udp_socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    client.server_port = udp_server.getsockname()[1]
    client.mac = CLIENT_MAC
    client.server_mac = SERVER_MAC
    client.ip = CLIENT_IP
    yield client
    client.close()


def test_eth_header_layout():
    header = eth_header(MULTICAST_ADDR, CLIENT_MAC)
    assert header == MULTICAST_ADDR + CLIENT_MAC + b"\x88\x8e"
    assert len(header) == 14


def test_eth_header_rejects_bad_mac():
    with pytest.raises(ValueError):
        eth_header(b"\x01\x02", CLIENT_MAC)


def test_interface_mac_unknown_interface():
    with pytest.raises(AuthError):
        interface_mac("nosuchif0")


def test_headers_follow_mac(auth):
    assert auth.header[:6] == SERVER_MAC
    assert auth.header[6:12] == CLIENT_MAC
    assert auth.multicast_header[:6] == bytes.fromhex("0180c2000003")
    assert auth.broadcast_header[:6] == b"\xff" * 6


def test_identity_request_is_answered(auth, pair):
    frame = eap_frame(1, ident=7, eap_type=1)
    assert auth.handle_eap(frame) is Outcome.CONTINUE
    sent = pair[1].recv(2048)
    assert sent == response_identity(frame, auth.header, "student", CLIENT_IP)
    assert sent[18] == 2
    assert sent[19] == 7


def test_md5_request_is_answered(auth, pair):
    challenge = bytes(range(16))
    frame = eap_frame(1, ident=9, eap_type=4, payload=b"\x10" + challenge)
    assert auth.handle_eap(frame) is Outcome.CONTINUE
    sent = pair[1].recv(2048)
    digest = fill_md5_area(9, "password", challenge)
    assert sent[22] == 4
    assert sent[24:40] == digest
    assert bytes(auth.session.crc_md5_info) == digest


def test_notification_with_account_error_fails(auth):
    frame = eap_frame(1, eap_type=2, payload=b"userid error1")
    assert auth.handle_eap(frame) is Outcome.FAILED


def test_notification_outside_allowed_time(auth):
    frame = eap_frame(1, eap_type=2, payload=b"Authentication Fail ErrCode=16")
    assert auth.handle_eap(frame) is Outcome.TIME_NOT_ALLOWED
    assert auth.time_not_allowed is True


def test_plain_notification_continues(auth, pair):
    frame = eap_frame(1, eap_type=2, payload=b"welcome")
    assert auth.handle_eap(frame) is Outcome.CONTINUE
    pair[1].settimeout(0.2)
    with pytest.raises(socket.timeout):
        pair[1].recv(2048)


def test_unknown_request_type_fails(auth):
    assert auth.handle_eap(eap_frame(1, eap_type=0x33)) is Outcome.FAILED


@mock.patch("time.sleep")
def test_failure_restarts_while_tries_remain(mock_sleep, auth):
    auth.tries = 2
    auth.success = True
    assert auth.handle_eap(eap_frame(4)) is Outcome.RESTART
    assert auth.tries == 1
    assert auth.success is False
    mock_sleep.assert_called_once_with(1)


@mock.patch("time.sleep")
def test_failure_without_tries_raises(mock_sleep, auth):
    auth.tries = 0
    with pytest.raises(AuthError):
        auth.handle_eap(eap_frame(4))


@mock.patch("time.sleep")
def test_success_starts_keep_alive(mock_sleep, auth, udp_server):
    auth.tries = 1
    assert auth.handle_eap(eap_frame(3)) is Outcome.CONTINUE
    assert udp_server.recv(2048) == b"\x07\x00\x08\x00\x01\x00\x00\x00"
    assert auth.success is True
    assert auth.need_heartbeat is True
    assert auth.last_hb_done is False
    assert auth.tries == 3


def test_response_info_stores_tail(auth):
    data = bytearray(32)
    data[0] = 0x07
    data[4] = 0x04
    data[16:32] = bytes(range(1, 17))
    reply = auth.handle_udp(bytes(data))
    assert auth.session.tail_info == encrypt_info(bytes(range(1, 17)))
    assert len(reply) == 40
    assert reply[4:6] == b"\x0b\x01"
    assert auth.need_heartbeat is True


def test_heart_beat_02_gets_03(auth):
    data = bytearray(40)
    data[0], data[4], data[5] = 0x07, 0x0B, 0x02
    data[16:20] = b"\xaa\xbb\xcc\xdd"
    reply = auth.handle_udp(bytes(data))
    assert reply[5] == 0x03
    assert reply[16:20] == b"\xaa\xbb\xcc\xdd"
    assert reply[28:32] == CLIENT_IP.packed


def test_heart_beat_04_completes_cycle(auth):
    auth.last_hb_done = False
    data = bytes([0x07, 0, 0, 0, 0x0B, 0x04])
    assert auth.handle_udp(data) == b""
    assert auth.last_hb_done is True


@mock.patch("time.sleep")
def test_response_for_alive_sends_info(mock_sleep, auth):
    auth.need_heartbeat = True
    data = bytes([0x07, 0, 0, 0, 0x02, 0, 0, 0, 1, 2, 3, 4])
    reply = auth.handle_udp(data)
    assert reply[0] == 0x07
    assert reply[4] == 0x03
    assert reply[6:12] == CLIENT_MAC
    assert reply[20:24] == b"\x01\x02\x03\x04"
    assert len(reply) % 4 == 0
    assert auth.need_heartbeat is False


def test_unexpected_udp_type_has_no_reply(auth):
    assert auth.handle_udp(bytes([0x07, 0, 0, 0, 0x55])) == b""


def test_logoff_confirmed_by_failure(auth, pair):
    pair[1].send(eap_frame(4))
    assert auth.logoff() is True
    first = pair[1].recv(2048)
    second = pair[1].recv(2048)
    assert first == second == logoff_packet(auth.multicast_header)
    assert first[15] == 0x02


def test_logoff_without_reply(auth, pair):
    assert auth.logoff() is False
    assert pair[1].recv(2048)[:6] == MULTICAST_ADDR


def test_close_is_idempotent(auth, pair):
    eap = auth.eap_socket
    auth.close()
    auth.close()
    assert auth.eap_socket is None
    assert auth.udp_socket is None
    assert eap.fileno() == -1