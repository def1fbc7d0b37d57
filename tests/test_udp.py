import struct

import pytest

from unistack.arp import Arp
from unistack.ethernet import Ethernet, PayloadTooLargeError
from unistack.ipv4 import IPv4, IPv4Header, IpProtocol, ip_make
from unistack.nic import LoopbackNic, NetConfig
from unistack.udp import (
    EPHEMERAL_PORT,
    UDP_MAX_PAYLOAD,
    UDP_MAX_SOCKETS,
    Datagram,
    Udp,
    udp_checksum,
)

LOCAL_MAC = bytes.fromhex("02000000000a")
PEER_MAC = bytes.fromhex("02000000000b")
LOCAL_IP = ip_make(10, 0, 2, 15)
PEER_IP = ip_make(10, 0, 2, 2)


def make_stack():
    nic = LoopbackNic(LOCAL_MAC)
    ethernet = Ethernet(nic)
    config = NetConfig(netmask=ip_make(255, 255, 255, 0))
    config.configure_ip(LOCAL_IP)
    arp = Arp(ethernet, config)
    arp.table.add(PEER_IP, PEER_MAC)
    ipv4 = IPv4(ethernet, arp, config)
    return nic, ipv4, Udp(ipv4, config)


def segment(src_port, dst_port, data, length=None):
    if length is None:
        length = 8 + len(data)
    return struct.pack(">HHHH", src_port, dst_port, length, 0) + data


def test_send_builds_valid_segment():
    nic, _, udp = make_stack()
    assert udp.send(PEER_IP, 4000, 53, b"query") is True
    frame = nic.sent[-1]
    header = IPv4Header.unpack(frame[14:])
    assert header.protocol == IpProtocol.UDP
    seg = frame[34:]
    assert struct.unpack_from(">HHH", seg) == (4000, 53, 8 + len(b"query"))
    assert seg[8:] == b"query"
    assert udp_checksum(LOCAL_IP, PEER_IP, seg) == 0


def test_send_rejects_oversized_payload():
    nic, _, udp = make_stack()
    with pytest.raises(PayloadTooLargeError):
        udp.send(PEER_IP, 1, 2, bytes(UDP_MAX_PAYLOAD + 1))
    assert nic.sent == []


def test_bound_socket_receives_datagram_once():
    _, _, udp = make_stack()
    sock = udp.socket()
    sock.bind(5000)
    udp.receive(segment(6000, 5000, b"payload"), PEER_IP, LOCAL_IP)
    assert sock.recvfrom() == Datagram(b"payload", PEER_IP, 6000)
    assert sock.recvfrom() is None


def test_recvfrom_truncates_to_max_len():
    _, _, udp = make_stack()
    sock = udp.socket()
    sock.bind(5000)
    udp.receive(segment(6000, 5000, b"abcdef"), PEER_IP, LOCAL_IP)
    assert sock.recvfrom(3).data == b"abc"


def test_newer_datagram_replaces_waiting_one():
    _, _, udp = make_stack()
    sock = udp.socket()
    sock.bind(5000)
    udp.receive(segment(6000, 5000, b"first"), PEER_IP, LOCAL_IP)
    udp.receive(segment(6001, 5000, b"second"), PEER_IP, LOCAL_IP)
    assert sock.recvfrom() == Datagram(b"second", PEER_IP, 6001)


def test_bad_length_field_is_dropped():
    _, _, udp = make_stack()
    sock = udp.socket()
    sock.bind(5000)
    udp.receive(segment(6000, 5000, b"abc", length=40), PEER_IP, LOCAL_IP)
    udp.receive(segment(6000, 5000, b"abc", length=4), PEER_IP, LOCAL_IP)
    assert sock.recvfrom() is None


def test_duplicate_bind_raises():
    _, _, udp = make_stack()
    first = udp.socket()
    first.bind(5000)
    second = udp.socket()
    with pytest.raises(OSError):
        second.bind(5000)


def test_recvfrom_unbound_raises():
    _, _, udp = make_stack()
    with pytest.raises(OSError):
        udp.socket().recvfrom()


def test_fallback_gets_unclaimed_port():
    _, _, udp = make_stack()
    seen = []
    udp.set_fallback(68, lambda payload, src_ip: seen.append((payload, src_ip)))
    udp.receive(segment(67, 68, b"offer"), PEER_IP, 0xFFFFFFFF)
    udp.receive(segment(67, 69, b"other"), PEER_IP, 0xFFFFFFFF)
    assert seen == [(b"offer", PEER_IP)]


def test_unbound_sendto_uses_ephemeral_port():
    nic, _, udp = make_stack()
    sock = udp.socket()
    assert sock.sendto(PEER_IP, 53, b"x") is True
    src_port, dst_port = struct.unpack_from(">HH", nic.sent[-1], 34)
    assert (src_port, dst_port) == (EPHEMERAL_PORT, 53)


def test_socket_limit_and_close_frees_slot():
    _, _, udp = make_stack()
    sockets = [udp.socket() for _ in range(UDP_MAX_SOCKETS)]
    with pytest.raises(OSError):
        udp.socket()
    sockets[0].close()
    replacement = udp.socket()
    replacement.bind(7000)
    assert replacement.port == 7000


def test_closed_socket_port_can_be_rebound():
    _, _, udp = make_stack()
    with udp.socket() as sock:
        sock.bind(5000)
    other = udp.socket()
    other.bind(5000)
    udp.receive(segment(1, 5000, b"ok"), PEER_IP, LOCAL_IP)
    assert other.recvfrom().data == b"ok"