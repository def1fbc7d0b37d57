"""DHCP client: DISCOVER/OFFER/REQUEST/ACK over raw broadcast frames."""

from __future__ import annotations

import dataclasses
import logging
import struct
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable

from unistack.ethernet import BROADCAST_MAC, Ethernet, EtherType
from unistack.ipv4 import IPV4_HEADER_SIZE, IPv4Header, IpProtocol, checksum
from unistack.nic import NetConfig

logger = logging.getLogger(__name__)

DHCP_SERVER_PORT = 67
DHCP_CLIENT_PORT = 68
DHCP_MAGIC_COOKIE = 0x63825363
DHCP_TIMEOUT_MS = 5000
BOOTREQUEST = 1
BOOTREPLY = 2
FIXED_SIZE = 240
BROADCAST_FLAG = 0x8000
UDP_HEADER_SIZE = 8

_FIXED = struct.Struct(">BBBBIHH4s4s4s4s16s64s128sI")


class DhcpMessageType(IntEnum):
    DISCOVER = 1
    OFFER = 2
    REQUEST = 3
    DECLINE = 4
    ACK = 5
    NAK = 6
    RELEASE = 7


class DhcpOption(IntEnum):
    PAD = 0
    SUBNET_MASK = 1
    ROUTER = 3
    DNS = 6
    HOSTNAME = 12
    REQUESTED_IP = 50
    LEASE_TIME = 51
    MSG_TYPE = 53
    SERVER_ID = 54
    PARAM_REQ = 55
    END = 255


@dataclass
class DhcpLease:
    """Addresses learnt from the server, first octet in the lowest byte."""

    offered_ip: int = 0
    subnet_mask: int = 0
    gateway: int = 0
    dns: int = 0
    server_ip: int = 0


def parse_options(options: bytes) -> dict[int, bytes]:
    """Map option codes to their values, stopping at END or a truncated option."""
    options = bytes(options)
    found: dict[int, bytes] = {}
    i = 0
    while i < len(options):
        code = options[i]
        i += 1
        if code == DhcpOption.PAD:
            continue
        if code == DhcpOption.END or i >= len(options):
            break
        length = options[i]
        i += 1
        if i + length > len(options):
            break
        found[code] = options[i:i + length]
        i += length
    return found


def _ip_option(code: int, ip: int) -> bytes:
    return bytes([code, 4]) + ip.to_bytes(4, "little")


def build_packet(
    xid: int, mac: bytes, msg_type: int, offered_ip: int = 0, server_ip: int = 0
) -> bytes:
    """Build a client BOOTREQUEST; REQUEST messages name the offered address and server."""
    fixed = _FIXED.pack(
        BOOTREQUEST, 1, 6, 0,
        xid & 0xFFFFFFFF, 0, BROADCAST_FLAG,
        bytes(4), bytes(4), bytes(4), bytes(4),
        bytes(mac), b"", b"",
        DHCP_MAGIC_COOKIE,
    )
    options = bytes([DhcpOption.MSG_TYPE, 1, int(msg_type)])
    if msg_type == DhcpMessageType.REQUEST:
        options += _ip_option(DhcpOption.REQUESTED_IP, offered_ip)
        options += _ip_option(DhcpOption.SERVER_ID, server_ip)
    options += bytes([
        DhcpOption.PARAM_REQ, 3,
        DhcpOption.SUBNET_MASK, DhcpOption.ROUTER, DhcpOption.DNS,
        DhcpOption.END,
    ])
    return fixed + options


def build_frame(packet: bytes) -> bytes:
    """Wrap a DHCP packet in UDP and IPv4 headers from 0.0.0.0 to broadcast."""
    packet = bytes(packet)
    udp = struct.pack(
        ">HHHH", DHCP_CLIENT_PORT, DHCP_SERVER_PORT, UDP_HEADER_SIZE + len(packet), 0
    )
    header = IPv4Header(
        total_length=IPV4_HEADER_SIZE + UDP_HEADER_SIZE + len(packet),
        protocol=IpProtocol.UDP,
        src_ip=0,
        dst_ip=0xFFFFFFFF,
    )
    header = dataclasses.replace(header, checksum=checksum(header.pack()))
    return header.pack() + udp + packet


class Dhcp:
    """Obtains an address lease and applies it to the interface configuration."""

    def __init__(
        self,
        ethernet: Ethernet,
        config: NetConfig,
        poll: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ethernet = ethernet
        self._config = config
        self._poll = poll if poll is not None else (lambda: None)
        self._clock = clock
        self.timeout = DHCP_TIMEOUT_MS / 1000
        self.lease = DhcpLease()
        self.xid = self._new_xid()
        self._got_offer = False
        self._got_ack = False

    def _new_xid(self) -> int:
        return int(self._clock() * 1000) & 0xFFFFFFFF

    def receive(self, data: bytes, src_ip: int) -> None:
        """Take an OFFER or ACK for our transaction; anything else is ignored."""
        data = bytes(data)
        if len(data) < FIXED_SIZE:
            return
        fields = _FIXED.unpack_from(data)
        op, xid, yiaddr, magic = fields[0], fields[4], fields[8], fields[14]
        if op != BOOTREPLY or xid != self.xid or magic != DHCP_MAGIC_COOKIE:
            return
        options = parse_options(data[FIXED_SIZE:])
        msg_type = options.get(DhcpOption.MSG_TYPE, b"\x00")[:1]
        msg_type = msg_type[0] if msg_type else 0
        if msg_type not in (DhcpMessageType.OFFER, DhcpMessageType.ACK):
            return
        self.lease.offered_ip = int.from_bytes(yiaddr, "little")
        for code, attribute in (
            (DhcpOption.SUBNET_MASK, "subnet_mask"),
            (DhcpOption.ROUTER, "gateway"),
            (DhcpOption.DNS, "dns"),
            (DhcpOption.SERVER_ID, "server_ip"),
        ):
            value = options.get(code)
            if value is not None and len(value) >= 4:
                setattr(self.lease, attribute, int.from_bytes(value[:4], "little"))
        if msg_type == DhcpMessageType.OFFER:
            self._got_offer = True
        else:
            self._got_ack = True

    def _send(self, msg_type: DhcpMessageType) -> None:
        packet = build_packet(
            self.xid,
            self._ethernet.nic.mac,
            msg_type,
            self.lease.offered_ip,
            self.lease.server_ip,
        )
        if not self._ethernet.send(BROADCAST_MAC, EtherType.IPV4, build_frame(packet)):
            logger.error("DHCP: Failed to send %s", msg_type.name)
            raise OSError(f"DHCP: Failed to send {msg_type.name}")

    def _wait(self, done: Callable[[], bool]) -> bool:
        start = self._clock()
        while not done() and self._clock() - start < self.timeout:
            self._poll()
        return done()

    def request(self) -> DhcpLease:
        """Run the exchange and configure the interface; TimeoutError if the server is silent."""
        self._got_offer = False
        self._got_ack = False
        self.xid = self._new_xid()

        self._send(DhcpMessageType.DISCOVER)
        if not self._wait(lambda: self._got_offer):
            logger.warning("DHCP: No OFFER received")
            raise TimeoutError("DHCP: No OFFER received")

        self._send(DhcpMessageType.REQUEST)
        if not self._wait(lambda: self._got_ack):
            logger.warning("DHCP: No ACK received")
            raise TimeoutError("DHCP: No ACK received")

        self._config.configure_ip(self.lease.offered_ip)
        self._config.netmask = self.lease.subnet_mask
        self._config.gateway = self.lease.gateway
        return dataclasses.replace(self.lease)