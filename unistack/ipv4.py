"""IPv4 packet handling: header checksum, demultiplexing and routing to the next hop."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable

from unistack.arp import Arp
from unistack.ethernet import Ethernet, EtherType, PayloadTooLargeError
from unistack.nic import NetConfig

logger = logging.getLogger(__name__)

IPV4_HEADER_SIZE = 20
IPV4_DEFAULT_TTL = 64
MAX_PAYLOAD = 1480
BROADCAST_IP = 0xFFFFFFFF

_FIXED = struct.Struct(">BBHHHBBH")

PacketHandler = Callable[[bytes, int, int], None]


class IpProtocol(IntEnum):
    ICMP = 1
    TCP = 6
    UDP = 17


def checksum(data: bytes) -> int:
    """Internet one's-complement checksum, to be stored big-endian."""
    data = bytes(data)
    if len(data) % 2:
        data += b"\x00"
    total = sum(struct.unpack(f">{len(data) // 2}H", data))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def ip_make(a: int, b: int, c: int, d: int) -> int:
    """Build an address from its four octets, first octet in the lowest byte."""
    return a | (b << 8) | (c << 16) | (d << 24)


def ip_format(ip: int) -> str:
    return ".".join(str(octet) for octet in ip.to_bytes(4, "little"))


@dataclass(frozen=True)
class IPv4Header:
    """An IPv4 header without options."""

    total_length: int = IPV4_HEADER_SIZE
    protocol: int = 0
    src_ip: int = 0
    dst_ip: int = 0
    version_ihl: int = 0x45
    tos: int = 0
    identification: int = 0
    flags_fragment: int = 0
    ttl: int = IPV4_DEFAULT_TTL
    checksum: int = 0

    @property
    def version(self) -> int:
        return (self.version_ihl >> 4) & 0x0F

    @property
    def header_length(self) -> int:
        return (self.version_ihl & 0x0F) * 4

    def pack(self) -> bytes:
        return (
            _FIXED.pack(
                self.version_ihl,
                self.tos,
                self.total_length,
                self.identification,
                self.flags_fragment,
                self.ttl,
                self.protocol,
                self.checksum,
            )
            + self.src_ip.to_bytes(4, "little")
            + self.dst_ip.to_bytes(4, "little")
        )

    @classmethod
    def unpack(cls, data: bytes) -> IPv4Header:
        if len(data) < IPV4_HEADER_SIZE:
            raise ValueError(f"IPv4 header needs {IPV4_HEADER_SIZE} bytes, got {len(data)}")
        (version_ihl, tos, total_length, identification,
         flags_fragment, ttl, protocol, header_checksum) = _FIXED.unpack_from(data)
        return cls(
            total_length=total_length,
            protocol=protocol,
            src_ip=int.from_bytes(data[12:16], "little"),
            dst_ip=int.from_bytes(data[16:20], "little"),
            version_ihl=version_ihl,
            tos=tos,
            identification=identification,
            flags_fragment=flags_fragment,
            ttl=ttl,
            checksum=header_checksum,
        )


class IPv4:
    """Sends packets through ARP-resolved next hops and dispatches received ones."""

    def __init__(self, ethernet: Ethernet, arp: Arp, config: NetConfig) -> None:
        self._ethernet = ethernet
        self._arp = arp
        self._config = config
        self._handlers: dict[int, PacketHandler] = {}
        self._next_id = 0
        ethernet.register(EtherType.IPV4, lambda payload, _src_mac: self.receive(payload))

    def register(self, protocol: int, handler: PacketHandler) -> None:
        """Deliver payloads of ``protocol`` to ``handler(payload, src_ip, dst_ip)``."""
        self._handlers[int(protocol)] = handler

    def _accepts(self, dst_ip: int) -> bool:
        return (
            dst_ip == self._config.ip
            or dst_ip == BROADCAST_IP
            or (dst_ip & 0xFF000000) == 0xFF000000
        )

    def receive(self, data: bytes) -> None:
        """Check and dispatch one packet; malformed or foreign packets are dropped."""
        data = bytes(data)
        if len(data) < IPV4_HEADER_SIZE:
            return
        header = IPv4Header.unpack(data)
        if header.version != 4:
            return
        ihl = header.header_length
        if ihl < IPV4_HEADER_SIZE or ihl > len(data):
            return
        if header.checksum != 0:
            zeroed = data[:10] + b"\x00\x00" + data[12:ihl]
            if checksum(zeroed) != header.checksum:
                logger.warning("IPv4: Bad checksum")
                return
        if not self._accepts(header.dst_ip):
            return
        available = len(data) - ihl
        payload_len = header.total_length - ihl
        if not 0 <= payload_len <= available:
            payload_len = available
        handler = self._handlers.get(header.protocol)
        if handler is not None:
            handler(data[ihl:ihl + payload_len], header.src_ip, header.dst_ip)

    def _next_hop(self, dst_ip: int) -> int:
        netmask = self._config.netmask
        if (dst_ip & netmask) == (self._config.ip & netmask):
            return dst_ip
        if self._config.gateway != 0:
            return self._config.gateway
        return dst_ip

    def send(self, dst_ip: int, protocol: int, data: bytes) -> bool:
        """Send ``data`` to ``dst_ip``; False when the next hop cannot be resolved."""
        payload = bytes(data)
        if len(payload) > MAX_PAYLOAD:
            logger.warning("IPv4: Payload too large")
            raise PayloadTooLargeError(f"payload of {len(payload)} bytes exceeds {MAX_PAYLOAD}")
        header = IPv4Header(
            total_length=IPV4_HEADER_SIZE + len(payload),
            protocol=int(protocol),
            src_ip=self._config.ip,
            dst_ip=dst_ip,
            identification=self._next_id,
        )
        self._next_id = (self._next_id + 1) & 0xFFFF
        raw = header.pack()
        raw = raw[:10] + checksum(raw).to_bytes(2, "big") + raw[12:]

        hop = self._next_hop(dst_ip)
        dst_mac = self._arp.resolve(hop)
        if dst_mac is None:
            logger.warning("IPv4: Failed to resolve MAC for %s", ip_format(hop))
            return False
        return self._ethernet.send(dst_mac, EtherType.IPV4, raw + payload)