"""Address Resolution Protocol: IPv4 to MAC resolution and a small cache."""

from __future__ import annotations

import logging
import struct
import time
from dataclasses import dataclass
from typing import Callable, ClassVar

from unistack.ethernet import BROADCAST_MAC, Ethernet, EtherType
from unistack.nic import NetConfig

logger = logging.getLogger(__name__)

ARP_HW_ETHERNET = 1
ARP_OP_REQUEST = 1
ARP_OP_REPLY = 2
ARP_TABLE_SIZE = 32
ARP_TIMEOUT_MS = 5000
BROADCAST_IP = 0xFFFFFFFF

_PACKET = struct.Struct(">HHBBH6s4s6s4s")


def _ip_bytes(ip: int) -> bytes:
    return ip.to_bytes(4, "little")


def _dotted(ip: int) -> str:
    return ".".join(str(octet) for octet in _ip_bytes(ip))


@dataclass(frozen=True)
class ArpPacket:
    """An Ethernet/IPv4 ARP packet; addresses keep their first octet lowest."""

    operation: int
    sender_mac: bytes
    sender_ip: int
    target_mac: bytes
    target_ip: int
    hw_type: int = ARP_HW_ETHERNET
    proto_type: int = int(EtherType.IPV4)
    hw_len: int = 6
    proto_len: int = 4

    SIZE: ClassVar[int] = _PACKET.size

    def pack(self) -> bytes:
        return _PACKET.pack(
            self.hw_type,
            self.proto_type,
            self.hw_len,
            self.proto_len,
            self.operation,
            bytes(self.sender_mac),
            _ip_bytes(self.sender_ip),
            bytes(self.target_mac),
            _ip_bytes(self.target_ip),
        )

    @classmethod
    def unpack(cls, data: bytes) -> ArpPacket:
        if len(data) < cls.SIZE:
            raise ValueError(f"ARP packet needs {cls.SIZE} bytes, got {len(data)}")
        (hw_type, proto_type, hw_len, proto_len, operation,
         sender_mac, sender_ip, target_mac, target_ip) = _PACKET.unpack_from(data)
        return cls(
            operation=operation,
            sender_mac=sender_mac,
            sender_ip=int.from_bytes(sender_ip, "little"),
            target_mac=target_mac,
            target_ip=int.from_bytes(target_ip, "little"),
            hw_type=hw_type,
            proto_type=proto_type,
            hw_len=hw_len,
            proto_len=proto_len,
        )


class ArpTable:
    """Fixed number of IP-to-MAC slots; when full, the first slot is overwritten."""

    def __init__(self, size: int = ARP_TABLE_SIZE) -> None:
        if size < 1:
            raise ValueError("ARP table size must be positive")
        self._size = size
        self._entries: list[tuple[int, bytes]] = []

    def add(self, ip: int, mac: bytes) -> None:
        mac = bytes(mac)
        for slot, (known_ip, _) in enumerate(self._entries):
            if known_ip == ip:
                self._entries[slot] = (ip, mac)
                return
        if len(self._entries) < self._size:
            self._entries.append((ip, mac))
        else:
            self._entries[0] = (ip, mac)

    def lookup(self, ip: int) -> bytes | None:
        return next((mac for known_ip, mac in self._entries if known_ip == ip), None)

    def __len__(self) -> int:
        return len(self._entries)


class Arp:
    """Answers requests for our address and resolves others by broadcasting."""

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
        self.timeout = ARP_TIMEOUT_MS / 1000
        self.table = ArpTable()
        self._waiting_ip: int | None = None
        self._resolved_mac: bytes | None = None
        ethernet.register(EtherType.ARP, self.receive)

    def _send(self, operation: int, dst_mac: bytes, target_mac: bytes, target_ip: int) -> bool:
        packet = ArpPacket(
            operation=operation,
            sender_mac=self._ethernet.nic.mac,
            sender_ip=self._config.ip,
            target_mac=target_mac,
            target_ip=target_ip,
        )
        return self._ethernet.send(dst_mac, EtherType.ARP, packet.pack())

    def send_request(self, target_ip: int) -> bool:
        """Broadcast a request asking who has ``target_ip``."""
        return self._send(ARP_OP_REQUEST, BROADCAST_MAC, bytes(6), target_ip)

    def receive(self, data: bytes, src_mac: bytes) -> None:
        """Learn the sender, complete a pending resolution, answer requests for us."""
        if len(data) < ArpPacket.SIZE:
            return
        packet = ArpPacket.unpack(data)
        if (
            packet.hw_type != ARP_HW_ETHERNET
            or packet.proto_type != EtherType.IPV4
            or packet.hw_len != 6
            or packet.proto_len != 4
        ):
            return
        self.table.add(packet.sender_ip, packet.sender_mac)
        if self._waiting_ip is not None and packet.sender_ip == self._waiting_ip:
            self._resolved_mac = packet.sender_mac
        if packet.operation == ARP_OP_REQUEST and packet.target_ip == self._config.ip:
            self._send(ARP_OP_REPLY, packet.sender_mac, packet.sender_mac, packet.sender_ip)

    def resolve(self, ip: int) -> bytes | None:
        """Return the MAC for ``ip``, asking the network if needed; None on timeout."""
        cached = self.table.lookup(ip)
        if cached is not None:
            return cached
        if ip == BROADCAST_IP:
            return BROADCAST_MAC
        self._waiting_ip = ip
        self._resolved_mac = None
        try:
            self.send_request(ip)
            start = self._clock()
            while self._resolved_mac is None and self._clock() - start < self.timeout:
                self._poll()
        finally:
            self._waiting_ip = None
        if self._resolved_mac is not None:
            return self._resolved_mac
        logger.warning("ARP: Resolution timeout for %s", _dotted(ip))
        return None