"""UDP datagrams and a small table of single-datagram sockets."""

from __future__ import annotations

import errno
import logging
import struct
from dataclasses import dataclass
from typing import Callable

from unistack.ethernet import PayloadTooLargeError
from unistack.ipv4 import IPv4, IpProtocol, checksum
from unistack.nic import NetConfig

logger = logging.getLogger(__name__)

UDP_HEADER_SIZE = 8
UDP_MAX_SOCKETS = 16
UDP_MAX_PAYLOAD = 1472
UDP_RX_BUFFER_SIZE = 1500
EPHEMERAL_PORT = 49152

_HEADER = struct.Struct(">HHHH")

FallbackHandler = Callable[[bytes, int], None]


def udp_checksum(src_ip: int, dst_ip: int, segment: bytes) -> int:
    """Checksum of a UDP segment over the IPv4 pseudo-header."""
    segment = bytes(segment)
    pseudo = (
        src_ip.to_bytes(4, "little")
        + dst_ip.to_bytes(4, "little")
        + bytes([0, IpProtocol.UDP])
        + len(segment).to_bytes(2, "big")
    )
    return checksum(pseudo + segment)


@dataclass(frozen=True)
class Datagram:
    data: bytes
    src_ip: int
    src_port: int


class UdpSocket:
    """A socket holding at most one received datagram; a newer one replaces it."""

    def __init__(self, udp: Udp) -> None:
        self._udp = udp
        self.port: int | None = None
        self._pending: Datagram | None = None
        self.closed = False

    def _check_open(self) -> None:
        if self.closed:
            raise OSError(errno.EBADF, "UDP socket is closed")

    def bind(self, port: int) -> None:
        """Bind to ``port``; raises OSError if any socket already holds it."""
        self._check_open()
        if any(sock.port == port for sock in self._udp._sockets):
            raise OSError(errno.EADDRINUSE, f"UDP port {port} already in use")
        self.port = port
        self._pending = None

    def sendto(self, dst_ip: int, dst_port: int, data: bytes) -> bool:
        """Send from the bound port, or from the ephemeral port when unbound."""
        self._check_open()
        src_port = self.port if self.port is not None else EPHEMERAL_PORT
        return self._udp.send(dst_ip, src_port, dst_port, data)

    def recvfrom(self, max_len: int = UDP_RX_BUFFER_SIZE) -> Datagram | None:
        """Take the waiting datagram, cut to ``max_len`` bytes; None if nothing waits."""
        self._check_open()
        if self.port is None:
            raise OSError(errno.EINVAL, "UDP socket is not bound")
        datagram = self._pending
        if datagram is None:
            return None
        self._pending = None
        return Datagram(datagram.data[:max_len], datagram.src_ip, datagram.src_port)

    def close(self) -> None:
        self.port = None
        self._pending = None
        self.closed = True
        if self in self._udp._sockets:
            self._udp._sockets.remove(self)

    def __enter__(self) -> UdpSocket:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Udp:
    """Delivers datagrams to bound sockets, or to a per-port fallback handler."""

    def __init__(self, ipv4: IPv4, config: NetConfig) -> None:
        self._ipv4 = ipv4
        self._config = config
        self._sockets: list[UdpSocket] = []
        self._fallbacks: dict[int, FallbackHandler] = {}
        ipv4.register(IpProtocol.UDP, self.receive)
        logger.info("UDP: Layer initialized (%d sockets)", UDP_MAX_SOCKETS)

    def set_fallback(self, port: int, handler: FallbackHandler) -> None:
        """Hand datagrams for ``port`` to ``handler(payload, src_ip)`` when no socket holds it."""
        self._fallbacks[port] = handler

    def receive(self, data: bytes, src_ip: int, dst_ip: int) -> None:
        data = bytes(data)
        if len(data) < UDP_HEADER_SIZE:
            return
        src_port, dst_port, length, _ = _HEADER.unpack_from(data)
        if length < UDP_HEADER_SIZE or length > len(data):
            return
        payload = data[UDP_HEADER_SIZE:length]
        for sock in self._sockets:
            if sock.port == dst_port:
                sock._pending = Datagram(payload[:UDP_RX_BUFFER_SIZE], src_ip, src_port)
                return
        handler = self._fallbacks.get(dst_port)
        if handler is not None:
            handler(payload, src_ip)

    def send(self, dst_ip: int, src_port: int, dst_port: int, data: bytes) -> bool:
        """Send one datagram; False when the IP layer could not deliver it."""
        payload = bytes(data)
        if len(payload) > UDP_MAX_PAYLOAD:
            raise PayloadTooLargeError(
                f"UDP payload of {len(payload)} bytes exceeds {UDP_MAX_PAYLOAD}"
            )
        length = UDP_HEADER_SIZE + len(payload)
        segment = _HEADER.pack(src_port, dst_port, length, 0) + payload
        value = udp_checksum(self._config.ip, dst_ip, segment) or 0xFFFF
        segment = segment[:6] + value.to_bytes(2, "big") + segment[8:]
        return self._ipv4.send(dst_ip, IpProtocol.UDP, segment)

    def socket(self) -> UdpSocket:
        """Open a new unbound socket; raises OSError when all slots are taken."""
        if len(self._sockets) >= UDP_MAX_SOCKETS:
            raise OSError(errno.EMFILE, "no free UDP socket")
        sock = UdpSocket(self)
        self._sockets.append(sock)
        return sock