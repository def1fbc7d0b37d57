"""ICMP echo: answering pings addressed to us and timing our own."""

from __future__ import annotations

import logging
import struct
import time
from dataclasses import dataclass
from typing import Callable

from unistack.ipv4 import MAX_PAYLOAD, IPv4, IpProtocol, checksum, ip_format

logger = logging.getLogger(__name__)

ICMP_TYPE_ECHO_REPLY = 0
ICMP_TYPE_ECHO_REQUEST = 8
ICMP_HEADER_SIZE = 8
ECHO_PAYLOAD_SIZE = 56
DEFAULT_PING_ID = 1234

_HEADER = struct.Struct(">BBHHH")


def _with_checksum(message: bytes) -> bytes:
    return message[:2] + checksum(message).to_bytes(2, "big") + message[4:]


@dataclass(frozen=True)
class PingReply:
    """An echo reply that matched our outstanding ping."""

    src_ip: int
    seq: int
    rtt_ms: int
    success: bool = True


class Icmp:
    """Replies to echo requests and reports replies to the pings we sent."""

    def __init__(
        self,
        ipv4: IPv4,
        clock: Callable[[], float] = time.monotonic,
        on_reply: Callable[[PingReply], None] | None = None,
    ) -> None:
        self._ipv4 = ipv4
        self._clock = clock
        self.on_reply = on_reply
        self._ping_id = DEFAULT_PING_ID
        self._ping_seq = 0
        self._sent_time = 0.0
        ipv4.register(
            IpProtocol.ICMP, lambda payload, src_ip, _dst_ip: self.receive(payload, src_ip)
        )
        logger.info("ICMP: Layer initialized")

    def receive(self, data: bytes, src_ip: int) -> None:
        """Handle one ICMP message from ``src_ip``; short messages are dropped."""
        data = bytes(data)
        if len(data) < ICMP_HEADER_SIZE:
            return
        icmp_type, _code, _checksum, ident, seq = _HEADER.unpack_from(data)
        payload = data[ICMP_HEADER_SIZE:]

        if icmp_type == ICMP_TYPE_ECHO_REQUEST:
            body = payload[: MAX_PAYLOAD - ICMP_HEADER_SIZE]
            reply = _with_checksum(_HEADER.pack(ICMP_TYPE_ECHO_REPLY, 0, 0, ident, seq) + body)
            self._ipv4.send(src_ip, IpProtocol.ICMP, reply)
        elif icmp_type == ICMP_TYPE_ECHO_REPLY and ident == self._ping_id:
            rtt_ms = int((self._clock() - self._sent_time) * 1000) & 0xFFFF
            logger.info(
                "ICMP: Echo reply from %s seq=%d rtt=%dms", ip_format(src_ip), seq, rtt_ms
            )
            if self.on_reply is not None:
                self.on_reply(PingReply(src_ip=src_ip, seq=seq, rtt_ms=rtt_ms, success=True))

    def send_echo_request(self, dst_ip: int, ident: int, seq: int) -> bool:
        """Send a ping carrying 56 bytes of counting data; False if it could not be sent."""
        header = _HEADER.pack(ICMP_TYPE_ECHO_REQUEST, 0, 0, ident & 0xFFFF, seq & 0xFFFF)
        packet = _with_checksum(header + bytes(range(ECHO_PAYLOAD_SIZE)))
        self._ping_id = ident & 0xFFFF
        self._ping_seq = seq & 0xFFFF
        self._sent_time = self._clock()
        return self._ipv4.send(dst_ip, IpProtocol.ICMP, packet)