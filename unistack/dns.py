"""DNS stub resolver for IPv4 address (A) records over UDP."""

from __future__ import annotations

import logging
import struct
import time
from typing import Callable

from unistack.nic import NetConfig
from unistack.udp import Udp

logger = logging.getLogger(__name__)

DNS_PORT = 53
DNS_MAX_NAME_LEN = 256
DNS_TIMEOUT_MS = 5000
DNS_HEADER_SIZE = 12
DNS_BUFFER_SIZE = 512
DNS_EPHEMERAL_BASE = 50000
FALLBACK_SERVER = "8.8.8.8"

DNS_FLAG_QR = 0x8000
DNS_FLAG_OPCODE = 0x7800
DNS_FLAG_AA = 0x0400
DNS_FLAG_TC = 0x0200
DNS_FLAG_RD = 0x0100
DNS_FLAG_RA = 0x0080
DNS_FLAG_RCODE = 0x000F

DNS_TYPE_A = 1
DNS_TYPE_AAAA = 28
DNS_TYPE_CNAME = 5
DNS_CLASS_IN = 1

_HEADER = struct.Struct(">HHHHHH")
_RECORD = struct.Struct(">HHIH")


def is_ip_address(text: str) -> bool:
    """True for four dot-separated groups of decimal digits."""
    if not text:
        return False
    dots = 0
    has_digit = False
    for ch in text:
        if "0" <= ch <= "9":
            has_digit = True
        elif ch == ".":
            dots += 1
            if not has_digit:
                return False
            has_digit = False
        else:
            return False
    return dots == 3 and has_digit


def parse_ip(text: str) -> int:
    """Parse dotted decimal into an address whose first octet is the lowest byte."""
    octets = [0, 0, 0, 0]
    index = 0
    for ch in text:
        if index >= 4:
            break
        if "0" <= ch <= "9":
            octets[index] = (octets[index] * 10 + ord(ch) - ord("0")) & 0xFF
        elif ch == ".":
            index += 1
    return int.from_bytes(bytes(octets), "little")


def encode_name(hostname: str) -> bytes:
    """Encode a hostname as length-prefixed labels ending in a zero byte."""
    encoded = bytearray()
    for label in hostname.encode("utf-8").split(b"."):
        if len(label) > 0xFF:
            raise ValueError(f"DNS label of {len(label)} bytes is too long")
        encoded.append(len(label))
        encoded += label
    encoded.append(0)
    return bytes(encoded)


def build_query(transaction_id: int, hostname: str) -> bytes:
    """Build a recursive query for the A record of ``hostname``."""
    header = _HEADER.pack(transaction_id & 0xFFFF, DNS_FLAG_RD, 1, 0, 0, 0)
    return header + encode_name(hostname) + struct.pack(">HH", DNS_TYPE_A, DNS_CLASS_IN)


def _skip_name(buffer: bytes, pos: int) -> int:
    while pos < len(buffer):
        length = buffer[pos]
        if length == 0:
            return pos + 1
        if length & 0xC0 == 0xC0:
            return pos + 2
        pos += length + 1
    return pos


def parse_response(buffer: bytes, transaction_id: int) -> int | None:
    """Return the first A record of a response to ``transaction_id``, or None."""
    buffer = bytes(buffer)
    length = len(buffer)
    if length < DNS_HEADER_SIZE:
        return None
    ident, flags, qdcount, ancount, _, _ = _HEADER.unpack_from(buffer)
    if ident != transaction_id & 0xFFFF:
        logger.warning("DNS: Transaction ID mismatch")
        return None
    if not flags & DNS_FLAG_QR:
        logger.warning("DNS: Not a response")
        return None
    rcode = flags & DNS_FLAG_RCODE
    if rcode:
        logger.warning("DNS: Error response code %d", rcode)
        return None
    if ancount == 0:
        logger.warning("DNS: No answers")
        return None

    pos = DNS_HEADER_SIZE
    for _ in range(qdcount):
        if pos >= length:
            break
        pos = _skip_name(buffer, pos) + 4

    for _ in range(ancount):
        if pos >= length:
            break
        pos = _skip_name(buffer, pos)
        if pos + _RECORD.size > length:
            break
        rtype, _rclass, _ttl, rdlength = _RECORD.unpack_from(buffer, pos)
        pos += _RECORD.size
        if rtype == DNS_TYPE_A and rdlength == 4 and pos + 4 <= length:
            return int.from_bytes(buffer[pos:pos + 4], "little")
        pos += rdlength
    return None


class Dns:
    """Resolves hostnames through the configured server, or a public fallback."""

    def __init__(
        self,
        udp: Udp,
        config: NetConfig,
        poll: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._udp = udp
        self._config = config
        self._poll = poll if poll is not None else (lambda: None)
        self._clock = clock
        self.timeout = DNS_TIMEOUT_MS / 1000
        self.transaction_id = int(clock() * 1000) & 0xFFFF

    def resolve(self, hostname: str) -> int:
        """Return the IPv4 address of ``hostname``; TimeoutError when no answer comes."""
        if is_ip_address(hostname):
            return parse_ip(hostname)

        server = self._config.dns or parse_ip(FALLBACK_SERVER)
        self.transaction_id = (self.transaction_id + 1) & 0xFFFF
        transaction_id = self.transaction_id
        query = build_query(transaction_id, hostname)

        resolved = 0
        with self._udp.socket() as sock:
            sock.bind(DNS_EPHEMERAL_BASE + transaction_id % 1000)
            if not sock.sendto(server, DNS_PORT, query):
                logger.error("DNS: Failed to send query")
                raise OSError("DNS: Failed to send query")
            start = self._clock()
            while not resolved and self._clock() - start < self.timeout:
                self._poll()
                datagram = sock.recvfrom(DNS_BUFFER_SIZE)
                if datagram is not None and datagram.data:
                    resolved = parse_response(datagram.data, transaction_id) or 0

        if not resolved:
            logger.warning("DNS: Resolution failed for %s", hostname)
            raise TimeoutError(f"DNS: Resolution failed for {hostname}")
        return resolved