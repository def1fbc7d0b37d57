"""TCP connections with a simplified state machine and a fixed socket table."""

from __future__ import annotations

import errno
import logging
import struct
import time
from dataclasses import dataclass
from enum import IntEnum, IntFlag
from typing import Callable, ClassVar

from unistack.ipv4 import IPv4, IpProtocol
from unistack.ipv4 import checksum as internet_checksum
from unistack.nic import NetConfig

logger = logging.getLogger(__name__)

TCP_HEADER_SIZE = 20
TCP_MAX_SOCKETS = 16
TCP_WINDOW_SIZE = 4096
TCP_RX_BUFFER_SIZE = 4096
TCP_MSS = 1400
TCP_CONNECT_TIMEOUT_MS = 5000
FIRST_EPHEMERAL_PORT = 49152
SEQ_MASK = 0xFFFFFFFF
CHECKSUM_OFFSET = 16

_HEADER = struct.Struct(">HHIIBBHHH")


class TcpState(IntEnum):
    CLOSED = 0
    LISTEN = 1
    SYN_SENT = 2
    SYN_RECEIVED = 3
    ESTABLISHED = 4
    FIN_WAIT_1 = 5
    FIN_WAIT_2 = 6
    CLOSE_WAIT = 7
    CLOSING = 8
    LAST_ACK = 9
    TIME_WAIT = 10


class TcpFlags(IntFlag):
    FIN = 0x01
    SYN = 0x02
    RST = 0x04
    PSH = 0x08
    ACK = 0x10
    URG = 0x20


@dataclass(frozen=True)
class TcpHeader:
    """A TCP header without options."""

    src_port: int
    dst_port: int
    seq_num: int = 0
    ack_num: int = 0
    flags: int = 0
    window: int = TCP_WINDOW_SIZE
    checksum: int = 0
    urgent_ptr: int = 0
    data_offset: int = (TCP_HEADER_SIZE // 4) << 4

    SIZE: ClassVar[int] = _HEADER.size

    @property
    def header_length(self) -> int:
        return (self.data_offset >> 4) * 4

    def pack(self) -> bytes:
        return _HEADER.pack(
            self.src_port,
            self.dst_port,
            self.seq_num & SEQ_MASK,
            self.ack_num & SEQ_MASK,
            self.data_offset,
            int(self.flags),
            self.window,
            self.checksum,
            self.urgent_ptr,
        )

    @classmethod
    def unpack(cls, data: bytes) -> TcpHeader:
        if len(data) < cls.SIZE:
            raise ValueError(f"TCP header needs {cls.SIZE} bytes, got {len(data)}")
        (src_port, dst_port, seq_num, ack_num, data_offset,
         flags, window, header_checksum, urgent_ptr) = _HEADER.unpack_from(data)
        return cls(
            src_port=src_port,
            dst_port=dst_port,
            seq_num=seq_num,
            ack_num=ack_num,
            flags=flags,
            window=window,
            checksum=header_checksum,
            urgent_ptr=urgent_ptr,
            data_offset=data_offset,
        )


def tcp_checksum(src_ip: int, dst_ip: int, segment: bytes) -> int:
    """Checksum of a TCP segment over the IPv4 pseudo-header."""
    segment = bytes(segment)
    pseudo = (
        src_ip.to_bytes(4, "little")
        + dst_ip.to_bytes(4, "little")
        + bytes([0, IpProtocol.TCP])
        + len(segment).to_bytes(2, "big")
    )
    return internet_checksum(pseudo + segment)


class TcpSocket:
    """One connection control block; created through :meth:`Tcp.socket`."""

    def __init__(self, tcp: Tcp) -> None:
        self._tcp = tcp
        self.in_use = True
        self.state = TcpState.CLOSED
        self.local_port = 0
        self.remote_port = 0
        self.remote_ip = 0
        self.seq_num = 0
        self.ack_num = 0
        self.send_next = 0
        self.send_una = 0
        self.pending_ack = False
        self.last_activity = 0.0
        self._rx = bytearray()

    def _check_open(self) -> None:
        if not self.in_use:
            raise OSError(errno.EBADF, "TCP socket is closed")

    def _store(self, payload: bytes) -> None:
        room = TCP_RX_BUFFER_SIZE - 1 - len(self._rx)
        self._rx += payload[:max(room, 0)]

    def bind(self, port: int) -> None:
        self._check_open()
        self.local_port = port

    def listen(self) -> None:
        self._check_open()
        self.state = TcpState.LISTEN

    def accept(self) -> TcpSocket | None:
        """Return an established connection on our port, or None if none is ready."""
        self._check_open()
        if self.state != TcpState.LISTEN:
            raise OSError(errno.EINVAL, "TCP socket is not listening")
        return next(
            (
                sock
                for sock in self._tcp._slots
                if sock is not None
                and sock is not self
                and sock.local_port == self.local_port
                and sock.state == TcpState.ESTABLISHED
            ),
            None,
        )

    def connect(self, dst_ip: int, dst_port: int) -> None:
        """Open a connection; TimeoutError if no SYN-ACK arrives in time."""
        self._check_open()
        tcp = self._tcp
        self.remote_ip = dst_ip
        self.remote_port = dst_port
        self.local_port = tcp._take_ephemeral_port()
        self.seq_num = tcp._initial_sequence()
        self.send_next = self.seq_num
        self.state = TcpState.SYN_SENT
        tcp._send_segment(self, TcpFlags.SYN)

        start = tcp._clock()
        while self.state == TcpState.SYN_SENT and tcp._clock() - start < tcp.timeout:
            tcp._poll()
        if self.state == TcpState.SYN_SENT:
            raise TimeoutError("TCP: connection attempt timed out")
        if self.state != TcpState.ESTABLISHED:
            raise ConnectionError(f"TCP: connection ended in state {self.state.name}")

    def send(self, data: bytes) -> int:
        """Send up to one segment of ``data`` and return how many bytes went out."""
        self._check_open()
        if self.state != TcpState.ESTABLISHED:
            raise OSError(errno.ENOTCONN, "TCP socket is not connected")
        chunk = bytes(data)[:TCP_MSS]
        if not self._tcp._send_segment(self, TcpFlags.ACK | TcpFlags.PSH, chunk):
            raise OSError(errno.EIO, "TCP: segment could not be sent")
        return len(chunk)

    def recv(self, max_len: int = TCP_RX_BUFFER_SIZE) -> bytes:
        """Take up to ``max_len`` buffered bytes; empty when nothing is waiting."""
        self._check_open()
        data = bytes(self._rx[:max(max_len, 0)])
        del self._rx[:len(data)]
        return data

    def close(self) -> None:
        """Start an orderly shutdown, or release the socket when not connected."""
        if not self.in_use:
            return
        if self.state == TcpState.ESTABLISHED:
            self.state = TcpState.FIN_WAIT_1
            self._tcp._send_segment(self, TcpFlags.FIN | TcpFlags.ACK)
        elif self.state == TcpState.CLOSE_WAIT:
            self.state = TcpState.LAST_ACK
            self._tcp._send_segment(self, TcpFlags.FIN | TcpFlags.ACK)
        else:
            self._tcp._release(self)

    def __enter__(self) -> TcpSocket:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Tcp:
    """Holds the socket table and runs the per-connection state machine."""

    def __init__(
        self,
        ipv4: IPv4,
        config: NetConfig,
        poll: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ipv4 = ipv4
        self._config = config
        self._poll = poll if poll is not None else (lambda: None)
        self._clock = clock
        self.timeout = TCP_CONNECT_TIMEOUT_MS / 1000
        self._slots: list[TcpSocket | None] = [None] * TCP_MAX_SOCKETS
        self._next_port = FIRST_EPHEMERAL_PORT
        ipv4.register(IpProtocol.TCP, self.receive)
        logger.info("TCP: Layer initialized (%d sockets)", TCP_MAX_SOCKETS)

    def _allocate(self) -> TcpSocket | None:
        for index, slot in enumerate(self._slots):
            if slot is None:
                sock = TcpSocket(self)
                self._slots[index] = sock
                return sock
        return None

    def _release(self, sock: TcpSocket) -> None:
        sock.state = TcpState.CLOSED
        sock.in_use = False
        for index, slot in enumerate(self._slots):
            if slot is sock:
                self._slots[index] = None

    def _initial_sequence(self) -> int:
        return int(self._clock() * 1000) & SEQ_MASK

    def _take_ephemeral_port(self) -> int:
        port = self._next_port
        self._next_port = (self._next_port + 1) & 0xFFFF
        return port

    def socket(self) -> TcpSocket:
        """Open a new socket; OSError when every slot is taken."""
        sock = self._allocate()
        if sock is None:
            raise OSError(errno.EMFILE, "no free TCP socket")
        return sock

    def _send_segment(self, sock: TcpSocket, flags: int, data: bytes = b"") -> bool:
        header = TcpHeader(
            src_port=sock.local_port,
            dst_port=sock.remote_port,
            seq_num=sock.send_next,
            ack_num=sock.ack_num if flags & TcpFlags.ACK else 0,
            flags=int(flags),
        )
        segment = header.pack() + data
        value = tcp_checksum(self._config.ip, sock.remote_ip, segment)
        segment = (
            segment[:CHECKSUM_OFFSET] + value.to_bytes(2, "big") + segment[CHECKSUM_OFFSET + 2:]
        )
        advance = len(data) + (1 if flags & (TcpFlags.SYN | TcpFlags.FIN) else 0)
        sock.send_next = (sock.send_next + advance) & SEQ_MASK
        sock.last_activity = self._clock()
        return self._ipv4.send(sock.remote_ip, IpProtocol.TCP, segment)

    def _find_socket(self, src_ip: int, src_port: int, dst_port: int) -> TcpSocket | None:
        active = [sock for sock in self._slots if sock is not None]
        for sock in active:
            if (
                sock.state != TcpState.LISTEN
                and sock.local_port == dst_port
                and sock.remote_port == src_port
                and sock.remote_ip == src_ip
            ):
                return sock
        for sock in active:
            if sock.state == TcpState.LISTEN and sock.local_port == dst_port:
                return sock
        return None

    def receive(self, data: bytes, src_ip: int, dst_ip: int) -> None:
        """Feed one segment through the state machine; unknown connections are dropped."""
        data = bytes(data)
        if len(data) < TCP_HEADER_SIZE:
            return
        header = TcpHeader.unpack(data)
        header_len = header.header_length
        if header_len < TCP_HEADER_SIZE or header_len > len(data):
            return
        payload = data[header_len:]
        flags = header.flags
        seq = header.seq_num

        sock = self._find_socket(src_ip, header.src_port, header.dst_port)
        if sock is None:
            return

        state = sock.state
        if state == TcpState.LISTEN:
            if flags & TcpFlags.SYN:
                new_sock = self._allocate()
                if new_sock is not None:
                    new_sock.state = TcpState.SYN_RECEIVED
                    new_sock.local_port = header.dst_port
                    new_sock.remote_port = header.src_port
                    new_sock.remote_ip = src_ip
                    new_sock.ack_num = (seq + 1) & SEQ_MASK
                    new_sock.seq_num = self._initial_sequence()
                    new_sock.send_next = new_sock.seq_num
                    self._send_segment(new_sock, TcpFlags.SYN | TcpFlags.ACK)
                    logger.info("TCP: SYN received, sent SYN-ACK")
        elif state == TcpState.SYN_SENT:
            if flags & (TcpFlags.SYN | TcpFlags.ACK) == TcpFlags.SYN | TcpFlags.ACK:
                sock.ack_num = (seq + 1) & SEQ_MASK
                sock.state = TcpState.ESTABLISHED
                self._send_segment(sock, TcpFlags.ACK)
                logger.info("TCP: Connection established (client)")
        elif state == TcpState.SYN_RECEIVED:
            if flags & TcpFlags.ACK:
                sock.state = TcpState.ESTABLISHED
                logger.info("TCP: Connection established (server)")
        elif state == TcpState.ESTABLISHED:
            if payload:
                sock._store(payload)
                sock.ack_num = (seq + len(payload)) & SEQ_MASK
                sock.pending_ack = True
            if flags & TcpFlags.FIN:
                sock.ack_num = (seq + 1) & SEQ_MASK
                sock.state = TcpState.CLOSE_WAIT
                self._send_segment(sock, TcpFlags.ACK)
            if sock.pending_ack:
                self._send_segment(sock, TcpFlags.ACK)
                sock.pending_ack = False
        elif state == TcpState.FIN_WAIT_1:
            if flags & TcpFlags.ACK and flags & TcpFlags.FIN:
                sock.ack_num = (seq + 1) & SEQ_MASK
                self._send_segment(sock, TcpFlags.ACK)
                sock.state = TcpState.TIME_WAIT
            elif flags & TcpFlags.ACK:
                sock.state = TcpState.FIN_WAIT_2
            elif flags & TcpFlags.FIN:
                sock.ack_num = (seq + 1) & SEQ_MASK
                self._send_segment(sock, TcpFlags.ACK)
                sock.state = TcpState.CLOSING
        elif state == TcpState.FIN_WAIT_2:
            if flags & TcpFlags.FIN:
                sock.ack_num = (seq + 1) & SEQ_MASK
                self._send_segment(sock, TcpFlags.ACK)
                sock.state = TcpState.TIME_WAIT
        elif state == TcpState.CLOSING:
            if flags & TcpFlags.ACK:
                sock.state = TcpState.TIME_WAIT
        elif state == TcpState.LAST_ACK:
            if flags & TcpFlags.ACK:
                self._release(sock)
        elif state == TcpState.TIME_WAIT:
            if flags & TcpFlags.FIN:
                self._send_segment(sock, TcpFlags.ACK)