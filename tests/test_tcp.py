import pytest

from unistack.arp import Arp
from unistack.ethernet import Ethernet
from unistack.ipv4 import IPv4, IPv4Header, ip_make
from unistack.nic import LoopbackNic, NetConfig
from unistack.tcp import (
    TCP_MAX_SOCKETS,
    TCP_MSS,
    TCP_RX_BUFFER_SIZE,
    Tcp,
    TcpFlags,
    TcpHeader,
    TcpState,
    tcp_checksum,
)

LOCAL_MAC = b"\x02\x00\x00\x00\x00\x01"
REMOTE_MAC = b"\x02\x00\x00\x00\x00\x02"
LOCAL_IP = ip_make(10, 0, 0, 2)
REMOTE_IP = ip_make(10, 0, 0, 5)
REMOTE_PORT = 5000
SERVER_PORT = 80


class FakeClock:
    def __init__(self, step=0.001):
        self.now = 1.0
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


class Harness:
    def __init__(self, step=0.001):
        self.nic = LoopbackNic(LOCAL_MAC)
        self.config = NetConfig()
        self.config.configure_ip(LOCAL_IP)
        self.config.netmask = ip_make(255, 255, 255, 0)
        self.ethernet = Ethernet(self.nic)
        self.arp = Arp(self.ethernet, self.config)
        self.arp.table.add(REMOTE_IP, REMOTE_MAC)
        self.ipv4 = IPv4(self.ethernet, self.arp, self.config)
        self.on_poll = []
        self.tcp = Tcp(self.ipv4, self.config, poll=self._poll, clock=FakeClock(step))

    def _poll(self):
        for callback in list(self.on_poll):
            callback()

    def sent(self):
        result = []
        for frame in self.nic.sent:
            ip = frame[14:]
            header = IPv4Header.unpack(ip)
            segment = ip[header.header_length:header.total_length]
            tcp_header = TcpHeader.unpack(segment)
            result.append((tcp_header, segment[tcp_header.header_length:], segment))
        return result

    def deliver(self, src_port, dst_port, seq, ack, flags, payload=b""):
        segment = make_segment(src_port, dst_port, seq, ack, flags, payload)
        self.tcp.receive(segment, REMOTE_IP, LOCAL_IP)


def make_segment(src_port, dst_port, seq, ack, flags, payload=b""):
    raw = TcpHeader(src_port, dst_port, seq, ack, int(flags)).pack() + payload
    value = tcp_checksum(REMOTE_IP, LOCAL_IP, raw)
    return raw[:16] + value.to_bytes(2, "big") + raw[18:]


def last_segment(h):
    """Header, payload and checksum of the last segment put on the wire."""
    frame = h.nic.sent[-1]
    ip = frame[14:]
    ip_header = IPv4Header.unpack(ip)
    segment = ip[ip_header.header_length:ip_header.total_length]
    header = TcpHeader.unpack(segment)
    return header, segment[header.header_length:], segment


def establish(h, client_seq=1000):
    listener = h.tcp.socket()
    listener.bind(SERVER_PORT)
    listener.listen()
    h.deliver(REMOTE_PORT, SERVER_PORT, client_seq, 0, TcpFlags.SYN)
    syn_ack = h.sent()[-1][0]
    h.deliver(REMOTE_PORT, SERVER_PORT, client_seq + 1, syn_ack.seq_num + 1, TcpFlags.ACK)
    conn = listener.accept()
    return listener, conn, syn_ack


@pytest.fixture
def h():
    return Harness()


def test_header_wire_bytes():
    header = TcpHeader(src_port=1, dst_port=2, seq_num=3, ack_num=4, flags=TcpFlags.SYN)
    assert header.pack() == (
        b"\x00\x01\x00\x02\x00\x00\x00\x03\x00\x00\x00\x04\x50\x02\x10\x00\x00\x00\x00\x00"
    )


def test_header_round_trip():
    header = TcpHeader(1234, 80, 0xDEADBEEF, 77, int(TcpFlags.ACK | TcpFlags.PSH), 512, 9, 3)
    unpacked = TcpHeader.unpack(header.pack())
    assert unpacked == header
    assert unpacked.header_length == 20


def test_header_unpack_short_raises():
    with pytest.raises(ValueError):
        TcpHeader.unpack(b"\x00" * 19)


def test_checksum_verifies_to_zero():
    segment = make_segment(REMOTE_PORT, SERVER_PORT, 1, 2, TcpFlags.ACK, b"abc")
    assert tcp_checksum(REMOTE_IP, LOCAL_IP, segment) == 0


def test_passive_open(h):
    listener = h.tcp.socket()
    listener.bind(SERVER_PORT)
    listener.listen()
    h.deliver(REMOTE_PORT, SERVER_PORT, 1000, 0, TcpFlags.SYN)

    sent = h.sent()
    assert len(sent) == 1
    syn_ack, payload, segment = sent[0]
    assert syn_ack.flags == TcpFlags.SYN | TcpFlags.ACK
    assert syn_ack.ack_num == 1001
    assert syn_ack.dst_port == REMOTE_PORT
    assert syn_ack.src_port == SERVER_PORT
    assert payload == b""
    assert tcp_checksum(LOCAL_IP, REMOTE_IP, segment) == 0
    assert listener.accept() is None

    h.deliver(REMOTE_PORT, SERVER_PORT, 1001, syn_ack.seq_num + 1, TcpFlags.ACK)
    conn = listener.accept()
    assert conn.state == TcpState.ESTABLISHED
    assert conn.remote_ip == REMOTE_IP
    assert listener.state == TcpState.LISTEN


def test_accept_requires_listening(h):
    tcp = Tcp(h.ipv4, h.config, poll=h._poll, clock=FakeClock())
    sock = tcp.socket()
    assert sock.state == TcpState.CLOSED
    with pytest.raises(OSError):
        sock.accept()


def test_received_data_is_buffered_and_acked(h):
    _, conn, _ = establish(h)
    assert conn.state == TcpState.ESTABLISHED
    h.tcp.receive(make_segment(REMOTE_PORT, SERVER_PORT, 1001, 0,
                               TcpFlags.ACK | TcpFlags.PSH, b"hello"), REMOTE_IP, LOCAL_IP)
    ack, _, segment = last_segment(h)
    assert ack.flags == TcpFlags.ACK
    assert ack.ack_num == 1006
    assert tcp_checksum(LOCAL_IP, REMOTE_IP, segment) == 0
    assert conn.recv(3) == b"hel"
    assert conn.recv() == b"lo"
    assert conn.recv() == b""


def test_receive_buffer_capacity(h):
    _, conn, _ = establish(h)
    h.tcp.receive(make_segment(REMOTE_PORT, SERVER_PORT, 1001, 0, TcpFlags.ACK, b"x" * 5000),
                  REMOTE_IP, LOCAL_IP)
    data = conn.recv(10000)
    assert len(data) == TCP_RX_BUFFER_SIZE - 1
    assert data == b"x" * (TCP_RX_BUFFER_SIZE - 1)
    assert last_segment(h)[0].ack_num == 1001 + 5000


def test_send_advances_sequence(h):
    _, conn, _ = establish(h)
    assert conn.send(b"abc") == 3
    first, first_payload, segment = h.sent()[-1]
    assert first_payload == b"abc"
    assert first.flags == TcpFlags.ACK | TcpFlags.PSH
    assert tcp_checksum(LOCAL_IP, REMOTE_IP, segment) == 0
    assert conn.send(b"de") == 2
    second = h.sent()[-1][0]
    assert second.seq_num == (first.seq_num + 3) & 0xFFFFFFFF


def test_send_caps_at_mss(h):
    _, conn, _ = establish(h)
    assert conn.send(b"z" * 2000) == TCP_MSS
    header, payload, segment = last_segment(h)
    assert payload == b"z" * TCP_MSS
    assert header.flags == TcpFlags.ACK | TcpFlags.PSH
    assert tcp_checksum(LOCAL_IP, REMOTE_IP, segment) == 0


def test_send_requires_connection(h):
    tcp = Tcp(h.ipv4, h.config, poll=h._poll, clock=FakeClock())
    sock = tcp.socket()
    assert sock.state == TcpState.CLOSED
    with pytest.raises(OSError):
        sock.send(b"data")


def test_connect_handshake(h):
    sock = h.tcp.socket()

    def answer():
        for header, _, _ in h.sent():
            if header.flags == TcpFlags.SYN:
                h.deliver(REMOTE_PORT, header.src_port, 7000, header.seq_num + 1,
                          TcpFlags.SYN | TcpFlags.ACK)
                h.on_poll.clear()

    h.on_poll.append(answer)
    sock.connect(REMOTE_IP, REMOTE_PORT)
    assert sock.state == TcpState.ESTABLISHED
    syn = h.sent()[0][0]
    assert syn.src_port == 49152
    assert syn.dst_port == REMOTE_PORT
    final = h.sent()[-1][0]
    assert final.flags == TcpFlags.ACK
    assert final.ack_num == 7001
    assert final.seq_num == (syn.seq_num + 1) & 0xFFFFFFFF


def test_connect_timeout():
    h = Harness(step=1.0)
    sock = h.tcp.socket()
    with pytest.raises(TimeoutError):
        sock.connect(REMOTE_IP, REMOTE_PORT)
    assert sock.state == TcpState.SYN_SENT


def test_ephemeral_ports_increase():
    h = Harness(step=1.0)
    ports = []
    for _ in range(2):
        sock = h.tcp.socket()
        with pytest.raises(TimeoutError):
            sock.connect(REMOTE_IP, REMOTE_PORT)
        ports.append(sock.local_port)
    assert ports[1] == ports[0] + 1


def test_active_close(h):
    _, conn, _ = establish(h)
    conn.close()
    assert conn.state == TcpState.FIN_WAIT_1
    fin, _, fin_segment = last_segment(h)
    assert fin.flags == TcpFlags.FIN | TcpFlags.ACK
    assert tcp_checksum(LOCAL_IP, REMOTE_IP, fin_segment) == 0

    h.tcp.receive(make_segment(REMOTE_PORT, SERVER_PORT, 1001, fin.seq_num + 1, TcpFlags.ACK),
                  REMOTE_IP, LOCAL_IP)
    assert conn.state == TcpState.FIN_WAIT_2

    h.tcp.receive(make_segment(REMOTE_PORT, SERVER_PORT, 1001, fin.seq_num + 1,
                               TcpFlags.FIN | TcpFlags.ACK), REMOTE_IP, LOCAL_IP)
    assert conn.state == TcpState.TIME_WAIT
    ack = last_segment(h)[0]
    assert ack.flags == TcpFlags.ACK
    assert ack.ack_num == 1002


def test_simultaneous_close(h):
    _, conn, _ = establish(h)
    conn.close()
    assert last_segment(h)[0].flags == TcpFlags.FIN | TcpFlags.ACK
    h.tcp.receive(make_segment(REMOTE_PORT, SERVER_PORT, 1001, 0, TcpFlags.FIN),
                  REMOTE_IP, LOCAL_IP)
    assert conn.state == TcpState.CLOSING
    assert last_segment(h)[0].ack_num == 1002
    h.tcp.receive(make_segment(REMOTE_PORT, SERVER_PORT, 1002, 0, TcpFlags.ACK),
                  REMOTE_IP, LOCAL_IP)
    assert conn.state == TcpState.TIME_WAIT


def test_passive_close_frees_slot(h):
    listener, conn, _ = establish(h)
    h.tcp.receive(make_segment(REMOTE_PORT, SERVER_PORT, 1001, 0, TcpFlags.FIN | TcpFlags.ACK),
                  REMOTE_IP, LOCAL_IP)
    assert conn.state == TcpState.CLOSE_WAIT
    assert last_segment(h)[0].ack_num == 1002

    conn.close()
    assert conn.state == TcpState.LAST_ACK
    fin, _, segment = last_segment(h)
    assert fin.flags == TcpFlags.FIN | TcpFlags.ACK
    assert tcp_checksum(LOCAL_IP, REMOTE_IP, segment) == 0

    h.tcp.receive(make_segment(REMOTE_PORT, SERVER_PORT, 1002, 0, TcpFlags.ACK),
                  REMOTE_IP, LOCAL_IP)
    assert conn.state == TcpState.CLOSED
    assert not conn.in_use
    extra = [h.tcp.socket() for _ in range(TCP_MAX_SOCKETS - 1)]
    assert len(extra) == TCP_MAX_SOCKETS - 1
    with pytest.raises(OSError):
        h.tcp.socket()


def test_socket_table_exhaustion(h):
    tcp = Tcp(h.ipv4, h.config, poll=h._poll, clock=FakeClock())
    sockets = [tcp.socket() for _ in range(TCP_MAX_SOCKETS)]
    assert len(sockets) == TCP_MAX_SOCKETS
    with pytest.raises(OSError):
        tcp.socket()
    sockets[3].close()
    assert sockets[3].state == TcpState.CLOSED
    reused = tcp.socket()
    assert reused.state == TcpState.CLOSED
    assert reused.in_use


def test_closed_socket_rejects_use(h):
    tcp = Tcp(h.ipv4, h.config, poll=h._poll, clock=FakeClock())
    sock = tcp.socket()
    sock.close()
    assert sock.state == TcpState.CLOSED
    assert not sock.in_use
    with pytest.raises(OSError):
        sock.bind(SERVER_PORT)
    with pytest.raises(OSError):
        sock.recv()


def test_unknown_port_is_ignored(h):
    tcp = Tcp(h.ipv4, h.config, poll=h._poll, clock=FakeClock())
    listener = tcp.socket()
    listener.bind(SERVER_PORT)
    listener.listen()
    tcp.receive(make_segment(REMOTE_PORT, 9999, 1, 0, TcpFlags.SYN), REMOTE_IP, LOCAL_IP)
    assert h.nic.sent == []
    assert listener.accept() is None


def test_short_segment_is_ignored(h):
    listener = h.tcp.socket()
    listener.bind(SERVER_PORT)
    listener.listen()
    h.tcp.receive(b"\x00" * 10, REMOTE_IP, LOCAL_IP)
    assert h.nic.sent == []


def test_segment_through_ip_layer(h):
    listener = h.tcp.socket()
    listener.bind(SERVER_PORT)
    listener.listen()
    segment = make_segment(REMOTE_PORT, SERVER_PORT, 50, 0, TcpFlags.SYN)
    ip_header = IPv4Header(total_length=20 + len(segment), protocol=6,
                           src_ip=REMOTE_IP, dst_ip=LOCAL_IP)
    h.ipv4.receive(ip_header.pack() + segment)
    assert h.sent()[-1][0].ack_num == 51