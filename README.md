# unistack

`unistack` is a compact IPv4 network stack together with a set of memory
managers: a bit map, a physical frame allocator, four-level page tables and a
bucket heap. Everything runs in plain Python against simulated memory and
in-memory network cards. You can drive the whole stack, inspect it and test it
without any hardware.

## What is inside

Memory management:

- `unistack.bitmap`: `Bitmap` is a fixed-size bit set with `find_first_free`
  and `find_first_free_sequence`. Reads past the end return `False`, and
  writes past the end are ignored.
- `unistack.pmm`: `PhysicalMemoryManager` is a 4 KiB frame allocator covering
  the first 512 MiB. It is built from `MemmapEntry` records tagged with a
  `MemoryType`. `alloc_frame` and `alloc_frames` raise `OutOfMemoryError`
  when no frames are left. `free_memory` and `total_memory` are properties.
- `unistack.vmm`: `VirtualMemoryManager` keeps x86-64 style four-level page
  tables in a sparse `PhysicalMemory` model.
  - `map_page` and `map_page_in` map pages using `PageFlags`.
  - `create_address_space` shares the kernel's upper half.
  - `map_mmio` maps device regions.
  - `alloc_dma` returns a `DMAAllocation`.
  - `switch_address_space` only records the active root. Nothing is loaded
    into a CPU.
- `unistack.heap`: `Heap` is a power-of-two bucket allocator for blocks of
  16 to 4096 bytes, header included. Larger requests get whole frames.
  Freeing an address without a valid header raises `HeapCorruptionError`.

Networking:

- `unistack.nic`: holds the abstract `Nic` card interface and `NetConfig`.
  It also has `LoopbackNic`, an in-memory card. Frames it sends are recorded
  in its `sent` list, and frames you queue with `inject` come back from
  `receive`.
- `unistack.ethernet`: `Ethernet` builds frames and dispatches them by
  `EtherType`. It raises `PayloadTooLargeError` for payloads over 1500 bytes.
  The module also has `mac_is_broadcast` and `format_mac`.
- `unistack.arp`: contains `ArpPacket`, a bounded `ArpTable` (32 slots by
  default) and `Arp`. `Arp.resolve` returns a MAC address, or `None` on
  timeout.
- `unistack.ipv4`: contains `IPv4Header`, the Internet `checksum`, `ip_make`,
  `ip_format` and the `IPv4` layer. The layer sends to the destination when it
  is on the same subnet, otherwise through the gateway.
- `unistack.icmp`: `Icmp` answers echo requests. It reports replies to its own
  pings as `PingReply` objects through the `on_reply` callback.
- `unistack.udp`: contains `Udp`, `udp_checksum` and `UdpSocket`. A socket
  holds one datagram at a time, and `recvfrom` returns a `Datagram` or `None`.
- `unistack.dhcp`: `Dhcp.request` runs DISCOVER/OFFER/REQUEST/ACK. It writes
  the lease into the shared `NetConfig` and returns a `DhcpLease`. It raises
  `TimeoutError` if the server stays silent. The module also has
  `parse_options`, `build_packet` and `build_frame`.
- `unistack.tcp`: contains `Tcp`, `TcpSocket`, `TcpHeader`, `tcp_checksum`,
  `TcpState` and `TcpFlags`. It covers the handshake, data transfer and both
  sides of connection teardown. `TcpSocket.connect` raises `TimeoutError`
  when no SYN-ACK arrives.
- `unistack.dns`: `Dns.resolve` looks up A records and raises `TimeoutError`
  when no answer comes. The module also has pure helpers that need no
  network: `is_ip_address`, `parse_ip`, `encode_name`, `build_query` and
  `parse_response`.
- `unistack.net`: `NetworkStack` takes a list of cards and uses the first one
  whose `probe()` succeeds. It raises `NoNicError` if none does. It wires
  every layer to that card and exposes them as attributes: `arp`, `ipv4`,
  `icmp`, `udp`, `tcp`, `dhcp`, `dns` and `config`.

IP addresses are 32-bit integers whose first octet is in the lowest byte.
`ip_make` and `ip_format` convert between that form and dotted text.

## Examples

Frame allocation from a memory map:

```python
from unistack.pmm import MemmapEntry, MemoryType, PhysicalMemoryManager

pmm = PhysicalMemoryManager([
    MemmapEntry(0x100000, 0x400000, MemoryType.USABLE),
])
frame = pmm.alloc_frame()
print(hex(frame), pmm.free_memory, pmm.total_memory)
pmm.free_frame(frame)
```

A heap on top of page tables:

```python
from unistack.heap import Heap
from unistack.vmm import VirtualMemoryManager

vmm = VirtualMemoryManager(pmm)
heap = Heap(pmm, vmm)
block = heap.malloc(100)
print(heap.allocation_size(block))   # 128
heap.free(block)
```

Addresses and checksums:

```python
from unistack.ipv4 import checksum, ip_format, ip_make

ip = ip_make(10, 0, 2, 15)
print(ip_format(ip))                         # 10.0.2.15
print(hex(checksum(b"\x45\x00\x00\x1c")))    # 0xbae3
```

DNS helpers:

```python
from unistack.dns import encode_name, is_ip_address, parse_ip

print(is_ip_address("192.168.1.1"))   # True
print(encode_name("www.example.com"))
print(ip_format(parse_ip("8.8.8.8")))
```

A stack on an in-memory card:

```python
from unistack.net import NetworkStack
from unistack.nic import LoopbackNic

nic = LoopbackNic(bytes.fromhex("020000000001"))
stack = NetworkStack([nic])
print(stack.link_up, stack.mac.hex(), stack.is_configured)

stack.arp.send_request(ip_make(10, 0, 2, 2))
print(len(nic.sent))   # 1 broadcast ARP request

nic.inject(some_frame)  # queued for the next poll
stack.poll()
```

Every blocking wait (ARP, DHCP, DNS, TCP connect) takes `poll` and `clock`
callables. Tests can use them to script a peer and control time.

## What it does not do

- There are no drivers for physical network cards. `LoopbackNic` is the only
  card provided; other cards have to be supplied as `Nic` subclasses.
- Memory is simulated. No real RAM or CPU page tables are touched.
- The package has no command-line tool and no server. It is a library to be
  driven from Python code.

## Running the tests

The test suite uses pytest and lives in `tests/`, one file per module:

```
pip install -e .[test]
pytest
```