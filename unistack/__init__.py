"""A small IPv4 network stack and memory managers on simulated memory and network cards."""

__version__ = "0.1.0"

__all__ = [
    "arp",
    "bitmap",
    "dhcp",
    "dns",
    "ethernet",
    "heap",
    "icmp",
    "ipv4",
    "net",
    "nic",
    "pmm",
    "tcp",
    "udp",
    "vmm",
]