"""Network interface devices and the interface's address configuration."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass

MAC_LENGTH = 6


@dataclass
class NetConfig:
    """Interface addresses as 32-bit values whose lowest byte is the first octet."""

    ip: int = 0
    netmask: int = 0
    gateway: int = 0
    dns: int = 0
    configured: bool = False

    def configure_ip(self, ip: int) -> None:
        """Set the interface address; an address of zero means unconfigured."""
        self.ip = ip
        self.configured = ip != 0


class Nic(ABC):
    """A network card that moves whole Ethernet frames."""

    @abstractmethod
    def probe(self) -> bool:
        """Look for the device and bring it up; False when it is absent."""

    @abstractmethod
    def send(self, frame: bytes) -> bool:
        """Transmit one frame; False when the device could not take it."""

    @abstractmethod
    def receive(self) -> bytes | None:
        """Return the next received frame, or None when none is waiting."""

    @property
    @abstractmethod
    def mac(self) -> bytes:
        """The six-byte hardware address."""

    @property
    @abstractmethod
    def link_up(self) -> bool:
        """Whether the physical link is established."""

    def poll(self) -> bool:
        """Service the device and report whether its link is up."""
        return self.link_up


class LoopbackNic(Nic):
    """An in-memory card: sent frames are recorded, injected frames are received."""

    def __init__(self, mac: bytes) -> None:
        mac = bytes(mac)
        if len(mac) != MAC_LENGTH:
            raise ValueError(f"MAC address must be {MAC_LENGTH} bytes, got {len(mac)}")
        self._mac = mac
        self._inbox: deque[bytes] = deque()
        self.sent: list[bytes] = []
        self.connected = True

    def probe(self) -> bool:
        return True

    def send(self, frame: bytes) -> bool:
        if not self.connected:
            return False
        self.sent.append(bytes(frame))
        return True

    def receive(self) -> bytes | None:
        return self._inbox.popleft() if self._inbox else None

    @property
    def mac(self) -> bytes:
        return self._mac

    @property
    def link_up(self) -> bool:
        return self.connected

    def inject(self, frame: bytes) -> None:
        """Queue a frame as if it had arrived on the wire."""
        self._inbox.append(bytes(frame))