"""The assembled network stack bound to the first network card that answers."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from unistack.arp import Arp
from unistack.dhcp import DHCP_CLIENT_PORT, Dhcp
from unistack.dns import Dns
from unistack.ethernet import Ethernet
from unistack.icmp import Icmp
from unistack.ipv4 import IPv4
from unistack.nic import NetConfig, Nic
from unistack.tcp import Tcp
from unistack.udp import Udp

logger = logging.getLogger(__name__)


class NoNicError(OSError):
    """No network card answered the probe."""


class NetworkStack:
    """Probes cards in order, uses the first found and wires every protocol layer to it."""

    def __init__(
        self, nics: Iterable[Nic], clock: Callable[[], float] = time.monotonic
    ) -> None:
        nic = next((candidate for candidate in nics if candidate.probe()), None)
        if nic is None:
            logger.warning("Net: No supported NIC found, network disabled")
            raise NoNicError("Net: No supported NIC found, network disabled")
        logger.info("Net: Using %s driver", type(nic).__name__)
        self.nic = nic
        self.config = NetConfig()
        self.ethernet = Ethernet(nic)
        self.arp = Arp(self.ethernet, self.config, poll=self.poll, clock=clock)
        self.ipv4 = IPv4(self.ethernet, self.arp, self.config)
        self.icmp = Icmp(self.ipv4, clock=clock)
        self.udp = Udp(self.ipv4, self.config)
        self.tcp = Tcp(self.ipv4, self.config, poll=self.poll, clock=clock)
        self.dhcp = Dhcp(self.ethernet, self.config, poll=self.poll, clock=clock)
        self.dns = Dns(self.udp, self.config, poll=self.poll, clock=clock)
        self.udp.set_fallback(DHCP_CLIENT_PORT, self.dhcp.receive)

    def poll(self) -> None:
        """Service the card and pass every waiting frame up the stack."""
        self.nic.poll()
        while frame := self.nic.receive():
            self.ethernet.receive(frame)

    @property
    def link_up(self) -> bool:
        return self.nic.link_up

    @property
    def mac(self) -> bytes:
        return self.nic.mac

    @property
    def is_configured(self) -> bool:
        return self.config.configured

    def send_raw(self, frame: bytes) -> bool:
        """Hand a complete frame to the card."""
        return self.nic.send(frame)