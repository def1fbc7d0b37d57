"""Ethernet framing and demultiplexing by EtherType."""

from __future__ import annotations

import logging
import struct
from enum import IntEnum
from typing import Callable

from unistack.nic import Nic

logger = logging.getLogger(__name__)

ETH_ALEN = 6
ETH_HLEN = 14
ETH_DATA_LEN = 1500
ETH_FRAME_LEN = 1514
BROADCAST_MAC = b"\xff" * ETH_ALEN

_HEADER = struct.Struct(">6s6sH")

FrameHandler = Callable[[bytes, bytes], None]


class EtherType(IntEnum):
    IPV4 = 0x0800
    ARP = 0x0806
    IPV6 = 0x86DD


class PayloadTooLargeError(ValueError):
    """The payload does not fit in a single frame or packet."""


def mac_is_broadcast(mac: bytes) -> bool:
    return bytes(mac) == BROADCAST_MAC


def format_mac(mac: bytes) -> str:
    return ":".join(f"{octet:02x}" for octet in mac)


class Ethernet:
    """Builds frames for the card and hands received payloads to protocol handlers."""

    def __init__(self, nic: Nic) -> None:
        self.nic = nic
        self._handlers: dict[int, FrameHandler] = {}

    def register(self, ethertype: int, handler: FrameHandler) -> None:
        """Deliver payloads of ``ethertype`` to ``handler(payload, src_mac)``."""
        self._handlers[int(ethertype)] = handler

    def send(self, dst_mac: bytes, ethertype: int, data: bytes) -> bool:
        """Frame ``data`` for ``dst_mac`` and transmit it; False if the card refused."""
        dst_mac = bytes(dst_mac)
        if len(dst_mac) != ETH_ALEN:
            raise ValueError(f"MAC address must be {ETH_ALEN} bytes")
        payload = bytes(data)
        if len(payload) > ETH_DATA_LEN:
            logger.warning("Ethernet: Payload too large (%d > %d)", len(payload), ETH_DATA_LEN)
            raise PayloadTooLargeError(
                f"payload of {len(payload)} bytes exceeds {ETH_DATA_LEN}"
            )
        frame = _HEADER.pack(dst_mac, self.nic.mac, int(ethertype)) + payload
        return self.nic.send(frame)

    def receive(self, frame: bytes) -> None:
        """Dispatch a frame addressed to us or to broadcast; drop anything else."""
        frame = bytes(frame)
        if len(frame) < ETH_HLEN:
            return
        dst_mac, src_mac, ethertype = _HEADER.unpack_from(frame)
        if dst_mac != self.nic.mac and not mac_is_broadcast(dst_mac):
            return
        handler = self._handlers.get(ethertype)
        if handler is not None:
            handler(frame[ETH_HLEN:], src_mac)