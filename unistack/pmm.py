"""Physical frame allocator driven by a boot memory map."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable

from unistack.bitmap import Bitmap

logger = logging.getLogger(__name__)

FRAME_SIZE = 4096
BITMAP_BYTES = 16384
MAX_FRAMES = BITMAP_BYTES * 8


class MemoryType(IntEnum):
    USABLE = 0
    RESERVED = 1
    ACPI_RECLAIMABLE = 2
    ACPI_NVS = 3
    BAD_MEMORY = 4
    BOOTLOADER_RECLAIMABLE = 5
    KERNEL_AND_MODULES = 6
    FRAMEBUFFER = 7


@dataclass(frozen=True)
class MemmapEntry:
    base: int
    length: int
    type: MemoryType


class OutOfMemoryError(MemoryError):
    """No free physical frames satisfy the request."""


class PhysicalMemoryManager:
    """Tracks 4 KiB frames of the first 512 MiB of physical memory."""

    def __init__(self, entries: Iterable[MemmapEntry]) -> None:
        self._bitmap = Bitmap(MAX_FRAMES)
        self._bitmap.set_range(0, MAX_FRAMES, True)
        self._total = 0
        self._free = 0
        self._highest = 0

        for entry in entries:
            if entry.type != MemoryType.USABLE:
                continue
            base = (entry.base + FRAME_SIZE - 1) & ~(FRAME_SIZE - 1)
            length = max(entry.length - (base - entry.base), 0) & ~(FRAME_SIZE - 1)
            first = base // FRAME_SIZE
            last = min((base + length) // FRAME_SIZE, MAX_FRAMES)
            if first >= last:
                continue
            self._bitmap.set_range(first, last - first, False)
            self._free += (last - first) * FRAME_SIZE
            self._total += (last - first) * FRAME_SIZE
            self._highest = max(self._highest, last - 1)

        logger.info(
            "PMM: Total Memory: %d MB, Free Memory: %d MB",
            self._total // (1024 * 1024),
            self._free // (1024 * 1024),
        )

    def alloc_frame(self) -> int:
        """Allocate one frame and return its physical address."""
        frame = self._bitmap.find_first_free()
        if frame is None or frame > self._highest:
            raise OutOfMemoryError("no free physical frame")
        self._bitmap.set(frame, True)
        self._free -= FRAME_SIZE
        return frame * FRAME_SIZE

    def alloc_frames(self, count: int) -> int:
        """Allocate ``count`` contiguous frames and return the first address."""
        if count < 1:
            raise ValueError("frame count must be positive")
        frame = self._bitmap.find_first_free_sequence(count)
        if frame is None or frame + count - 1 > self._highest:
            raise OutOfMemoryError(f"no run of {count} free physical frames")
        self._bitmap.set_range(frame, count, True)
        self._free -= FRAME_SIZE * count
        return frame * FRAME_SIZE

    def free_frame(self, address: int) -> None:
        """Release the frame holding ``address``; freeing a free frame does nothing."""
        frame = address // FRAME_SIZE
        if 0 <= frame < MAX_FRAMES and self._bitmap[frame]:
            self._bitmap.set(frame, False)
            self._free += FRAME_SIZE

    def is_allocated(self, address: int) -> bool:
        return self._bitmap[address // FRAME_SIZE]

    @property
    def free_memory(self) -> int:
        return self._free

    @property
    def total_memory(self) -> int:
        return self._total