"""Bucket allocator for kernel heap memory on top of the frame allocator."""

from __future__ import annotations

from unistack.pmm import FRAME_SIZE, PhysicalMemoryManager
from unistack.vmm import VirtualMemoryManager

MIN_BUCKET_SIZE = 16
MAX_BUCKET_SIZE = 4096
NUM_BUCKETS = 9
HEADER_SIZE = 16
HEAP_MAGIC = 0xC0FFEE1234567890


class HeapCorruptionError(Exception):
    """An address handed to the heap does not carry a valid allocation header."""


def _bucket_index(size: int) -> int:
    return max(0, (size - 1).bit_length() - 4)


class Heap:
    """Power-of-two buckets from 16 to 4096 bytes; larger requests take whole frames.

    Every block starts with a header of its size and a magic word, written
    into physical memory in front of the returned address.
    """

    def __init__(self, pmm: PhysicalMemoryManager, vmm: VirtualMemoryManager) -> None:
        self._pmm = pmm
        self._vmm = vmm
        self._buckets: list[list[int]] = [[] for _ in range(NUM_BUCKETS)]

    def _write_header(self, header: int, size: int) -> None:
        phys = self._vmm.virt_to_phys(header)
        if phys is None:
            raise HeapCorruptionError(f"header at {header:#x} is not mapped")
        self._vmm.memory.write_u64(phys, size)
        self._vmm.memory.write_u64(phys + 8, HEAP_MAGIC)

    def _read_header(self, address: int) -> tuple[int, int, int]:
        header = address - HEADER_SIZE
        phys = self._vmm.virt_to_phys(header) if header % 8 == 0 else None
        if phys is None:
            raise HeapCorruptionError(f"no heap block at {address:#x}")
        magic = self._vmm.memory.read_u64(phys + 8)
        if magic != HEAP_MAGIC:
            raise HeapCorruptionError(
                f"heap corruption detected at {address:#x} (magic: {magic:#x})"
            )
        return header, phys, self._vmm.memory.read_u64(phys)

    def _alloc_large(self, size: int) -> int:
        pages = (size + HEADER_SIZE + FRAME_SIZE - 1) // FRAME_SIZE
        phys = self._pmm.alloc_frames(pages)
        header = self._vmm.phys_to_virt(phys)
        self._write_header(header, pages * FRAME_SIZE)
        return header + HEADER_SIZE

    def _refill(self, index: int) -> None:
        block_size = MIN_BUCKET_SIZE << index
        page = self._vmm.phys_to_virt(self._pmm.alloc_frame())
        self._buckets[index].extend(
            page + i * block_size for i in range(FRAME_SIZE // block_size)
        )

    def malloc(self, size: int) -> int:
        """Allocate ``size`` bytes and return the virtual address of the data."""
        if size < 1:
            raise ValueError("allocation size must be positive")
        total = size + HEADER_SIZE
        if total > MAX_BUCKET_SIZE:
            return self._alloc_large(size)
        index = _bucket_index(total)
        bucket = self._buckets[index]
        if not bucket:
            self._refill(index)
        header = bucket.pop()
        self._write_header(header, MIN_BUCKET_SIZE << index)
        return header + HEADER_SIZE

    def free(self, address: int) -> None:
        """Return a block to its bucket, or its frames to the frame allocator."""
        header, phys, size = self._read_header(address)
        if size > MAX_BUCKET_SIZE:
            for i in range(size // FRAME_SIZE):
                self._pmm.free_frame(phys + i * FRAME_SIZE)
            return
        self._buckets[_bucket_index(size)].append(header)

    def allocation_size(self, address: int) -> int:
        """Size recorded for the block, header included."""
        return self._read_header(address)[2]