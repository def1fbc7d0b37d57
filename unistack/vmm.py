"""Four-level x86-64 page tables kept in a simulated physical memory."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntFlag

from unistack.pmm import FRAME_SIZE, MAX_FRAMES, PhysicalMemoryManager

ADDRESS_MASK = 0x000FFFFFFFFFF000
U64_MASK = (1 << 64) - 1
ENTRIES_PER_TABLE = 512
ENTRY_SIZE = 8
MMIO_BASE = 0xFFFFFFFF90000000
DEFAULT_HHDM_OFFSET = 0xFFFF800000000000
DIRECT_MAP_SIZE = MAX_FRAMES * FRAME_SIZE


class PageFlags(IntFlag):
    PRESENT = 1 << 0
    WRITABLE = 1 << 1
    USER = 1 << 2
    PWT = 1 << 3
    PCD = 1 << 4
    NX = 1 << 63
    MMIO = PRESENT | WRITABLE | PCD | PWT


@dataclass(frozen=True)
class DMAAllocation:
    virt: int
    phys: int
    size: int


class PhysicalMemory:
    """Sparse model of RAM addressed in aligned 64-bit words; unwritten words read as zero."""

    def __init__(self) -> None:
        self._words: dict[int, int] = {}

    @staticmethod
    def _check(address: int) -> None:
        if address < 0 or address % ENTRY_SIZE:
            raise ValueError(f"address {address:#x} is not 8-byte aligned")

    def read_u64(self, address: int) -> int:
        self._check(address)
        return self._words.get(address, 0)

    def write_u64(self, address: int, value: int) -> None:
        self._check(address)
        if not 0 <= value <= U64_MASK:
            raise ValueError(f"value {value:#x} does not fit in 64 bits")
        if value:
            self._words[address] = value
        else:
            self._words.pop(address, None)

    def clear_frame(self, address: int) -> None:
        """Zero the whole frame holding ``address``."""
        base = address & ~(FRAME_SIZE - 1)
        for word in range(base, base + FRAME_SIZE, ENTRY_SIZE):
            self._words.pop(word, None)


def _table_indices(virt: int) -> tuple[int, int, int, int]:
    return (
        (virt >> 39) & 0x1FF,
        (virt >> 30) & 0x1FF,
        (virt >> 21) & 0x1FF,
        (virt >> 12) & 0x1FF,
    )


class VirtualMemoryManager:
    """Maps virtual pages through page tables allocated from the frame allocator.

    The kernel PML4 is allocated at construction. The higher-half direct map
    starting at ``hhdm_offset`` is treated as always present for translation.
    """

    def __init__(
        self,
        pmm: PhysicalMemoryManager,
        memory: PhysicalMemory | None = None,
        hhdm_offset: int = DEFAULT_HHDM_OFFSET,
    ) -> None:
        self.pmm = pmm
        self.memory = memory if memory is not None else PhysicalMemory()
        self.hhdm_offset = hhdm_offset
        self._kernel_pml4 = self._new_table()
        self._active = self._kernel_pml4
        self._mmio_next = MMIO_BASE

    def _new_table(self) -> int:
        frame = self.pmm.alloc_frame()
        self.memory.clear_frame(frame)
        return frame

    def _next_level(self, table: int, index: int) -> int:
        slot = table + index * ENTRY_SIZE
        entry = self.memory.read_u64(slot)
        if entry & PageFlags.PRESENT:
            return entry & ADDRESS_MASK
        frame = self._new_table()
        self.memory.write_u64(
            slot, frame | PageFlags.PRESENT | PageFlags.WRITABLE | PageFlags.USER
        )
        return frame

    def phys_to_virt(self, phys: int) -> int:
        return phys + self.hhdm_offset

    def virt_to_phys(self, virt: int) -> int | None:
        """Translate through the kernel tables; None when nothing maps ``virt``."""
        table = self._kernel_pml4
        for index in _table_indices(virt):
            entry = self.memory.read_u64(table + index * ENTRY_SIZE)
            if not entry & PageFlags.PRESENT:
                return self._direct_map_lookup(virt)
            table = entry & ADDRESS_MASK
        return table + (virt & 0xFFF)

    def _direct_map_lookup(self, virt: int) -> int | None:
        if self.hhdm_offset <= virt < self.hhdm_offset + DIRECT_MAP_SIZE:
            return virt - self.hhdm_offset
        return None

    def map_page(self, virt: int, phys: int, flags: int) -> None:
        self.map_page_in(self._kernel_pml4, virt, phys, flags)

    def map_page_in(self, pml4_phys: int, virt: int, phys: int, flags: int) -> None:
        """Map one page in the address space rooted at ``pml4_phys``."""
        pml4_index, pdpt_index, pd_index, pt_index = _table_indices(virt)
        pdpt = self._next_level(pml4_phys, pml4_index)
        pd = self._next_level(pdpt, pdpt_index)
        pt = self._next_level(pd, pd_index)
        self.memory.write_u64(pt + pt_index * ENTRY_SIZE, (phys | int(flags)) & U64_MASK)

    @property
    def kernel_pml4(self) -> int:
        return self._kernel_pml4

    @property
    def active_address_space(self) -> int:
        return self._active

    def create_address_space(self) -> int:
        """Allocate a PML4 sharing the kernel's upper-half mappings."""
        pml4 = self._new_table()
        for index in range(ENTRIES_PER_TABLE // 2, ENTRIES_PER_TABLE):
            entry = self.memory.read_u64(self._kernel_pml4 + index * ENTRY_SIZE)
            self.memory.write_u64(pml4 + index * ENTRY_SIZE, entry)
        return pml4

    def switch_address_space(self, pml4_phys: int) -> None:
        self._active = pml4_phys

    def _reserve_virtual(self, pages: int) -> int:
        base = self._mmio_next
        self._mmio_next += pages * FRAME_SIZE
        return base

    def map_mmio(self, phys_addr: int, size: int) -> int:
        """Map a device region uncached and return its virtual address."""
        if size <= 0:
            raise ValueError("MMIO region size must be positive")
        phys_page = phys_addr & ~0xFFF
        offset = phys_addr & 0xFFF
        pages = (size + offset + 0xFFF) // FRAME_SIZE
        virt_base = self._reserve_virtual(pages)
        for i in range(pages):
            self.map_page(virt_base + i * FRAME_SIZE, phys_page + i * FRAME_SIZE, PageFlags.MMIO)
        return virt_base + offset

    def alloc_dma(self, pages: int) -> DMAAllocation:
        """Allocate physically contiguous, uncached memory for device DMA."""
        phys = self.pmm.alloc_frames(pages)
        virt_base = self._reserve_virtual(pages)
        for i in range(pages):
            self.map_page(virt_base + i * FRAME_SIZE, phys + i * FRAME_SIZE, PageFlags.MMIO)
        return DMAAllocation(virt=virt_base, phys=phys, size=pages * FRAME_SIZE)