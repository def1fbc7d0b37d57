"""Fixed-size bit array used to track allocation state."""

from __future__ import annotations


class Bitmap:
    """A fixed number of bits, all clear at creation.

    Reads past the end return False and writes past the end are ignored.
    """

    def __init__(self, size_in_bits: int) -> None:
        if size_in_bits < 0:
            raise ValueError("bitmap size must not be negative")
        self._size = size_in_bits
        self._bits = bytearray((size_in_bits + 7) // 8)

    def __len__(self) -> int:
        return self._size

    def __getitem__(self, index: int) -> bool:
        if not 0 <= index < self._size:
            return False
        return bool(self._bits[index >> 3] & (1 << (index & 7)))

    def set(self, index: int, value: bool) -> None:
        """Set or clear one bit; indices outside the bitmap are ignored."""
        if not 0 <= index < self._size:
            return
        mask = 1 << (index & 7)
        if value:
            self._bits[index >> 3] |= mask
        else:
            self._bits[index >> 3] &= ~mask & 0xFF

    def set_range(self, start: int, count: int, value: bool) -> None:
        """Set or clear ``count`` bits starting at ``start``."""
        low = max(start, 0)
        high = min(start + count, self._size)
        if low >= high:
            return
        first_full = (low + 7) // 8
        last_full = high // 8
        if first_full >= last_full:
            for index in range(low, high):
                self.set(index, value)
            return
        for index in range(low, first_full * 8):
            self.set(index, value)
        fill = b"\xff" if value else b"\x00"
        self._bits[first_full:last_full] = fill * (last_full - first_full)
        for index in range(last_full * 8, high):
            self.set(index, value)

    def _byte_full(self, index: int) -> bool:
        return index & 7 == 0 and self._bits[index >> 3] == 0xFF

    def find_first_free(self, start_index: int = 0) -> int | None:
        """Return the first clear bit at or after ``start_index``, or None."""
        index = max(start_index, 0)
        while index < self._size:
            if self._byte_full(index):
                index += 8
                continue
            if not self[index]:
                return index
            index += 1
        return None

    def find_first_free_sequence(self, count: int, start_index: int = 0) -> int | None:
        """Return the start of the first run of ``count`` clear bits, or None."""
        if count <= 0:
            return None
        run = 0
        run_start = 0
        index = max(start_index, 0)
        while index < self._size:
            if run == 0 and self._byte_full(index):
                index += 8
                continue
            if self[index]:
                run = 0
            else:
                if run == 0:
                    run_start = index
                run += 1
                if run >= count:
                    return run_start
            index += 1
        return None