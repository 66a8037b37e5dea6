"""Bounded, byte-addressable memory backing load/store/put/print.

Every access is checked against ``0 <= offset`` and
``offset + length <= capacity``. Failed accesses return a failure value
(``False`` or ``None``) instead of raising and never write partially.
"""

from __future__ import annotations
from typing import Any, Optional

import numpy as np
from numpy.typing import NDArray


MEM_CAPACITY = 1 << 16
VALID_WIDTHS = frozenset({1, 2, 4, 8})


class Memory:
    def __init__(self, capacity: int = MEM_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("Memory capacity must be positive")
        self.capacity = capacity
        self._data: NDArray[np.uint8] = np.zeros(capacity, dtype=np.uint8)

    def in_bounds(self, offset: int, length: int) -> bool:
        return offset >= 0 and length >= 0 and offset + length <= self.capacity

    def load(self, destination: Any, offset: int, length: int) -> bool:
        """Copy ``length`` bytes at ``offset`` into a writable buffer."""
        if not self.in_bounds(offset, length):
            return False
        view = memoryview(destination).cast("B")
        if len(view) < length:
            return False
        view[:length] = self._data[offset:offset + length].tobytes()
        return True

    def store(self, source: Any, offset: int, length: int) -> bool:
        """Copy the first ``length`` bytes of ``source`` to ``offset``."""
        if not self.in_bounds(offset, length):
            return False
        view = memoryview(source).cast("B")
        if len(view) < length:
            return False
        self._data[offset:offset + length] = np.frombuffer(view[:length].tobytes(), dtype=np.uint8)
        return True

    def read_int(self, offset: int, width: int) -> Optional[int]:
        """Read an unsigned little-endian integer of ``width`` bytes."""
        if width not in VALID_WIDTHS:
            return None
        buffer = bytearray(width)
        if not self.load(buffer, offset, width):
            return None
        return int.from_bytes(buffer, "little")

    def write_int(self, value: int, offset: int, width: int) -> bool:
        """Write the low ``width`` bytes of ``value`` little-endian."""
        if width not in VALID_WIDTHS:
            return False
        raw = (value & ((1 << (8 * width)) - 1)).to_bytes(width, "little")
        return self.store(raw, offset, width)

    def read_cstring(self, offset: int, limit: Optional[int] = None) -> Optional[bytes]:
        """Read bytes up to (not including) the first null byte.

        At most ``limit`` bytes are scanned (``capacity - 1`` by default) and
        the scan stops there even without a terminator. Returns ``None`` when
        the scan would leave memory before finding a terminator.
        """
        if limit is None:
            limit = self.capacity - 1
        if offset < 0:
            return None
        window = self._data[offset:offset + limit]
        nulls = np.flatnonzero(window == 0)
        if nulls.size:
            return window[:int(nulls[0])].tobytes()
        if len(window) < limit:
            return None
        return window.tobytes()

    def snapshot(self, offset: int = 0, length: Optional[int] = None) -> bytes:
        if length is None:
            length = self.capacity - offset
        if not self.in_bounds(offset, length):
            raise IndexError(f"Region {offset}+{length} outside memory of {self.capacity} bytes")
        return self._data[offset:offset + length].tobytes()

    def reset(self) -> None:
        self._data.fill(0)
