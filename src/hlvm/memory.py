"""Bounds-checked 2D word memory.

An address splits into column bits (low) and row bits (high). The default
8 + 8 bits give a 256 x 256 grid of 65536 unsigned 32-bit words.
"""

import logging
from typing import Dict, List, Tuple

from .errors import MemoryBoundsError

logger = logging.getLogger(__name__)

ROW_BITS = 8
COL_BITS = 8


class Memory2D:
    """A ROWS x COLS grid of u32 words."""

    def __init__(self, row_bits: int = ROW_BITS, col_bits: int = COL_BITS):
        if row_bits < 0 or col_bits < 0 or row_bits + col_bits > 16:
            raise ValueError("Memory2D: row_bits + col_bits must be <= 16")
        self.row_bits = row_bits
        self.col_bits = col_bits
        self.rows = 1 << row_bits
        self.cols = 1 << col_bits
        self.size = self.rows * self.cols
        self.grid: List[List[int]] = [[0] * self.cols for _ in range(self.rows)]

    def __repr__(self) -> str:
        return f"Memory2D({self.rows}x{self.cols})"

    def coords(self, addr: int) -> Tuple[int, int]:
        """Split an address into (row, col)."""
        addr &= 0xFFFFFFFF
        col = addr & (self.cols - 1)
        row = (addr >> self.col_bits) & (self.rows - 1)
        return row, col

    def in_bounds(self, addr: int) -> bool:
        return 0 <= addr < self.size

    def read(self, addr: int) -> int:
        if not self.in_bounds(addr):
            raise MemoryBoundsError(
                f"MEM READ OOB addr=0x{addr & 0xFFFFFFFF:x}", addr, MemoryBoundsError.READ,
            )
        row, col = self.coords(addr)
        value = self.grid[row][col]
        logger.debug("MEM READ  addr=0x%04x -> [r%d,c%d] = %d", addr, row, col, value)
        return value

    def write(self, addr: int, value: int) -> None:
        if not self.in_bounds(addr):
            raise MemoryBoundsError(
                f"MEM WRITE OOB addr=0x{addr & 0xFFFFFFFF:x} val={value & 0xFFFFFFFF}",
                addr, MemoryBoundsError.WRITE, value=value,
            )
        row, col = self.coords(addr)
        self.grid[row][col] = value & 0xFFFFFFFF
        logger.debug(
            "MEM WRITE addr=0x%04x -> [r%d,c%d] = %d", addr, row, col, self.grid[row][col]
        )

    def dump_window(self, addr: int, radius_rows: int = 1, radius_cols: int = 4) -> List[Dict]:
        """Return the words around ``addr`` as ``[{"row": r, "cols": [...]}, ...]``."""
        row, col = self.coords(addr)
        window = []
        for r in range(max(0, row - radius_rows), min(self.rows - 1, row + radius_rows) + 1):
            cols = self.grid[r][max(0, col - radius_cols):min(self.cols - 1, col + radius_cols) + 1]
            window.append({"row": r, "cols": list(cols)})
        return window
