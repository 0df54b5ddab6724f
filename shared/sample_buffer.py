from __future__ import annotations

from threading import RLock
from typing import Sequence, Tuple

import numpy as np


class SampleBuffer:
    """
    Per-channel capture buffer backed by a preallocated NumPy array.

    Rows are sensor channels, columns are successive round-robin scans. Only
    the active capture task writes here; the dispenser's exclusivity lock is
    what keeps a second writer away. The lock below only protects resizing.
    """

    def __init__(self, n_channels: int, capacity: int, dtype: np.dtype | str = np.int32) -> None:
        n_channels = int(n_channels)
        capacity = int(capacity)
        if n_channels <= 0:
            raise ValueError("n_channels must be positive")
        if capacity <= 0:
            raise ValueError("capacity must be positive")

        self._n_channels = n_channels
        self._data = np.zeros((n_channels, capacity), dtype=dtype)
        self._lock = RLock()
        self._length = 0

    @property
    def capacity(self) -> int:
        return self._data.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        return (self._n_channels, self.capacity)

    @property
    def dtype(self) -> np.dtype:
        return self._data.dtype

    @property
    def length(self) -> int:
        """Number of columns written since the last reset."""
        return self._length

    def reset(self, required: int) -> None:
        """Prepare for a new capture of `required` columns, growing if needed."""
        required = int(required)
        if required <= 0:
            raise ValueError("required length must be positive")
        with self._lock:
            if required > self.capacity:
                self._data = np.zeros((self._n_channels, required), dtype=self._data.dtype)
            self._length = 0

    def append(self, scan: Sequence[int]) -> int:
        """
        Store one reading per channel as the next column.

        Returns the column index written.
        """
        if len(scan) != self._n_channels:
            raise ValueError(f"scan must have {self._n_channels} values, got {len(scan)}")
        idx = self._length
        if idx >= self.capacity:
            raise ValueError("sample buffer is full")
        self._data[:, idx] = scan
        self._length = idx + 1
        return idx

    def snapshot(self) -> np.ndarray:
        """Return a copy of the columns written so far."""
        with self._lock:
            return np.array(self._data[:, : self._length], copy=True)


__all__ = ["SampleBuffer"]
