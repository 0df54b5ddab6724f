from __future__ import annotations

"""
Base classes for the dispenser's sensing and actuation hardware.

Goals:
- Simple, stable contract for the capture task (one scan = one reading per channel).
- Clean lifecycle: open → use → close.
- Runtime-sized channel and actuator sets, checked against configuration at startup.

Subclasses implement the *_impl() methods to integrate real hardware
(or simulators) while relying on the shared bookkeeping here.
"""

import threading
from abc import ABC, abstractmethod
from typing import List, Literal, Optional, Sequence, Tuple

from shared.models import channel_labels

State = Literal["closed", "open"]


class _Lifecycle:
    def __init__(self) -> None:
        self._state_lock = threading.RLock()
        self._state: State = "closed"

    @property
    def state(self) -> State:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == "open"

    def _assert_open(self) -> None:
        if self._state != "open":
            raise RuntimeError(f"{type(self).__name__} is {self._state}; call open() first")

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        with self._state_lock:
            if self._state == "open":
                return
            self._open_impl()
            self._state = "open"

    def close(self) -> None:
        with self._state_lock:
            if self._state == "closed":
                return
            try:
                self._close_impl()
            finally:
                self._state = "closed"

    def _open_impl(self) -> None:
        """Driver-specific resource acquisition."""

    def _close_impl(self) -> None:
        """Driver-specific resource release."""


class SensorBank(_Lifecycle, ABC):
    """
    Abstract base for a set of vibration sensor channels.

    Typical flow:
        bank = Driver(...)
        bank.open()
        scan = bank.read_all()   # one int per channel, in channel order
        bank.close()
    """

    def __init__(self, channel_names: Sequence[str]) -> None:
        super().__init__()
        self._channel_names: Tuple[str, ...] = channel_labels(channel_names)
        self._scans = 0

    @property
    def channel_names(self) -> Tuple[str, ...]:
        return self._channel_names

    @property
    def n_channels(self) -> int:
        return len(self._channel_names)

    @property
    def scans(self) -> int:
        """Number of completed read_all() calls since creation."""
        return self._scans

    def read_all(self) -> List[int]:
        """Read every channel once, as fast as the hardware allows."""
        self._assert_open()
        values = [int(v) for v in self._read_impl()]
        if len(values) != self.n_channels:
            raise RuntimeError(f"driver returned {len(values)} readings for {self.n_channels} channels")
        self._scans += 1
        return values

    @abstractmethod
    def _read_impl(self) -> Sequence[int]:
        raise NotImplementedError


class ServoDriver(_Lifecycle, ABC):
    """
    Opaque "move actuator N to angle A and block until settled" primitive.

    The angle-to-pulse conversion lives below this interface.
    """

    def __init__(self, actuator_count: int) -> None:
        super().__init__()
        if actuator_count <= 0:
            raise ValueError("actuator_count must be positive")
        self._actuator_count = int(actuator_count)
        self._move_lock = threading.Lock()
        self._last_angles: List[Optional[int]] = [None] * self._actuator_count

    @property
    def actuator_count(self) -> int:
        return self._actuator_count

    def last_angle(self, index: int) -> Optional[int]:
        return self._last_angles[index]

    def move_to(self, index: int, angle: int) -> None:
        self._assert_open()
        if not 0 <= index < self._actuator_count:
            raise IndexError(f"actuator index {index} out of range")
        angle = max(0, min(180, int(angle)))
        with self._move_lock:
            self._move_impl(index, angle)
            self._last_angles[index] = angle

    @abstractmethod
    def _move_impl(self, index: int, angle: int) -> None:
        raise NotImplementedError


__all__ = ["SensorBank", "ServoDriver", "State"]
