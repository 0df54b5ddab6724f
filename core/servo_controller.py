from __future__ import annotations

import logging
import threading
from typing import List, Optional

from analysis.settings import InvalidParameter
from daq.base_device import ServoDriver
from shared.telemetry import LogSink, emit

logger = logging.getLogger(__name__)


def _validate_angle(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(f"{name} must be an integer")
    if not 0 <= value <= 180:
        raise InvalidParameter(f"{name} {value} must be within 0-180")
    return value


class ServoController:
    """
    Angle bookkeeping on top of a :class:`ServoDriver`.

    Each actuator swings between the start angle and the dispense angle; one
    swing drops one pill from its bottle.
    """

    def __init__(
        self,
        driver: ServoDriver,
        *,
        angle: int = 80,
        start_angle: int = 0,
        reset_angle: int = 180,
        log: Optional[LogSink] = None,
    ) -> None:
        self._driver = driver
        self._angle = _validate_angle("angle", angle)
        self._start_angle = _validate_angle("start_angle", start_angle)
        self._reset_angle = _validate_angle("reset_angle", reset_angle)
        self._log = log
        self._lock = threading.RLock()
        self._counter = 0
        self._at_start = True
        self._positions: List[Optional[int]] = [None] * driver.actuator_count

    @property
    def driver(self) -> ServoDriver:
        return self._driver

    @property
    def actuator_count(self) -> int:
        return self._driver.actuator_count

    @property
    def angle(self) -> int:
        return self._angle

    @property
    def start_angle(self) -> int:
        return self._start_angle

    @property
    def reset_angle(self) -> int:
        return self._reset_angle

    @property
    def counter(self) -> int:
        return self._counter

    @property
    def at_start(self) -> bool:
        return self._at_start

    def position(self, index: int) -> Optional[int]:
        """Last commanded angle, or None before the first move."""
        return self._positions[index]

    def move(self, index: int, angle: int) -> None:
        if not 0 <= index < self.actuator_count:
            raise IndexError(f"actuator index {index} out of range")
        with self._lock:
            self._driver.move_to(index, angle)
            self._positions[index] = max(0, min(180, int(angle)))

    def home(self) -> None:
        """Move every actuator to the start angle."""
        with self._lock:
            for idx in range(self.actuator_count):
                self.move(idx, self._start_angle)
            self._at_start = True

    def toggle_actuator(self, index: int) -> int:
        """Swing one actuator to the opposite end of its travel and return the target angle."""
        with self._lock:
            current = self._positions[index] if 0 <= index < self.actuator_count else None
            if current is None:
                current = self._start_angle
            target = self._angle if current == self._start_angle else self._start_angle
            self.move(index, target)
            return target

    def toggle(self) -> int:
        """Swing all actuators together; returns the new toggle count."""
        with self._lock:
            self._counter += 1
            target = self._angle if self._at_start else self._start_angle
            for idx in range(self.actuator_count):
                self.move(idx, target)
            self._at_start = not self._at_start
            if self._at_start:
                emit(self._log, f"[RUN] Start angle: {self._start_angle}° | Counter: {self._counter}")
            else:
                emit(self._log, f"[RUN] Angle: {self._angle}° | Counter: {self._counter}")
            return self._counter

    def reset_all(self) -> None:
        with self._lock:
            for idx in range(self.actuator_count):
                self.move(idx, self._reset_angle)
        logger.debug("All actuators moved to reset angle %d", self._reset_angle)

    def reset_counter(self) -> None:
        with self._lock:
            self._counter = 0

    def set_angle(self, value: int) -> None:
        """Raises InvalidParameter and keeps the previous angle on bad input."""
        with self._lock:
            self._angle = _validate_angle("angle", value)

    def set_start_angle(self, value: int) -> None:
        with self._lock:
            self._start_angle = _validate_angle("start_angle", value)
            self.home()


__all__ = ["ServoController"]
