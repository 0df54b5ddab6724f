from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from shared.config import DispenserConfig
from shared.models import CaptureResult
from shared.telemetry import LogSink, emit

from .capture import CaptureTask
from .servo_controller import ServoController

logger = logging.getLogger(__name__)

CaptureFactory = Callable[[int], CaptureTask]


class DispenseOrchestrator:
    """
    Closed-loop dispensing: swing an actuator, listen for the drop, retry.

    Only one dispense runs at a time across all actuators. Every attempt owns
    a fresh capture task that is always joined before the next attempt starts
    or the call returns.
    """

    def __init__(
        self,
        config: DispenserConfig,
        servos: ServoController,
        capture_factory: CaptureFactory,
        *,
        log: Optional[LogSink] = None,
    ) -> None:
        self._config = config
        self._servos = servos
        self._capture_factory = capture_factory
        self._log = log
        self._lock = threading.Lock()
        self.last_result: Optional[CaptureResult] = None
        self.attempts_used = 0

    def _emit(self, message: str) -> None:
        emit(self._log, message)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def dispense(self, actuator_index: int, max_attempts: Optional[int] = None) -> bool:
        attempts = self._config.default_max_attempts if max_attempts is None else max_attempts
        if not 0 <= actuator_index < self._servos.actuator_count:
            self._emit(f"[ERR] Invalid servo index {actuator_index + 1}")
            return False
        if isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 1:
            self._emit(f"[ERR] Invalid max attempts {attempts!r}")
            return False

        if not self._lock.acquire(timeout=self._config.dispense_lock_timeout_sec):
            self._emit(f"[ERR] Could not acquire dispensing lock for servo {actuator_index + 1}")
            return False
        try:
            return self._run_attempts(actuator_index, attempts)
        finally:
            self._lock.release()

    def _run_attempts(self, actuator_index: int, max_attempts: int) -> bool:
        servo_no = actuator_index + 1
        self.last_result = None
        self.attempts_used = 0
        self._emit(f"[SERVO] Fast dispensing from servo {servo_no} (max {max_attempts} attempts)")

        for attempt in range(1, max_attempts + 1):
            self.attempts_used = attempt
            self._emit(f"[SERVO] Attempt {attempt}/{max_attempts}")
            result = self._attempt(actuator_index)
            if result is None:
                break
            self.last_result = result
            if result.triggered:
                self._emit(f"[SUCCESS] Fast dispense completed in {attempt} attempts")
                return True
            if attempt < max_attempts and self._config.retry_pause_sec > 0:
                time.sleep(self._config.retry_pause_sec)

        self._emit(f"[FAILED] Fast dispense failed after {self.attempts_used} attempts")
        return False

    def _attempt(self, actuator_index: int) -> Optional[CaptureResult]:
        """Run one swing-and-listen cycle; None means the dispense must stop here."""
        guard = self._config.finish_timeout_sec
        servo_no = actuator_index + 1
        task = self._capture_factory(actuator_index)
        task.start()
        try:
            if not task.ready.wait(guard):
                self._emit(f"[ERR] Capture for servo {servo_no} never armed")
                return CaptureResult(triggered=False)
            try:
                target = self._servos.toggle_actuator(actuator_index)
            except (RuntimeError, OSError) as exc:
                logger.exception("Actuator %d move failed", actuator_index)
                self._emit(f"[ERR] Servo {servo_no} move failed: {exc}")
                return None
            logger.debug("Actuator %d moved to %d", actuator_index, target)
            if not task.finished.wait(guard):
                self._emit(f"[ERR] Capture for servo {servo_no} did not finish in {guard:.1f}s")
        finally:
            self._cleanup(task)
        # The result is only final once the task has signalled completion.
        if not task.finished.is_set():
            self._emit(f"[ERR] Capture for servo {servo_no} is still running; stopping dispense")
            return None
        return task.result

    def _cleanup(self, task: CaptureTask) -> None:
        if not task.finished.is_set():
            task.cancel()
        task.join(self._config.finish_grace_sec)
        if task.is_alive():
            logger.warning("Capture thread %s still running after cancel", task.name)


__all__ = ["DispenseOrchestrator", "CaptureFactory"]
