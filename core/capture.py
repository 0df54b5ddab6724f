from __future__ import annotations

import logging
import threading
import time
from typing import Literal, Optional

import numpy as np

from analysis.pattern_analyzer import PatternAnalyzer
from daq.base_device import SensorBank
from shared.config import DispenserConfig
from shared.models import AnalysisVerdict, CaptureResult
from shared.sample_buffer import SampleBuffer
from shared.telemetry import LogSink, emit, format_graph_message

logger = logging.getLogger(__name__)

CaptureState = Literal["idle", "armed", "sampling", "completed", "timed_out"]

IDLE: CaptureState = "idle"
ARMED: CaptureState = "armed"
SAMPLING: CaptureState = "sampling"
COMPLETED: CaptureState = "completed"
TIMED_OUT: CaptureState = "timed_out"


class CaptureTask(threading.Thread):
    """
    One detection window for one dispense attempt.

    The task arms, sets ``ready``, then polls every sensor until a reading
    crosses the amplitude threshold or the timeout expires. A trigger starts
    high-rate sampling into the shared buffer; the finished window goes
    through the learning pipeline and out as graph telemetry. ``finished``
    is set exactly once, whatever happens inside ``run``.
    """

    def __init__(
        self,
        actuator_index: int,
        sensors: SensorBank,
        analyzer: PatternAnalyzer,
        config: DispenserConfig,
        *,
        buffer: Optional[SampleBuffer] = None,
        log: Optional[LogSink] = None,
    ) -> None:
        super().__init__(name=f"CaptureTask-{actuator_index + 1}", daemon=True)
        self.actuator_index = int(actuator_index)
        self._sensors = sensors
        self._analyzer = analyzer
        self._config = config
        self._buffer = buffer
        self._log = log
        self._cancel = threading.Event()
        self.ready = threading.Event()
        self.finished = threading.Event()
        self.state: CaptureState = IDLE
        self.result = CaptureResult(triggered=False)

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> None:
        armed_at = time.monotonic()
        try:
            snapshot = self._analyzer.settings.get()
            self.state = ARMED
            self.ready.set()
            hit = self._wait_for_trigger(armed_at)
            if hit is None:
                self.state = TIMED_OUT
                self.result = CaptureResult(triggered=False, elapsed_sec=time.monotonic() - armed_at)
            else:
                channel, scan = hit
                self.state = SAMPLING
                self.result = self._sample(channel, scan, snapshot.measurement_count, armed_at)
                self.state = COMPLETED
            self._hold_minimum_window(armed_at)
        except Exception as exc:
            logger.exception("Capture for actuator %d failed", self.actuator_index)
            emit(self._log, f"[ERR] Capture failed for servo {self.actuator_index + 1}: {exc}")
            self.state = TIMED_OUT
            self.result = CaptureResult(triggered=False, elapsed_sec=time.monotonic() - armed_at)
        finally:
            # A failure before arming must not leave the orchestrator waiting.
            self.ready.set()
            self.finished.set()

    def _wait_for_trigger(self, armed_at: float) -> Optional[tuple]:
        threshold = self._config.piezo_threshold
        deadline = armed_at + self._config.capture_timeout_sec
        names = self._sensors.channel_names
        while not self._cancel.is_set():
            scan = self._sensors.read_all()
            for idx, value in enumerate(scan):
                if value > threshold:
                    emit(
                        self._log,
                        f"[PIEZO] {names[idx]} triggered ({value} > {threshold}) for servo {self.actuator_index + 1}",
                    )
                    return names[idx], scan
            if time.monotonic() >= deadline:
                return None
            if self._config.scan_interval_sec > 0:
                self._cancel.wait(self._config.scan_interval_sec)
        return None

    def _sample(self, trigger_channel: str, first_scan, measurement_count: int, armed_at: float) -> CaptureResult:
        buffer = self._buffer
        if buffer is None:
            buffer = SampleBuffer(self._sensors.n_channels, measurement_count + 1)
        buffer.reset(measurement_count + 1)
        buffer.append(first_scan)
        interval = self._config.sample_interval_sec
        for _ in range(measurement_count):
            if self._cancel.is_set():
                break
            buffer.append(self._sensors.read_all())
            if interval > 0:
                time.sleep(interval)
        window = buffer.snapshot()

        verdict: Optional[AnalysisVerdict] = None
        if self._cancel.is_set():
            emit(
                self._log,
                f"[PIEZO] Capture for servo {self.actuator_index + 1} cancelled after {window.shape[1]} samples; not scored",
            )
        else:
            verdict = self._analyzer.analyze_dispensing(self.actuator_index, window, trigger_channel)
            self._emit_graph(trigger_channel, window)
        return CaptureResult(
            triggered=True,
            trigger_channel=trigger_channel,
            window=window,
            verdict=verdict,
            elapsed_sec=time.monotonic() - armed_at,
        )

    def _emit_graph(self, trigger_channel: str, window: np.ndarray) -> None:
        if self._log is None:
            return
        emit(self._log, format_graph_message(trigger_channel, self._sensors.channel_names, window))

    def _hold_minimum_window(self, armed_at: float) -> None:
        remaining = self._config.min_capture_window_sec - (time.monotonic() - armed_at)
        if remaining > 0:
            self._cancel.wait(remaining)


__all__ = [
    "CaptureTask",
    "CaptureState",
    "IDLE",
    "ARMED",
    "SAMPLING",
    "COMPLETED",
    "TIMED_OUT",
]
