from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional, Tuple, Union

from analysis.pattern_analyzer import PatternAnalyzer
from analysis.settings import DetectionSettings, DetectionSettingsStore, InvalidParameter
from daq.base_device import SensorBank, ServoDriver
from recording.model_store import ModelStore
from shared.config import DispenserConfig
from shared.sample_buffer import SampleBuffer
from shared.telemetry import LogSink, emit, logger_sink

from .capture import CaptureTask
from .dispenser import DispenseOrchestrator
from .servo_controller import ServoController

if TYPE_CHECKING:  # pragma: no cover - typing only
    from shared.app_settings import AppSettingsStore
else:  # pragma: no cover - runtime fallback
    AppSettingsStore = Any

ALL = "ALL"


class DispenserRuntime:
    """
    Headless owner of the dispensing subsystem.

    Wires the hardware adapters, the learning pipeline and the orchestrator
    together and exposes the operator verbs. Verbs never raise for bad input
    or hardware trouble; they log through the sink and return a bool or value.

    Both stores can be injected. When ``app_settings_store`` is omitted,
    operator preferences are not persisted across restarts.
    """

    def __init__(
        self,
        sensors: SensorBank,
        servos: ServoDriver,
        config: Optional[DispenserConfig] = None,
        *,
        app_settings_store: Optional[AppSettingsStore] = None,
        model_store: Optional[ModelStore] = None,
        log: Optional[LogSink] = None,
        logger: Optional[logging.Logger] = None,
        autoload: bool = True,
    ) -> None:
        self.config = config or DispenserConfig()
        self.config.validate_hardware(sensors, servos)
        self.logger = logger or logging.getLogger(__name__)
        self._log = log if log is not None else logger_sink()
        self.app_settings_store = app_settings_store
        self.sensors = sensors
        self.servo_driver = servos

        prefs = app_settings_store.get() if app_settings_store is not None else None
        self.detection_settings = DetectionSettingsStore(self._initial_detection_settings(prefs))
        self.detection_settings.subscribe(self._store_detection_settings, replay=False)
        self._default_max_attempts = self.config.default_max_attempts
        angle, start_angle = self.config.dispense_angle, self.config.start_angle
        if prefs is not None:
            if prefs.default_max_attempts >= 1:
                self._default_max_attempts = prefs.default_max_attempts
            if 0 <= prefs.dispense_angle <= 180:
                angle = prefs.dispense_angle
            if 0 <= prefs.start_angle <= 180:
                start_angle = prefs.start_angle

        self.model_store = model_store or ModelStore(self.config.storage_dir, self.config.n_channels)
        self.analyzer = PatternAnalyzer(
            self.config,
            self.detection_settings,
            self.model_store,
            log=self._log,
            autoload=autoload,
        )
        self.servos = ServoController(
            servos,
            angle=angle,
            start_angle=start_angle,
            reset_angle=self.config.reset_angle,
            log=self._log,
        )
        self._buffer = SampleBuffer(
            self.config.n_channels, self.detection_settings.get().measurement_count + 1
        )
        self.orchestrator = DispenseOrchestrator(
            self.config, self.servos, self.new_capture_task, log=self._log
        )

    def _initial_detection_settings(self, prefs) -> DetectionSettings:
        if prefs is None:
            return DetectionSettings()
        try:
            return DetectionSettings(
                avg_threshold=prefs.avg_threshold,
                channel_threshold=prefs.channel_threshold,
                measurement_count=prefs.measurement_count,
            )
        except InvalidParameter as exc:
            self.logger.warning("Ignoring stored detection settings: %s", exc)
            return DetectionSettings()

    def _emit(self, message: str) -> None:
        emit(self._log, message)

    def _persist(self, **kwargs) -> None:
        if self.app_settings_store is None:
            return
        try:
            self.app_settings_store.update(**kwargs)
        except Exception as exc:
            self.logger.warning("Failed to persist operator settings: %s", exc)

    def _store_detection_settings(self, snapshot: DetectionSettings) -> None:
        self._persist(
            avg_threshold=snapshot.avg_threshold,
            channel_threshold=snapshot.channel_threshold,
            measurement_count=snapshot.measurement_count,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def new_capture_task(self, actuator_index: int) -> CaptureTask:
        return CaptureTask(
            actuator_index,
            self.sensors,
            self.analyzer,
            self.config,
            buffer=self._buffer,
            log=self._log,
        )

    def start(self) -> None:
        """Open the hardware and park every actuator at the start angle."""
        self.sensors.open()
        self.servo_driver.open()
        self.servos.home()
        self._emit("Dispenser started")

    def stop(self) -> None:
        try:
            self.analyzer.save_all_progress()
        finally:
            try:
                self.servo_driver.close()
            finally:
                self.sensors.close()

    def __enter__(self) -> "DispenserRuntime":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------

    @property
    def default_max_attempts(self) -> int:
        return self._default_max_attempts

    def dispense(self, actuator_index: int, max_attempts: Optional[int] = None) -> bool:
        attempts = self._default_max_attempts if max_attempts is None else max_attempts
        servo_no = actuator_index + 1
        self._emit(f"[CMD] Dispensing pill from servo {servo_no}")
        ok = self.orchestrator.dispense(actuator_index, attempts)
        if ok:
            self._emit(f"[CMD] Pill successfully dispensed from servo {servo_no}")
        else:
            self._emit(f"[CMD] Failed to dispense pill from servo {servo_no} - check if bottle is empty")
        return ok

    def reset_actuators(self) -> bool:
        try:
            self.servos.reset_all()
        except (RuntimeError, OSError) as exc:
            self._emit(f"[ERR] Servo reset failed: {exc}")
            return False
        self._emit("[CMD] Servo reset.")
        return True

    def reset_attempt_counter(self) -> None:
        self.servos.reset_counter()
        self._emit("[CMD] Servo counter reset.")

    def toggle(self) -> Optional[int]:
        try:
            return self.servos.toggle()
        except (RuntimeError, OSError) as exc:
            self._emit(f"[ERR] Toggle failed: {exc}")
            return None

    def set_angle(self, value: int) -> bool:
        try:
            self.servos.set_angle(value)
        except InvalidParameter:
            self._emit("[ERR] Invalid ANGLE value. Must be 0-180.")
            return False
        self._persist(dispense_angle=self.servos.angle)
        self._emit(f"[CMD] Angle updated to {value}°")
        return True

    def set_start_angle(self, value: int) -> bool:
        try:
            self.servos.set_start_angle(value)
        except InvalidParameter:
            self._emit("[ERR] Invalid START value. Must be 0-180.")
            return False
        except (RuntimeError, OSError) as exc:
            self._emit(f"[ERR] Moving to start angle failed: {exc}")
            return False
        self._persist(start_angle=self.servos.start_angle)
        self._emit(f"[CMD] Start angle updated to {value}°")
        return True

    def set_default_max_attempts(self, value: int) -> bool:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            self._emit(f"[ERR] Invalid max attempts: {value!r} (must be >= 1)")
            return False
        self._default_max_attempts = value
        self._persist(default_max_attempts=value)
        self._emit(f"[CMD] Default max attempts set to {value}")
        return True

    def set_measurement_count(self, value: int) -> bool:
        try:
            snapshot = self.detection_settings.update(measurement_count=value)
        except InvalidParameter:
            self._emit(f"[ERR] Invalid measurement count: {value!r} (must be >= 1)")
            return False
        self._emit(f"[PIEZO] Measurement count set to {snapshot.measurement_count}")
        return True

    def get_thresholds(self) -> Tuple[float, float]:
        avg = self.analyzer.get_avg_threshold()
        channel = self.analyzer.get_channel_threshold()
        self._emit(f"[PATTERN] Current thresholds - Average: {avg:.3f}, Channel: {channel:.3f}")
        return avg, channel

    def set_threshold(self, kind: str, value: float) -> bool:
        kind = str(kind).lower()
        if kind == "avg":
            return self.analyzer.set_avg_threshold(value)
        if kind == "channel":
            return self.analyzer.set_channel_threshold(value)
        self._emit(f"[ERR] Unknown threshold kind {kind!r} (use 'avg' or 'channel')")
        return False

    def reset_learning_data(self, target: Union[int, str]) -> bool:
        if isinstance(target, str) and target.upper() == ALL:
            self.analyzer.reset_all_data()
            return True
        if isinstance(target, bool) or not isinstance(target, int):
            self._emit(f"[ERR] Invalid reset target {target!r}; use a servo index or 'ALL'")
            return False
        return self.analyzer.reset_servo_data(target)

    def analysis_report(self, actuator_index: int) -> str:
        report = self.analyzer.get_analysis_report(actuator_index)
        self._emit(report)
        return report

    def export_recordings(self, actuator_index: int) -> str:
        return self.analyzer.export_recordings(actuator_index)


__all__ = ["DispenserRuntime", "ALL"]
