from __future__ import annotations

import json
import logging
import threading
import time
from typing import List, Optional, Sequence

import numpy as np

from recording.model_store import ModelStore, ModelStoreError
from shared.config import DispenserConfig
from shared.models import (
    PHASE_LEARNING,
    PHASE_UNSCORED,
    ActuatorLearningState,
    AnalysisVerdict,
    DispensingRecord,
)
from shared.telemetry import LogSink, emit

from .classifier import AnomalyClassifier
from .envelope import create_envelopes
from .reference import ReferenceModelBuilder, reference_quality
from .settings import DetectionSettingsStore, InvalidParameter

logger = logging.getLogger(__name__)


class PatternAnalyzer:
    """
    Per-actuator learning pipeline: collect, build a reference once, then classify.

    Every actuator starts in the learning phase. Its first ``max_recordings``
    drops are stored; the drop that fills the list triggers one reference
    build. With a reference, later drops are classified and never stored.
    Without one (no consensus) the actuator stays frozen and unscored until
    its data is reset.
    """

    def __init__(
        self,
        config: DispenserConfig,
        settings: Optional[DetectionSettingsStore] = None,
        store: Optional[ModelStore] = None,
        *,
        log: Optional[LogSink] = None,
        autoload: bool = True,
    ) -> None:
        self._config = config
        self._settings = settings or DetectionSettingsStore()
        self._store = store
        self._log = log
        self._lock = threading.RLock()
        self._states: List[ActuatorLearningState] = [
            ActuatorLearningState() for _ in range(config.actuator_count)
        ]
        self._builder = ReferenceModelBuilder(config.max_recordings, config.cluster_threshold)
        self._classifier = AnomalyClassifier(config.channel_names)
        if autoload and store is not None:
            self.load_all_progress()

    @property
    def settings(self) -> DetectionSettingsStore:
        return self._settings

    @property
    def cap(self) -> int:
        return self._config.max_recordings

    def _emit(self, message: str) -> None:
        emit(self._log, message)

    def _valid_index(self, actuator_index: int) -> bool:
        return 0 <= actuator_index < len(self._states)

    def state(self, actuator_index: int) -> ActuatorLearningState:
        if not self._valid_index(actuator_index):
            raise IndexError(f"actuator index {actuator_index} out of range")
        return self._states[actuator_index]

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def build_record(self, window: np.ndarray, trigger_channel: str) -> DispensingRecord:
        stamp = time.time()
        channels = create_envelopes(
            window,
            self._config.envelope_points,
            trigger_channel=trigger_channel,
            timestamp=stamp,
        )
        return DispensingRecord(channels=channels, is_valid=True, timestamp=stamp)

    def analyze_dispensing(self, actuator_index: int, window: np.ndarray, trigger_channel: str) -> AnalysisVerdict:
        data = np.asarray(window)
        if data.ndim != 2 or data.shape[0] != self._config.n_channels:
            self._emit(
                f"[ERR] Capture has shape {data.shape}, expected {self._config.n_channels} channels"
            )
            return AnalysisVerdict(phase=PHASE_UNSCORED, accepted=False)
        return self.analyze_record(actuator_index, self.build_record(data, trigger_channel))

    def analyze_record(self, actuator_index: int, record: DispensingRecord) -> AnalysisVerdict:
        if not self._valid_index(actuator_index) or record.n_channels != self._config.n_channels:
            self._emit(f"[ERR] Cannot analyze dispense for servo {actuator_index + 1}")
            return AnalysisVerdict(phase=PHASE_UNSCORED, accepted=False)

        with self._lock:
            state = self._states[actuator_index]
            trigger = record.channels[0].trigger_channel

            if state.recording_count < self.cap - 1:
                state.recordings.append(record)
                self.save_servo_progress(actuator_index)
                self._emit(
                    f"[PATTERN] Learning phase: {state.recording_count}/{self.cap} "
                    f"recordings collected (trigger: {trigger})"
                )
                return AnalysisVerdict(phase=PHASE_LEARNING, accepted=True)

            if state.recording_count == self.cap - 1 and not state.has_reference:
                state.recordings.append(record)
                self._emit(
                    f"[PATTERN] Learning complete! Building reference model from {self.cap} recordings..."
                )
                self._build_reference(actuator_index, state)
                self.save_servo_progress(actuator_index)
                # With a fresh reference the filling recording is scored as well.

            if state.has_reference:
                return self._classify(actuator_index, state, record)

            self._emit(
                f"[PATTERN] Servo {actuator_index + 1} has no reference model; "
                "dispense not scored (reset learning data to relearn)"
            )
            return AnalysisVerdict(phase=PHASE_UNSCORED, accepted=True)

    def _build_reference(self, actuator_index: int, state: ActuatorLearningState) -> bool:
        result = self._builder.build(state)
        if not result.ok:
            self._emit(f"[PATTERN] {result.reason}")
            return False
        self._emit(
            f"[PATTERN] Built reference pattern for servo {actuator_index + 1} from "
            f"{len(result.group)}/{state.recording_count} recordings"
        )
        self._emit(f"[PATTERN] Reference quality: {reference_quality(state):.3f}")
        return True

    def _classify(self, actuator_index: int, state: ActuatorLearningState, record: DispensingRecord) -> AnalysisVerdict:
        snapshot = self._settings.get()
        threshold = snapshot.avg_threshold
        verdict = self._classifier.classify(state, record, threshold)
        logger.debug("Actuator %d similarities %s", actuator_index, verdict.similarities)

        names = self._config.channel_names
        details = ", ".join(f"{name}: {sim:.3f}" for name, sim in zip(names, verdict.similarities))
        self._emit(
            f"[PATTERN] Avg similarity: {verdict.avg_similarity:.3f}, Best: {verdict.best_channel} "
            f"{verdict.max_similarity:.3f} ({details}) - {'NORMAL' if verdict.accepted else 'ABNORMAL'}"
        )
        weak = [name for name, sim in zip(names, verdict.similarities) if sim < snapshot.channel_threshold]
        if weak:
            self._emit(
                f"[PATTERN] Channels below {snapshot.channel_threshold:.2f}: {', '.join(weak)}"
            )

        if verdict.accepted and verdict.avg_similarity < threshold:
            self._emit(
                f"[PATTERN] Accepted via best-of-both: {verdict.best_channel} sensor shows good similarity"
            )
        if not verdict.accepted:
            self._emit(
                f"[PATTERN] Rejection reason: Both average ({verdict.avg_similarity:.3f} < {threshold:.2f}) "
                f"and best channel {verdict.best_channel} ({verdict.max_similarity:.3f} < {threshold:.2f}) "
                "below threshold"
            )
            self._emit(f"[PATTERN] FLAWED DISPENSE detected! Total failed: {state.failed_count}")
            self.save_servo_progress(actuator_index)
        return verdict

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_failed_count(self, actuator_index: int) -> int:
        return self._states[actuator_index].failed_count if self._valid_index(actuator_index) else 0

    def get_recording_count(self, actuator_index: int) -> int:
        return self._states[actuator_index].recording_count if self._valid_index(actuator_index) else 0

    def has_reference(self, actuator_index: int) -> bool:
        return self._valid_index(actuator_index) and self._states[actuator_index].has_reference

    def get_reference_quality(self, actuator_index: int) -> float:
        if not self._valid_index(actuator_index):
            return 0.0
        with self._lock:
            return reference_quality(self._states[actuator_index])

    def get_analysis_report(self, actuator_index: int) -> str:
        if not self._valid_index(actuator_index):
            return "Invalid servo index"
        with self._lock:
            state = self._states[actuator_index]
            lines = [
                f"[ANALYSIS] Servo {actuator_index + 1} Report:",
                f"  Recordings: {state.recording_count}/{self.cap}",
                f"  Failed dispenses: {state.failed_count}",
                f"  Has reference: {'Yes' if state.has_reference else 'No'}",
            ]
            if state.has_reference:
                lines.append(f"  Reference quality: {reference_quality(state):.3f}")
        return "\n".join(lines)

    def export_recordings(self, actuator_index: int) -> str:
        """JSON dump of the stored envelopes for offline inspection."""
        if not self._valid_index(actuator_index):
            return "{}"
        names = self._config.channel_names
        with self._lock:
            state = self._states[actuator_index]
            payload = {
                "servo": actuator_index + 1,
                "has_reference": state.has_reference,
                "failed": state.failed_count,
                "recordings": [
                    {
                        "timestamp": record.timestamp,
                        "valid": record.is_valid,
                        "channels": {
                            name: [round(float(v), 3) for v in env.values]
                            for name, env in zip(names, record.channels)
                        },
                    }
                    for record in state.recordings
                ],
            }
            if state.reference is not None:
                payload["reference"] = {
                    name: [round(float(v), 3) for v in env.values]
                    for name, env in zip(names, state.reference.channels)
                }
        return json.dumps(payload)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_servo_progress(self, actuator_index: int) -> bool:
        if self._store is None or not self._valid_index(actuator_index):
            return False
        with self._lock:
            state = self._states[actuator_index]
            try:
                self._store.save(actuator_index, state)
            except (ModelStoreError, OSError) as exc:
                self._emit(f"[STORE] Failed to save progress for servo {actuator_index + 1}: {exc}")
                return False
            self._emit(
                f"[PATTERN] Saved servo {actuator_index + 1} progress: {state.recording_count} recordings, "
                f"model: {'Yes' if state.has_reference else 'No'}"
            )
        return True

    def load_servo_progress(self, actuator_index: int) -> bool:
        if self._store is None or not self._valid_index(actuator_index):
            return False
        try:
            loaded = self._store.load(actuator_index)
        except (ModelStoreError, OSError) as exc:
            self._emit(
                f"[STORE] Discarding unreadable progress for servo {actuator_index + 1}: {exc}"
            )
            return False
        if loaded is None:
            self._emit(f"[PATTERN] No saved progress for servo {actuator_index + 1}")
            return False
        if loaded.recording_count > self.cap:
            self._emit(
                f"[STORE] Saved progress for servo {actuator_index + 1} holds "
                f"{loaded.recording_count} recordings (cap {self.cap}); ignoring it"
            )
            return False
        with self._lock:
            self._states[actuator_index] = loaded
        self._emit(
            f"[PATTERN] Loaded servo {actuator_index + 1} progress: {loaded.recording_count} recordings, "
            f"model: {'Yes' if loaded.has_reference else 'No'}"
        )
        return True

    def save_all_progress(self) -> int:
        self._emit("[PATTERN] Saving all learning progress...")
        return sum(1 for idx in range(len(self._states)) if self.save_servo_progress(idx))

    def load_all_progress(self) -> int:
        self._emit("[PATTERN] Loading all learning progress...")
        return sum(1 for idx in range(len(self._states)) if self.load_servo_progress(idx))

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def reset_servo_data(self, actuator_index: int) -> bool:
        if not self._valid_index(actuator_index):
            self._emit(f"[ERR] Invalid servo index {actuator_index + 1}")
            return False
        with self._lock:
            self._states[actuator_index] = ActuatorLearningState()
            if self._store is not None:
                try:
                    self._store.delete(actuator_index)
                except OSError as exc:
                    self._emit(f"[STORE] Failed to delete progress for servo {actuator_index + 1}: {exc}")
        self._emit(f"[PATTERN] RESET: All data cleared for servo {actuator_index + 1}")
        return True

    def reset_all_data(self) -> None:
        self._emit("[PATTERN] RESET: Clearing all data for all servos...")
        with self._lock:
            self._states = [ActuatorLearningState() for _ in self._states]
            if self._store is not None:
                try:
                    removed = self._store.delete_all(len(self._states))
                except OSError as exc:
                    self._emit(f"[STORE] Failed to delete saved progress: {exc}")
                else:
                    logger.debug("Removed %d progress files", removed)
        self._emit("[PATTERN] RESET: All servo data has been cleared")

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    def set_avg_threshold(self, value: float) -> bool:
        return self._set_threshold("avg_threshold", value, "Average similarity")

    def set_channel_threshold(self, value: float) -> bool:
        return self._set_threshold("channel_threshold", value, "Individual channel")

    def _set_threshold(self, field_name: str, value: float, label: str) -> bool:
        try:
            self._settings.update(**{field_name: value})
        except InvalidParameter:
            self._emit(f"[PATTERN] Invalid threshold: {value!r} (must be 0.0-1.0)")
            return False
        self._emit(f"[PATTERN] {label} threshold set to: {float(value):.3f}")
        return True

    def get_avg_threshold(self) -> float:
        return self._settings.get().avg_threshold

    def get_channel_threshold(self) -> float:
        return self._settings.get().channel_threshold


__all__ = ["PatternAnalyzer"]
