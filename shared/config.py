from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Tuple

from .models import channel_labels

if TYPE_CHECKING:  # pragma: no cover - typing only
    from daq.base_device import SensorBank, ServoDriver
else:  # pragma: no cover - runtime fallback
    SensorBank = Any
    ServoDriver = Any


@dataclass(frozen=True)
class DispenserConfig:
    """Static hardware and timing configuration, fixed for the process lifetime."""

    channel_names: Tuple[str, ...] = ("GREEN",)
    actuator_count: int = 6
    piezo_threshold: int = 50
    envelope_points: int = 50
    max_recordings: int = 9  # odd so the majority vote never ties
    cluster_threshold: float = 0.7
    capture_timeout_sec: float = 1.0
    min_capture_window_sec: float = 0.8
    scan_interval_sec: float = 0.005
    sample_interval_sec: float = 0.0
    finish_grace_sec: float = 2.0
    dispense_lock_timeout_sec: float = 5.0
    retry_pause_sec: float = 0.1
    default_max_attempts: int = 20
    dispense_angle: int = 80
    start_angle: int = 0
    reset_angle: int = 180
    storage_dir: str = "learning_data"

    def __post_init__(self) -> None:
        object.__setattr__(self, "channel_names", channel_labels(self.channel_names))
        if self.actuator_count <= 0:
            raise ValueError("actuator_count must be positive")
        if self.envelope_points <= 0:
            raise ValueError("envelope_points must be positive")
        if self.max_recordings <= 0 or self.max_recordings % 2 == 0:
            raise ValueError("max_recordings must be a positive odd number")
        if not 0.0 <= self.cluster_threshold <= 1.0:
            raise ValueError("cluster_threshold must be within [0, 1]")
        for name in (
            "capture_timeout_sec",
            "min_capture_window_sec",
            "scan_interval_sec",
            "sample_interval_sec",
            "finish_grace_sec",
            "dispense_lock_timeout_sec",
            "retry_pause_sec",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.default_max_attempts < 1:
            raise ValueError("default_max_attempts must be at least 1")
        for name in ("dispense_angle", "start_angle", "reset_angle"):
            if not 0 <= getattr(self, name) <= 180:
                raise ValueError(f"{name} must be within 0-180")
        if not self.storage_dir:
            raise ValueError("storage_dir must be a non-empty path")

    @property
    def n_channels(self) -> int:
        return len(self.channel_names)

    @property
    def finish_timeout_sec(self) -> float:
        """Upper bound the orchestrator waits for a capture task to finish."""
        return self.capture_timeout_sec + self.min_capture_window_sec + self.finish_grace_sec

    def validate_hardware(self, sensors: SensorBank, servos: ServoDriver) -> None:
        """Check the discovered hardware against this configuration once at startup."""
        names = tuple(sensors.channel_names)
        if names != self.channel_names:
            raise ValueError(
                f"sensor channels {list(names)} do not match configured {list(self.channel_names)}"
            )
        if servos.actuator_count != self.actuator_count:
            raise ValueError(
                f"servo driver exposes {servos.actuator_count} actuators, configured {self.actuator_count}"
            )


__all__ = ["DispenserConfig"]
