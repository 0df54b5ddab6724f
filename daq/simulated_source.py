# daq/simulated_source.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .base_device import SensorBank, ServoDriver


@dataclass
class ActiveBurst:
    """A pill impact that is still ringing on the sensors."""
    due_time: float  # monotonic time the impact reaches the sensors
    template: np.ndarray  # burst waveform, one sample per scan
    gains: np.ndarray  # per-channel amplitude multiplier
    position: int = 0  # next template sample to emit


def make_drop_template(length: int, *, amplitude: float, decay: float, cycles: float, rng: np.random.Generator) -> np.ndarray:
    """Rectified decaying ring-down, the shape a piezo gives when a pill hits the chute."""
    t = np.linspace(0.0, 1.0, max(2, int(length)), dtype=np.float64)
    ring = np.abs(np.sin(2.0 * np.pi * cycles * t + rng.uniform(0.0, 0.3)))
    envelope = np.exp(-t * decay)
    return (amplitude * envelope * ring).astype(np.float32)


class SimulatedSensorBank(SensorBank):
    """
    Simulated piezo channels driven by bursts that the servo simulator schedules.

    Each read_all() call advances every active burst by one sample, so the
    captured shape does not depend on how fast the host scans.
    """

    def __init__(
        self,
        channel_names: Sequence[str] = ("GREEN",),
        *,
        noise_level: float = 3.0,
        baseline: int = 5,
        seed: Optional[int] = None,
    ) -> None:
        super().__init__(channel_names)
        self._noise_level = float(noise_level)
        self._baseline = int(baseline)
        self._rng = np.random.default_rng(seed)
        self._lock = threading.Lock()
        self._bursts: List[ActiveBurst] = []

    def schedule_burst(self, template: np.ndarray, gains: Sequence[float], delay_sec: float = 0.0) -> None:
        gains_arr = np.asarray(gains, dtype=np.float32)
        if gains_arr.shape != (self.n_channels,):
            raise ValueError("gains must have one entry per channel")
        burst = ActiveBurst(
            due_time=time.monotonic() + max(0.0, float(delay_sec)),
            template=np.asarray(template, dtype=np.float32),
            gains=gains_arr,
        )
        with self._lock:
            self._bursts.append(burst)

    def pending_bursts(self) -> int:
        with self._lock:
            return len(self._bursts)

    def _read_impl(self) -> Sequence[int]:
        values = self._baseline + np.abs(self._rng.normal(0.0, self._noise_level, self.n_channels))
        now = time.monotonic()
        with self._lock:
            for burst in self._bursts:
                if now < burst.due_time or burst.position >= burst.template.size:
                    continue
                values += burst.template[burst.position] * burst.gains
                burst.position += 1
            self._bursts = [b for b in self._bursts if b.position < b.template.size]
        return np.clip(np.rint(values), 0, 4095).astype(int).tolist()


class SimulatedServoDriver(ServoDriver):
    """
    Simulated servos coupled to a SimulatedSensorBank.

    Every move may release a pill: usually one, sometimes none (empty or
    jammed dispenser) and sometimes two stuck together.
    """

    def __init__(
        self,
        sensors: SimulatedSensorBank,
        actuator_count: int = 6,
        *,
        settle_sec: float = 0.5,
        fall_delay_sec: float = 0.1,
        miss_probability: float = 0.1,
        double_probability: float = 0.05,
        burst_samples: int = 400,
        seed: Optional[int] = None,
    ) -> None:
        super().__init__(actuator_count)
        if not 0.0 <= miss_probability <= 1.0 or not 0.0 <= double_probability <= 1.0:
            raise ValueError("probabilities must be within [0, 1]")
        self._sensors = sensors
        self._settle_sec = float(settle_sec)
        self._fall_delay_sec = float(fall_delay_sec)
        self._miss_probability = float(miss_probability)
        self._double_probability = float(double_probability)
        self._burst_samples = int(burst_samples)
        self._rng = np.random.default_rng(seed)
        self.moves: List[tuple] = []
        self.drops = 0

    def _channel_gains(self, index: int) -> np.ndarray:
        # Each dispenser sits nearest to one sensor; the others pick up less.
        n = self._sensors.n_channels
        gains = np.full(n, 0.4, dtype=np.float32)
        gains[index % n] = 1.0
        return gains * self._rng.uniform(0.9, 1.1, n).astype(np.float32)

    def _move_impl(self, index: int, angle: int) -> None:
        self.moves.append((index, angle))
        roll = self._rng.random()
        if roll >= self._miss_probability:
            gains = self._channel_gains(index)
            template = make_drop_template(
                self._burst_samples, amplitude=600.0, decay=5.0, cycles=6.0, rng=self._rng
            )
            self._sensors.schedule_burst(template, gains, self._fall_delay_sec)
            self.drops += 1
            if roll >= 1.0 - self._double_probability:
                second = make_drop_template(
                    self._burst_samples, amplitude=450.0, decay=3.0, cycles=9.0, rng=self._rng
                )
                self._sensors.schedule_burst(second, gains, self._fall_delay_sec + 0.01)
                self.drops += 1
        if self._settle_sec > 0:
            time.sleep(self._settle_sec)


class SimulatedDispenserRig:
    """Coupled simulated sensors and servos that open and close together."""

    def __init__(
        self,
        channel_names: Sequence[str] = ("GREEN",),
        actuator_count: int = 6,
        *,
        settle_sec: float = 0.5,
        fall_delay_sec: float = 0.1,
        miss_probability: float = 0.1,
        double_probability: float = 0.05,
        noise_level: float = 3.0,
        burst_samples: int = 400,
        seed: Optional[int] = None,
    ) -> None:
        self.sensors = SimulatedSensorBank(channel_names, noise_level=noise_level, seed=seed)
        self.servos = SimulatedServoDriver(
            self.sensors,
            actuator_count,
            settle_sec=settle_sec,
            fall_delay_sec=fall_delay_sec,
            miss_probability=miss_probability,
            double_probability=double_probability,
            burst_samples=burst_samples,
            seed=None if seed is None else seed + 1,
        )

    def open(self) -> None:
        self.sensors.open()
        self.servos.open()

    def close(self) -> None:
        try:
            self.servos.close()
        finally:
            self.sensors.close()

    def __enter__(self) -> "SimulatedDispenserRig":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = [
    "ActiveBurst",
    "SimulatedDispenserRig",
    "SimulatedSensorBank",
    "SimulatedServoDriver",
    "make_drop_template",
]
