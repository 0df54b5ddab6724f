from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np


def _freeze_array(array: np.ndarray, *, ndim: int | None = None, dtype: object = None) -> np.ndarray:
    """Return a read-only, C-contiguous copy of `array`, validating dimensions."""
    arr = np.array(array, copy=True, order="C", dtype=dtype)
    if ndim is not None and arr.ndim != ndim:
        raise ValueError(f"array must be {ndim}D, got {arr.ndim}D")
    arr.setflags(write=False)
    return arr


# ----------------------------
# Signal shape descriptors
# ----------------------------

@dataclass(frozen=True)
class Envelope:
    """Fixed-length shape descriptor of one channel's capture.

    Each value is the maximum raw reading inside one sub-window of the
    SampleWindow. Envelopes are only comparable when their lengths match.
    """

    values: np.ndarray
    max_value: float = 0.0
    total_area: float = 0.0
    peak_index: int = 0
    trigger_channel: str = ""
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        values = _freeze_array(self.values, ndim=1, dtype=np.float32)
        if values.size and not 0 <= self.peak_index < values.size:
            raise ValueError("peak_index out of range")
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "max_value", float(self.max_value))
        object.__setattr__(self, "total_area", float(self.total_area))
        object.__setattr__(self, "peak_index", int(self.peak_index))

    @classmethod
    def empty(cls, trigger_channel: str = "") -> "Envelope":
        return cls(values=np.zeros(0, dtype=np.float32), trigger_channel=trigger_channel)

    @property
    def size(self) -> int:
        return int(self.values.size)

    def __len__(self) -> int:
        return self.size


@dataclass(frozen=True)
class DispensingRecord:
    """One observed drop: an Envelope per sensor channel."""

    channels: Tuple[Envelope, ...]
    is_valid: bool = True
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        channels = tuple(self.channels)
        if not channels:
            raise ValueError("channels must not be empty")
        object.__setattr__(self, "channels", channels)

    @property
    def n_channels(self) -> int:
        return len(self.channels)


@dataclass(frozen=True)
class ReferencePattern:
    """Canonical per-channel envelopes averaged from the majority group."""

    channels: Tuple[Envelope, ...]
    group: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "channels", tuple(self.channels))
        object.__setattr__(self, "group", tuple(int(i) for i in self.group))

    @property
    def n_channels(self) -> int:
        return len(self.channels)


@dataclass
class ActuatorLearningState:
    """Learning history and reference for a single dispenser."""

    recordings: List[DispensingRecord] = field(default_factory=list)
    has_reference: bool = False
    failed_count: int = 0
    reference: Optional[ReferencePattern] = None

    @property
    def recording_count(self) -> int:
        return len(self.recordings)

    def clear(self) -> None:
        self.recordings.clear()
        self.has_reference = False
        self.failed_count = 0
        self.reference = None


# ----------------------------
# Capture / analysis results
# ----------------------------

PHASE_LEARNING = "learning"
PHASE_NORMAL = "normal"
PHASE_ANOMALOUS = "anomalous"
PHASE_UNSCORED = "unscored"


@dataclass(frozen=True)
class AnalysisVerdict:
    """Outcome of feeding one DispensingRecord to the learning pipeline."""

    phase: str
    accepted: bool
    similarities: Tuple[float, ...] = ()
    avg_similarity: float = 0.0
    max_similarity: float = 0.0
    best_channel: str = ""

    def __post_init__(self) -> None:
        if self.phase not in (PHASE_LEARNING, PHASE_NORMAL, PHASE_ANOMALOUS, PHASE_UNSCORED):
            raise ValueError(f"unknown phase {self.phase!r}")
        object.__setattr__(self, "similarities", tuple(float(s) for s in self.similarities))

    def __bool__(self) -> bool:
        return self.accepted


@dataclass(frozen=True)
class CaptureResult:
    """What a CaptureTask reports once its finished signal is set."""

    triggered: bool
    trigger_channel: Optional[str] = None
    window: Optional[np.ndarray] = field(default=None, repr=False)
    verdict: Optional[AnalysisVerdict] = None
    elapsed_sec: float = 0.0

    def __post_init__(self) -> None:
        if self.window is not None:
            object.__setattr__(self, "window", _freeze_array(self.window, ndim=2))
        if self.elapsed_sec < 0:
            raise ValueError("elapsed_sec must be non-negative")


def channel_labels(names: Sequence[str]) -> Tuple[str, ...]:
    labels = tuple(str(n) for n in names)
    if not labels:
        raise ValueError("at least one channel is required")
    if len(set(labels)) != len(labels):
        raise ValueError("channel names must be unique")
    return labels


__all__ = [
    "Envelope",
    "DispensingRecord",
    "ReferencePattern",
    "ActuatorLearningState",
    "AnalysisVerdict",
    "CaptureResult",
    "PHASE_LEARNING",
    "PHASE_NORMAL",
    "PHASE_ANOMALOUS",
    "PHASE_UNSCORED",
    "channel_labels",
]
