"""Envelope extraction for vibration captures.

A raw SampleWindow is reduced to a fixed number of points by taking the
maximum reading in each contiguous sub-window:
- create_envelope: windowed-max envelope plus scalar features
- envelope_features: max / area / first-peak index of any value sequence
"""
import time
from typing import Optional, Sequence, Tuple

import numpy as np

from shared.models import Envelope

DEFAULT_ENVELOPE_POINTS = 50


def envelope_features(values: Sequence[float]) -> Tuple[float, float, int]:
    arr = np.asarray(values, dtype=np.float32)
    if arr.size == 0:
        return 0.0, 0.0, 0
    peak = int(np.argmax(arr))  # argmax returns the first occurrence
    return float(arr[peak]), float(np.sum(arr, dtype=np.float64)), peak


def create_envelope(
    raw: Sequence[int],
    target_points: int = DEFAULT_ENVELOPE_POINTS,
    *,
    trigger_channel: str = "",
    timestamp: Optional[float] = None,
) -> Envelope:
    data = np.asarray(raw)
    if data.ndim != 1:
        raise ValueError("raw window must be 1D")
    if target_points <= 0:
        raise ValueError("target_points must be positive")
    if data.size == 0:
        return Envelope.empty(trigger_channel)

    n = int(data.size)
    values = np.empty(target_points, dtype=np.float32)
    for i in range(target_points):
        start = (i * n) // target_points
        end = ((i + 1) * n) // target_points
        # Windows collapse to a single index when the capture is shorter than the envelope.
        if end > start:
            values[i] = data[start:end].max()
        else:
            values[i] = data[min(start, n - 1)]

    max_value, total_area, peak_index = envelope_features(values)
    return Envelope(
        values=values,
        max_value=max_value,
        total_area=total_area,
        peak_index=peak_index,
        trigger_channel=trigger_channel,
        timestamp=time.time() if timestamp is None else float(timestamp),
    )


def create_envelopes(
    window: np.ndarray,
    target_points: int = DEFAULT_ENVELOPE_POINTS,
    *,
    trigger_channel: str = "",
    timestamp: Optional[float] = None,
) -> Tuple[Envelope, ...]:
    """One envelope per row of a (n_channels, n_samples) window."""
    data = np.asarray(window)
    if data.ndim != 2:
        raise ValueError("window must be 2D (n_channels, n_samples)")
    stamp = time.time() if timestamp is None else float(timestamp)
    return tuple(
        create_envelope(row, target_points, trigger_channel=trigger_channel, timestamp=stamp)
        for row in data
    )
