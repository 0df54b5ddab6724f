"""Shape similarity between envelopes (clamped Pearson correlation)."""
from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np

from shared.models import DispensingRecord, Envelope


def _normalized(envelope: Envelope) -> np.ndarray:
    scale = envelope.max_value if envelope.max_value > 0 else 1.0
    return envelope.values.astype(np.float64) / scale


def calculate_similarity(a: Envelope, b: Envelope) -> float:
    """Return a shape score in [0, 1]; mismatched or empty envelopes score 0."""
    if a.size != b.size or a.size == 0:
        return 0.0

    x = _normalized(a)
    y = _normalized(b)
    n = x.size

    sum_x = float(np.sum(x))
    sum_y = float(np.sum(y))
    sum_x_sq = float(np.dot(x, x))
    sum_y_sq = float(np.dot(y, y))
    sum_xy = float(np.dot(x, y))

    var_x = n * sum_x_sq - sum_x * sum_x
    var_y = n * sum_y_sq - sum_y * sum_y
    # Rounding can push a flat signal's variance term slightly below zero.
    if var_x <= 0.0 or var_y <= 0.0:
        return 0.0
    denominator = math.sqrt(var_x * var_y)
    if denominator == 0.0:
        return 0.0

    correlation = (n * sum_xy - sum_x * sum_y) / denominator
    return min(1.0, max(0.0, correlation))


def channel_similarities(a: Sequence[Envelope], b: Sequence[Envelope]) -> Tuple[float, ...]:
    """Per-channel scores between two aligned envelope sets (record or reference)."""
    if len(a) != len(b):
        raise ValueError("envelope sets have different channel counts")
    return tuple(calculate_similarity(ea, eb) for ea, eb in zip(a, b))


def mean_channel_similarity(a: DispensingRecord, b: DispensingRecord) -> float:
    sims = channel_similarities(a.channels, b.channels)
    return float(sum(sims) / len(sims))


__all__ = ["calculate_similarity", "channel_similarities", "mean_channel_similarity"]
