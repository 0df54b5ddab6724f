"""Reference-model learning from a dispenser's first recordings.

Outliers are discarded by greedy majority clustering on mean channel
similarity; the surviving group is averaged position-by-position into one
reference envelope per channel.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from shared.models import ActuatorLearningState, DispensingRecord, Envelope, ReferencePattern

from .envelope import envelope_features
from .similarity import channel_similarities, mean_channel_similarity

logger = logging.getLogger(__name__)

DEFAULT_CLUSTER_THRESHOLD = 0.7


@dataclass(frozen=True)
class ReferenceBuild:
    """Result of one build attempt."""

    ok: bool
    group: Tuple[int, ...]
    required: int
    reason: str = ""
    reference: Optional[ReferencePattern] = None


def majority_size(cap: int) -> int:
    """Smallest group that is a strict majority of `cap` recordings."""
    return int(math.ceil((cap + 1) / 2))


def similarity_matrix(records: Sequence[DispensingRecord]) -> np.ndarray:
    n = len(records)
    matrix = np.eye(n, dtype=np.float64)
    for i in range(n):
        for j in range(i + 1, n):
            sim = mean_channel_similarity(records[i], records[j])
            matrix[i, j] = sim
            matrix[j, i] = sim
    return matrix


def find_majority_group(matrix: np.ndarray, cluster_threshold: float = DEFAULT_CLUSTER_THRESHOLD) -> List[int]:
    """Greedy clustering: the largest group whose members are all pairwise similar."""
    n = matrix.shape[0]
    used = [False] * n
    best: List[int] = []
    for i in range(n):
        if used[i]:
            continue
        group = [i]
        used[i] = True
        for j in range(i + 1, n):
            if used[j]:
                continue
            if all(matrix[member, j] >= cluster_threshold for member in group):
                group.append(j)
                used[j] = True
        # Strictly larger only: ties keep the earliest group.
        if len(group) > len(best):
            best = group
    return best


def average_envelopes(envelopes: Sequence[Envelope]) -> Envelope:
    stacked = np.stack([env.values.astype(np.float64) for env in envelopes])
    values = stacked.mean(axis=0).astype(np.float32)
    max_value, total_area, peak_index = envelope_features(values)
    return Envelope(
        values=values,
        max_value=max_value,
        total_area=total_area,
        peak_index=peak_index,
        trigger_channel=envelopes[0].trigger_channel,
        timestamp=max(env.timestamp for env in envelopes),
    )


class ReferenceModelBuilder:
    def __init__(self, cap: int, cluster_threshold: float = DEFAULT_CLUSTER_THRESHOLD) -> None:
        if cap <= 0:
            raise ValueError("cap must be positive")
        self.cap = int(cap)
        self.cluster_threshold = float(cluster_threshold)

    @property
    def required(self) -> int:
        return majority_size(self.cap)

    def ready(self, state: ActuatorLearningState) -> bool:
        return state.recording_count == self.cap and not state.has_reference

    def build(self, state: ActuatorLearningState) -> ReferenceBuild:
        """Attempt to build and install a reference on `state`.

        Leaves `state` untouched unless a majority group exists.
        """
        records = state.recordings
        if len(records) < self.cap:
            return ReferenceBuild(
                ok=False,
                group=(),
                required=self.required,
                reason=f"only {len(records)}/{self.cap} recordings collected",
            )

        matrix = similarity_matrix(records)
        group = find_majority_group(matrix, self.cluster_threshold)
        logger.debug("Largest similar group %s of %d recordings", group, len(records))
        if len(group) < self.required:
            return ReferenceBuild(
                ok=False,
                group=tuple(group),
                required=self.required,
                reason=(
                    f"Not enough similar recordings to build reference "
                    f"(found {len(group)}, need {self.required}+)"
                ),
            )

        n_channels = records[group[0]].n_channels
        channels = tuple(
            average_envelopes([records[idx].channels[ch] for idx in group])
            for ch in range(n_channels)
        )
        reference = ReferencePattern(channels=channels, group=tuple(group))
        state.reference = reference
        state.has_reference = True
        return ReferenceBuild(ok=True, group=tuple(group), required=self.required, reference=reference)


def reference_quality(state: ActuatorLearningState) -> float:
    """Mean similarity of every stored recording to the reference."""
    if not state.has_reference or state.reference is None or not state.recordings:
        return 0.0
    scores = []
    for record in state.recordings:
        sims = channel_similarities(record.channels, state.reference.channels)
        scores.append(sum(sims) / len(sims))
    return float(sum(scores) / len(scores))


__all__ = [
    "DEFAULT_CLUSTER_THRESHOLD",
    "ReferenceBuild",
    "ReferenceModelBuilder",
    "average_envelopes",
    "find_majority_group",
    "majority_size",
    "reference_quality",
    "similarity_matrix",
]
