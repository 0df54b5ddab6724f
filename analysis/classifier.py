from __future__ import annotations

from typing import Sequence

from shared.models import (
    PHASE_ANOMALOUS,
    PHASE_NORMAL,
    ActuatorLearningState,
    AnalysisVerdict,
    DispensingRecord,
)

from .similarity import channel_similarities


class AnomalyClassifier:
    """
    Accepts or rejects a drop against a learned reference.

    Best-of-both rule: a drop is normal when the channel average OR the best
    single channel reaches ``avg_threshold``. The channel threshold plays no
    part in the decision. A rejection bumps the actuator's failure counter.
    """

    def __init__(self, channel_names: Sequence[str]) -> None:
        self._channel_names = tuple(channel_names)

    def classify(
        self,
        state: ActuatorLearningState,
        record: DispensingRecord,
        avg_threshold: float,
    ) -> AnalysisVerdict:
        if not state.has_reference or state.reference is None:
            raise ValueError("actuator has no reference pattern")

        sims = channel_similarities(record.channels, state.reference.channels)
        avg_sim = sum(sims) / len(sims)
        best = max(range(len(sims)), key=lambda idx: sims[idx])
        max_sim = sims[best]

        accepted = avg_sim >= avg_threshold or max_sim >= avg_threshold
        if not accepted:
            state.failed_count += 1

        return AnalysisVerdict(
            phase=PHASE_NORMAL if accepted else PHASE_ANOMALOUS,
            accepted=accepted,
            similarities=sims,
            avg_similarity=avg_sim,
            max_similarity=max_sim,
            best_channel=self._label(best),
        )

    def _label(self, index: int) -> str:
        if 0 <= index < len(self._channel_names):
            return self._channel_names[index]
        return f"CH{index}"


__all__ = ["AnomalyClassifier"]
