"""
Shared data structures used by the capture, analysis and storage layers.
"""

from .config import DispenserConfig
from .models import (
    ActuatorLearningState,
    AnalysisVerdict,
    CaptureResult,
    DispensingRecord,
    Envelope,
    ReferencePattern,
)
from .sample_buffer import SampleBuffer

__all__ = [
    "ActuatorLearningState",
    "AnalysisVerdict",
    "CaptureResult",
    "DispenserConfig",
    "DispensingRecord",
    "Envelope",
    "ReferencePattern",
    "SampleBuffer",
]
