"""Core dispensing control: capture, actuation and orchestration."""

from .capture import CaptureTask
from .dispenser import DispenseOrchestrator
from .runtime import DispenserRuntime
from .servo_controller import ServoController

__all__ = [
    "CaptureTask",
    "DispenseOrchestrator",
    "DispenserRuntime",
    "ServoController",
]
