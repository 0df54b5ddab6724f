from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class InvalidParameter(ValueError):
    """A tunable was given a value outside its allowed range."""


@dataclass(frozen=True)
class DetectionSettings:
    avg_threshold: float = 0.75
    channel_threshold: float = 0.6
    measurement_count: int = 500

    def __post_init__(self) -> None:
        for name in ("avg_threshold", "channel_threshold"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise InvalidParameter(f"{name} must be a number")
            if not 0.0 <= float(value) <= 1.0:
                raise InvalidParameter(f"{name} {value!r} must be within 0.0-1.0")
            object.__setattr__(self, name, float(value))
        count = self.measurement_count
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise InvalidParameter(f"measurement_count {count!r} must be an integer >= 1")


class DetectionSettingsStore:
    """
    Thread-safe holder for the runtime-tunable detection parameters.

    Writers replace the whole immutable snapshot under the lock; readers take
    one snapshot per capture, so a half-applied update is never observed.
    """

    def __init__(self, initial: Optional[DetectionSettings] = None) -> None:
        self._settings = initial or DetectionSettings()
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Callable[[DetectionSettings], None]] = {}
        self._next_token = 0

    def get(self) -> DetectionSettings:
        with self._lock:
            return self._settings

    def update(self, **kwargs) -> DetectionSettings:
        """Apply `kwargs` atomically; raises InvalidParameter and keeps the old values on bad input."""
        with self._lock:
            new_settings = replace(self._settings, **kwargs)
            self._settings = new_settings
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(new_settings)
            except Exception as exc:
                logger.debug("Detection settings subscriber failed: %s", exc)
                continue
        return new_settings

    def subscribe(self, callback: Callable[[DetectionSettings], None], *, replay: bool = True) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = callback
            snapshot = self._settings
        if replay:
            callback(snapshot)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe


__all__ = ["DetectionSettings", "DetectionSettingsStore", "InvalidParameter"]
