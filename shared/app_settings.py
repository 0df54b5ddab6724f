from __future__ import annotations

from dataclasses import dataclass, replace
import threading
from typing import Optional

from PySide6.QtCore import QSettings


@dataclass(frozen=True)
class AppSettings:
    avg_threshold: float = 0.75
    channel_threshold: float = 0.6
    measurement_count: int = 500
    default_max_attempts: int = 20
    dispense_angle: int = 80
    start_angle: int = 0


def _read_float(qsettings: QSettings, key: str, default: float) -> float:
    try:
        return float(qsettings.value(key, default))
    except (TypeError, ValueError):
        return default


def _read_int(qsettings: QSettings, key: str, default: int) -> int:
    try:
        return int(qsettings.value(key, default))
    except (TypeError, ValueError):
        return default


class AppSettingsStore:
    """
    Thread-safe persistent store for operator preferences.

    With ``path`` the values live in that INI file; otherwise in the
    platform's native settings location for ``organization``/``application``.
    """

    def __init__(
        self,
        *,
        organization: str = "DropSense",
        application: str = "DropSense",
        path: Optional[str] = None,
    ) -> None:
        self._lock = threading.Lock()
        if path is not None:
            self._qsettings = QSettings(str(path), QSettings.Format.IniFormat)
        else:
            self._qsettings = QSettings(organization, application)
        self._settings = self._load_settings(self._qsettings)

    def _load_settings(self, qsettings: QSettings) -> AppSettings:
        return AppSettings(
            avg_threshold=_read_float(qsettings, "detection/avg_threshold", AppSettings.avg_threshold),
            channel_threshold=_read_float(qsettings, "detection/channel_threshold", AppSettings.channel_threshold),
            measurement_count=_read_int(qsettings, "detection/measurement_count", AppSettings.measurement_count),
            default_max_attempts=_read_int(
                qsettings, "dispense/default_max_attempts", AppSettings.default_max_attempts
            ),
            dispense_angle=_read_int(qsettings, "servo/dispense_angle", AppSettings.dispense_angle),
            start_angle=_read_int(qsettings, "servo/start_angle", AppSettings.start_angle),
        )

    def get(self) -> AppSettings:
        with self._lock:
            return self._settings

    def update(self, **kwargs) -> AppSettings:
        with self._lock:
            new_settings = replace(self._settings, **kwargs)
            self._settings = new_settings
            self._persist(new_settings)
        return new_settings

    def _persist(self, settings: AppSettings) -> None:
        self._qsettings.setValue("detection/avg_threshold", float(settings.avg_threshold))
        self._qsettings.setValue("detection/channel_threshold", float(settings.channel_threshold))
        self._qsettings.setValue("detection/measurement_count", int(settings.measurement_count))
        self._qsettings.setValue("dispense/default_max_attempts", int(settings.default_max_attempts))
        self._qsettings.setValue("servo/dispense_angle", int(settings.dispense_angle))
        self._qsettings.setValue("servo/start_angle", int(settings.start_angle))
        self._qsettings.sync()


__all__ = ["AppSettings", "AppSettingsStore"]
