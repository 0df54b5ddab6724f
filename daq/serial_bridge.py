from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import serial
import serial.tools.list_ports

from daq.base_device import SensorBank, ServoDriver

_LOGGER = logging.getLogger(__name__)

# USB vendors commonly used for the bridge microcontroller.
_BRIDGE_VIDS = {
    0x2341,  # Arduino
    0x0403,  # FTDI
    0x10C4,  # Silicon Labs CP210x (ESP32 dev boards)
    0x1A86,  # WCH CH340
    0x303A,  # Espressif native USB
}

DEFAULT_BAUDRATE = 115200


@dataclass(frozen=True)
class BridgePortInfo:
    device: str
    description: str
    details: Dict[str, object] = field(default_factory=dict)


class SerialBridgeError(RuntimeError):
    """The bridge did not answer, or answered something unexpected."""


def list_bridge_ports() -> List[BridgePortInfo]:
    """Enumerate serial ports that look like a dispenser bridge."""
    candidates: List[BridgePortInfo] = []
    try:
        ports = serial.tools.list_ports.comports()
    except Exception as exc:
        _LOGGER.error("Failed to scan serial ports: %s", exc)
        return candidates
    for p in ports:
        if p.vid not in _BRIDGE_VIDS:
            continue
        candidates.append(
            BridgePortInfo(
                device=p.device,
                description=f"{p.description or 'Serial bridge'} ({p.device})",
                details={"vid": p.vid, "pid": p.pid, "hwid": p.hwid},
            )
        )
    return candidates


class SerialBridge:
    """
    Line protocol to a microcontroller that owns the piezo ADCs and servo PWM.

    Commands (ASCII, newline terminated):
    - ``R``            -> ``v0,v1,...`` one integer reading per channel.
    - ``M <idx> <deg>`` -> ``OK`` as soon as the target is accepted.

    The sensor bank and servo driver share one bridge; a lock serializes
    request/response pairs on the wire. A move waits for the servo to settle
    after the lock is released, so scans keep flowing while the arm swings.
    """

    def __init__(
        self,
        port: str,
        *,
        baudrate: int = DEFAULT_BAUDRATE,
        read_timeout: float = 0.5,
        settle_sec: float = 0.5,
        serial_factory: Optional[Callable[..., object]] = None,
    ) -> None:
        self._port = port
        self._baudrate = int(baudrate)
        self._read_timeout = float(read_timeout)
        self._settle_sec = float(settle_sec)
        self._factory = serial_factory or serial.Serial
        self._ser = None
        self._users = 0
        self._lock = threading.Lock()

    @property
    def port(self) -> str:
        return self._port

    @property
    def is_open(self) -> bool:
        return self._ser is not None

    def acquire(self) -> None:
        with self._lock:
            if self._ser is None:
                try:
                    self._ser = self._factory(
                        port=self._port,
                        baudrate=self._baudrate,
                        timeout=self._read_timeout,
                        write_timeout=self._read_timeout,
                    )
                    self._ser.reset_input_buffer()
                except serial.SerialException as exc:
                    self._ser = None
                    raise SerialBridgeError(f"Failed to open serial port {self._port}: {exc}") from exc
                _LOGGER.info("Opened dispenser bridge on %s at %d baud", self._port, self._baudrate)
            self._users += 1

    def release(self) -> None:
        with self._lock:
            if self._users == 0:
                return
            self._users -= 1
            if self._users == 0 and self._ser is not None:
                try:
                    self._ser.close()
                finally:
                    self._ser = None
                _LOGGER.info("Closed dispenser bridge on %s", self._port)

    def transact(self, command: str) -> str:
        with self._lock:
            if self._ser is None:
                raise SerialBridgeError("bridge is not open")
            try:
                self._ser.write(f"{command}\n".encode("ascii"))
                self._ser.flush()
                raw = self._ser.readline()
            except serial.SerialException as exc:
                raise SerialBridgeError(f"serial I/O failed on {self._port}: {exc}") from exc
        if not raw.endswith(b"\n"):
            raise SerialBridgeError(f"timeout waiting for reply to {command!r}")
        return raw.decode("ascii", "replace").strip()

    def read_scan(self, n_channels: int) -> List[int]:
        reply = self.transact("R")
        try:
            values = [int(part) for part in reply.split(",")]
        except ValueError as exc:
            raise SerialBridgeError(f"malformed scan {reply!r}") from exc
        if len(values) != n_channels:
            raise SerialBridgeError(f"scan has {len(values)} readings, expected {n_channels}")
        return values

    def move(self, index: int, angle: int) -> None:
        reply = self.transact(f"M {int(index)} {int(angle)}")
        if reply != "OK":
            raise SerialBridgeError(f"servo {index} move rejected: {reply!r}")
        if self._settle_sec > 0:
            time.sleep(self._settle_sec)


class SerialSensorBank(SensorBank):
    def __init__(self, bridge: SerialBridge, channel_names: Sequence[str]) -> None:
        super().__init__(channel_names)
        self._bridge = bridge

    def _open_impl(self) -> None:
        self._bridge.acquire()

    def _close_impl(self) -> None:
        self._bridge.release()

    def _read_impl(self) -> Sequence[int]:
        return self._bridge.read_scan(self.n_channels)


class SerialServoDriver(ServoDriver):
    def __init__(self, bridge: SerialBridge, actuator_count: int) -> None:
        super().__init__(actuator_count)
        self._bridge = bridge

    def _open_impl(self) -> None:
        self._bridge.acquire()

    def _close_impl(self) -> None:
        self._bridge.release()

    def _move_impl(self, index: int, angle: int) -> None:
        self._bridge.move(index, angle)


__all__ = [
    "BridgePortInfo",
    "SerialBridge",
    "SerialBridgeError",
    "SerialSensorBank",
    "SerialServoDriver",
    "list_bridge_ports",
]
