"""Durable per-actuator storage of learning history and reference models.

One little-endian binary file per actuator. The header carries a magic tag
and format version so a schema mismatch is reported instead of being read as
garbage.
"""
from __future__ import annotations

import logging
import os
import struct
import tempfile
from pathlib import Path
from typing import BinaryIO, List, Optional, Union

import numpy as np

from shared.models import ActuatorLearningState, DispensingRecord, Envelope, ReferencePattern

logger = logging.getLogger(__name__)

MAGIC = b"DSLS"
FORMAT_VERSION = 1

_HEADER = struct.Struct("<4sHHIBI")   # magic, version, channels, recordings, has_ref, failed
_RECORD = struct.Struct("<dB")        # timestamp, is_valid
_COUNT = struct.Struct("<I")          # envelope length prefix
_FEATURES = struct.Struct("<ffi")     # max_value, total_area, peak_index
_STAMP = struct.Struct("<d")
_LABEL_LEN = struct.Struct("<B")


class ModelStoreError(Exception):
    """A persisted model could not be read or written."""


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def unpack(self, fmt: struct.Struct) -> tuple:
        end = self._pos + fmt.size
        if end > len(self._data):
            raise ModelStoreError("file is truncated")
        values = fmt.unpack_from(self._data, self._pos)
        self._pos = end
        return values

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise ModelStoreError("file is truncated")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos


def _encode_label(label: str) -> bytes:
    raw = label.encode("utf-8")[:255]
    # Re-encode so a multi-byte character is never cut in half.
    return raw.decode("utf-8", "ignore").encode("utf-8")


class ModelStore:
    def __init__(self, directory: Union[str, Path], n_channels: int) -> None:
        if n_channels <= 0:
            raise ValueError("n_channels must be positive")
        self._dir = Path(directory)
        self._n_channels = int(n_channels)

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, actuator_index: int) -> Path:
        return self._dir / f"servo{int(actuator_index)}_progress.dat"

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def save(self, actuator_index: int, state: ActuatorLearningState) -> Path:
        """Persist `state`, replacing any previous file atomically."""
        path = self.path_for(actuator_index)
        self._dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=str(self._dir))
        try:
            with os.fdopen(fd, "wb") as f:
                self._write_state(f, state)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
        logger.debug("Saved learning state for actuator %d to %s", actuator_index, path)
        return path

    def _write_state(self, f: BinaryIO, state: ActuatorLearningState) -> None:
        for record in state.recordings:
            if record.n_channels != self._n_channels:
                raise ModelStoreError(
                    f"record has {record.n_channels} channels, store expects {self._n_channels}"
                )
        has_reference = bool(state.has_reference and state.reference is not None)
        if has_reference and state.reference.n_channels != self._n_channels:
            raise ModelStoreError("reference channel count does not match the store")
        f.write(
            _HEADER.pack(
                MAGIC,
                FORMAT_VERSION,
                self._n_channels,
                len(state.recordings),
                int(has_reference),
                int(state.failed_count),
            )
        )
        for record in state.recordings:
            f.write(_RECORD.pack(float(record.timestamp), int(bool(record.is_valid))))
            for envelope in record.channels:
                self._write_envelope(f, envelope)
                f.write(_STAMP.pack(float(envelope.timestamp)))
                label = _encode_label(envelope.trigger_channel)
                f.write(_LABEL_LEN.pack(len(label)))
                f.write(label)
        if has_reference:
            for envelope in state.reference.channels:
                self._write_envelope(f, envelope)

    @staticmethod
    def _write_envelope(f: BinaryIO, envelope: Envelope) -> None:
        f.write(_COUNT.pack(envelope.size))
        f.write(np.asarray(envelope.values, dtype="<f4").tobytes())
        f.write(_FEATURES.pack(envelope.max_value, envelope.total_area, envelope.peak_index))

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def load(self, actuator_index: int) -> Optional[ActuatorLearningState]:
        """Return the stored state, or None when nothing was saved yet."""
        path = self.path_for(actuator_index)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        return self.decode(data)

    def decode(self, data: bytes) -> ActuatorLearningState:
        reader = _Reader(data)
        magic, version, n_channels, n_records, has_ref, failed = reader.unpack(_HEADER)
        if magic != MAGIC:
            raise ModelStoreError("not a learning-state file (bad magic)")
        if version != FORMAT_VERSION:
            raise ModelStoreError(f"unsupported format version {version}")
        if n_channels != self._n_channels:
            raise ModelStoreError(f"file has {n_channels} channels, store expects {self._n_channels}")

        recordings: List[DispensingRecord] = []
        for _ in range(n_records):
            timestamp, is_valid = reader.unpack(_RECORD)
            channels = []
            for _ in range(n_channels):
                values, max_value, total_area, peak_index = self._read_envelope(reader)
                (env_stamp,) = reader.unpack(_STAMP)
                (label_len,) = reader.unpack(_LABEL_LEN)
                label = reader.take(label_len).decode("utf-8", "replace")
                channels.append(
                    Envelope(
                        values=values,
                        max_value=max_value,
                        total_area=total_area,
                        peak_index=peak_index,
                        trigger_channel=label,
                        timestamp=env_stamp,
                    )
                )
            recordings.append(DispensingRecord(channels=tuple(channels), is_valid=bool(is_valid), timestamp=timestamp))

        reference: Optional[ReferencePattern] = None
        if has_ref:
            channels = []
            for _ in range(n_channels):
                values, max_value, total_area, peak_index = self._read_envelope(reader)
                channels.append(
                    Envelope(values=values, max_value=max_value, total_area=total_area, peak_index=peak_index)
                )
            reference = ReferencePattern(channels=tuple(channels))

        if reader.remaining:
            raise ModelStoreError(f"{reader.remaining} unexpected trailing bytes")

        return ActuatorLearningState(
            recordings=recordings,
            has_reference=reference is not None,
            failed_count=int(failed),
            reference=reference,
        )

    @staticmethod
    def _read_envelope(reader: _Reader) -> tuple:
        (length,) = reader.unpack(_COUNT)
        values = np.frombuffer(reader.take(length * 4), dtype="<f4").astype(np.float32)
        max_value, total_area, peak_index = reader.unpack(_FEATURES)
        if length and not 0 <= peak_index < length:
            raise ModelStoreError(f"peak index {peak_index} outside envelope of {length}")
        return values, max_value, total_area, peak_index

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def delete(self, actuator_index: int) -> bool:
        path = self.path_for(actuator_index)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def delete_all(self, actuator_count: int) -> int:
        return sum(1 for idx in range(actuator_count) if self.delete(idx))


__all__ = ["ModelStore", "ModelStoreError", "MAGIC", "FORMAT_VERSION"]
