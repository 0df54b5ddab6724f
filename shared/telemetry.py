"""Operator-facing log lines and graph telemetry.

Components never reach for a global broadcaster; they receive a ``LogSink``
callable in their constructor. The default sink forwards into :mod:`logging`.
"""

from __future__ import annotations

import json
import logging
from typing import Callable, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]

GRAPH_PREFIX = "GRAPH:"


def logger_sink(target: Optional[logging.Logger] = None, level: int = logging.INFO) -> LogSink:
    """Return a sink that writes each line to `target` at `level`."""
    log = target or logging.getLogger("dropsense")

    def _sink(message: str) -> None:
        log.log(level, message)

    return _sink


def emit(sink: Optional[LogSink], message: str) -> None:
    """Fire-and-forget delivery; a failing sink never breaks the caller."""
    if sink is None:
        return
    try:
        sink(message)
    except Exception as exc:
        logger.debug("Log sink rejected message: %s", exc)


def format_graph_message(trigger_channel: str, channel_names: Sequence[str], window: np.ndarray) -> str:
    """Serialize one capture as a tagged graph payload.

    Each channel's raw SampleWindow is rendered as a literal comma-separated
    integer list.
    """
    data = np.asarray(window)
    if data.ndim != 2 or data.shape[0] != len(channel_names):
        raise ValueError("window must be (n_channels, n_samples)")
    channels = [
        {"label": str(name), "values": ",".join(str(int(v)) for v in data[idx])}
        for idx, name in enumerate(channel_names)
    ]
    payload = {"trigger": str(trigger_channel), "channels": channels}
    return GRAPH_PREFIX + json.dumps(payload, separators=(",", ":"))


def parse_graph_message(message: str) -> dict:
    if not message.startswith(GRAPH_PREFIX):
        raise ValueError("not a graph message")
    return json.loads(message[len(GRAPH_PREFIX):])


__all__ = [
    "LogSink",
    "GRAPH_PREFIX",
    "logger_sink",
    "emit",
    "format_graph_message",
    "parse_graph_message",
]
