"""
Integration tests for a single capture window.

A CaptureTask runs on its own thread against scripted sensors and feeds the
real learning pipeline, so these tests exercise arming, triggering,
sampling, timeout and the guaranteed finished signal together.
"""
from __future__ import annotations

import time

import numpy as np
import pytest

from analysis.pattern_analyzer import PatternAnalyzer
from analysis.settings import DetectionSettings, DetectionSettingsStore
from core.capture import COMPLETED, IDLE, TIMED_OUT, CaptureTask
from shared.config import DispenserConfig
from shared.sample_buffer import SampleBuffer
from shared.telemetry import parse_graph_message
from fixtures.controlled_device import ScriptedSensorBank
from fixtures.signal_generators import make_drop_burst, make_window

NAMES = ("GREEN", "BLUE")
MEASUREMENTS = 119


def fast_config(**overrides) -> DispenserConfig:
    params = dict(
        channel_names=NAMES,
        actuator_count=2,
        capture_timeout_sec=0.15,
        min_capture_window_sec=0.0,
        scan_interval_sec=0.001,
        retry_pause_sec=0.0,
    )
    params.update(overrides)
    return DispenserConfig(**params)


@pytest.fixture
def sensors():
    bank = ScriptedSensorBank(NAMES)
    bank.open()
    yield bank
    bank.close()


@pytest.fixture
def messages():
    return []


def make_task(sensors, messages, config=None, buffer=None):
    config = config or fast_config()
    settings = DetectionSettingsStore(DetectionSettings(measurement_count=MEASUREMENTS))
    analyzer = PatternAnalyzer(config, settings)
    task = CaptureTask(0, sensors, analyzer, config, buffer=buffer, log=messages.append)
    return task, analyzer


def run_to_completion(task: CaptureTask, timeout: float = 3.0) -> None:
    task.start()
    assert task.finished.wait(timeout)
    task.join(timeout)
    assert not task.is_alive()


class TestTriggeredCapture:
    def test_trigger_samples_all_channels_and_learns(self, sensors, messages):
        sensors.queue_burst(make_drop_burst(120))
        task, analyzer = make_task(sensors, messages)
        assert task.state == IDLE
        run_to_completion(task)

        result = task.result
        assert task.state == COMPLETED
        assert result.triggered
        assert result.trigger_channel == "GREEN"
        assert result.window.shape == (2, MEASUREMENTS + 1)
        assert result.window[0, 0] > 50
        assert result.verdict is not None and result.verdict.phase == "learning"
        assert analyzer.get_recording_count(0) == 1

    def test_trigger_on_second_channel(self, sensors, messages):
        burst = make_drop_burst(120)
        sensors.queue_burst(make_window([np.zeros_like(burst), burst]))
        task, analyzer = make_task(sensors, messages)
        run_to_completion(task)
        assert task.result.trigger_channel == "BLUE"
        assert analyzer.state(0).recordings[0].channels[0].trigger_channel == "BLUE"

    def test_emits_piezo_line_and_graph(self, sensors, messages):
        sensors.queue_burst(make_drop_burst(120))
        task, _ = make_task(sensors, messages)
        run_to_completion(task)
        assert any(m.startswith("[PIEZO] GREEN triggered") for m in messages)
        graphs = [m for m in messages if m.startswith("GRAPH:")]
        assert len(graphs) == 1
        payload = parse_graph_message(graphs[0])
        assert payload["trigger"] == "GREEN"
        assert [c["label"] for c in payload["channels"]] == list(NAMES)
        assert len(payload["channels"][0]["values"].split(",")) == MEASUREMENTS + 1

    def test_uses_shared_buffer(self, sensors, messages):
        buffer = SampleBuffer(2, 8)
        sensors.queue_burst(make_drop_burst(120))
        task, _ = make_task(sensors, messages, buffer=buffer)
        run_to_completion(task)
        assert buffer.capacity >= MEASUREMENTS + 1
        np.testing.assert_array_equal(buffer.snapshot(), task.result.window)

    def test_minimum_window_is_held(self, sensors, messages):
        sensors.queue_burst(make_drop_burst(120))
        task, _ = make_task(sensors, messages, config=fast_config(min_capture_window_sec=0.3))
        started = time.monotonic()
        run_to_completion(task)
        assert time.monotonic() - started >= 0.29
        assert task.result.triggered


class TestUntriggeredCapture:
    def test_timeout_without_drop(self, sensors, messages):
        task, analyzer = make_task(sensors, messages)
        run_to_completion(task)
        assert task.state == TIMED_OUT
        assert not task.result.triggered
        assert task.result.verdict is None
        assert task.result.elapsed_sec >= 0.15
        assert analyzer.get_recording_count(0) == 0
        assert not any(m.startswith("GRAPH:") for m in messages)

    def test_sensor_failure_still_finishes(self, sensors, messages):
        sensors.fail_with = OSError("i2c bus error")
        task, _ = make_task(sensors, messages)
        run_to_completion(task)
        assert task.ready.is_set()
        assert not task.result.triggered
        assert any(m.startswith("[ERR] Capture failed") for m in messages)

    def test_cancel_ends_waiting_early(self, sensors, messages):
        task, _ = make_task(sensors, messages, config=fast_config(capture_timeout_sec=10.0))
        task.start()
        assert task.ready.wait(1.0)
        started = time.monotonic()
        task.cancel()
        assert task.finished.wait(2.0)
        task.join(1.0)
        assert time.monotonic() - started < 2.0
        assert not task.result.triggered
