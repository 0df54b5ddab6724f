"""
Integration tests for closed-loop dispensing.

The orchestrator drives scripted servos whose drop plan decides on which
attempt a pill falls, and real capture tasks listen on scripted sensors.
"""
from __future__ import annotations

import threading
import time

import numpy as np
import pytest

from analysis.pattern_analyzer import PatternAnalyzer
from analysis.settings import DetectionSettings, DetectionSettingsStore
from core.capture import CaptureTask
from core.dispenser import DispenseOrchestrator
from core.servo_controller import ServoController
from shared.config import DispenserConfig
from fixtures.controlled_device import ScriptedSensorBank, ScriptedServoDriver, drop_on_attempts, never_drop

NAMES = ("GREEN", "BLUE")


class Rig:
    def __init__(self, plan, **overrides):
        params = dict(
            channel_names=NAMES,
            actuator_count=3,
            capture_timeout_sec=0.1,
            min_capture_window_sec=0.0,
            scan_interval_sec=0.001,
            retry_pause_sec=0.0,
            dispense_lock_timeout_sec=0.2,
        )
        params.update(overrides)
        self.config = DispenserConfig(**params)
        self.messages = []
        self.sensors = ScriptedSensorBank(NAMES)
        self.driver = ScriptedServoDriver(self.sensors, 3, plan=plan)
        self.sensors.open()
        self.driver.open()
        self.analyzer = PatternAnalyzer(
            self.config, DetectionSettingsStore(DetectionSettings(measurement_count=100))
        )
        self.servos = ServoController(self.driver)
        self.tasks = []
        self.orchestrator = DispenseOrchestrator(
            self.config, self.servos, self.capture_factory, log=self.messages.append
        )

    def capture_factory(self, index: int) -> CaptureTask:
        task = CaptureTask(index, self.sensors, self.analyzer, self.config, log=self.messages.append)
        self.tasks.append(task)
        return task

    def close(self):
        self.driver.close()
        self.sensors.close()


@pytest.fixture
def make_rig():
    rigs = []

    def factory(plan=never_drop, **overrides):
        rig = Rig(plan, **overrides)
        rigs.append(rig)
        return rig

    yield factory
    for rig in rigs:
        rig.close()


def capture_threads():
    return [t for t in threading.enumerate() if t.name.startswith("CaptureTask") and t.is_alive()]


@pytest.mark.parametrize("k", [1, 3])
def test_trigger_on_attempt_k_succeeds_after_k_moves(make_rig, k):
    rig = make_rig(drop_on_attempts({k}))
    assert rig.orchestrator.dispense(1, max_attempts=5) is True
    assert rig.orchestrator.attempts_used == k
    assert len(rig.driver.moves) == k
    assert all(index == 1 for index, _ in rig.driver.moves)
    assert rig.orchestrator.last_result.triggered
    assert f"[SUCCESS] Fast dispense completed in {k} attempts" in rig.messages
    assert rig.analyzer.get_recording_count(1) == 1


def test_never_triggering_fails_after_max_attempts(make_rig):
    rig = make_rig()
    assert rig.orchestrator.dispense(0, max_attempts=4) is False
    assert rig.orchestrator.attempts_used == 4
    assert len(rig.driver.moves) == 4
    assert not rig.orchestrator.last_result.triggered
    assert "[FAILED] Fast dispense failed after 4 attempts" in rig.messages


def test_each_attempt_swings_to_the_other_end(make_rig):
    rig = make_rig()
    rig.orchestrator.dispense(0, max_attempts=3)
    assert [angle for _, angle in rig.driver.moves] == [80, 0, 80]


def test_every_capture_thread_is_joined(make_rig):
    rig = make_rig(drop_on_attempts({2}))
    rig.orchestrator.dispense(2, max_attempts=3)
    assert len(rig.tasks) == 2
    assert all(t.finished.is_set() and not t.is_alive() for t in rig.tasks)
    assert capture_threads() == []


def test_default_attempts_come_from_config(make_rig):
    rig = make_rig(default_max_attempts=2)
    assert rig.orchestrator.dispense(0) is False
    assert rig.orchestrator.attempts_used == 2


@pytest.mark.parametrize("index", [-1, 3])
def test_invalid_index_is_rejected(make_rig, index):
    rig = make_rig()
    assert rig.orchestrator.dispense(index, max_attempts=2) is False
    assert rig.driver.moves == []
    assert any(m.startswith("[ERR] Invalid servo index") for m in rig.messages)


@pytest.mark.parametrize("attempts", [0, -3])
def test_invalid_attempt_count_is_rejected(make_rig, attempts):
    rig = make_rig()
    assert rig.orchestrator.dispense(0, max_attempts=attempts) is False
    assert rig.driver.moves == []


def test_busy_dispenser_times_out(make_rig):
    rig = make_rig()
    holder = threading.Thread(target=rig.orchestrator.dispense, args=(0, 6))
    holder.start()
    try:
        while not rig.orchestrator.busy and holder.is_alive():
            time.sleep(0.001)
        assert rig.orchestrator.dispense(1, max_attempts=1) is False
        assert "[ERR] Could not acquire dispensing lock for servo 2" in rig.messages
    finally:
        holder.join()


def test_servo_failure_aborts_and_joins_capture(make_rig):
    rig = make_rig()
    rig.driver.fail_with = RuntimeError("servo stalled")
    assert rig.orchestrator.dispense(0, max_attempts=3) is False
    assert rig.orchestrator.attempts_used == 1
    assert any("[ERR] Servo 1 move failed" in m for m in rig.messages)
    assert all(not t.is_alive() for t in rig.tasks)


def test_slow_capture_is_joined_before_its_result_is_used(make_rig):
    # Sampling 100 slow scans outlasts the finish guard; the drop was still seen.
    rig = make_rig(drop_on_attempts([1]), finish_grace_sec=0.05)
    rig.sensors.read_delay = 0.005
    assert rig.orchestrator.dispense(0, max_attempts=2) is True
    assert rig.driver.moves == [(0, 80)]
    assert rig.orchestrator.attempts_used == 1
    result = rig.orchestrator.last_result
    assert result.triggered and result.verdict is None
    assert all(not t.is_alive() for t in rig.tasks)


def test_capture_that_ignores_cancel_stops_the_dispense(make_rig):
    burst = np.full(20, 500)
    rig = make_rig(drop_on_attempts([1], burst), finish_grace_sec=0.05)
    rig.sensors.read_delay = 0.5
    assert rig.orchestrator.dispense(0, max_attempts=3) is False
    assert rig.driver.moves == [(0, 80)]
    assert rig.orchestrator.attempts_used == 1
    assert "[ERR] Capture for servo 1 is still running; stopping dispense" in rig.messages
    rig.tasks[0].join(2.0)
    assert not rig.tasks[0].is_alive()
