"""
Unit tests for windowed-max envelope extraction.

The envelope is the only view of a capture the learning pipeline keeps, so
its window boundaries and feature values must be exact.
"""
from __future__ import annotations

import numpy as np
import pytest

from analysis.envelope import create_envelope, create_envelopes, envelope_features
from fixtures.reference_models import reference_envelope
from fixtures.signal_generators import make_drop_burst, make_window


class TestCreateEnvelope:
    def test_length_matches_target(self):
        env = create_envelope(make_drop_burst(501), 50)
        assert env.size == 50
        assert len(env) == 50
        assert env.values.dtype == np.float32

    def test_each_point_is_window_maximum(self):
        raw = np.arange(100, dtype=np.int32)
        env = create_envelope(raw, 10)
        # Windows are [0,10), [10,20), ... so each max is the last index.
        np.testing.assert_array_equal(env.values, np.arange(9, 100, 10, dtype=np.float32))

    def test_matches_reference_on_uneven_split(self):
        raw = make_drop_burst(137, noise=5.0, seed=3)
        env = create_envelope(raw, 50)
        np.testing.assert_allclose(env.values, reference_envelope(raw.tolist(), 50))

    def test_short_capture_repeats_samples(self):
        raw = np.array([5, 9, 2], dtype=np.int32)
        env = create_envelope(raw, 6)
        np.testing.assert_array_equal(env.values, [5, 5, 9, 9, 2, 2])

    def test_features(self):
        raw = np.array([1, 7, 3, 7, 2, 0], dtype=np.int32)
        env = create_envelope(raw, 6)
        assert env.max_value == 7.0
        assert env.total_area == pytest.approx(20.0)
        assert env.peak_index == 1  # first occurrence wins

    def test_metadata_is_kept(self):
        env = create_envelope(make_drop_burst(200), 20, trigger_channel="BLUE", timestamp=12.5)
        assert env.trigger_channel == "BLUE"
        assert env.timestamp == 12.5

    def test_empty_capture_gives_empty_envelope(self):
        env = create_envelope(np.array([], dtype=np.int32), 50, trigger_channel="GREEN")
        assert env.size == 0
        assert env.max_value == 0.0
        assert env.trigger_channel == "GREEN"

    def test_values_are_read_only(self):
        env = create_envelope(make_drop_burst(100), 10)
        with pytest.raises(ValueError):
            env.values[0] = 1.0

    def test_rejects_2d_input(self):
        with pytest.raises(ValueError):
            create_envelope(np.zeros((2, 10)), 5)

    def test_rejects_non_positive_points(self):
        with pytest.raises(ValueError):
            create_envelope(np.ones(10), 0)


class TestCreateEnvelopes:
    def test_one_envelope_per_channel_with_shared_timestamp(self):
        window = make_window([make_drop_burst(300), make_drop_burst(300, amplitude=200.0)])
        envs = create_envelopes(window, 25, trigger_channel="GREEN", timestamp=4.0)
        assert len(envs) == 2
        assert all(e.size == 25 for e in envs)
        assert all(e.timestamp == 4.0 for e in envs)
        assert envs[0].max_value > envs[1].max_value

    def test_rejects_1d_window(self):
        with pytest.raises(ValueError):
            create_envelopes(np.ones(10), 5)


def test_envelope_features_of_empty_sequence():
    assert envelope_features([]) == (0.0, 0.0, 0)
