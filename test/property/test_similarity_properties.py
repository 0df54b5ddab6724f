"""
Property-based tests for envelope extraction and similarity using Hypothesis.

Production code is compared against the plain-Python models in
fixtures.reference_models (differential testing), and the score bounds are
checked for arbitrary inputs.
"""
from __future__ import annotations

import numpy as np
import pytest
from hypothesis import assume, given, settings, strategies as st

from analysis.envelope import create_envelope
from analysis.similarity import calculate_similarity
from fixtures.reference_models import reference_envelope, reference_similarity

readings = st.lists(st.integers(min_value=0, max_value=4095), min_size=1, max_size=300)
points = st.integers(min_value=1, max_value=60)


def envelope_pair(min_size: int = 2, max_size: int = 60):
    return st.integers(min_value=min_size, max_value=max_size).flatmap(
        lambda n: st.tuples(
            st.lists(st.integers(min_value=0, max_value=4095), min_size=n, max_size=n),
            st.lists(st.integers(min_value=0, max_value=4095), min_size=n, max_size=n),
        )
    )


class TestEnvelopeProperties:
    @given(raw=readings, n_points=points)
    @settings(max_examples=200, deadline=None)
    def test_matches_reference_windows(self, raw, n_points):
        env = create_envelope(np.asarray(raw, dtype=np.int32), n_points)
        assert env.size == n_points
        np.testing.assert_array_equal(env.values, np.asarray(reference_envelope(raw, n_points), dtype=np.float32))

    @given(raw=readings, n_points=points)
    @settings(max_examples=100, deadline=None)
    def test_envelope_never_exceeds_capture_peak(self, raw, n_points):
        env = create_envelope(np.asarray(raw, dtype=np.int32), n_points)
        assert env.max_value <= max(raw)
        assert env.values[env.peak_index] == env.max_value


class TestSimilarityProperties:
    @given(pair=envelope_pair())
    @settings(max_examples=200, deadline=None)
    def test_always_within_unit_interval(self, pair):
        a, b = (create_envelope(np.asarray(v, dtype=np.int32), len(v)) for v in pair)
        score = calculate_similarity(a, b)
        assert 0.0 <= score <= 1.0

    @given(pair=envelope_pair())
    @settings(max_examples=200, deadline=None)
    def test_symmetric(self, pair):
        a, b = (create_envelope(np.asarray(v, dtype=np.int32), len(v)) for v in pair)
        assert calculate_similarity(a, b) == pytest.approx(calculate_similarity(b, a), abs=1e-9)

    @given(pair=envelope_pair())
    @settings(max_examples=200, deadline=None)
    def test_matches_reference_model(self, pair):
        x, y = pair
        # Near-constant sequences make both formulas numerically unstable.
        assume(max(x) - min(x) >= 16 and max(y) - min(y) >= 16)
        a = create_envelope(np.asarray(x, dtype=np.int32), len(x))
        b = create_envelope(np.asarray(y, dtype=np.int32), len(y))
        expected = reference_similarity(a.values.tolist(), b.values.tolist())
        assert calculate_similarity(a, b) == pytest.approx(expected, abs=1e-6)

    @given(values=st.lists(st.integers(min_value=0, max_value=4095), min_size=2, max_size=60), scale=st.integers(1, 8))
    @settings(max_examples=100, deadline=None)
    def test_self_similarity_is_one_unless_flat(self, values, scale):
        assume(max(values) != min(values))
        a = create_envelope(np.asarray(values, dtype=np.int32), len(values))
        b = create_envelope(np.asarray(values, dtype=np.int32) * scale, len(values))
        assert calculate_similarity(a, b) == pytest.approx(1.0, abs=1e-6)

    @given(n=st.integers(2, 40), m=st.integers(2, 40))
    def test_length_mismatch_scores_zero(self, n, m):
        assume(n != m)
        a = create_envelope(np.arange(n, dtype=np.int32), n)
        b = create_envelope(np.arange(m, dtype=np.int32), m)
        assert calculate_similarity(a, b) == 0.0
