"""Tests for critical-slowing-down indicators."""

from datetime import datetime, timedelta

import numpy as np
import pytest

from ema_dynamics.core import PLRNNState, detect_early_warnings
from ema_dynamics.core.early_warning import (autocorrelation, correlation, estimate_transition_time,
                                             flickering, mean_abs_correlation, variance)

LABELS = ['valence', 'arousal', 'stress']


def _history(latents):
    start = datetime(2025, 1, 13, 8)
    return [
        PLRNNState(row, row, np.full(len(row), 0.1), start + timedelta(hours=t), timestep=t)
        for t, row in enumerate(np.asarray(latents, dtype=float))
    ]


def _alternating(n):
    return np.array([1.0 if t % 2 == 0 else -1.0 for t in range(n)])


class TestIndicators:

    def test_autocorrelation(self):
        assert autocorrelation([1.0, 2.0]) == 0.0
        assert autocorrelation(np.ones(10)) == 0.0
        assert autocorrelation(_alternating(12)) == pytest.approx(-11 / 12)
        assert autocorrelation(np.arange(12)) == pytest.approx(0.75)

    def test_variance(self):
        assert variance([3.0]) == 0.0
        assert variance([1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_flickering(self):
        assert flickering([1.0, -1.0, 1.0]) == 0.0
        assert flickering(np.zeros(10)) == 0.0
        assert flickering(_alternating(11)) == pytest.approx(1.0)

    def test_correlation(self):
        x = np.arange(10.0)
        assert correlation(x, 2 * x + 1) == pytest.approx(1.0)
        assert correlation(x, -x) == pytest.approx(-1.0)
        assert correlation(x, np.zeros(10)) == 0.0

    def test_mean_abs_correlation(self):
        x = np.arange(10.0)
        latents = np.column_stack([x, -x, np.zeros(10)])
        assert mean_abs_correlation(latents) == pytest.approx(1 / 3)
        assert mean_abs_correlation(x[:, None]) == 0.0

    def test_transition_time(self):
        assert estimate_transition_time(0.6) is None
        assert estimate_transition_time(0.75) == pytest.approx(4.0)
        assert estimate_transition_time(0.99) == pytest.approx(48.0)
        assert estimate_transition_time(0.8, dt=2.0) == pytest.approx(10.0)


class TestDetectEarlyWarnings:

    def test_short_history_is_silent(self):
        assert detect_early_warnings(_history(np.zeros((9, 3))), 5) == []

    def test_rising_autocorrelation(self):
        latents = np.zeros((24, 3))
        latents[:12, 0] = _alternating(12)
        latents[12:, 0] = np.arange(12) * 0.01
        signals = detect_early_warnings(_history(latents), 12, labels=LABELS, include_connectivity=False)

        assert [(s.type, s.dimension) for s in signals] == [('autocorrelation', 'valence')]
        signal = signals[0]
        assert signal.strength > 0
        assert signal.estimated_time_to_transition == pytest.approx(4.0)
        assert signal.confidence == pytest.approx(24 / 50)

    def test_constant_autocorrelation_is_silent(self, rng):
        # the same AR(0.5) stretch in both windows
        segment = np.zeros(12)
        for t in range(1, 12):
            segment[t] = 0.5 * segment[t - 1] + rng.normal()
        latents = np.zeros((24, 3))
        latents[:12, 0] = segment
        latents[12:, 0] = segment
        signals = detect_early_warnings(_history(latents), 12, labels=LABELS, include_connectivity=False)

        assert all(s.type != 'autocorrelation' for s in signals)

    def test_rising_variance(self, rng):
        latents = np.zeros((20, 3))
        latents[10:, 1] = rng.normal(size=10)
        signals = detect_early_warnings(_history(latents), 10, labels=LABELS, include_connectivity=False)

        variance_signals = [s for s in signals if s.type == 'variance']
        assert [s.dimension for s in variance_signals] == ['arousal']
        assert variance_signals[0].estimated_time_to_transition is None

    def test_flickering(self):
        latents = np.zeros((22, 3))
        latents[11:, 2] = _alternating(11)
        signals = detect_early_warnings(_history(latents), 11, labels=LABELS, include_connectivity=False)

        flicker = [s for s in signals if s.type == 'flickering']
        assert len(flicker) == 1
        assert flicker[0].dimension == 'stress'
        assert flicker[0].strength == pytest.approx(1.0)
        assert flicker[0].estimated_time_to_transition == 12.0

    def test_rising_connectivity(self, rng):
        latents = np.zeros((20, 3))
        latents[:, 0] = rng.normal(size=20)
        latents[10:, 1] = latents[10:, 0]
        signals = detect_early_warnings(_history(latents), 5, labels=LABELS)

        network = [s for s in signals if s.type == 'connectivity']
        assert len(network) == 1
        assert network[0].dimension == 'network'

        without = detect_early_warnings(_history(latents), 5, labels=LABELS, include_connectivity=False)
        assert all(s.type != 'connectivity' for s in without)

    def test_engine_wrapper_uses_labels(self, plrnn_engine):
        latents = np.zeros((20, 3))
        latents[10:, 1] = np.linspace(-1, 1, 10) ** 3 * 5
        signals = plrnn_engine.detect_early_warnings(_history(latents), 10)
        assert all(s.dimension in LABELS + ['network'] for s in signals)
        assert any(s.type == 'variance' and s.dimension == 'arousal' for s in signals)
