"""Tests for the KalmanFormer hybrid engine."""

from datetime import timedelta

import numpy as np
import pytest
from numpy.testing import assert_allclose

from ema_dynamics.core import (KalmanFormerEngine, KalmanFormerTrainingSample, KalmanFormerWeights,
                               UninitializedModelError)


def _run(engine, values, times):
    state = engine.initial_state(values[0], times[0])
    for obs, t in zip(values[1:], times[1:]):
        state = engine.update(state, obs, t)
    return state


class TestLifecycle:
    """Initialization and weight handling."""

    def test_uninitialized_engine_raises(self, kalmanformer_config, start_time):
        engine = KalmanFormerEngine(kalmanformer_config, rng=0)
        assert not engine.is_initialized
        with pytest.raises(UninitializedModelError):
            engine.initial_state([0.0, 0.0, 0.0], start_time)
        with pytest.raises(UninitializedModelError):
            engine.complexity_metrics()
        with pytest.raises(UninitializedModelError):
            engine.get_weights()

    def test_same_seed_same_weights(self, kalmanformer_config):
        a = KalmanFormerEngine(kalmanformer_config, rng=3)
        b = KalmanFormerEngine(kalmanformer_config, rng=3)
        a.initialize()
        b.initialize()
        assert_allclose(a.get_weights().readout, b.get_weights().readout)

    def test_get_weights_is_a_copy(self, kalmanformer_engine):
        weights = kalmanformer_engine.get_weights()
        weights.readout[:] = 0.0
        assert np.any(kalmanformer_engine.get_weights().readout != 0.0)

    def test_json_round_trip_reproduces_predictions(self, kalmanformer_engine, kalmanformer_config,
                                                    sine_values, hourly_timestamps, tmp_path):
        times = hourly_timestamps(len(sine_values))
        path = kalmanformer_engine.get_weights().save_json(tmp_path / "kf.json")

        restored = KalmanFormerEngine(rng=99)
        restored.load_weights(KalmanFormerWeights.load_json(path))

        state_a = _run(kalmanformer_engine, sine_values[:10], times[:10])
        state_b = _run(restored, sine_values[:10], times[:10])
        assert_allclose(kalmanformer_engine.predict(state_a, 4).state_estimate,
                        restored.predict(state_b, 4).state_estimate)

    def test_complexity_metrics(self, kalmanformer_engine):
        metrics = kalmanformer_engine.complexity_metrics()
        assert metrics['kalman_parameters'] == 4 * 9
        assert metrics['total_parameters'] > metrics['transformer_parameters'] > 0
        assert metrics['effective_context_length'] == 8


class TestFiltering:
    """initial_state and update."""

    def test_initial_state(self, kalmanformer_engine, start_time):
        state = kalmanformer_engine.initial_state([0.2, 0.4, 0.6], start_time)
        assert_allclose(state.estimate, [0.2, 0.4, 0.6])
        assert len(state.observation_history) == 1
        assert state.timestamp == start_time

    def test_wrong_observation_length_raises(self, kalmanformer_engine, start_time):
        with pytest.raises(ValueError):
            kalmanformer_engine.initial_state([0.2, 0.4], start_time)

    def test_history_is_bounded(self, kalmanformer_engine, sine_values, hourly_timestamps):
        times = hourly_timestamps(12)
        state = _run(kalmanformer_engine, sine_values[:12], times)

        assert len(state.observation_history) == 8
        assert state.observation_history[-1].timestamp == times[-1]
        assert state.context_encoding.shape == (8, 16)

    def test_update_is_finite_and_bounded(self, kalmanformer_engine, sine_values, hourly_timestamps):
        state = _run(kalmanformer_engine, sine_values, hourly_timestamps(len(sine_values)))

        assert np.all(np.isfinite(state.estimate))
        assert np.all(np.abs(state.estimate) <= kalmanformer_engine.config.state_clamp)
        assert 0.0 < state.blend_ratio < 1.0
        assert 0.0 <= state.confidence <= 1.0
        cov = state.kalman_state.error_covariance
        assert_allclose(cov, cov.T)

    def test_update_does_not_mutate_state(self, kalmanformer_engine, start_time):
        state = kalmanformer_engine.initial_state([0.1, 0.1, 0.1], start_time)
        kalmanformer_engine.update(state, [1.0, 1.0, 1.0], start_time + timedelta(hours=1))
        assert len(state.observation_history) == 1
        assert_allclose(state.estimate, [0.1, 0.1, 0.1])


class TestPredict:
    """Multi-step forecasts."""

    @pytest.fixture
    def state(self, kalmanformer_engine, sine_values, hourly_timestamps):
        return _run(kalmanformer_engine, sine_values[:10], hourly_timestamps(10))

    @pytest.mark.parametrize("horizon", [0, 1, 5])
    def test_trajectory_length(self, kalmanformer_engine, state, horizon):
        prediction = kalmanformer_engine.predict(state, horizon)
        assert len(prediction.trajectory) == horizon + 1
        assert prediction.horizon == horizon

    def test_negative_horizon_raises(self, kalmanformer_engine, state):
        with pytest.raises(ValueError):
            kalmanformer_engine.predict(state, -1)

    def test_uncertainty_grows(self, kalmanformer_engine, state):
        prediction = kalmanformer_engine.predict(state, 6)
        traces = [np.trace(s.kalman_state.error_covariance) for s in prediction.trajectory[1:]]
        assert all(b > a for a, b in zip(traces, traces[1:]))

    def test_interval_contains_estimate(self, kalmanformer_engine, state):
        prediction = kalmanformer_engine.predict(state, 3)
        assert prediction.confidence_interval.contains(prediction.state_estimate)
        assert_allclose(prediction.blended_prediction, prediction.state_estimate)

    def test_timestamps_spread_over_max_gap(self, kalmanformer_engine, state):
        prediction = kalmanformer_engine.predict(state, 4)
        step = timedelta(hours=kalmanformer_engine.config.max_time_gap / 4)
        assert prediction.trajectory[-1].timestamp == state.timestamp + 4 * step


class TestExplain:
    """Attention explanations."""

    def test_explanation_structure(self, kalmanformer_engine, sine_values, hourly_timestamps):
        state = _run(kalmanformer_engine, sine_values[:10], hourly_timestamps(10))
        explanation = kalmanformer_engine.explain(state)

        assert explanation.temporal_pattern in ('recency_bias', 'pattern_matching', 'uniform')
        assert 1 <= len(explanation.top_influential_observations) <= 5
        weights = [o.weight for o in explanation.top_influential_observations]
        assert weights == sorted(weights, reverse=True)
        assert explanation.self_attention[0].shape == (8, 8)
        for obs in explanation.top_influential_observations:
            assert obs.dimension in kalmanformer_engine.config.dimension_labels

    def test_single_entry_is_uniform(self, kalmanformer_engine, start_time):
        state = kalmanformer_engine.initial_state([0.3, 0.2, 0.1], start_time)
        explanation = kalmanformer_engine.explain(state)
        assert explanation.temporal_pattern == 'uniform'
        assert explanation.top_influential_observations[0].weight == pytest.approx(1.0)


class TestAdaptation:
    """Blend ratio adaptation and readout training."""

    def test_large_error_increases_ratio(self, kalmanformer_engine):
        ratio = kalmanformer_engine.adapt_blend_ratio(np.zeros(5), np.ones(5))
        assert ratio == pytest.approx(0.6)
        assert kalmanformer_engine.config.blend_ratio == pytest.approx(0.6)

    def test_small_error_decreases_ratio(self, kalmanformer_engine):
        assert kalmanformer_engine.adapt_blend_ratio(np.zeros(5), np.full(5, 0.1)) == pytest.approx(0.4)

    def test_ratio_is_clamped(self, kalmanformer_engine):
        for _ in range(10):
            ratio = kalmanformer_engine.adapt_blend_ratio(np.zeros(3), np.ones(3) * 2)
        assert ratio == pytest.approx(0.8)

    def test_mismatched_shapes_leave_ratio(self, kalmanformer_engine):
        assert kalmanformer_engine.adapt_blend_ratio(np.zeros(3), np.zeros(4)) == pytest.approx(0.5)

    def test_train_reduces_attention_error(self, kalmanformer_engine, sine_values, hourly_timestamps):
        sample = KalmanFormerTrainingSample(sine_values, hourly_timestamps(len(sine_values)))

        first = kalmanformer_engine.train([sample])
        second = kalmanformer_engine.train([sample])

        assert first.samples == len(sine_values) - 1
        assert first.epochs == 1
        assert np.isfinite(first.loss)
        assert second.transformer_loss < first.transformer_loss

    def test_train_without_usable_samples(self, kalmanformer_engine, start_time):
        report = kalmanformer_engine.train([KalmanFormerTrainingSample(np.zeros((1, 3)), [start_time])])
        assert report.epochs == 0
        assert report.loss == 0.0

    def test_train_initializes_engine(self, kalmanformer_config, sine_values, hourly_timestamps):
        engine = KalmanFormerEngine(kalmanformer_config, rng=1)
        engine.train([KalmanFormerTrainingSample(sine_values[:6], hourly_timestamps(6))])
        assert engine.is_initialized
