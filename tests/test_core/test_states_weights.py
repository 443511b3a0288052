"""Tests for state snapshots, their conversions and weight containers."""

import math

import numpy as np
import pytest
from numpy.testing import assert_allclose

from ema_dynamics.config import KalmanFormerConfig, PLRNNConfig
from ema_dynamics.core import (ConfidenceInterval, DimensionMismatchError, KalmanFilterState,
                               KalmanFormerWeights, PLRNNState, PLRNNWeights, WeightsMeta,
                               from_plrnn_state, to_plrnn_state)
from ema_dynamics.core.weights import positional_table


class TestPLRNNState:

    def test_arrays_are_read_only_copies(self, start_time):
        latent = np.array([0.1, -0.2])
        state = PLRNNState(latent, latent, np.full(2, 0.1), start_time)
        latent[0] = 5.0

        assert state.latent_state[0] == pytest.approx(0.1)
        with pytest.raises(ValueError):
            state.latent_state[0] = 1.0

    def test_default_hidden_activations(self, start_time):
        state = PLRNNState([0.5, -0.5], [0, 0], [0.1, 0.1], start_time)
        assert_allclose(state.hidden_activations, [0.5, 0.0])
        assert state.dim == 2

    def test_length_mismatch_raises(self, start_time):
        with pytest.raises(ValueError):
            PLRNNState([0.0, 0.0], [0.0], [0.1, 0.1], start_time)
        with pytest.raises(ValueError):
            PLRNNState([[0.0]], [0.0], [0.1], start_time)

    def test_is_finite(self, start_time):
        assert PLRNNState([0.0], [0.0], [0.1], start_time).is_finite()
        assert not PLRNNState([np.inf], [0.0], [0.1], start_time).is_finite()


class TestConversions:

    def test_from_plrnn_state(self, start_time):
        state = PLRNNState([0.2, 0.4], [0.3, 0.5], [0.1, 0.3], start_time, timestep=4)
        kf = from_plrnn_state(state, blend_ratio=0.6)

        assert_allclose(kf.estimate, [0.3, 0.5])
        assert_allclose(kf.kalman_state.predicted_state, [0.2, 0.4])
        assert_allclose(kf.kalman_state.error_covariance, np.eye(2) * 0.1)
        assert kf.confidence == pytest.approx(0.8)
        assert kf.blend_ratio == 0.6
        assert len(kf.observation_history) == 1
        assert kf.kalman_state.timestep == 4

    def test_round_trip(self, start_time):
        state = PLRNNState([0.2, 0.4], [0.3, 0.5], [0.1, 0.3], start_time)
        back = to_plrnn_state(from_plrnn_state(state, variance=0.04))

        assert_allclose(back.latent_state, [0.3, 0.5])
        assert_allclose(back.observed_state, [0.3, 0.5])
        assert_allclose(back.uncertainty, [0.2, 0.2])
        assert back.timestamp == start_time

    def test_filter_state_from_observation(self, start_time):
        state = KalmanFilterState.from_observation([1.0, 2.0], start_time, variance=0.5)
        assert_allclose(state.error_covariance, np.eye(2) * 0.5)
        assert_allclose(state.innovation, 0.0)


class TestConfidenceInterval:

    def test_around(self):
        ci = ConfidenceInterval.around([0.0, 1.0], [1.0, 0.5])
        assert_allclose(ci.lower, [-1.96, 0.02])
        assert_allclose(ci.width, [3.92, 1.96])
        assert ci.level == 0.95

    def test_contains(self):
        ci = ConfidenceInterval([0.0, 0.0], [1.0, 1.0])
        assert ci.contains([0.5, 1.0])
        assert not ci.contains([0.5, 1.1])


class TestPLRNNWeights:

    def test_shapes_are_validated(self, plrnn_config, rng):
        weights = PLRNNWeights.initialize(plrnn_config, rng)
        with pytest.raises(DimensionMismatchError):
            PLRNNWeights(A=weights.A, W=np.zeros((2, 2)), B=weights.B, C=weights.C,
                         bias_latent=weights.bias_latent, bias_observed=weights.bias_observed,
                         config=plrnn_config, D=weights.D)

    def test_dendritic_requires_d(self, plrnn_config, rng):
        weights = PLRNNWeights.initialize(plrnn_config, rng)
        with pytest.raises(DimensionMismatchError):
            PLRNNWeights(A=weights.A, W=weights.W, B=weights.B, C=weights.C,
                         bias_latent=weights.bias_latent, bias_observed=weights.bias_observed,
                         config=plrnn_config)

    def test_clone_is_independent(self, plrnn_config, rng):
        weights = PLRNNWeights.initialize(plrnn_config, rng)
        copy = weights.clone()
        copy.A[0] = 0.0
        copy.config.dt = 2.0
        assert weights.A[0] != 0.0
        assert weights.config.dt == 1.0

    def test_dict_round_trip(self, plrnn_config, rng):
        weights = PLRNNWeights.initialize(plrnn_config, rng)
        weights.meta.training_samples = 12
        restored = PLRNNWeights.from_dict(weights.to_dict())

        for name, arr in weights.parameters().items():
            assert_allclose(restored.parameters()[name], arr)
        assert restored.meta.training_samples == 12
        assert restored.config.dimension_labels == plrnn_config.dimension_labels

    def test_non_dendritic_parameters(self, rng):
        config = PLRNNConfig(latent_dim=2, connectivity='sparse')
        weights = PLRNNWeights.initialize(config, rng)
        assert 'D' not in weights.parameters()
        assert weights.input_dim == 2


class TestKalmanFormerWeights:

    def test_parameter_count(self, kalmanformer_config, rng):
        counts = KalmanFormerWeights.initialize(kalmanformer_config, rng).parameter_count()
        assert counts['kalman'] == 36
        assert counts['total'] == counts['kalman'] + counts['transformer'] + counts['embedding'] + counts['heads']
        # blend weights, blend bias, readout and the learned gain head
        assert counts['heads'] == 16 + 1 + 3 * 16 + 16 * 9 + 9

    def test_gain_bias_favours_diagonal(self, kalmanformer_config, rng):
        weights = KalmanFormerWeights.initialize(kalmanformer_config, rng)
        bias = weights.gain_bias.reshape(3, 3)
        assert_allclose(np.diag(bias), 0.0)
        assert bias[0, 1] == -4.0

    def test_no_gain_head(self, kalmanformer_config, rng):
        config = kalmanformer_config.update(learned_gain=False)
        weights = KalmanFormerWeights.initialize(config, rng)
        assert weights.gain_weights is None

    def test_wrong_layer_count_raises(self, kalmanformer_config, rng):
        weights = KalmanFormerWeights.initialize(kalmanformer_config, rng)
        payload = weights.to_dict()
        payload['layers'] = payload['layers'] * 2
        with pytest.raises(DimensionMismatchError):
            KalmanFormerWeights.from_dict(payload)

    def test_positional_table(self):
        table = positional_table(4, 6)
        assert table.shape == (4, 6)
        assert_allclose(table[0, 0::2], 0.0)
        assert_allclose(table[0, 1::2], 1.0)


class TestWeightsMeta:

    def test_infinite_loss_serializes_as_null(self):
        meta = WeightsMeta()
        data = meta.to_dict()
        assert data['validation_loss'] is None
        assert math.isinf(WeightsMeta.from_dict(data).validation_loss)

    def test_round_trip(self):
        meta = WeightsMeta(training_samples=3, validation_loss=0.25)
        restored = WeightsMeta.from_dict(meta.to_dict())
        assert restored.trained_at == meta.trained_at
        assert restored.validation_loss == 0.25
