"""
Integration tests for the complete ema_dynamics forecasting pipeline.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from ema_dynamics.config import PLRNNConfig, TrainingConfig
from ema_dynamics.core import PLRNNEngine, PLRNNTrainer
from ema_dynamics.core.plrnn import HYBRID_HORIZONS
from ema_dynamics.data import dataset_from_arrays, generate_synthetic_ema


def _random_walk(seed, steps=40, dims=3):
    rng = np.random.default_rng(seed)
    return np.cumsum(rng.normal(0.0, 0.3, size=(steps, dims)), axis=0)


def _train(values, timestamps, seed=0, regularize=False):
    config = PLRNNConfig(latent_dim=values.shape[1], dendritic_bases=4)
    engine = PLRNNEngine(config, rng=seed)
    engine.initialize()
    training = TrainingConfig(
        bptt_truncation_window=10,
        bptt_overlap_steps=2,
        epochs=5,
        validation_split=0.0,
        horizons=[1, 3],
        horizon_weights=[1.0, 0.5],
        handle_irregular_sampling=regularize,
    )
    trainer = PLRNNTrainer(engine, training, rng=seed)
    result = trainer.train_on_ema_data(dataset_from_arrays(values, timestamps))
    return engine, result


class TestTrainAndForecast:
    """Training on a short series followed by every forecast horizon."""

    @pytest.mark.integration
    def test_train_then_forecast(self, hourly_timestamps):
        values = _random_walk(3)
        timestamps = hourly_timestamps(len(values))

        engine, result = _train(values, timestamps)

        assert result.metrics.final_training_loss >= 0
        assert np.isfinite(result.history.best_validation_loss)

        state = engine.create_state(values[-1], timestamps[-1])
        for horizon in HYBRID_HORIZONS:
            prediction = engine.hybrid_predict(state, horizon)
            assert prediction.mean_prediction.shape == (3,)
            assert np.all(np.isfinite(prediction.mean_prediction))
            assert prediction.confidence_interval.contains(prediction.mean_prediction)

    @pytest.mark.integration
    def test_train_with_regularized_sampling(self, hourly_timestamps):
        values = _random_walk(4)
        timestamps = hourly_timestamps(len(values), hours=4.0)
        before = PLRNNEngine(PLRNNConfig(latent_dim=3, dendritic_bases=4), rng=0)
        before.initialize()

        engine, result = _train(values, timestamps, regularize=True)

        assert all(loss > 0 for loss in result.history.epoch_losses)
        assert not np.allclose(engine.get_weights().W, before.get_weights().W)

    @pytest.mark.integration
    def test_reproducibility(self, hourly_timestamps):
        first = generate_synthetic_ema(n_participants=2, duration_weeks=1, rng=11)
        second = generate_synthetic_ema(n_participants=2, duration_weeks=1, rng=11)
        for a, b in zip(first.participants, second.participants):
            assert_allclose(a.values, b.values)
            assert a.timestamps == b.timestamps

        values = _random_walk(5)
        timestamps = hourly_timestamps(len(values))
        engine_a, result_a = _train(values, timestamps, seed=9)
        engine_b, result_b = _train(values, timestamps, seed=9)

        assert_allclose(engine_a.get_weights().W, engine_b.get_weights().W)
        assert result_a.history.epoch_losses == result_b.history.epoch_losses


class TestDynamicsProperties:
    """Invariants that hold for any weights."""

    def test_long_rollout_stays_bounded(self, plrnn_engine, start_time):
        weights = plrnn_engine.get_weights()
        weights.W = np.full((3, 3), 3.0)
        plrnn_engine.load_weights(weights)

        state = plrnn_engine.create_state([1.0, -1.0, 0.5], start_time)
        clamp = plrnn_engine.config.state_clamp
        for _ in range(1000):
            state = plrnn_engine.forward(state)
            assert np.all(np.isfinite(state.latent_state))
            assert np.all(np.abs(state.latent_state) <= clamp)
            assert np.all(np.abs(state.observed_state) <= clamp)
            assert np.all(state.uncertainty <= 1.0)

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_default_initialization_rollout_stays_bounded(self, seed, start_time):
        engine = PLRNNEngine(PLRNNConfig(), rng=seed)
        engine.initialize()
        clamp = engine.config.state_clamp

        state = engine.create_state(np.random.default_rng(seed).normal(size=engine.latent_dim),
                                    start_time)
        for _ in range(1000):
            state = engine.forward(state)
            assert np.all(np.isfinite(state.latent_state))
            assert np.all(np.isfinite(state.observed_state))
            assert np.all(np.abs(state.latent_state) <= clamp)
            assert np.all(np.abs(state.observed_state) <= clamp)

    def test_forward_leaves_input_state_untouched(self, plrnn_engine, start_time):
        state = plrnn_engine.create_state([0.3, 0.1, -0.2], start_time)
        latent = state.latent_state.copy()
        uncertainty = state.uncertainty.copy()

        plrnn_engine.forward(state, [0.5, 0.0, 0.0])

        assert_allclose(state.latent_state, latent)
        assert_allclose(state.uncertainty, uncertainty)
        assert state.timestep == 0

    def test_loss_of_identical_arrays_is_zero(self, plrnn_engine, sine_values):
        assert plrnn_engine.calculate_loss(sine_values, sine_values) == 0.0

    def test_weakening_one_weight_removes_one_edge(self, plrnn_engine):
        weights = plrnn_engine.get_weights()
        weights.W = np.full((3, 3), 0.5)
        np.fill_diagonal(weights.W, 0.0)
        plrnn_engine.load_weights(weights)
        labels = plrnn_engine.labels
        before = plrnn_engine.extract_causal_network()

        weights.W[1, 0] = 0.05
        plrnn_engine.load_weights(weights)
        after = plrnn_engine.extract_causal_network()

        assert len(before.edges) == 6
        assert len(after.edges) == 5
        assert before.has_edge(labels[0], labels[1])
        assert not after.has_edge(labels[0], labels[1])


class TestPipeline:
    """Full pipeline through the research entry point."""

    @pytest.mark.integration
    @pytest.mark.slow
    def test_run_pipeline_archives_artifacts(self, tmp_path):
        from research_pipeline import run_pipeline
        from result_archiving import list_artifacts

        config = {
            'preset': 'minimal',
            'random_seed': 1,
            'experiment_id': 'test',
            'archive_root': str(tmp_path / 'results'),
            'log_dir': str(tmp_path / 'logs'),
            'forecast': {
                'horizons': ['short', 'long'],
                'intervention': {'dimension': 'stress', 'intervention': 'decrease',
                                 'magnitude': 0.5},
            },
        }

        assert run_pipeline(config) is True

        names = {p.name for p in list_artifacts(experiment_id='test',
                                                archive_root=tmp_path / 'results')}
        for expected in ('settings.toml', 'dataset.csv', 'plrnn_weights.json',
                         'training_metrics.json', 'forecasts.csv', 'early_warnings.json',
                         'intervention.json', 'training_history.png'):
            assert expected in names
        assert any(name.startswith('pipeline_test_') for name in names)

    def test_missing_config_file_fails(self, tmp_path):
        from research_pipeline import run_pipeline

        assert run_pipeline(tmp_path / 'absent.yaml') is False
