"""Tests for forecast and training visualization.

Figures are built from small hand-made histories and a seeded engine and
are closed after each check.
"""

import numpy as np
import pytest
import matplotlib.pyplot as plt

from ema_dynamics.core.trainer import TrainingHistory, TrainingMetrics
from ema_dynamics.viz import (
    ForecastVisualizationConfig,
    plot_causal_network,
    plot_forecast,
    plot_horizon_metrics,
    plot_training_history,
    save_figure,
)


@pytest.fixture
def history():
    return TrainingHistory(
        epoch_losses=[1.0, 0.6, 0.4],
        epoch_validation_losses=[1.1, 0.7, 0.5],
        learning_rates=[1e-3, 8e-4, 5e-4],
        best_epoch=2,
        best_validation_loss=0.5,
    )


@pytest.fixture
def metrics():
    return TrainingMetrics(
        final_training_loss=0.4,
        final_validation_loss=0.5,
        per_horizon_mae={1: 0.2, 3: 0.35},
        per_horizon_rmse={1: 0.25, 3: 0.4},
        per_horizon_persistence={1: 0.3, 3: 0.5},
        improvement_over_persistence=31.0,
    )


class TestVisualizationConfig:

    def test_defaults(self):
        config = ForecastVisualizationConfig()
        assert config.figure_size == (12, 8)
        assert config.dpi == 150
        assert 0 < config.band_alpha < 1

    def test_custom_config(self):
        config = ForecastVisualizationConfig(dpi=72, font_size=8)
        assert config.dpi == 72
        assert config.font_size == 8


class TestPlots:

    def test_training_history(self, history):
        fig = plot_training_history(history)

        assert isinstance(fig, plt.Figure)
        assert len(fig.axes) == 2
        assert fig.axes[0].get_title() == 'Loss'
        plt.close(fig)

    def test_training_history_without_validation(self):
        fig = plot_training_history(TrainingHistory(epoch_losses=[1.0, 0.5],
                                                    learning_rates=[1e-3, 1e-3]))
        assert len(fig.axes[0].get_lines()) >= 1
        plt.close(fig)

    def test_forecast_has_one_panel_per_dimension(self, plrnn_engine, sine_values, start_time):
        state = plrnn_engine.create_state(sine_values[-1], start_time)
        prediction = plrnn_engine.predict(state, 6)

        fig = plot_forecast(sine_values[-12:], prediction, plrnn_engine.labels)

        assert len(fig.axes) == 3
        assert fig.axes[0].get_ylabel() == 'valence'
        assert '6-step forecast' in fig._suptitle.get_text()
        plt.close(fig)

    def test_forecast_default_labels(self, plrnn_engine, sine_values, start_time):
        prediction = plrnn_engine.predict(plrnn_engine.create_state(sine_values[-1], start_time), 2)
        fig = plot_forecast(sine_values[-4:], prediction)
        assert fig.axes[2].get_ylabel() == 'dim_2'
        plt.close(fig)

    def test_causal_network(self, plrnn_engine):
        fig = plot_causal_network(plrnn_engine.extract_causal_network())

        assert isinstance(fig, plt.Figure)
        assert fig.axes[0].get_title().startswith('Causal network')
        plt.close(fig)

    def test_horizon_metrics(self, metrics):
        fig = plot_horizon_metrics(metrics)
        ax = fig.axes[0]

        assert len(ax.patches) == 4
        assert '31.0%' in ax.get_title()
        plt.close(fig)


class TestSaveFigure:

    def test_writes_every_format(self, history, tmp_path):
        fig = plot_training_history(history)

        written = save_figure(fig, tmp_path / "figures", "history", formats=('png', 'pdf'), dpi=50)

        assert [p.name for p in written] == ['history.png', 'history.pdf']
        assert all(p.exists() and p.stat().st_size > 0 for p in written)
        assert not plt.fignum_exists(fig.number)
