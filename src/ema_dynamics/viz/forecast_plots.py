"""
Forecast and training visualization.

Training curves, multi-step forecasts with 95% bands, the signed influence
matrix of a causal network and per-horizon accuracy against persistence.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from ..core.causal import CausalNetwork
from ..core.plrnn import PLRNNPrediction
from ..core.trainer import TrainingHistory, TrainingMetrics

logger = logging.getLogger(__name__)

plt.style.use('seaborn-v0_8-paper')


@dataclass
class ForecastVisualizationConfig:
    """Configuration for forecast visualization."""
    figure_size: Tuple[float, float] = (12, 8)
    dpi: int = 150
    font_size: int = 10
    history_color: str = 'black'
    forecast_color: str = 'tab:blue'
    band_alpha: float = 0.25


def plot_training_history(history: TrainingHistory,
                          config: Optional[ForecastVisualizationConfig] = None) -> plt.Figure:
    """
    Plot training and validation loss with the learning-rate schedule.

    Parameters
    ----------
    history : TrainingHistory
        History returned by :meth:`PLRNNTrainer.train_on_ema_data`
    config : Optional[ForecastVisualizationConfig]
        Visualization configuration

    Returns
    -------
    plt.Figure
        Two-panel figure
    """
    if config is None:
        config = ForecastVisualizationConfig()

    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 4), dpi=config.dpi)

    epochs = range(1, len(history.epoch_losses) + 1)
    ax1.plot(epochs, history.epoch_losses, 'b-', linewidth=2, label='Training')
    if history.epoch_validation_losses:
        ax1.plot(range(1, len(history.epoch_validation_losses) + 1),
                 history.epoch_validation_losses, 'r--', linewidth=2, label='Validation')
    if history.epoch_losses:
        ax1.axvline(history.best_epoch + 1, color='gray', linestyle=':', label='Best epoch')
    ax1.set_xlabel('Epoch', fontsize=config.font_size)
    ax1.set_ylabel('MSE', fontsize=config.font_size)
    ax1.set_title('Loss', fontsize=config.font_size)
    ax1.grid(True, alpha=0.3)
    ax1.legend(fontsize=config.font_size - 1)

    ax2.plot(range(1, len(history.learning_rates) + 1), history.learning_rates, 'g-', linewidth=2)
    ax2.set_xlabel('Epoch', fontsize=config.font_size)
    ax2.set_ylabel('Learning rate', fontsize=config.font_size)
    ax2.set_title('Schedule', fontsize=config.font_size)
    ax2.grid(True, alpha=0.3)

    plt.tight_layout()
    return fig


def plot_forecast(observed: np.ndarray,
                  prediction: PLRNNPrediction,
                  labels: Optional[Sequence[str]] = None,
                  config: Optional[ForecastVisualizationConfig] = None) -> plt.Figure:
    """
    Plot observed history followed by the forecast trajectory and its band.

    Parameters
    ----------
    observed : np.ndarray, shape (T, n)
        Observations leading up to the forecast origin
    prediction : PLRNNPrediction
        Forecast whose first trajectory state is the origin
    labels : Optional[Sequence[str]]
        Dimension names for the subplot titles

    Returns
    -------
    plt.Figure
        One row per dimension
    """
    if config is None:
        config = ForecastVisualizationConfig()

    observed = np.atleast_2d(np.asarray(observed, dtype=float))
    n = observed.shape[1]
    labels = list(labels) if labels is not None else [f"dim_{i}" for i in range(n)]

    means = np.array([s.observed_state for s in prediction.trajectory])
    stds = np.sqrt(np.maximum(np.array([s.uncertainty for s in prediction.trajectory]), 0.0))
    t_hist = np.arange(-len(observed) + 1, 1)
    t_fore = np.arange(len(means))

    fig, axes = plt.subplots(n, 1, figsize=(config.figure_size[0], 2.2 * n),
                             dpi=config.dpi, sharex=True, squeeze=False)
    for d in range(n):
        ax = axes[d, 0]
        ax.plot(t_hist, observed[:, d], color=config.history_color, linewidth=1.5, label='Observed')
        ax.plot(t_fore, means[:, d], color=config.forecast_color, linewidth=2, label='Forecast')
        ax.fill_between(t_fore, means[:, d] - 1.96 * stds[:, d], means[:, d] + 1.96 * stds[:, d],
                        color=config.forecast_color, alpha=config.band_alpha, label='95% band')
        ax.axvline(0, color='gray', linestyle=':')
        ax.set_ylabel(labels[d] if d < len(labels) else f"dim_{d}", fontsize=config.font_size)
        ax.grid(True, alpha=0.3)
    axes[0, 0].legend(fontsize=config.font_size - 1, loc='upper left')
    axes[-1, 0].set_xlabel('Steps from forecast origin', fontsize=config.font_size)
    fig.suptitle(f'{prediction.horizon}-step forecast', fontsize=config.font_size + 1)

    plt.tight_layout()
    return fig


def plot_causal_network(network: CausalNetwork,
                        config: Optional[ForecastVisualizationConfig] = None) -> plt.Figure:
    """Heatmap of the signed influence matrix, rows are targets and columns sources."""
    if config is None:
        config = ForecastVisualizationConfig()

    adjacency = network.to_adjacency()
    labels = [node.label for node in network.nodes]
    limit = max(float(np.max(np.abs(adjacency))) if adjacency.size else 0.0, 1e-6)

    fig, ax = plt.subplots(figsize=(6, 5), dpi=config.dpi)
    sns.heatmap(adjacency, ax=ax, cmap='RdBu_r', vmin=-limit, vmax=limit, center=0.0,
                annot=True, fmt='.2f', xticklabels=labels, yticklabels=labels,
                cbar_kws={'label': 'Influence'})
    ax.set_xlabel('Source', fontsize=config.font_size)
    ax.set_ylabel('Target', fontsize=config.font_size)
    central = network.metrics.get('central_node')
    title = 'Causal network'
    if central:
        title += f' (central: {central})'
    ax.set_title(title, fontsize=config.font_size)

    plt.tight_layout()
    return fig


def plot_horizon_metrics(metrics: TrainingMetrics,
                         config: Optional[ForecastVisualizationConfig] = None) -> plt.Figure:
    """Bar chart of model MAE against persistence MAE for every horizon."""
    if config is None:
        config = ForecastVisualizationConfig()

    horizons = sorted(metrics.per_horizon_mae)
    x = np.arange(len(horizons))
    width = 0.38

    fig, ax = plt.subplots(figsize=(7, 4), dpi=config.dpi)
    ax.bar(x - width / 2, [metrics.per_horizon_mae[h] for h in horizons], width, label='PLRNN')
    ax.bar(x + width / 2, [metrics.per_horizon_persistence.get(h, np.nan) for h in horizons],
           width, label='Persistence')
    ax.set_xticks(x)
    ax.set_xticklabels([str(h) for h in horizons])
    ax.set_xlabel('Horizon (steps)', fontsize=config.font_size)
    ax.set_ylabel('MAE', fontsize=config.font_size)
    ax.set_title(f'Improvement over persistence: {metrics.improvement_over_persistence:.1f}%',
                 fontsize=config.font_size)
    ax.grid(True, alpha=0.3, axis='y')
    ax.legend(fontsize=config.font_size - 1)

    plt.tight_layout()
    return fig


def save_figure(fig: plt.Figure, save_path: Union[str, Path], name: str,
                formats: Sequence[str] = ('png',), dpi: int = 150) -> List[Path]:
    """Write ``fig`` once per format and close it."""
    save_path = Path(save_path)
    save_path.mkdir(parents=True, exist_ok=True)
    written = []
    for fmt in formats:
        path = save_path / f"{name}.{fmt}"
        fig.savefig(path, dpi=dpi, bbox_inches='tight')
        written.append(path)
    plt.close(fig)
    logger.info("Saved figure %s (%s)", name, ", ".join(formats))
    return written
