"""
ema_dynamics visualization module.

Figures for training curves, forecasts with confidence bands, causal
influence networks and per-horizon forecast accuracy.
"""

from .forecast_plots import (
    ForecastVisualizationConfig,
    plot_training_history,
    plot_forecast,
    plot_causal_network,
    plot_horizon_metrics,
    save_figure,
)

__all__ = [
    'ForecastVisualizationConfig',
    'plot_training_history',
    'plot_forecast',
    'plot_causal_network',
    'plot_horizon_metrics',
    'save_figure',
]
