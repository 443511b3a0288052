"""
ema_dynamics - Hybrid temporal forecasting of affective states from EMA data.

Combines a piecewise-linear recurrent network (PLRNN) for interpretable
dynamics with a KalmanFormer (Kalman filter + attention encoder) for
robust short-term tracking of irregularly sampled self-reports.
"""

__version__ = "0.1.0"
__author__ = "EMA Dynamics Developers"
__email__ = "ema-dynamics@example.org"

from .core import (
    PLRNNEngine,
    KalmanFormerEngine,
    PLRNNTrainer,
    PLRNNState,
    KalmanFormerState,
    PLRNNWeights,
    KalmanFormerWeights,
)
from .config import Settings, load_settings, make_rng

__all__ = [
    'PLRNNEngine',
    'KalmanFormerEngine',
    'PLRNNTrainer',
    'PLRNNState',
    'KalmanFormerState',
    'PLRNNWeights',
    'KalmanFormerWeights',
    'Settings',
    'load_settings',
    'make_rng',
]
