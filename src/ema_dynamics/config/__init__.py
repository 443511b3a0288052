"""Configuration management for ema_dynamics.

Provides model, training and run configuration plus seedable random
generators for reproducible research.
"""

from .settings import DataConfig, Settings, load_settings
from .random_state import make_rng, spawn_rngs, create_deterministic_seed, get_environment_seed
from .defaults import (
    PLRNNConfig,
    KalmanFormerConfig,
    TrainingConfig,
    RESEARCH_CONFIGS,
    STATE_DIMENSIONS,
    EMA_DIMENSIONS,
    validate_config,
)

__all__ = [
    'Settings',
    'DataConfig',
    'load_settings',
    'make_rng',
    'spawn_rngs',
    'create_deterministic_seed',
    'get_environment_seed',
    'PLRNNConfig',
    'KalmanFormerConfig',
    'TrainingConfig',
    'RESEARCH_CONFIGS',
    'STATE_DIMENSIONS',
    'EMA_DIMENSIONS',
    'validate_config',
]
