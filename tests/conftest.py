"""
Pytest configuration and shared fixtures for the ema_dynamics test suite.
"""

import sys
from datetime import datetime, timedelta
from pathlib import Path

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest

# Add src and the repository root (pipeline scripts) to path for testing
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root / "src"))
sys.path.insert(0, str(repo_root))

from ema_dynamics.config import EMA_DIMENSIONS, KalmanFormerConfig, PLRNNConfig, TrainingConfig
from ema_dynamics.core import KalmanFormerEngine, PLRNNEngine

START_TIME = datetime(2025, 1, 13, 8, 0)


@pytest.fixture
def rng():
    """Fresh seeded generator for each test."""
    return np.random.default_rng(42)


@pytest.fixture
def start_time():
    return START_TIME


@pytest.fixture
def hourly_timestamps():
    """Factory for ``n`` hourly timestamps starting at ``START_TIME``."""
    def _make(n, hours=1.0):
        return [START_TIME + timedelta(hours=hours * i) for i in range(n)]
    return _make


@pytest.fixture
def plrnn_config():
    """Three-dimensional dendritic PLRNN configuration."""
    return PLRNNConfig(latent_dim=3, dendritic_bases=4, dimension_labels=list(EMA_DIMENSIONS))


@pytest.fixture
def plrnn_engine(plrnn_config):
    engine = PLRNNEngine(plrnn_config, rng=42)
    engine.initialize()
    return engine


@pytest.fixture
def kalmanformer_config():
    """Small KalmanFormer matching the three EMA dimensions."""
    return KalmanFormerConfig(
        state_dim=3,
        obs_dim=3,
        embed_dim=16,
        num_heads=2,
        num_layers=1,
        context_window=8,
        dimension_labels=list(EMA_DIMENSIONS),
    )


@pytest.fixture
def kalmanformer_engine(kalmanformer_config):
    engine = KalmanFormerEngine(kalmanformer_config, rng=7)
    engine.initialize()
    return engine


@pytest.fixture
def fast_training_config():
    """Few-epoch training for unit tests."""
    return TrainingConfig(
        bptt_truncation_window=5,
        bptt_overlap_steps=1,
        epochs=3,
        validation_split=0.0,
        early_stopping_patience=10,
        horizons=[1, 3],
        horizon_weights=[1.0, 0.5],
        handle_irregular_sampling=False,
        log_every_epochs=1,
    )


@pytest.fixture
def sine_values():
    """Smooth three-dimensional series of 40 steps."""
    t = np.arange(40)
    return np.column_stack([
        np.sin(t / 4.0),
        np.cos(t / 5.0),
        0.5 * np.sin(t / 3.0 + 1.0),
    ])


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "performance: marks tests as performance tests"
    )
    config.addinivalue_line(
        "markers", "visual: marks tests that generate visual output"
    )


def pytest_collection_modifyitems(config, items):
    """Automatically mark slow and integration tests."""
    for item in items:
        if "performance" in item.nodeid or "long_run" in item.nodeid:
            item.add_marker(pytest.mark.slow)

        if "integration" in item.nodeid or "end_to_end" in item.nodeid:
            item.add_marker(pytest.mark.integration)
