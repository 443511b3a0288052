"""Tests for EMA sequence preprocessing."""

from datetime import datetime, timedelta

import numpy as np
import pytest
from numpy.testing import assert_allclose

from ema_dynamics.data import denormalize, normalize_sequence, regularize_timesteps, train_validation_split


class TestRegularizeTimesteps:
    """Test suite for regularize_timesteps."""

    def test_linear_interpolation(self):
        start = datetime(2025, 1, 13, 9)
        times = [start, start + timedelta(hours=3), start + timedelta(hours=9)]
        values = np.array([[0.0, 1.0], [3.0, 1.0], [9.0, 4.0]])

        regular, grid, interpolated = regularize_timesteps(values, times, 2.0)

        assert interpolated
        assert len(regular) == 5
        assert grid[-1] == start + timedelta(hours=8)
        assert_allclose(regular[:, 0], [0.0, 2.0, 4.0, 6.0, 8.0])
        assert_allclose(regular[2, 1], 1.5)

    def test_single_observation_is_unchanged(self):
        start = datetime(2025, 1, 13, 9)
        values, times, interpolated = regularize_timesteps([[1.0, 2.0]], [start], 4.0)
        assert not interpolated
        assert times == [start]

    def test_non_positive_interval_raises(self):
        start = datetime(2025, 1, 13, 9)
        with pytest.raises(ValueError):
            regularize_timesteps([[0.0], [1.0]], [start, start + timedelta(hours=1)], 0.0)


class TestNormalization:
    """Per-participant z-scoring."""

    def test_normalize_and_invert(self, sine_values):
        normalized, stats = normalize_sequence(sine_values)
        assert_allclose(normalized.mean(axis=0), 0.0, atol=1e-12)
        assert_allclose(normalized.std(axis=0, ddof=1), 1.0)
        assert_allclose(denormalize(normalized, stats), sine_values)

    def test_constant_dimension_keeps_unit_std(self):
        values = np.array([[1.0, 2.0], [1.0, 4.0], [1.0, 6.0]])
        normalized, stats = normalize_sequence(values)
        assert stats.stds[0] == 1.0
        assert_allclose(normalized[:, 0], 0.0)

    def test_single_row(self):
        normalized, stats = normalize_sequence([[3.0, 4.0]])
        assert_allclose(stats.stds, 1.0)
        assert_allclose(normalized, 0.0)

    def test_stats_to_dict(self, sine_values):
        _, stats = normalize_sequence(sine_values)
        data = stats.to_dict()
        assert len(data['means']) == 3 and len(data['stds']) == 3


class TestTrainValidationSplit:
    """Train/validation partitioning."""

    def test_split_sizes(self, rng):
        train, val = train_validation_split(list(range(10)), 0.2, rng)
        assert len(train) == 8 and len(val) == 2
        assert sorted(train + val) == list(range(10))

    def test_keeps_order_without_shuffle(self, rng):
        train, val = train_validation_split(list(range(5)), 0.4, rng, shuffle=False)
        assert train == [0, 1, 2]
        assert val == [3, 4]

    def test_at_least_one_training_item(self, rng):
        train, val = train_validation_split(['only'], 0.9, rng)
        assert train == ['only'] and val == []

    def test_empty(self, rng):
        assert train_validation_split([], 0.2, rng) == ([], [])
