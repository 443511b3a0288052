"""Preprocessing of irregular EMA sequences for training.

EMA prompts arrive at irregular times and with missing responses, and
participants differ in their baseline levels. Sequences are therefore put
onto a regular time grid by linear interpolation and z-scored per
participant before training.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Sequence, Tuple, TypeVar

import numpy as np

T = TypeVar('T')


@dataclass
class NormalizationStats:
    """Per-dimension mean and standard deviation of a sequence."""
    means: np.ndarray
    stds: np.ndarray

    def to_dict(self):
        return {'means': np.asarray(self.means).tolist(), 'stds': np.asarray(self.stds).tolist()}


def _hours_since(timestamps: Sequence[datetime], origin: datetime) -> np.ndarray:
    return np.array([(t - origin).total_seconds() / 3600.0 for t in timestamps])


def regularize_timesteps(values, timestamps: Sequence[datetime],
                         target_interval_hours: float) -> Tuple[np.ndarray, List[datetime], bool]:
    """Resample onto a fixed grid by linear interpolation.

    The grid starts at the first timestamp and has
    ``ceil(total_hours / target_interval_hours)`` points.

    Parameters
    ----------
    values : array-like, shape (T, n)
        Observations
    timestamps : Sequence[datetime]
        Non-decreasing observation times
    target_interval_hours : float
        Grid spacing

    Returns
    -------
    values : np.ndarray, shape (K, n)
    timestamps : List[datetime]
    was_interpolated : bool
        False when fewer than two observations were given and the input is
        returned unchanged
    """
    values = np.asarray(values, dtype=float)
    timestamps = list(timestamps)
    if len(values) < 2:
        return values, timestamps, False
    if target_interval_hours <= 0:
        raise ValueError(f"target_interval_hours must be positive, got {target_interval_hours}")

    origin = timestamps[0]
    hours = _hours_since(timestamps, origin)
    num_steps = int(np.ceil(hours[-1] / target_interval_hours))
    grid = np.arange(num_steps) * target_interval_hours

    regular = np.column_stack([np.interp(grid, hours, values[:, d]) for d in range(values.shape[1])])
    regular = regular.reshape(num_steps, values.shape[1])
    grid_times = [origin + timedelta(hours=float(h)) for h in grid]
    return regular, grid_times, True


def normalize_sequence(values) -> Tuple[np.ndarray, NormalizationStats]:
    """Z-score each dimension; a zero (or undefined) std is replaced by 1."""
    values = np.asarray(values, dtype=float)
    if values.size == 0:
        return values, NormalizationStats(np.array([]), np.array([]))

    means = values.mean(axis=0)
    if len(values) > 1:
        stds = values.std(axis=0, ddof=1)
    else:
        stds = np.zeros(values.shape[1])
    stds = np.where((stds > 0) & np.isfinite(stds), stds, 1.0)
    return (values - means) / stds, NormalizationStats(means, stds)


def denormalize(values, stats: NormalizationStats) -> np.ndarray:
    """Invert :func:`normalize_sequence`."""
    return np.asarray(values, dtype=float) * stats.stds + stats.means


def train_validation_split(items: Sequence[T], validation_split: float,
                           rng: np.random.Generator,
                           shuffle: bool = True) -> Tuple[List[T], List[T]]:
    """Split into training and validation lists.

    At least one item goes to training whenever ``items`` is non-empty.
    """
    items = list(items)
    if shuffle:
        items = [items[i] for i in rng.permutation(len(items))]
    split = int(np.floor(len(items) * (1.0 - validation_split)))
    if items:
        split = max(1, split)
    return items[:split], items[split:]
