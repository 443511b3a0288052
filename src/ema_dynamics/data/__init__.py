"""
EMA data generation, preprocessing and table I/O.
"""

from .synthetic import (
    EMAObservation,
    ParticipantSeries,
    EMADataset,
    generate_synthetic_ema,
    dataset_from_arrays,
    phq9_severity,
)
from .preprocessing import (
    NormalizationStats,
    regularize_timesteps,
    normalize_sequence,
    denormalize,
    train_validation_split,
)
from .ema_io import dataset_to_frame, frame_to_dataset, load_ema_csv, save_ema_csv

__all__ = [
    'EMAObservation',
    'ParticipantSeries',
    'EMADataset',
    'generate_synthetic_ema',
    'dataset_from_arrays',
    'phq9_severity',
    'NormalizationStats',
    'regularize_timesteps',
    'normalize_sequence',
    'denormalize',
    'train_validation_split',
    'dataset_to_frame',
    'frame_to_dataset',
    'load_ema_csv',
    'save_ema_csv',
]
