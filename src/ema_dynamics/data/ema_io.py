"""Reading and writing EMA datasets as long-format tables.

One row per answered prompt: ``participant_id, timestamp, <dim_1>, ...``.
"""

from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import pandas as pd

from .synthetic import EMADataset, EMAObservation, ParticipantSeries

ID_COLUMN = 'participant_id'
TIME_COLUMN = 'timestamp'


def dataset_to_frame(dataset: EMADataset) -> pd.DataFrame:
    """Flatten a dataset into a long-format DataFrame."""
    rows = []
    for participant in dataset.participants:
        for obs in participant.observations:
            row = {ID_COLUMN: participant.participant_id, TIME_COLUMN: obs.timestamp}
            row.update({dim: float(v) for dim, v in zip(dataset.dimensions, obs.values)})
            rows.append(row)
    return pd.DataFrame(rows, columns=[ID_COLUMN, TIME_COLUMN] + list(dataset.dimensions))


def frame_to_dataset(df: pd.DataFrame, dimensions: Optional[List[str]] = None,
                     source: str = 'csv') -> EMADataset:
    """Group a long-format DataFrame into participant series.

    Rows are sorted by time within each participant and duplicate
    timestamps keep the last response.
    """
    missing = {ID_COLUMN, TIME_COLUMN} - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {sorted(missing)}")

    if dimensions is None:
        dimensions = [c for c in df.columns if c not in (ID_COLUMN, TIME_COLUMN)]
    if not dimensions:
        raise ValueError("No value columns found")

    df = df.copy()
    df[TIME_COLUMN] = pd.to_datetime(df[TIME_COLUMN])
    df = (df.dropna(subset=dimensions)
            .sort_values([ID_COLUMN, TIME_COLUMN])
            .drop_duplicates(subset=[ID_COLUMN, TIME_COLUMN], keep='last'))

    participants = []
    for participant_id, group in df.groupby(ID_COLUMN, sort=True):
        observations = [
            EMAObservation(
                participant_id=str(participant_id),
                timestamp=ts.to_pydatetime(),
                values=np.asarray(values, dtype=float),
                dimensions=list(dimensions),
            )
            for ts, values in zip(group[TIME_COLUMN], group[dimensions].to_numpy())
        ]
        participants.append(ParticipantSeries(str(participant_id), observations))

    return EMADataset(participants=participants, source=source, dimensions=list(dimensions))


def load_ema_csv(path: Union[str, Path], dimensions: Optional[List[str]] = None) -> EMADataset:
    """Load a long-format CSV into an :class:`EMADataset`."""
    return frame_to_dataset(pd.read_csv(path), dimensions=dimensions, source=str(path))


def save_ema_csv(dataset: EMADataset, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    dataset_to_frame(dataset).to_csv(path, index=False)
    return path
