"""Synthetic EMA data with StudentLife-like structure.

Generates mood/arousal/stress self-reports mimicking patterns reported for
the StudentLife study (Wang et al., UbiComp 2014):

- individual baselines, volatility and stress reactivity,
- AR(1) carry-over between prompts,
- a circadian mood term peaking around 14:00 and a weekend boost,
- academic stress peaks (assignments, midterms, projects, finals),
- 70-90% daily response rates, so sampling is irregular.

PHQ-9 depression scores are attached before and after the study period.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..config.defaults import EMA_DIMENSIONS
from ..config.random_state import make_rng

START_DATE = datetime(2025, 1, 13, 8, 0)  # a Monday

# (day offset, stress multiplier)
ACADEMIC_EVENTS = [
    (14, 1.3),  # first assignments
    (35, 1.5),  # midterms
    (56, 1.4),  # projects due
    (63, 1.6),  # finals
]

PHQ9_MAX = 27


def phq9_severity(score: float) -> str:
    """Severity band of a PHQ-9 total (Kroenke et al., 2001)."""
    if score <= 4:
        return 'minimal'
    if score <= 9:
        return 'mild'
    if score <= 14:
        return 'moderate'
    if score <= 19:
        return 'moderately_severe'
    return 'severe'


@dataclass
class EMAObservation:
    """One answered prompt, values scaled to [0, 1]."""
    participant_id: str
    timestamp: datetime
    values: np.ndarray
    dimensions: List[str] = field(default_factory=lambda: list(EMA_DIMENSIONS))
    raw_values: Dict[str, float] = field(default_factory=dict)


@dataclass
class ParticipantSeries:
    participant_id: str
    observations: List[EMAObservation]
    pre_survey: Dict[str, float] = field(default_factory=dict)
    post_survey: Dict[str, float] = field(default_factory=dict)

    @property
    def values(self) -> np.ndarray:
        if not self.observations:
            return np.zeros((0, 0))
        return np.array([obs.values for obs in self.observations])

    @property
    def timestamps(self) -> List[datetime]:
        return [obs.timestamp for obs in self.observations]


@dataclass
class EMADataset:
    """A collection of participant series with summary metadata."""
    participants: List[ParticipantSeries]
    source: str = 'synthetic'
    dimensions: List[str] = field(default_factory=lambda: list(EMA_DIMENSIONS))

    @property
    def total_observations(self) -> int:
        return sum(len(p.observations) for p in self.participants)

    @property
    def date_range(self):
        times = [obs.timestamp for p in self.participants for obs in p.observations]
        if not times:
            return None
        return min(times), max(times)

    def get_participant(self, participant_id: str) -> Optional[ParticipantSeries]:
        for participant in self.participants:
            if participant.participant_id == participant_id:
                return participant
        return None

    def depression_labels(self) -> List[Dict]:
        """PHQ-9 scores and severity bands for participants with both surveys."""
        labels = []
        for p in self.participants:
            if 'phq9' in p.pre_survey and 'phq9' in p.post_survey:
                labels.append({
                    'participant_id': p.participant_id,
                    'pre_phq9': p.pre_survey['phq9'],
                    'post_phq9': p.post_survey['phq9'],
                    'pre_label': phq9_severity(p.pre_survey['phq9']),
                    'post_label': phq9_severity(p.post_survey['phq9']),
                })
        return labels

    def to_sequences(self, min_observations: int = 20):
        """Value arrays, timestamp lists and ids of sufficiently long series."""
        sequences, timestamps, ids = [], [], []
        for p in self.participants:
            if len(p.observations) < min_observations:
                continue
            sequences.append(p.values)
            timestamps.append(p.timestamps)
            ids.append(p.participant_id)
        return sequences, timestamps, ids


def _academic_stress(day: int, events: Sequence = ACADEMIC_EVENTS) -> float:
    stress = 0.0
    for offset, multiplier in events:
        distance = abs(day - offset)
        if distance < 7:
            stress = max(stress, (multiplier - 1.0) * np.exp(-distance / 3.0))
    return stress


def _clip01(x: float) -> float:
    return float(min(1.0, max(0.0, x)))


def generate_participant(participant_id: str, duration_weeks: int, prompts_per_day: int,
                         rng: np.random.Generator,
                         start: datetime = START_DATE) -> ParticipantSeries:
    """Simulate one participant's EMA responses."""
    baseline_mood = 0.5 + rng.normal() * 0.15
    baseline_stress = 0.3 + rng.normal() * 0.1
    volatility = 0.1 + rng.random() * 0.1
    reactivity = 0.5 + rng.random() * 0.5
    circadian_amplitude = 0.1 + rng.random() * 0.1
    weekend_effect = 0.1 + rng.random() * 0.1
    ar = 0.6 + rng.random() * 0.2

    pre_phq9 = int(np.clip(round((1 - baseline_mood) * 20 + rng.normal() * 5), 0, PHQ9_MAX))

    prev_mood, prev_stress = baseline_mood, baseline_stress
    # prompt hours are clock times on each study day
    midnight = datetime.combine(start.date(), datetime.min.time())
    observations = []
    for day in range(duration_weeks * 7):
        # Sunday = 0
        day_of_week = (start + timedelta(days=day)).isoweekday() % 7
        weekend = weekend_effect if day_of_week in (0, 6) else 0.0
        academic = _academic_stress(day)
        response_rate = 0.7 + rng.random() * 0.2

        for prompt in range(prompts_per_day):
            if rng.random() > response_rate:
                continue

            hour = 9 + prompt * 12 / prompts_per_day
            timestamp = midnight + timedelta(days=day, hours=hour)
            circadian = circadian_amplitude * np.sin(2 * np.pi * (hour - 14) / 24)

            mood = _clip01(baseline_mood + ar * (prev_mood - baseline_mood) + circadian
                           + weekend - academic * 0.1 + rng.normal() * volatility)
            stress = _clip01(baseline_stress + ar * (prev_stress - baseline_stress)
                             + academic * reactivity - weekend * 0.5 + rng.normal() * volatility)
            arousal = _clip01(0.5 + stress * 0.3 - (mood - 0.5) * 0.2 + rng.normal() * 0.1)

            observations.append(EMAObservation(
                participant_id=participant_id,
                timestamp=timestamp,
                values=np.array([mood, arousal, stress]),
                raw_values={'mood_pam': round(mood * 15 + 1), 'stress': round(stress * 4 + 1)},
            ))
            prev_mood, prev_stress = mood, stress

    if observations:
        avg_mood = float(np.mean([obs.values[0] for obs in observations]))
    else:
        avg_mood = baseline_mood
    post_phq9 = int(np.clip(round((1 - avg_mood) * 20 + rng.normal() * 5), 0, PHQ9_MAX))

    return ParticipantSeries(
        participant_id=participant_id,
        observations=observations,
        pre_survey={'phq9': pre_phq9},
        post_survey={'phq9': post_phq9},
    )


def generate_synthetic_ema(n_participants: int = 48, duration_weeks: int = 10,
                           prompts_per_day: int = 5, rng=None) -> EMADataset:
    """Generate a StudentLife-like dataset.

    Parameters
    ----------
    n_participants : int
        Number of participants (ids ``u01``, ``u02``, ...)
    duration_weeks : int
        Study length
    prompts_per_day : int
        Prompts spread evenly between 09:00 and 21:00
    rng : np.random.Generator or int, optional
        Random source; the same seed reproduces the same dataset

    Returns
    -------
    EMADataset
    """
    if n_participants < 0 or duration_weeks < 0 or prompts_per_day < 1:
        raise ValueError("n_participants and duration_weeks must be >= 0 and prompts_per_day >= 1")
    rng = make_rng(rng)
    participants = [
        generate_participant(f"u{p + 1:02d}", duration_weeks, prompts_per_day, rng)
        for p in range(n_participants)
    ]
    return EMADataset(participants=participants, source='synthetic')


def dataset_from_arrays(values, timestamps: Sequence[datetime], participant_id: str = 'p01',
                        dimensions: Optional[List[str]] = None) -> EMADataset:
    """Wrap one (T, n) array and its timestamps as a single-participant dataset."""
    values = np.atleast_2d(np.asarray(values, dtype=float))
    dims = list(dimensions) if dimensions is not None else [f"dim_{i}" for i in range(values.shape[1])]
    observations = [
        EMAObservation(participant_id, ts, row, dimensions=dims)
        for row, ts in zip(values, timestamps)
    ]
    return EMADataset(participants=[ParticipantSeries(participant_id, observations)],
                      source='arrays', dimensions=dims)
