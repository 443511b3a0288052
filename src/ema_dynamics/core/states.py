"""State containers shared by the PLRNN and KalmanFormer engines.

States are immutable snapshots: array fields are copied on construction and
marked read-only, and every transition produces a new instance. The two
engines use different state shapes; :func:`to_plrnn_state` and
:func:`from_plrnn_state` are the only sanctioned conversion between them.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Tuple

import numpy as np


def _frozen_array(value, ndim: int) -> np.ndarray:
    arr = np.array(value, dtype=float)
    if arr.ndim != ndim:
        raise ValueError(f"Expected a {ndim}-D array, got shape {arr.shape}")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class PLRNNState:
    """Snapshot of the PLRNN latent dynamics.

    Attributes
    ----------
    latent_state : np.ndarray, shape (n,)
        Latent state z_t
    observed_state : np.ndarray, shape (n,)
        Observation-space state x_t = B z_t + b_x
    uncertainty : np.ndarray, shape (n,)
        Diagonal variance estimate, grows along a rollout
    timestamp : datetime
        Wall-clock time of the state
    timestep : int
        Number of forward steps taken since the state was created
    hidden_activations : np.ndarray, shape (n,)
        relu of the preceding latent state, kept for interpretability
    """
    latent_state: np.ndarray
    observed_state: np.ndarray
    uncertainty: np.ndarray
    timestamp: datetime
    timestep: int = 0
    hidden_activations: Optional[np.ndarray] = None

    def __post_init__(self):
        latent = _frozen_array(self.latent_state, 1)
        n = latent.shape[0]
        object.__setattr__(self, 'latent_state', latent)
        for name in ('observed_state', 'uncertainty'):
            arr = _frozen_array(getattr(self, name), 1)
            if arr.shape[0] != n:
                raise ValueError(f"{name} must have length {n}, got {arr.shape[0]}")
            object.__setattr__(self, name, arr)
        hidden = self.hidden_activations
        if hidden is None:
            hidden = np.maximum(latent, 0.0)
        object.__setattr__(self, 'hidden_activations', _frozen_array(hidden, 1))

    @property
    def dim(self) -> int:
        return self.latent_state.shape[0]

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.latent_state))
                    and np.all(np.isfinite(self.observed_state))
                    and np.all(np.isfinite(self.uncertainty)))


@dataclass(frozen=True)
class KalmanFilterState:
    """Linear-Gaussian filter state after a predict/update cycle."""
    state_estimate: np.ndarray
    error_covariance: np.ndarray
    predicted_state: np.ndarray
    predicted_covariance: np.ndarray
    innovation: np.ndarray
    innovation_covariance: np.ndarray
    kalman_gain: np.ndarray
    timestep: int = 0
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        for name in ('state_estimate', 'predicted_state', 'innovation'):
            object.__setattr__(self, name, _frozen_array(getattr(self, name), 1))
        for name in ('error_covariance', 'predicted_covariance',
                     'innovation_covariance', 'kalman_gain'):
            object.__setattr__(self, name, _frozen_array(getattr(self, name), 2))

    @classmethod
    def from_observation(cls, observation, timestamp: Optional[datetime] = None,
                         variance: float = 0.1, timestep: int = 0) -> 'KalmanFilterState':
        """Start a filter at ``observation`` with isotropic covariance."""
        x = np.array(observation, dtype=float)
        n = x.shape[0]
        P = np.eye(n) * variance
        return cls(
            state_estimate=x,
            error_covariance=P,
            predicted_state=x,
            predicted_covariance=P,
            innovation=np.zeros(n),
            innovation_covariance=P,
            kalman_gain=np.eye(n),
            timestep=timestep,
            timestamp=timestamp,
        )


@dataclass(frozen=True)
class HistoryEntry:
    """One observation in the KalmanFormer context window."""
    observation: np.ndarray
    timestamp: datetime
    embedding: Optional[np.ndarray] = None

    def __post_init__(self):
        object.__setattr__(self, 'observation', _frozen_array(self.observation, 1))
        if self.embedding is not None:
            object.__setattr__(self, 'embedding', _frozen_array(self.embedding, 1))


@dataclass(frozen=True)
class KalmanFormerState:
    """Combined filter, context and blending state of the KalmanFormer."""
    kalman_state: KalmanFilterState
    observation_history: Tuple[HistoryEntry, ...]
    timestamp: datetime
    blend_ratio: float = 0.5
    confidence: float = 0.5
    context_encoding: Optional[np.ndarray] = None
    learned_gain: Optional[np.ndarray] = None

    def __post_init__(self):
        object.__setattr__(self, 'observation_history', tuple(self.observation_history))
        if self.context_encoding is not None:
            object.__setattr__(self, 'context_encoding', _frozen_array(self.context_encoding, 2))
        if self.learned_gain is not None:
            object.__setattr__(self, 'learned_gain', _frozen_array(self.learned_gain, 2))

    @property
    def estimate(self) -> np.ndarray:
        return self.kalman_state.state_estimate


def to_plrnn_state(state: KalmanFormerState) -> PLRNNState:
    """Convert a KalmanFormer state into a PLRNN state.

    The filtered estimate becomes both the latent and observed state; the
    uncertainty of each dimension is the square root of the largest absolute
    entry in the matching covariance row.
    """
    estimate = state.kalman_state.state_estimate
    cov = state.kalman_state.error_covariance
    uncertainty = np.sqrt(np.max(np.abs(cov), axis=1))
    hidden = None
    if state.context_encoding is not None and state.context_encoding.shape[0] > 0:
        row = state.context_encoding[-1]
        if row.shape[0] == estimate.shape[0]:
            hidden = row
    return PLRNNState(
        latent_state=estimate,
        observed_state=estimate,
        uncertainty=uncertainty,
        timestamp=state.timestamp,
        timestep=len(state.observation_history),
        hidden_activations=hidden,
    )


def from_plrnn_state(state: PLRNNState, blend_ratio: float = 0.5,
                     variance: float = 0.1) -> KalmanFormerState:
    """Convert a PLRNN state into a KalmanFormer state.

    The observed state seeds the filter estimate and a one-entry context
    window; confidence is ``1 - mean(uncertainty)`` clipped to [0, 1].
    """
    kalman = replace(
        KalmanFilterState.from_observation(state.observed_state, state.timestamp,
                                           variance=variance, timestep=state.timestep),
        predicted_state=state.latent_state,
    )
    confidence = float(np.clip(1.0 - np.mean(state.uncertainty), 0.0, 1.0))
    return KalmanFormerState(
        kalman_state=kalman,
        observation_history=(HistoryEntry(state.observed_state, state.timestamp),),
        timestamp=state.timestamp,
        blend_ratio=blend_ratio,
        confidence=confidence,
    )


@dataclass(frozen=True)
class ConfidenceInterval:
    """Symmetric interval around a point forecast."""
    lower: np.ndarray
    upper: np.ndarray
    level: float = 0.95

    def __post_init__(self):
        object.__setattr__(self, 'lower', _frozen_array(self.lower, 1))
        object.__setattr__(self, 'upper', _frozen_array(self.upper, 1))

    @classmethod
    def around(cls, mean, std, z: float = 1.96, level: float = 0.95) -> 'ConfidenceInterval':
        mean = np.asarray(mean, dtype=float)
        half = z * np.asarray(std, dtype=float)
        return cls(lower=mean - half, upper=mean + half, level=level)

    def contains(self, values) -> bool:
        values = np.asarray(values, dtype=float)
        return bool(np.all(values >= self.lower) and np.all(values <= self.upper))

    @property
    def width(self) -> np.ndarray:
        return self.upper - self.lower
