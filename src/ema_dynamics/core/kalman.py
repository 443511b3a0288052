"""Linear-Gaussian Kalman filtering for low-dimensional affective state.

Implements the predict / gain / update cycle used by the KalmanFormer:

- Prediction: x⁻ = F x,  P⁻ = F P Fᵀ + Q
- Gain:       K = P⁻ Hᵀ (H P⁻ Hᵀ + R)⁻¹
- Update:     y = z − H x⁻,  x = x⁻ + K y,  P = (I − K H) P⁻

Singular innovation covariances never raise; the Gauss-Jordan inverse in
:mod:`.linalg` degrades to the identity and warns.
"""

import warnings
from dataclasses import replace
from datetime import datetime
from typing import Optional

import numpy as np
from scipy import linalg as sp_linalg

from . import linalg
from .states import KalmanFilterState


class KalmanFilter:
    """Kalman filter with externally owned system matrices.

    Parameters
    ----------
    F : np.ndarray, shape (n, n)
        State transition matrix
    H : np.ndarray, shape (m, n)
        Observation matrix
    Q : np.ndarray, shape (n, n)
        Process noise covariance
    R : np.ndarray, shape (m, m)
        Measurement noise covariance

    Notes
    -----
    The filter keeps no per-sequence state: every method takes a
    :class:`KalmanFilterState` and returns a new one.
    """

    def __init__(self, F: np.ndarray, H: np.ndarray, Q: np.ndarray, R: np.ndarray):
        self.state_dim = np.shape(F)[0]
        self.obs_dim = np.shape(H)[0]

        self._validate_parameters(F, H, Q, R)

        self.F = np.array(F, dtype=float)
        self.H = np.array(H, dtype=float)
        self.Q = np.array(Q, dtype=float)
        self.R = np.array(R, dtype=float)

    def _validate_parameters(self, F, H, Q, R) -> None:
        """Validate parameter dimensions and properties."""
        n, m = self.state_dim, self.obs_dim

        if np.shape(F) != (n, n):
            raise ValueError(f"F must be ({n}, {n}), got {np.shape(F)}")

        if np.shape(H) != (m, n):
            raise ValueError(f"H must be ({m}, {n}), got {np.shape(H)}")

        if np.shape(Q) != (n, n):
            raise ValueError(f"Q must be ({n}, {n}), got {np.shape(Q)}")

        if np.shape(R) != (m, m):
            raise ValueError(f"R must be ({m}, {m}), got {np.shape(R)}")

        for name, cov in (('Q', Q), ('R', R)):
            try:
                sp_linalg.cholesky(np.asarray(cov, dtype=float))
            except sp_linalg.LinAlgError:
                warnings.warn(f"{name} is not positive definite; filter covariances may degrade")

    def initial_state(self, observation, timestamp: Optional[datetime] = None,
                      variance: float = 0.1) -> KalmanFilterState:
        return KalmanFilterState.from_observation(observation, timestamp, variance=variance)

    def predict(self, state: KalmanFilterState) -> KalmanFilterState:
        """Propagate the filtered estimate one step through the dynamics."""
        x_pred = linalg.mat_vec(self.F, state.state_estimate)
        P_pred = linalg.mat_add(
            linalg.mat_mul(linalg.mat_mul(self.F, state.error_covariance), linalg.transpose(self.F)),
            self.Q,
        )
        return replace(
            state,
            predicted_state=x_pred,
            predicted_covariance=P_pred,
            timestep=state.timestep + 1,
        )

    def innovation_covariance(self, predicted: KalmanFilterState) -> np.ndarray:
        """S = H P⁻ Hᵀ + R."""
        HP = linalg.mat_mul(self.H, predicted.predicted_covariance)
        return linalg.mat_add(linalg.mat_mul(HP, linalg.transpose(self.H)), self.R)

    def gain(self, predicted: KalmanFilterState) -> np.ndarray:
        """Analytic Kalman gain for a predicted state."""
        S = self.innovation_covariance(predicted)
        PHt = linalg.mat_mul(predicted.predicted_covariance, linalg.transpose(self.H))
        return linalg.mat_mul(PHt, linalg.inverse(S))

    def update(self, predicted: KalmanFilterState, observation,
               gain: Optional[np.ndarray] = None,
               timestamp: Optional[datetime] = None) -> KalmanFilterState:
        """Correct a predicted state with an observation.

        Parameters
        ----------
        predicted : KalmanFilterState
            Output of :meth:`predict`
        observation : array-like, shape (m,)
            Measurement z
        gain : np.ndarray, shape (n, m), optional
            Externally supplied gain; the analytic gain is used when omitted
        timestamp : datetime, optional
            Time of the observation

        Returns
        -------
        KalmanFilterState
            Filtered state with innovation, S and K recorded
        """
        z = linalg.as_vector(observation, self.obs_dim, name="observation")
        K = self.gain(predicted) if gain is None else linalg.as_matrix(
            gain, (self.state_dim, self.obs_dim), name="gain")

        innovation = z - linalg.mat_vec(self.H, predicted.predicted_state)
        x = predicted.predicted_state + linalg.mat_vec(K, innovation)

        I_KH = linalg.mat_sub(linalg.identity(self.state_dim), linalg.mat_mul(K, self.H))
        P = linalg.mat_mul(I_KH, predicted.predicted_covariance)

        return replace(
            predicted,
            state_estimate=x,
            error_covariance=P,
            innovation=innovation,
            innovation_covariance=self.innovation_covariance(predicted),
            kalman_gain=K,
            timestamp=timestamp if timestamp is not None else predicted.timestamp,
        )

    def step(self, state: KalmanFilterState, observation,
             timestamp: Optional[datetime] = None) -> KalmanFilterState:
        """Predict then update with the analytic gain."""
        return self.update(self.predict(state), observation, timestamp=timestamp)
