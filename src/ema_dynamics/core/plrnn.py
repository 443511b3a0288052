"""Piecewise-linear recurrent dynamics for low-dimensional affective state.

The latent state evolves as

    z' = A ⊙ z + W·relu(z) + C·s + b_z  (+ C·relu(D·z) for dendritic connectivity)
    x' = B·z' + b_x

with diagonal autoregression ``A``, coupling ``W`` and observation matrix
``B`` (Durstewitz 2017; Brenner et al. 2022 for the dendritic variant).
Gradients of the one-step squared error are derived by hand and applied
with Adam; :class:`~.trainer.PLRNNTrainer` threads them through time.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from ..config.defaults import KalmanFormerConfig, PLRNNConfig
from ..config.random_state import make_rng, spawn_rngs
from . import linalg
from .causal import CausalNetwork, extract_causal_network
from .early_warning import EarlyWarningSignal, detect_early_warnings
from .errors import DimensionMismatchError, UninitializedModelError, UnknownDimensionError
from .kalmanformer import KalmanFormerEngine
from .optim import AdamOptimizer
from .states import ConfidenceInterval, PLRNNState, from_plrnn_state, to_plrnn_state
from .weights import PLRNNWeights

logger = logging.getLogger(__name__)

HYBRID_HORIZONS = {'short': 3, 'medium': 12, 'long': 48}
INTERVENTION_MODES = ('increase', 'decrease', 'stabilize')
INTERVENTION_HORIZON = 24
INITIAL_UNCERTAINTY = 0.1
A_BOUND = 0.999


@dataclass
class PLRNNPrediction:
    """Multi-step rollout with uncertainty.

    Attributes
    ----------
    trajectory : List[PLRNNState]
        ``horizon + 1`` states, starting with the input state
    mean_prediction : np.ndarray
        Observed state at the horizon
    confidence_interval : ConfidenceInterval
        95% interval ``mean ± 1.96·sqrt(uncertainty)``
    variance : List[np.ndarray]
        Uncertainty of every trajectory state
    early_warning_signals : List[EarlyWarningSignal]
        Signals detected along the trajectory
    horizon : int
    """
    trajectory: List[PLRNNState]
    mean_prediction: np.ndarray
    confidence_interval: ConfidenceInterval
    variance: List[np.ndarray]
    early_warning_signals: List[EarlyWarningSignal]
    horizon: int


@dataclass
class InterventionTarget:
    dimension: str
    intervention: str
    magnitude: float


@dataclass
class InterventionResponse:
    """Effect of an intervention relative to the unperturbed rollout.

    ``effects`` maps each dimension label to the difference at the horizon;
    ``time_to_peak`` and ``duration`` are in hours; ``side_effects`` lists
    other dimensions whose effect exceeds 0.1 in magnitude.
    """
    effects: Dict[str, float]
    time_to_peak: float
    duration: float
    side_effects: List[Dict[str, float]] = field(default_factory=list)


@dataclass
class InterventionSimulation:
    target: InterventionTarget
    response: InterventionResponse
    confidence: float


@dataclass
class StepGradients:
    """Gradients of one step's squared error.

    Attributes
    ----------
    gradients : Dict[str, np.ndarray]
        Keyed like :meth:`PLRNNWeights.parameters`
    latent_error : np.ndarray
        dL/dz of the previous latent state, passed back through time
    loss : float
        Mean squared error of the step
    """
    gradients: Dict[str, np.ndarray]
    latent_error: np.ndarray
    loss: float


@dataclass
class PLRNNTrainingSample:
    observations: np.ndarray
    timestamps: Optional[Sequence[datetime]] = None


@dataclass
class PLRNNTrainingResult:
    loss: float
    validation_loss: float
    epochs: int
    training_time: float
    converged: bool
    weights: Optional[PLRNNWeights] = None


class PLRNNEngine:
    """Piecewise-linear recurrent state-space model.

    Parameters
    ----------
    config : PLRNNConfig, optional
        Model configuration
    rng : np.random.Generator or int, optional
        Source of randomness for initialization and teacher forcing
    kalmanformer : KalmanFormerEngine, optional
        Engine used for short-horizon forecasts; built on first use from a
        matching :class:`KalmanFormerConfig` when omitted
    """

    def __init__(self, config: Optional[PLRNNConfig] = None, rng=None,
                 kalmanformer: Optional[KalmanFormerEngine] = None):
        self.config = config if config is not None else PLRNNConfig()
        self.rng = make_rng(rng)
        self._kalmanformer = kalmanformer
        self._kalmanformer_rng = spawn_rngs(self.rng, 1)[0]
        self._weights: Optional[PLRNNWeights] = None
        self._adam = AdamOptimizer()
        self._lock = threading.Lock()
        self.training_history: List[float] = []

    # ------------------------------------------------------------------
    # Weights
    # ------------------------------------------------------------------

    def initialize(self, config: Optional[PLRNNConfig] = None) -> None:
        if config is not None:
            self.config = config
        self._weights = PLRNNWeights.initialize(self.config, self.rng)
        self._adam.reset()

    def load_weights(self, weights: PLRNNWeights) -> None:
        self._weights = weights.clone()
        self.config = self._weights.config
        self._adam.reset()

    def get_weights(self) -> PLRNNWeights:
        return self._require().clone()

    @property
    def is_initialized(self) -> bool:
        return self._weights is not None

    @property
    def latent_dim(self) -> int:
        return self.config.latent_dim

    @property
    def labels(self) -> List[str]:
        return list(self.config.dimension_labels)

    def _require(self) -> PLRNNWeights:
        if self._weights is None:
            raise UninitializedModelError("PLRNN")
        return self._weights

    @property
    def kalmanformer(self) -> KalmanFormerEngine:
        """Short-horizon engine, initialized on first access."""
        if self._kalmanformer is None:
            kf_config = KalmanFormerConfig(
                state_dim=self.latent_dim,
                obs_dim=self.latent_dim,
                dimension_labels=self.labels,
            )
            self._kalmanformer = KalmanFormerEngine(kf_config, rng=self._kalmanformer_rng)
        if not self._kalmanformer.is_initialized:
            self._kalmanformer.initialize()
        return self._kalmanformer

    def reset_adam_state(self) -> None:
        self._adam.reset()

    # ------------------------------------------------------------------
    # Dynamics
    # ------------------------------------------------------------------

    def create_state(self, observation, timestamp: Optional[datetime] = None) -> PLRNNState:
        """State whose latent and observed parts equal the observation.

        The observation is truncated or zero-padded to ``latent_dim``.
        """
        n = self.latent_dim
        obs = np.zeros(n)
        values = np.asarray(observation, dtype=float).ravel()[:n]
        obs[:len(values)] = values
        return PLRNNState(
            latent_state=obs,
            observed_state=obs,
            uncertainty=np.full(n, INITIAL_UNCERTAINTY),
            timestamp=timestamp if timestamp is not None else datetime.now(),
            timestep=0,
        )

    def _input_vector(self, s, width: int) -> np.ndarray:
        padded = np.zeros(width)
        if s is not None:
            values = np.asarray(s, dtype=float).ravel()[:width]
            padded[:len(values)] = values
        return padded

    def forward(self, state: PLRNNState, input=None) -> PLRNNState:
        """Advance one step of ``dt`` hours."""
        w = self._require()
        z = linalg.as_vector(state.latent_state, self.latent_dim, name="latent_state")
        phi = linalg.relu(z)

        z_next = w.A * z + w.W @ phi + w.bias_latent
        drive = self._input_vector(input, w.input_dim)
        if w.is_dendritic:
            drive = drive + linalg.relu(w.D @ z)
        z_next = z_next + w.C @ drive

        clamp = self.config.state_clamp
        z_next = linalg.sanitize(z_next, clamp)
        x_next = linalg.sanitize(w.B @ z_next + w.bias_observed, clamp)

        return PLRNNState(
            latent_state=z_next,
            observed_state=x_next,
            uncertainty=self._grow_uncertainty(z_next, state.uncertainty),
            timestamp=state.timestamp + timedelta(hours=self.config.dt),
            timestep=state.timestep + 1,
            hidden_activations=phi,
        )

    @staticmethod
    def _grow_uncertainty(z_next: np.ndarray, previous: np.ndarray) -> np.ndarray:
        deviation = np.where(np.abs(z_next) > 2.0, 0.1, 0.0)
        return np.minimum(1.0, previous * 1.05 + deviation)

    def predict(self, state: PLRNNState, horizon: int,
                inputs: Optional[Sequence] = None) -> PLRNNPrediction:
        """Roll out ``horizon`` steps, optionally with one input per step."""
        self._require()
        if horizon < 0:
            raise ValueError(f"horizon must be non-negative, got {horizon}")

        trajectory = [state]
        current = state
        for t in range(horizon):
            step_input = inputs[t] if inputs is not None and t < len(inputs) else None
            current = self.forward(current, step_input)
            trajectory.append(current)

        final = trajectory[-1]
        mean = np.array(final.observed_state)
        return PLRNNPrediction(
            trajectory=trajectory,
            mean_prediction=mean,
            confidence_interval=ConfidenceInterval.around(mean, np.sqrt(final.uncertainty)),
            variance=[np.array(s.uncertainty) for s in trajectory],
            early_warning_signals=self.detect_early_warnings(trajectory, min(5, len(trajectory))),
            horizon=horizon,
        )

    def hybrid_predict(self, state: PLRNNState, horizon: str) -> PLRNNPrediction:
        """Forecast with the engine suited to the horizon.

        'short' (3 steps) uses the KalmanFormer, 'long' (48 steps) the pure
        PLRNN rollout, and 'medium' (12 steps) averages both means and keeps
        the wider interval bound per dimension.
        """
        if horizon not in HYBRID_HORIZONS:
            raise ValueError(f"Unknown horizon '{horizon}'. Available: {list(HYBRID_HORIZONS)}")
        self._require()
        steps = HYBRID_HORIZONS[horizon]

        if horizon == 'long':
            return self.predict(state, steps)
        if horizon == 'short':
            return self._kalmanformer_predict(state, steps)

        plrnn = self.predict(state, steps)
        kf = self._kalmanformer_predict(state, steps)
        mean = (plrnn.mean_prediction + kf.mean_prediction) / 2.0
        interval = ConfidenceInterval(
            lower=np.minimum(plrnn.confidence_interval.lower, kf.confidence_interval.lower),
            upper=np.maximum(plrnn.confidence_interval.upper, kf.confidence_interval.upper),
        )
        return replace(plrnn, mean_prediction=mean, confidence_interval=interval)

    def _kalmanformer_predict(self, state: PLRNNState, steps: int) -> PLRNNPrediction:
        engine = self.kalmanformer
        if engine.config.state_dim != self.latent_dim or engine.config.obs_dim != self.latent_dim:
            raise DimensionMismatchError(
                f"KalmanFormer dimensions ({engine.config.state_dim}, {engine.config.obs_dim}) "
                f"do not match latent_dim {self.latent_dim}"
            )
        kf_state = from_plrnn_state(state, blend_ratio=engine.config.blend_ratio)
        forecast = engine.predict(kf_state, steps)
        trajectory = [state] + [to_plrnn_state(s) for s in forecast.trajectory[1:]]
        variance = [np.array(state.uncertainty)] + [
            np.maximum(np.diag(s.kalman_state.error_covariance), 0.0)
            for s in forecast.trajectory[1:]
        ]
        return PLRNNPrediction(
            trajectory=trajectory,
            mean_prediction=np.array(forecast.state_estimate),
            confidence_interval=forecast.confidence_interval,
            variance=variance,
            early_warning_signals=self.detect_early_warnings(trajectory, min(5, len(trajectory))),
            horizon=steps,
        )

    # ------------------------------------------------------------------
    # Interpretation
    # ------------------------------------------------------------------

    def extract_causal_network(self, state: Optional[PLRNNState] = None) -> CausalNetwork:
        w = self._require()
        values = None if state is None else state.latent_state
        return extract_causal_network(w.A, w.W, self.labels, self.config.dt, values=values)

    def detect_early_warnings(self, history: Sequence[PLRNNState],
                              window_size: int) -> List[EarlyWarningSignal]:
        return detect_early_warnings(
            history, window_size,
            dt=self.config.dt,
            labels=self.labels,
            include_connectivity=self.is_initialized,
        )

    def dimension_index(self, label: str) -> int:
        try:
            return self.labels.index(label)
        except ValueError:
            raise UnknownDimensionError(label, self.labels) from None

    def simulate_intervention(self, state: PLRNNState, target: str, intervention: str,
                              magnitude: float) -> InterventionSimulation:
        """Compare a 24-step rollout under constant input against the baseline.

        Parameters
        ----------
        state : PLRNNState
            Starting state
        target : str
            Dimension label receiving the input
        intervention : str
            'increase' (+magnitude), 'decrease' (−magnitude) or 'stabilize'
            (−0.5 × the target's current latent value)
        magnitude : float
            Input size for increase/decrease

        Returns
        -------
        InterventionSimulation
        """
        self._require()
        if intervention not in INTERVENTION_MODES:
            raise ValueError(f"Unknown intervention '{intervention}'. Available: {INTERVENTION_MODES}")
        idx = self.dimension_index(target)

        control = np.zeros(self.latent_dim)
        if intervention == 'increase':
            control[idx] = magnitude
        elif intervention == 'decrease':
            control[idx] = -magnitude
        else:
            control[idx] = -state.latent_state[idx] * 0.5

        horizon = INTERVENTION_HORIZON
        dt = self.config.dt
        baseline = self.predict(state, horizon)
        treated = self.predict(state, horizon, inputs=[control] * horizon)

        effect = treated.mean_prediction - baseline.mean_prediction
        effects = {label: float(effect[i]) for i, label in enumerate(self.labels)}

        target_effect = np.array([
            abs(treated.trajectory[t].observed_state[idx] - baseline.trajectory[t].observed_state[idx])
            for t in range(horizon)
        ])
        peak = 0.0
        peak_step = 0
        for t, value in enumerate(target_effect):
            if value > peak:
                peak = float(value)
                peak_step = t

        duration = horizon * dt
        for t in range(peak_step, horizon):
            if target_effect[t] < peak * 0.1:
                duration = t * dt
                break

        side_effects = [
            {'dimension': label, 'effect': value}
            for label, value in effects.items()
            if label != target and abs(value) > 0.1
        ]
        confidence = float(np.clip(1.0 - treated.variance[horizon - 1][idx], 0.0, 1.0))

        return InterventionSimulation(
            target=InterventionTarget(target, intervention, float(magnitude)),
            response=InterventionResponse(
                effects=effects,
                time_to_peak=peak_step * dt,
                duration=duration,
                side_effects=side_effects,
            ),
            confidence=confidence,
        )

    def complexity_metrics(self) -> Dict[str, float]:
        """Sparsity of W, effective dimensionality and a Lyapunov-style exponent."""
        W = self._require().W
        n = W.shape[0]
        sparsity = float(np.mean(np.abs(W) < 0.01))
        lam = abs(linalg.max_eigenvalue(W))
        return {
            'sparsity': sparsity,
            'effective_dimensionality': n * (1.0 - sparsity),
            'lyapunov_exponent': float(np.log(max(lam, 1e-10))),
        }

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def compute_step_gradients(self, prev: PLRNNState, current: PLRNNState, target,
                               error_signal: Optional[np.ndarray] = None,
                               input=None) -> StepGradients:
        """Gradients of ``mean((x' − target)²)`` for the step ``prev -> current``.

        ``error_signal`` is dL/dz' arriving from later steps; the returned
        ``latent_error`` is dL/dz for the step before.
        """
        w = self._require()
        n = self.latent_dim
        z = np.asarray(prev.latent_state, dtype=float)
        z_next = np.asarray(current.latent_state, dtype=float)
        x_next = np.asarray(current.observed_state, dtype=float)
        target = linalg.as_vector(target, n, name="target")

        residual = x_next - target
        e_x = 2.0 * residual / n

        delta = w.B.T @ e_x
        if error_signal is not None:
            delta = delta + linalg.as_vector(error_signal, n, name="error_signal")

        relu_mask = (z > 0).astype(float)
        grads = {
            'B': np.outer(e_x, z_next),
            'bias_observed': e_x,
            'A': delta * z,
            'W': np.outer(delta, linalg.relu(z)),
            'bias_latent': delta,
        }
        latent_error = w.A * delta + (w.W.T @ delta) * relu_mask

        drive = np.zeros(w.input_dim)
        has_drive = input is not None
        if input is not None:
            drive += self._input_vector(input, w.input_dim)
        if w.is_dendritic:
            pre = w.D @ z
            drive += linalg.relu(pre)
            has_drive = True
            back = (w.C.T @ delta) * (pre > 0)
            grads['D'] = np.outer(back, z)
            latent_error = latent_error + w.D.T @ back
        if has_drive:
            grads['C'] = np.outer(delta, drive)

        return StepGradients(grads, latent_error, float(np.mean(residual ** 2)))

    def apply_gradients(self, gradients: Union[StepGradients, Mapping[str, np.ndarray]],
                        learning_rate: Optional[float] = None,
                        l1: Optional[float] = None,
                        l2: Optional[float] = None,
                        clip: Optional[float] = None) -> None:
        """Regularize, clip and apply gradients with Adam.

        Adds ``l1·sign(W)`` to the W gradient and ``l2·θ`` to every
        gradient, clips elementwise to ``±clip`` and keeps ``A`` within
        ±0.999 afterwards. Arguments default to the engine configuration.
        """
        w = self._require()
        grads = gradients.gradients if isinstance(gradients, StepGradients) else gradients
        lr = self.config.learning_rate if learning_rate is None else learning_rate
        l1 = self.config.l1_regularization if l1 is None else l1
        l2 = self.config.l2_regularization if l2 is None else l2
        clip = self.config.gradient_clip if clip is None else clip

        with self._lock:
            params = w.parameters()
            regularized = {}
            for name, grad in grads.items():
                if name not in params:
                    continue
                g = np.array(grad, dtype=float) + l2 * params[name]
                if name == 'W':
                    g += l1 * np.sign(params[name])
                regularized[name] = np.clip(np.nan_to_num(g), -clip, clip)

            self._adam.step(params, regularized, lr)
            np.clip(w.A, -A_BOUND, A_BOUND, out=w.A)

    def calculate_loss(self, predicted, actual) -> float:
        """Mean squared error over all entries; 0 for empty input."""
        p = np.asarray(predicted, dtype=float)
        a = np.asarray(actual, dtype=float)
        if p.size == 0:
            return 0.0
        return float(np.mean((p - a) ** 2))

    def train_online(self, sample: PLRNNTrainingSample) -> PLRNNTrainingResult:
        """One teacher-forced pass over a sample with a step update per observation."""
        if self._weights is None:
            self.initialize()

        start = time.perf_counter()
        observations = np.asarray(sample.observations, dtype=float)
        if len(observations) < 2:
            logger.debug("Online training skipped: fewer than two observations")
            return PLRNNTrainingResult(loss=np.inf, validation_loss=np.inf, epochs=0,
                                       training_time=0.0, converged=False, weights=self.get_weights())

        timestamps = sample.timestamps
        state = self.create_state(observations[0], timestamps[0] if timestamps is not None else None)
        total = 0.0
        for t in range(len(observations) - 1):
            predicted = self.forward(state)
            target = observations[t + 1]
            step = self.compute_step_gradients(state, predicted, target)
            total += step.loss
            self.apply_gradients(step)

            if self.rng.random() < self.config.teacher_forcing_ratio:
                forced = self.create_state(target, predicted.timestamp)
                state = replace(forced, timestep=predicted.timestep)
            else:
                state = predicted

        loss = total / (len(observations) - 1)
        self.training_history.append(loss)
        meta = self._weights.meta
        meta.training_samples += 1
        meta.trained_at = datetime.now()

        return PLRNNTrainingResult(
            loss=loss,
            validation_loss=loss,
            epochs=1,
            training_time=time.perf_counter() - start,
            converged=loss < 0.1,
            weights=self.get_weights(),
        )

    def train_batch(self, samples: Sequence[PLRNNTrainingSample]) -> PLRNNTrainingResult:
        start = time.perf_counter()
        if not samples:
            return PLRNNTrainingResult(loss=np.inf, validation_loss=np.inf, epochs=0,
                                       training_time=0.0, converged=False,
                                       weights=self.get_weights() if self.is_initialized else None)

        results = [self.train_online(sample) for sample in samples]
        # samples too short to train on report an infinite loss
        losses = [r.loss for r in results if r.epochs > 0]
        loss = float(np.mean(losses)) if losses else np.inf
        converged = loss < 0.05
        if converged:
            self._weights.meta.validation_loss = loss

        return PLRNNTrainingResult(
            loss=loss,
            validation_loss=loss,
            epochs=len(samples),
            training_time=time.perf_counter() - start,
            converged=converged,
            weights=self.get_weights(),
        )
