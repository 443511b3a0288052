"""KalmanFormer: a Kalman filter blended with a self-attention context model.

Every update runs one predict/update cycle of a linear-Gaussian filter and,
in parallel, encodes the bounded observation history with
:class:`~.sequence_encoder.SequenceEncoder`. The current context vector
drives three small heads:

- an optional learned gain ``K = sigmoid(ctx·Wg + bg)`` replacing the
  analytic Kalman gain,
- a readout ``readout·ctx`` giving an attention-based state estimate,
- a blend head ``r = sigmoid(ctx·w + b + logit(blend_ratio))`` mixing the
  two estimates as ``(1 − r)·kalman + r·attention``.

Only the readout is fitted from data (ridge regression in :meth:`train`);
the encoder itself is never backpropagated.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy import linalg as sp_linalg

from ..config.defaults import KalmanFormerConfig
from ..config.random_state import make_rng
from . import linalg
from .errors import UninitializedModelError
from .kalman import KalmanFilter
from .sequence_encoder import EncoderOutput, SequenceEncoder
from .states import ConfidenceInterval, KalmanFormerState
from .weights import KalmanFormerWeights

logger = logging.getLogger(__name__)

TOP_INFLUENTIAL = 5
CONFIDENCE_DECAY = 0.95
BLEND_RATIO_RANGE = (0.2, 0.8)


@dataclass
class InfluentialObservation:
    """One entry of the context window ranked by attention weight."""
    index: int
    timestamp: datetime
    weight: float
    dimension: str


@dataclass
class AttentionExplanation:
    """Which past observations the encoder attends to.

    Attributes
    ----------
    self_attention : List[np.ndarray]
        Head-averaged (L, L) attention matrix per encoder layer
    top_influential_observations : List[InfluentialObservation]
        Up to five entries with the largest final-row attention weight
    temporal_pattern : str
        'recency_bias', 'pattern_matching' or 'uniform'
    """
    self_attention: List[np.ndarray]
    top_influential_observations: List[InfluentialObservation]
    temporal_pattern: str


@dataclass
class KalmanFormerPrediction:
    """Multi-step KalmanFormer forecast."""
    state_estimate: np.ndarray
    covariance: np.ndarray
    kalman_contribution: np.ndarray
    transformer_contribution: np.ndarray
    blended_prediction: np.ndarray
    confidence_interval: ConfidenceInterval
    attention: AttentionExplanation
    horizon: int
    trajectory: List[KalmanFormerState] = field(default_factory=list)


@dataclass
class KalmanFormerTrainingSample:
    """Observation sequence with optional ground-truth states."""
    observations: np.ndarray
    timestamps: Sequence[datetime]
    ground_truth: Optional[np.ndarray] = None


@dataclass
class KalmanFormerTrainingReport:
    """Pre-fit losses of one training pass and the number of passes run."""
    loss: float
    kalman_loss: float
    transformer_loss: float
    epochs: int
    samples: int = 0


@dataclass
class _StepResult:
    state: KalmanFormerState
    kalman_estimate: np.ndarray
    attention_estimate: np.ndarray


class KalmanFormerEngine:
    """Hybrid Kalman / attention state estimator.

    Parameters
    ----------
    config : KalmanFormerConfig, optional
        Architecture and filter settings
    rng : np.random.Generator or int, optional
        Source of randomness for weight initialization

    Examples
    --------
    >>> engine = KalmanFormerEngine(KalmanFormerConfig(state_dim=3, obs_dim=3), rng=0)
    >>> engine.initialize()
    >>> state = engine.initial_state([0.5, 0.4, 0.3], datetime(2025, 1, 13, 9))
    """

    def __init__(self, config: Optional[KalmanFormerConfig] = None, rng=None):
        self.config = config if config is not None else KalmanFormerConfig()
        self.rng = make_rng(rng)
        self._weights: Optional[KalmanFormerWeights] = None
        self._encoder: Optional[SequenceEncoder] = None
        self._filter: Optional[KalmanFilter] = None

    # ------------------------------------------------------------------
    # Weights
    # ------------------------------------------------------------------

    def initialize(self, config: Optional[KalmanFormerConfig] = None) -> None:
        """Draw fresh weights from the engine's generator."""
        if config is not None:
            self.config = config
        self._install(KalmanFormerWeights.initialize(self.config, self.rng))
        logger.debug("Initialized KalmanFormer with %d parameters",
                     self._weights.parameter_count()['total'])

    def load_weights(self, weights: KalmanFormerWeights) -> None:
        self._install(weights.clone())

    def get_weights(self) -> KalmanFormerWeights:
        return self._require().clone()

    @property
    def is_initialized(self) -> bool:
        return self._weights is not None

    def _install(self, weights: KalmanFormerWeights) -> None:
        self._weights = weights
        self.config = weights.config
        self._encoder = SequenceEncoder(weights)
        self._filter = KalmanFilter(weights.F, weights.H, weights.Q, weights.R)

    def _require(self) -> KalmanFormerWeights:
        if self._weights is None:
            raise UninitializedModelError("KalmanFormer")
        return self._weights

    # ------------------------------------------------------------------
    # Heads
    # ------------------------------------------------------------------

    def _learned_gain(self, context: np.ndarray) -> np.ndarray:
        w = self._weights
        n, m = self.config.state_dim, self.config.obs_dim
        return linalg.sigmoid(context @ w.gain_weights + w.gain_bias).reshape(n, m)

    def _readout(self, context: np.ndarray) -> np.ndarray:
        return self._weights.readout @ context

    def _blend_ratio(self, context: np.ndarray) -> float:
        w = self._weights
        logit = float(context @ w.blend_weights) + w.blend_bias + float(linalg.logit(self.config.blend_ratio))
        return float(linalg.sigmoid(logit))

    @staticmethod
    def _confidence(kalman_estimate: np.ndarray, attention_estimate: np.ndarray,
                    innovation: np.ndarray) -> float:
        agreement = float(np.mean(np.exp(-(kalman_estimate - attention_estimate) ** 2)))
        innovation_term = float(np.exp(-np.linalg.norm(innovation)))
        return (agreement + innovation_term) / 2.0

    def _blend(self, kalman_estimate: np.ndarray, attention_estimate: np.ndarray,
               ratio: float) -> np.ndarray:
        blended = (1.0 - ratio) * kalman_estimate + ratio * attention_estimate
        return linalg.sanitize(blended, self.config.state_clamp)

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def initial_state(self, observation, timestamp: datetime) -> KalmanFormerState:
        """Seed a state from a first observation with covariance ``0.1·I``."""
        self._require()
        obs = linalg.as_vector(observation, self.config.obs_dim, name="observation")
        entry = self._encoder.make_entry(obs, timestamp)
        kalman = self._filter.initial_state(obs, timestamp)
        return KalmanFormerState(
            kalman_state=kalman,
            observation_history=(entry,),
            timestamp=timestamp,
            blend_ratio=self.config.blend_ratio,
            confidence=0.5,
        )

    def _step(self, state: KalmanFormerState, observation, timestamp: datetime) -> _StepResult:
        obs = linalg.as_vector(observation, self.config.obs_dim, name="observation")
        history = (state.observation_history
                   + (self._encoder.make_entry(obs, timestamp),))[-self.config.context_window:]

        predicted = self._filter.predict(state.kalman_state)
        context = self._encoder.encode_history(history)
        ctx = context.current

        gain = None
        if self.config.learned_gain and self._weights.gain_weights is not None:
            gain = self._learned_gain(ctx)
        updated = self._filter.update(predicted, obs, gain=gain, timestamp=timestamp)

        # Suboptimal gains can leave P slightly asymmetric
        covariance = (updated.error_covariance + updated.error_covariance.T) / 2.0

        attention_estimate = self._readout(ctx)
        ratio = self._blend_ratio(ctx)
        blended = self._blend(updated.state_estimate, attention_estimate, ratio)
        confidence = self._confidence(updated.state_estimate, attention_estimate, updated.innovation)

        new_state = KalmanFormerState(
            kalman_state=replace(updated, state_estimate=blended, error_covariance=covariance),
            observation_history=history,
            timestamp=timestamp,
            blend_ratio=ratio,
            confidence=confidence,
            context_encoding=context.hidden,
            learned_gain=updated.kalman_gain,
        )
        return _StepResult(new_state, np.array(updated.state_estimate), attention_estimate)

    def update(self, state: KalmanFormerState, observation, timestamp: datetime) -> KalmanFormerState:
        """Incorporate one observation and return the new state."""
        self._require()
        return self._step(state, observation, timestamp).state

    # ------------------------------------------------------------------
    # Forecasting
    # ------------------------------------------------------------------

    def predict(self, state: KalmanFormerState, horizon: int) -> KalmanFormerPrediction:
        """Roll the hybrid forward ``horizon`` steps on its own estimates.

        Each step blends the Kalman prediction with the attention estimate of
        the current window, appends the blend as a pseudo-observation and
        advances the clock by ``max_time_gap / horizon`` hours.
        """
        self._require()
        if horizon < 0:
            raise ValueError(f"horizon must be non-negative, got {horizon}")

        step_hours = self.config.max_time_gap / horizon if horizon > 0 else 0.0
        trajectory = [state]
        current = state
        for _ in range(horizon):
            kalman_pred = self._filter.predict(current.kalman_state)
            context = self._encoder.encode_history(current.observation_history)
            attention_estimate = self._readout(context.current)
            blended = self._blend(kalman_pred.predicted_state, attention_estimate, current.blend_ratio)

            timestamp = current.timestamp + timedelta(hours=step_hours)
            history = (current.observation_history
                       + (self._encoder.make_entry(blended, timestamp),))[-self.config.context_window:]
            current = KalmanFormerState(
                kalman_state=replace(
                    kalman_pred,
                    state_estimate=blended,
                    error_covariance=kalman_pred.predicted_covariance,
                    timestamp=timestamp,
                ),
                observation_history=history,
                timestamp=timestamp,
                blend_ratio=current.blend_ratio,
                confidence=current.confidence * CONFIDENCE_DECAY,
                context_encoding=context.hidden,
                learned_gain=current.learned_gain,
            )
            trajectory.append(current)

        final = trajectory[-1]
        covariance = np.array(final.kalman_state.error_covariance)
        std = np.sqrt(np.maximum(np.diag(covariance), 0.0))
        estimate = np.array(final.estimate)

        kalman_contribution = np.array(self._filter.predict(state.kalman_state).predicted_state)
        transformer_contribution = self._readout(self._encoder.encode_history(state.observation_history).current)

        return KalmanFormerPrediction(
            state_estimate=estimate,
            covariance=covariance,
            kalman_contribution=kalman_contribution,
            transformer_contribution=transformer_contribution,
            blended_prediction=estimate.copy(),
            confidence_interval=ConfidenceInterval.around(estimate, std),
            attention=self.explain(final),
            horizon=horizon,
            trajectory=trajectory,
        )

    def explain(self, state: KalmanFormerState) -> AttentionExplanation:
        """Summarize the final-layer attention over the state's window."""
        self._require()
        window = list(state.observation_history)[-self.config.context_window:]
        if not window:
            return AttentionExplanation([], [], 'uniform')

        output: EncoderOutput = self._encoder.encode_history(window)
        L = len(window)
        if output.attention:
            final_row = output.attention[-1][-1]
        else:
            final_row = np.full(L, 1.0 / L)

        labels = self.config.dimension_labels
        order = np.argsort(-final_row, kind='stable')[:TOP_INFLUENTIAL]
        influential = []
        for idx in order:
            entry = window[idx]
            dim = int(np.argmax(np.abs(entry.observation)))
            influential.append(InfluentialObservation(
                index=int(idx),
                timestamp=entry.timestamp,
                weight=float(final_row[idx]),
                dimension=labels[dim] if dim < len(labels) else f"dim_{dim}",
            ))

        recent = float(np.mean(final_row[-5:]))
        early = float(np.mean(final_row[:5]))
        total = float(np.sum(final_row))
        if recent >= 1.5 * early:
            pattern = 'recency_bias'
        elif L >= 3 and total > 0 and (final_row[-1] + final_row[-2]) / total < 0.5:
            pattern = 'pattern_matching'
        else:
            pattern = 'uniform'

        return AttentionExplanation(
            self_attention=[np.array(a) for a in output.attention],
            top_influential_observations=influential,
            temporal_pattern=pattern,
        )

    def adapt_blend_ratio(self, predictions, actuals) -> float:
        """Shift the base blend ratio toward the attention branch when errors are large."""
        self._require()
        preds = np.asarray(predictions, dtype=float)
        truth = np.asarray(actuals, dtype=float)
        ratio = self.config.blend_ratio
        if preds.size == 0 or preds.shape != truth.shape:
            return ratio

        rmse = float(np.sqrt(np.mean((preds - truth) ** 2)))
        if rmse > 0.5:
            ratio += 0.1
        elif rmse < 0.25:
            ratio -= 0.1
        ratio = float(np.clip(ratio, *BLEND_RATIO_RANGE))

        # config is shared with the installed weights
        self.config.blend_ratio = ratio
        logger.debug("Blend ratio adapted to %.2f (rmse=%.3f)", ratio, rmse)
        return ratio

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(self, samples: Sequence[KalmanFormerTrainingSample]) -> KalmanFormerTrainingReport:
        """Filter every sample and refit the readout by ridge regression.

        Targets are the ground-truth states when a sample provides them and
        the observations themselves otherwise. Reported losses are the mean
        squared errors of the pass made before the readout is refitted.
        """
        if self._weights is None:
            self.initialize()

        features, targets = [], []
        blended_sq, kalman_sq, attention_sq = 0.0, 0.0, 0.0
        for sample in samples:
            observations = np.asarray(sample.observations, dtype=float)
            truth = observations if sample.ground_truth is None else np.asarray(sample.ground_truth, dtype=float)
            if len(observations) < 2:
                continue

            state = self.initial_state(observations[0], sample.timestamps[0])
            for t in range(1, len(observations)):
                result = self._step(state, observations[t], sample.timestamps[t])
                state = result.state
                target = truth[t]

                features.append(np.array(state.context_encoding[-1]))
                targets.append(target)
                blended_sq += float(np.mean((state.estimate - target) ** 2))
                kalman_sq += float(np.mean((result.kalman_estimate - target) ** 2))
                attention_sq += float(np.mean((result.attention_estimate - target) ** 2))

        count = len(features)
        if count == 0:
            logger.debug("KalmanFormer training skipped: no sample has two observations")
            return KalmanFormerTrainingReport(loss=0.0, kalman_loss=0.0, transformer_loss=0.0, epochs=0)

        X = np.array(features)
        Y = np.array(targets)
        gram = X.T @ X + self.config.readout_ridge * np.eye(X.shape[1])
        self._weights.readout = sp_linalg.solve(gram, X.T @ Y, assume_a='pos').T

        loss = blended_sq / count
        meta = self._weights.meta
        meta.trained_at = datetime.now()
        meta.training_samples += len(samples)
        meta.validation_loss = loss
        logger.info("KalmanFormer readout fitted on %d steps (pre-fit loss %.4f)", count, loss)

        return KalmanFormerTrainingReport(
            loss=loss,
            kalman_loss=kalman_sq / count,
            transformer_loss=attention_sq / count,
            epochs=1,
            samples=count,
        )

    def complexity_metrics(self) -> Dict[str, float]:
        counts = self._require().parameter_count()
        return {
            'total_parameters': counts['total'],
            'kalman_parameters': counts['kalman'],
            'transformer_parameters': counts['transformer'],
            'effective_context_length': self.config.context_window,
        }
