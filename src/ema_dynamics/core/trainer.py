"""Truncated backpropagation through time for the PLRNN on EMA data.

Each sequence is cut into overlapping windows of ``bptt_truncation_window``
steps. A window is rolled forward (with teacher forcing on training
windows), step gradients are accumulated back to front with the error
signal threaded through the latent states, and the averaged gradients are
applied once per window. A multi-horizon loss rolls further ahead from
each window's end (Williams & Peng, 1990; Fechtelpeter et al., 2025).
"""

import logging
import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..config.defaults import TrainingConfig
from ..config.random_state import make_rng
from ..data.preprocessing import (NormalizationStats, normalize_sequence,
                                  regularize_timesteps, train_validation_split)
from .optim import GradientAccumulator
from .plrnn import PLRNNEngine
from .states import PLRNNState
from .weights import PLRNNWeights

logger = logging.getLogger(__name__)


@dataclass
class TrainingSequence:
    """One participant's prepared sequence.

    Attributes
    ----------
    participant_id : str
    values : np.ndarray, shape (T, n)
    timestamps : List[datetime]
        Strictly increasing
    was_interpolated : bool
        Whether values were resampled onto a regular grid
    norm_stats : NormalizationStats, optional
        Statistics used for z-scoring, when applied
    """
    participant_id: str
    values: np.ndarray
    timestamps: List[datetime]
    was_interpolated: bool = False
    norm_stats: Optional[NormalizationStats] = None

    def __post_init__(self):
        self.values = np.atleast_2d(np.asarray(self.values, dtype=float))
        self.timestamps = list(self.timestamps)
        if len(self.timestamps) != len(self.values):
            raise ValueError(
                f"{len(self.values)} values but {len(self.timestamps)} timestamps "
                f"for participant {self.participant_id}"
            )
        for earlier, later in zip(self.timestamps, self.timestamps[1:]):
            if later <= earlier:
                raise ValueError(f"Timestamps of participant {self.participant_id} must be strictly increasing")

    def __len__(self) -> int:
        return len(self.values)


@dataclass
class TrainingHistory:
    epoch_losses: List[float] = field(default_factory=list)
    epoch_validation_losses: List[float] = field(default_factory=list)
    horizon_losses: Dict[int, List[float]] = field(default_factory=dict)
    learning_rates: List[float] = field(default_factory=list)
    best_epoch: int = 0
    best_validation_loss: float = math.inf
    total_training_time: float = 0.0
    converged: bool = False
    early_stop_reason: Optional[str] = None


@dataclass
class TrainingMetrics:
    """Forecast quality of the trained model on the validation sequences.

    ``improvement_over_persistence`` is the relative reduction (in %) of the
    horizon-averaged MAE compared with carrying the current value forward.
    """
    final_training_loss: float = 0.0
    final_validation_loss: float = 0.0
    per_horizon_mae: Dict[int, float] = field(default_factory=dict)
    per_horizon_rmse: Dict[int, float] = field(default_factory=dict)
    per_horizon_r2: Dict[int, float] = field(default_factory=dict)
    per_horizon_persistence: Dict[int, float] = field(default_factory=dict)
    improvement_over_persistence: float = 0.0


@dataclass
class EMATrainingResult:
    trained_weights: PLRNNWeights
    history: TrainingHistory
    metrics: TrainingMetrics
    config: TrainingConfig


@dataclass
class EpochResult:
    avg_loss: float
    horizon_losses: Dict[int, float]
    num_sequences: int
    duration: float


@dataclass
class BPTTForwardResult:
    states: List[PLRNNState]
    predictions: List[np.ndarray]
    losses: List[float]
    total_loss: float


@dataclass
class _SequenceResult:
    loss: float
    samples: int
    horizon_losses: Dict[int, float]


def mse(predicted, target) -> float:
    p = np.asarray(predicted, dtype=float)
    t = np.asarray(target, dtype=float)
    k = min(p.size, t.size)
    return float(np.mean((p[:k] - t[:k]) ** 2)) if k > 0 else 0.0


def compute_learning_rate(epoch: int, config: TrainingConfig) -> float:
    """Learning rate for an epoch, with linear warmup over ``min(5, epochs // 4)`` epochs."""
    warmup = min(5, config.epochs // 4)
    warmup_factor = (epoch + 1) / warmup if warmup > 0 and epoch < warmup else 1.0

    lr, lr_min = config.learning_rate, config.lr_min
    if config.lr_schedule == 'step':
        base = max(lr_min, lr * config.lr_decay_factor ** (epoch // config.lr_decay_steps))
    elif config.lr_schedule == 'exponential':
        base = max(lr_min, lr * config.lr_decay_factor ** (epoch / config.lr_decay_steps))
    elif config.lr_schedule == 'cosine':
        effective = max(1, config.epochs - warmup)
        progress = max(0, epoch - warmup) / effective
        base = lr_min + (lr - lr_min) * 0.5 * (1 + math.cos(math.pi * min(1.0, progress)))
    else:
        base = lr

    final = base * warmup_factor
    if not math.isfinite(final) or final < 0:
        return lr_min
    return final


class PLRNNTrainer:
    """Trains a :class:`PLRNNEngine` on EMA datasets.

    Parameters
    ----------
    engine : PLRNNEngine
        Engine to train; initialized on first use if needed
    config : TrainingConfig, optional
        Training settings
    rng : np.random.Generator or int, optional
        Drives shuffling, the train/validation split and teacher forcing
    """

    def __init__(self, engine: PLRNNEngine, config: Optional[TrainingConfig] = None, rng=None):
        self.engine = engine
        self.config = config if config is not None else TrainingConfig()
        self.rng = make_rng(rng)

    # ------------------------------------------------------------------
    # Data preparation
    # ------------------------------------------------------------------

    def _prepare(self, participant) -> Optional[TrainingSequence]:
        observations = participant.observations
        if len(observations) < self.config.bptt_truncation_window + 1:
            logger.debug("Skipping participant %s: %d observations",
                         participant.participant_id, len(observations))
            return None

        values = np.array([obs.values for obs in observations], dtype=float)
        timestamps = [obs.timestamp for obs in observations]
        was_interpolated = False
        stats = None

        if self.config.handle_irregular_sampling:
            values, timestamps, was_interpolated = regularize_timesteps(
                values, timestamps, self.config.target_interval_hours)
            if len(values) < self.config.bptt_truncation_window + 1:
                logger.debug("Skipping participant %s: %d steps after regularization",
                             participant.participant_id, len(values))
                return None
        if self.config.per_participant_normalization:
            values, stats = normalize_sequence(values)

        return TrainingSequence(
            participant_id=participant.participant_id,
            values=values,
            timestamps=timestamps,
            was_interpolated=was_interpolated,
            norm_stats=stats,
        )

    def prepare_training_data(self, dataset) -> List[TrainingSequence]:
        """Regularize and normalize every sufficiently long participant series."""
        sequences = []
        for participant in dataset.participants:
            sequence = self._prepare(participant)
            if sequence is not None:
                sequences.append(sequence)
        return sequences

    # ------------------------------------------------------------------
    # BPTT primitives
    # ------------------------------------------------------------------

    def _ensure_engine(self) -> None:
        if not self.engine.is_initialized:
            self.engine.initialize()

    def bptt_forward(self, values) -> BPTTForwardResult:
        """Free-running rollout from the first value, scored against the rest."""
        self._ensure_engine()
        values = np.atleast_2d(np.asarray(values, dtype=float))
        state = self.engine.create_state(values[0] if len(values) else np.zeros(self.engine.latent_dim))
        states, predictions, losses = [state], [], []
        for t in range(1, len(values)):
            state = self.engine.forward(state)
            states.append(state)
            predictions.append(np.array(state.observed_state))
            losses.append(mse(state.observed_state, values[t]))
        return BPTTForwardResult(states, predictions, losses, float(sum(losses)))

    def bptt_backward(self, values, forward_result: BPTTForwardResult):
        """Accumulate step gradients from the last step back to the first.

        Returns
        -------
        accumulator : GradientAccumulator
            Summed gradients and the number of steps
        final_error : np.ndarray
            Error signal reaching the initial latent state
        """
        values = np.atleast_2d(np.asarray(values, dtype=float))
        accumulator = GradientAccumulator()
        error_signal = None
        for t in range(len(forward_result.states) - 1, 0, -1):
            step = self.engine.compute_step_gradients(
                forward_result.states[t - 1], forward_result.states[t], values[t], error_signal)
            accumulator.add(step.gradients)
            error_signal = step.latent_error
        final = error_signal if error_signal is not None else np.zeros(self.engine.latent_dim)
        return accumulator, final

    def train_on_sequence(self, sequence: TrainingSequence,
                          learning_rate: Optional[float] = None) -> float:
        """One training pass over a sequence without teacher forcing."""
        self._ensure_engine()
        lr = self.config.learning_rate if learning_rate is None else learning_rate
        return self._run_sequence(sequence, validation=False, learning_rate=lr,
                                  teacher_forcing_ratio=0.0).loss

    def _rollout(self, state: PLRNNState, steps: int) -> PLRNNState:
        for _ in range(steps):
            state = self.engine.forward(state)
        return state

    def _run_sequence(self, sequence: TrainingSequence, validation: bool,
                      learning_rate: float, teacher_forcing_ratio: float) -> _SequenceResult:
        values = sequence.values
        timestamps = sequence.timestamps
        window = self.config.bptt_truncation_window
        stride = window - self.config.bptt_overlap_steps
        horizon_losses = {h: 0.0 for h in self.config.horizons}

        if len(values) < window + 1:
            return _SequenceResult(0.0, 0, {})

        total, samples = 0.0, 0
        state = self.engine.create_state(values[0], timestamps[0])

        start = 0
        while start + window < len(values):
            end = min(start + window, len(values) - 1)

            # inputs[k] feeds step k; forced[k] marks a teacher-forced input
            inputs, outputs, forced = [state], [], [False]
            for t in range(start, end):
                predicted = self.engine.forward(inputs[-1])
                outputs.append(predicted)
                if not validation and self.rng.random() < teacher_forcing_ratio:
                    teacher = self.engine.create_state(values[t + 1], timestamps[t + 1])
                    inputs.append(replace(teacher, timestep=predicted.timestep))
                    forced.append(True)
                else:
                    inputs.append(predicted)
                    forced.append(False)

            if not validation:
                accumulator = GradientAccumulator()
                error_signal = None
                for k in range(len(outputs) - 1, -1, -1):
                    target = values[start + k + 1]
                    step = self.engine.compute_step_gradients(inputs[k], outputs[k], target, error_signal)
                    total += step.loss
                    samples += 1
                    accumulator.add(step.gradients)
                    # No gradient path through a teacher-forced input
                    error_signal = None if forced[k] else step.latent_error
            else:
                for k, predicted in enumerate(outputs):
                    total += mse(predicted.observed_state, values[start + k + 1])
                    samples += 1

            last = outputs[-1]
            for h, weight in zip(self.config.horizons, self._horizon_weights()):
                if end + h < len(values):
                    h_loss = mse(self._rollout(last, h).observed_state, values[end + h])
                    horizon_losses[h] += h_loss
                    if not validation:
                        total += weight * h_loss
                        samples += 1

            if not validation:
                self.engine.apply_gradients(
                    accumulator.average(),
                    learning_rate,
                    self.config.l1_regularization,
                    self.config.l2_regularization,
                    self.config.gradient_clip,
                )
                logger.debug("Window %d-%d of %s: %d steps", start, end, sequence.participant_id,
                             accumulator.count)

            # Continue from the rolled state at the next window's first index
            state = outputs[stride - 1]
            start += stride

        return _SequenceResult(total / samples if samples else 0.0, samples, horizon_losses)

    def _horizon_weights(self) -> List[float]:
        weights = list(self.config.horizon_weights)
        return weights + [0.5] * (len(self.config.horizons) - len(weights))

    def _run_epoch(self, sequences: Sequence[TrainingSequence], validation: bool,
                   learning_rate: float, teacher_forcing_ratio: float) -> EpochResult:
        started = time.perf_counter()
        total, samples = 0.0, 0
        horizon_sums = {h: 0.0 for h in self.config.horizons}
        horizon_counts = {h: 0 for h in self.config.horizons}

        for sequence in sequences:
            result = self._run_sequence(sequence, validation, learning_rate, teacher_forcing_ratio)
            total += result.loss * result.samples
            samples += result.samples
            for h, loss in result.horizon_losses.items():
                horizon_sums[h] += loss
                horizon_counts[h] += 1

        horizon_losses = {h: horizon_sums[h] / (horizon_counts[h] or 1) for h in self.config.horizons}
        return EpochResult(
            avg_loss=total / samples if samples else 0.0,
            horizon_losses=horizon_losses,
            num_sequences=len(sequences),
            duration=time.perf_counter() - started,
        )

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def train_on_ema_data(self, dataset, **overrides) -> EMATrainingResult:
        """Train on every participant of an EMA dataset.

        Parameters
        ----------
        dataset : EMADataset
            Object with a ``participants`` list of series
        **overrides
            TrainingConfig fields replacing the trainer's configuration

        Returns
        -------
        EMATrainingResult
            Best-validation weights (also loaded into the engine), per-epoch
            history and final forecast metrics

        Raises
        ------
        ValueError
            If no participant yields a training sequence
        """
        if overrides:
            self.config = self.config.update(**overrides)
        cfg = self.config

        self._ensure_engine()
        self.engine.reset_adam_state()

        sequences = self.prepare_training_data(dataset)
        train, validation = train_validation_split(sequences, cfg.validation_split, self.rng,
                                                   shuffle=cfg.shuffle_data)
        if not train:
            raise ValueError("No training sequences after preparation")
        if not validation:
            logger.info("No validation sequences; validating on the training sequences")
            validation = list(train)

        logger.info("Training on %d sequences, validating on %d", len(train), len(validation))
        history = TrainingHistory()
        best_weights = self.engine.get_weights()
        patience = 0
        started = time.perf_counter()

        for epoch in range(cfg.epochs):
            if cfg.shuffle_data:
                train = [train[i] for i in self.rng.permutation(len(train))]

            lr = compute_learning_rate(epoch, cfg)
            history.learning_rates.append(lr)
            tf_ratio = cfg.teacher_forcing_ratio * cfg.teacher_forcing_decay ** epoch

            train_result = self._run_epoch(train, False, lr, tf_ratio)
            val_result = self._run_epoch(validation, True, lr, 0.0)
            history.epoch_losses.append(train_result.avg_loss)
            history.epoch_validation_losses.append(val_result.avg_loss)
            for h, loss in val_result.horizon_losses.items():
                history.horizon_losses.setdefault(h, []).append(loss)

            if val_result.avg_loss < history.best_validation_loss - cfg.early_stopping_min_delta:
                history.best_validation_loss = val_result.avg_loss
                history.best_epoch = epoch
                best_weights = self.engine.get_weights()
                patience = 0
            else:
                patience += 1

            if cfg.verbose or epoch % max(1, cfg.log_every_epochs) == 0:
                logger.info("Epoch %d: train=%.4f, val=%.4f, lr=%.6f, patience=%d",
                            epoch, train_result.avg_loss, val_result.avg_loss, lr, patience)

            if patience >= cfg.early_stopping_patience:
                history.converged = True
                history.early_stop_reason = f"No improvement for {cfg.early_stopping_patience} epochs"
                logger.info("Early stopping at epoch %d: %s", epoch, history.early_stop_reason)
                break

        best_weights.meta.trained_at = datetime.now()
        best_weights.meta.training_samples += sum(len(s) for s in train)
        best_weights.meta.validation_loss = history.best_validation_loss
        self.engine.load_weights(best_weights)
        history.total_training_time = time.perf_counter() - started

        metrics = self.compute_final_metrics(validation, cfg.horizons)
        metrics.final_training_loss = history.epoch_losses[-1] if history.epoch_losses else 0.0

        return EMATrainingResult(
            trained_weights=self.engine.get_weights(),
            history=history,
            metrics=metrics,
            config=cfg,
        )

    def compute_final_metrics(self, sequences: Sequence[TrainingSequence],
                              horizons: Sequence[int]) -> TrainingMetrics:
        """Teacher-forced h-step forecast errors against persistence."""
        metrics = TrainingMetrics()

        for h in horizons:
            actuals = [seq.values[t + h] for seq in sequences for t in range(len(seq) - h)]
            mean_actual = float(np.mean(actuals)) if actuals else 0.0

            abs_err = sq_err = persist_err = sq_actual = 0.0
            count = 0
            for seq in sequences:
                state = self.engine.create_state(seq.values[0], seq.timestamps[0])
                for t in range(len(seq) - h - 1):
                    pred_state = self._rollout(state, h)
                    pred = pred_state.observed_state
                    actual = seq.values[t + h]
                    current = seq.values[t]
                    k = min(len(pred), len(actual))

                    abs_err += float(np.sum(np.abs(pred[:k] - actual[:k])))
                    sq_err += float(np.sum((pred[:k] - actual[:k]) ** 2))
                    persist_err += float(np.sum(np.abs(current[:k] - actual[:k])))
                    sq_actual += float(np.sum((actual[:k] - mean_actual) ** 2))
                    count += k

                    teacher = self.engine.create_state(seq.values[t + 1], seq.timestamps[t + 1])
                    state = replace(teacher, timestep=pred_state.timestep)

            if count > 0:
                metrics.per_horizon_mae[h] = abs_err / count
                metrics.per_horizon_rmse[h] = math.sqrt(sq_err / count)
                metrics.per_horizon_r2[h] = 1.0 - sq_err / (sq_actual or 1.0)
                metrics.per_horizon_persistence[h] = persist_err / count

        if horizons:
            avg_mae = sum(metrics.per_horizon_mae.get(h, 0.0) for h in horizons) / len(horizons)
            avg_persist = sum(metrics.per_horizon_persistence.get(h, 0.0) for h in horizons) / len(horizons)
        else:
            avg_mae = avg_persist = 0.0
        metrics.final_validation_loss = avg_mae
        metrics.improvement_over_persistence = (
            (avg_persist - avg_mae) / avg_persist * 100.0 if avg_persist > 0 else 0.0
        )
        return metrics
