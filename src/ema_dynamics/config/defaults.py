"""Default configuration parameters for the forecasting engines and trainer."""

from dataclasses import dataclass, field, fields, asdict
from typing import List, Dict, Any, Optional

# Default labels for the five affective state dimensions
STATE_DIMENSIONS = ['valence', 'arousal', 'dominance', 'risk', 'resources']

# Labels produced by the synthetic StudentLife-like generator
EMA_DIMENSIONS = ['valence', 'arousal', 'stress']


def resolve_labels(labels: Optional[List[str]], n: int) -> List[str]:
    """Return exactly ``n`` labels, padding with ``dim_<i>`` names."""
    labels = list(labels or STATE_DIMENSIONS)[:n]
    return labels + [f"dim_{i}" for i in range(len(labels), n)]


class _ConfigMixin:
    """Dictionary conversion shared by the configuration dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Build from a mapping, ignoring keys that are not fields."""
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})

    def update(self, **kwargs):
        current = self.to_dict()
        unknown = set(kwargs) - set(current)
        if unknown:
            raise ValueError(f"Unknown {type(self).__name__} fields: {sorted(unknown)}")
        current.update(kwargs)
        return type(self).from_dict(current)


@dataclass
class PLRNNConfig(_ConfigMixin):
    """Configuration of the piecewise-linear recurrent dynamics model.

    Attributes
    ----------
    latent_dim : int
        Number of latent (and observed) state dimensions
    connectivity : str
        'dendritic' adds C·relu(D·z) to the transition, 'full' and 'sparse'
        use only the W·relu(z) term
    dendritic_bases : int
        Number of dendritic basis functions (columns of C)
    dt : float
        Hours advanced by one forward step
    state_clamp : float
        Component-wise clamp applied to latent and observed states
    dimension_labels : List[str]
        Names of the state dimensions, in order
    """
    latent_dim: int = 5
    connectivity: str = "dendritic"
    dendritic_bases: int = 8
    learning_rate: float = 0.001
    teacher_forcing_ratio: float = 0.5
    l1_regularization: float = 0.01
    l2_regularization: float = 1e-4
    gradient_clip: float = 1.0
    dt: float = 1.0
    state_clamp: float = 10.0
    dimension_labels: List[str] = field(default_factory=lambda: list(STATE_DIMENSIONS))

    def __post_init__(self):
        if self.latent_dim < 1:
            raise ValueError(f"latent_dim must be positive, got {self.latent_dim}")
        if self.connectivity not in CONNECTIVITY_TYPES:
            raise ValueError(
                f"Unknown connectivity '{self.connectivity}'. Available: {CONNECTIVITY_TYPES}"
            )
        if self.dt <= 0:
            raise ValueError(f"dt must be positive, got {self.dt}")
        self.dimension_labels = resolve_labels(self.dimension_labels, self.latent_dim)


@dataclass
class KalmanFormerConfig(_ConfigMixin):
    """Configuration of the Kalman filter + attention encoder hybrid."""
    state_dim: int = 5
    obs_dim: int = 5
    embed_dim: int = 64
    num_heads: int = 4
    num_layers: int = 2
    context_window: int = 24
    dropout: float = 0.1
    blend_ratio: float = 0.5
    learned_gain: bool = True
    temperature: float = 1.0
    time_embedding: str = "sinusoidal"
    max_time_gap: float = 48.0
    process_noise: float = 0.01
    measurement_noise: float = 0.1
    readout_ridge: float = 1e-2
    state_clamp: float = 10.0
    dimension_labels: List[str] = field(default_factory=lambda: list(STATE_DIMENSIONS))

    def __post_init__(self):
        if self.embed_dim % self.num_heads != 0:
            raise ValueError(
                f"embed_dim ({self.embed_dim}) must be divisible by num_heads ({self.num_heads})"
            )
        if self.time_embedding not in TIME_EMBEDDINGS:
            raise ValueError(
                f"Unknown time_embedding '{self.time_embedding}'. Available: {TIME_EMBEDDINGS}"
            )
        if self.temperature <= 0:
            raise ValueError(f"temperature must be positive, got {self.temperature}")
        if self.context_window < 1:
            raise ValueError(f"context_window must be positive, got {self.context_window}")
        self.dimension_labels = resolve_labels(self.dimension_labels, self.state_dim)

    @property
    def head_dim(self) -> int:
        return self.embed_dim // self.num_heads


@dataclass
class TrainingConfig(_ConfigMixin):
    """Configuration of truncated-BPTT training on EMA sequences."""
    # BPTT
    bptt_truncation_window: int = 20
    bptt_overlap_steps: int = 5

    # Epochs
    epochs: int = 100

    # Train/validation split
    validation_split: float = 0.2
    shuffle_data: bool = True

    # Early stopping
    early_stopping_patience: int = 15
    early_stopping_min_delta: float = 0.001

    # Learning rate
    learning_rate: float = 0.001
    lr_schedule: str = "cosine"
    lr_decay_factor: float = 0.5
    lr_decay_steps: int = 30
    lr_min: float = 1e-6

    # Multi-horizon loss
    horizons: List[int] = field(default_factory=lambda: [1, 3, 6, 12])
    horizon_weights: List[float] = field(default_factory=lambda: [1.0, 0.5, 0.25, 0.125])

    # EMA-specific preprocessing
    handle_irregular_sampling: bool = True
    per_participant_normalization: bool = True
    target_interval_hours: float = 4.0

    # Regularization
    l1_regularization: float = 0.01
    l2_regularization: float = 1e-4
    gradient_clip: float = 1.0

    # Teacher forcing
    teacher_forcing_ratio: float = 0.5
    teacher_forcing_decay: float = 0.98

    # Logging
    log_every_epochs: int = 10
    verbose: bool = False

    def __post_init__(self):
        if self.lr_schedule not in LR_SCHEDULES:
            raise ValueError(f"Unknown lr_schedule '{self.lr_schedule}'. Available: {LR_SCHEDULES}")
        if self.bptt_truncation_window < 1:
            raise ValueError("bptt_truncation_window must be positive")
        if not 0 <= self.bptt_overlap_steps < self.bptt_truncation_window:
            raise ValueError(
                "bptt_overlap_steps must be in [0, bptt_truncation_window), "
                f"got {self.bptt_overlap_steps}"
            )
        if not 0.0 <= self.validation_split < 1.0:
            raise ValueError(f"validation_split must be in [0, 1), got {self.validation_split}")


# Learning-rate schedules understood by the trainer
LR_SCHEDULES = ["constant", "step", "exponential", "cosine"]

# PLRNN connectivity patterns
CONNECTIVITY_TYPES = ["dendritic", "full", "sparse"]

# Time embeddings for the attention encoder
TIME_EMBEDDINGS = ["sinusoidal", "learned", "none"]


DEFAULT_TRAINING_CONFIG = TrainingConfig()

# Tuned for short, noisy EMA sequences
TUNED_TRAINING_CONFIG = TrainingConfig(
    bptt_truncation_window=30,
    bptt_overlap_steps=10,
    epochs=200,
    early_stopping_patience=25,
    early_stopping_min_delta=1e-4,
    learning_rate=5e-4,
    lr_schedule="cosine",
    lr_decay_steps=50,
    lr_min=1e-7,
    horizons=[1, 2, 4, 8],
    horizon_weights=[1.0, 0.7, 0.4, 0.2],
    l1_regularization=0.001,
    gradient_clip=0.5,
    teacher_forcing_ratio=0.9,
    teacher_forcing_decay=0.995,
    log_every_epochs=5,
)

# Fast settings for smoke tests and examples
MINIMAL_TRAINING_CONFIG = TrainingConfig(
    bptt_truncation_window=10,
    bptt_overlap_steps=2,
    epochs=5,
    early_stopping_patience=3,
    horizons=[1, 3],
    horizon_weights=[1.0, 0.5],
    log_every_epochs=1,
)

# Research scenario presets: (PLRNN, KalmanFormer, training)
RESEARCH_CONFIGS = {
    "default": (PLRNNConfig(), KalmanFormerConfig(), DEFAULT_TRAINING_CONFIG),
    "tuned": (PLRNNConfig(), KalmanFormerConfig(), TUNED_TRAINING_CONFIG),
    "minimal": (
        PLRNNConfig(latent_dim=3, dendritic_bases=4, dimension_labels=list(EMA_DIMENSIONS)),
        KalmanFormerConfig(state_dim=3, obs_dim=3, embed_dim=16, num_heads=2,
                           num_layers=1, context_window=12,
                           dimension_labels=list(EMA_DIMENSIONS)),
        MINIMAL_TRAINING_CONFIG,
    ),
}

# Practical limits for the hand-derived architectures
MAX_STATE_DIM = 8
MAX_EMBED_DIM = 128


def validate_config(plrnn: PLRNNConfig,
                    kalmanformer: Optional[KalmanFormerConfig] = None,
                    training: Optional[TrainingConfig] = None) -> List[str]:
    """Validate configuration parameters and return list of warnings."""
    warnings = []

    if plrnn.latent_dim > MAX_STATE_DIM:
        warnings.append(f"latent_dim {plrnn.latent_dim} exceeds recommended maximum {MAX_STATE_DIM}")

    if plrnn.state_clamp <= 0:
        warnings.append(f"state_clamp {plrnn.state_clamp} disables the state range")

    if kalmanformer is not None:
        if kalmanformer.embed_dim > MAX_EMBED_DIM:
            warnings.append(f"embed_dim {kalmanformer.embed_dim} exceeds recommended maximum {MAX_EMBED_DIM}")
        if kalmanformer.state_dim != plrnn.latent_dim:
            warnings.append(
                f"KalmanFormer state_dim {kalmanformer.state_dim} differs from PLRNN latent_dim {plrnn.latent_dim}"
            )
        if not 0.2 <= kalmanformer.blend_ratio <= 0.8:
            warnings.append(f"blend_ratio {kalmanformer.blend_ratio} outside adaptive range [0.2, 0.8]")

    if training is not None:
        if len(training.horizons) != len(training.horizon_weights):
            warnings.append(
                f"{len(training.horizons)} horizons but {len(training.horizon_weights)} horizon weights"
            )
        if training.teacher_forcing_ratio > 1 or training.teacher_forcing_ratio < 0:
            warnings.append(f"teacher_forcing_ratio {training.teacher_forcing_ratio} outside [0, 1]")
        if training.learning_rate < training.lr_min:
            warnings.append("learning_rate is below lr_min")

    return warnings
