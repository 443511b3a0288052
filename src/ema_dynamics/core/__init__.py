"""Core algorithms for hybrid affective-state forecasting.

This module contains the fundamental components:
- PLRNN dynamics, forecasting, interventions and online learning
- KalmanFormer filtering with attention-based correction
- Truncated-BPTT training on EMA sequences
- Causal network extraction and early-warning detection
"""

from .errors import (
    EMADynamicsError,
    UninitializedModelError,
    UnknownDimensionError,
    DimensionMismatchError,
    NumericalDegeneracyWarning,
)
from .states import (
    PLRNNState,
    KalmanFilterState,
    KalmanFormerState,
    HistoryEntry,
    ConfidenceInterval,
    to_plrnn_state,
    from_plrnn_state,
)
from .weights import PLRNNWeights, KalmanFormerWeights, WeightsMeta
from .kalman import KalmanFilter
from .sequence_encoder import SequenceEncoder, EncoderOutput
from .causal import CausalNetwork, CausalNode, CausalEdge, extract_causal_network
from .early_warning import EarlyWarningSignal, detect_early_warnings
from .optim import AdamOptimizer, GradientAccumulator
from .plrnn import (
    PLRNNEngine,
    PLRNNPrediction,
    InterventionTarget,
    InterventionSimulation,
    PLRNNTrainingSample,
    PLRNNTrainingResult,
)
from .kalmanformer import (
    KalmanFormerEngine,
    KalmanFormerPrediction,
    KalmanFormerTrainingSample,
    AttentionExplanation,
)
from .trainer import PLRNNTrainer, TrainingSequence, EMATrainingResult, TrainingMetrics

__all__ = [
    # Errors
    'EMADynamicsError',
    'UninitializedModelError',
    'UnknownDimensionError',
    'DimensionMismatchError',
    'NumericalDegeneracyWarning',

    # States and weights
    'PLRNNState',
    'KalmanFilterState',
    'KalmanFormerState',
    'HistoryEntry',
    'ConfidenceInterval',
    'to_plrnn_state',
    'from_plrnn_state',
    'PLRNNWeights',
    'KalmanFormerWeights',
    'WeightsMeta',

    # Filtering and encoding
    'KalmanFilter',
    'SequenceEncoder',
    'EncoderOutput',

    # Interpretation
    'CausalNetwork',
    'CausalNode',
    'CausalEdge',
    'extract_causal_network',
    'EarlyWarningSignal',
    'detect_early_warnings',

    # Engines
    'PLRNNEngine',
    'PLRNNPrediction',
    'InterventionTarget',
    'InterventionSimulation',
    'PLRNNTrainingSample',
    'PLRNNTrainingResult',
    'KalmanFormerEngine',
    'KalmanFormerPrediction',
    'KalmanFormerTrainingSample',
    'AttentionExplanation',

    # Training
    'AdamOptimizer',
    'GradientAccumulator',
    'PLRNNTrainer',
    'TrainingSequence',
    'EMATrainingResult',
    'TrainingMetrics',
]
