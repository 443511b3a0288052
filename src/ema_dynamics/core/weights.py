"""Weight containers for the PLRNN and KalmanFormer engines.

Both containers own fixed-shape numpy buffers that are validated against
their configuration on construction, provide an explicit structural
``clone()``, and serialize to nested lists plus a metadata block so that a
JSON round trip reproduces identical predictions.
"""

import json
import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np

from ..config.defaults import KalmanFormerConfig, PLRNNConfig
from .errors import DimensionMismatchError


@dataclass
class WeightsMeta:
    """Training provenance stored alongside the weights."""
    trained_at: datetime = field(default_factory=datetime.now)
    training_samples: int = 0
    validation_loss: float = math.inf

    def clone(self) -> 'WeightsMeta':
        return WeightsMeta(self.trained_at, self.training_samples, self.validation_loss)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trained_at': self.trained_at.isoformat(),
            'training_samples': self.training_samples,
            'validation_loss': self.validation_loss if math.isfinite(self.validation_loss) else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WeightsMeta':
        loss = data.get('validation_loss')
        return cls(
            trained_at=datetime.fromisoformat(data['trained_at']),
            training_samples=int(data.get('training_samples', 0)),
            validation_loss=math.inf if loss is None else float(loss),
        )


def _xavier(rng: np.random.Generator, rows: int, cols: int) -> np.ndarray:
    scale = np.sqrt(2.0 / (rows + cols))
    return (rng.random((rows, cols)) - 0.5) * 2.0 * scale


def _check(arr: np.ndarray, shape, name: str) -> np.ndarray:
    arr = np.array(arr, dtype=float)
    if arr.shape != tuple(shape):
        raise DimensionMismatchError(f"{name} must have shape {tuple(shape)}, got {arr.shape}")
    return arr


def _save(payload: Dict[str, Any], path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2))
    return path


# -----------------------------------------------------------------------------
# PLRNN
# -----------------------------------------------------------------------------

@dataclass
class PLRNNWeights:
    """Parameters of the piecewise-linear recurrent model.

    Attributes
    ----------
    A : np.ndarray, shape (n,)
        Diagonal autoregression
    W : np.ndarray, shape (n, n)
        Off-diagonal coupling applied to relu(z)
    B : np.ndarray, shape (n, n)
        Observation matrix
    C : np.ndarray, shape (n, d)
        Input / dendritic readout; d is ``dendritic_bases`` for dendritic
        connectivity and n otherwise
    bias_latent, bias_observed : np.ndarray, shape (n,)
        Latent and observation biases
    D : Optional[np.ndarray], shape (d, n)
        Dendritic basis weights, only for dendritic connectivity
    config : PLRNNConfig
        Configuration the weights were built for
    meta : WeightsMeta
        Training provenance
    """
    A: np.ndarray
    W: np.ndarray
    B: np.ndarray
    C: np.ndarray
    bias_latent: np.ndarray
    bias_observed: np.ndarray
    config: PLRNNConfig
    D: Optional[np.ndarray] = None
    meta: WeightsMeta = field(default_factory=WeightsMeta)

    def __post_init__(self):
        n = self.config.latent_dim
        d = self.input_dim
        self.A = _check(self.A, (n,), 'A')
        self.W = _check(self.W, (n, n), 'W')
        self.B = _check(self.B, (n, n), 'B')
        self.C = _check(self.C, (n, d), 'C')
        self.bias_latent = _check(self.bias_latent, (n,), 'bias_latent')
        self.bias_observed = _check(self.bias_observed, (n,), 'bias_observed')
        if self.is_dendritic:
            if self.D is None:
                raise DimensionMismatchError("Dendritic connectivity requires D")
            self.D = _check(self.D, (d, n), 'D')
        else:
            self.D = None

    @property
    def is_dendritic(self) -> bool:
        return self.config.connectivity == 'dendritic' and self.config.dendritic_bases > 0

    @property
    def input_dim(self) -> int:
        if self.config.connectivity == 'dendritic' and self.config.dendritic_bases > 0:
            return self.config.dendritic_bases
        return self.config.latent_dim

    @classmethod
    def initialize(cls, config: PLRNNConfig, rng: np.random.Generator) -> 'PLRNNWeights':
        """Draw Xavier-scaled weights with a stable diagonal in [0.8, 0.95]."""
        n = config.latent_dim
        A = rng.uniform(0.8, 0.95, size=n)

        # Sparse coupling: roughly 20% nonzero
        mask = rng.random((n, n)) < 0.2
        W = _xavier(rng, n, n) * mask
        np.fill_diagonal(W, 0.0)

        B = np.eye(n)
        bias_latent = (rng.random(n) - 0.5) * 0.1
        bias_observed = (rng.random(n) - 0.5) * 0.1

        if config.connectivity == 'dendritic' and config.dendritic_bases > 0:
            d = config.dendritic_bases
            C = _xavier(rng, n, d)
            D = _xavier(rng, d, n)
        else:
            C = np.eye(n)
            D = None

        return cls(A=A, W=W, B=B, C=C, bias_latent=bias_latent,
                   bias_observed=bias_observed, config=config, D=D)

    def clone(self) -> 'PLRNNWeights':
        return PLRNNWeights(
            A=self.A.copy(),
            W=self.W.copy(),
            B=self.B.copy(),
            C=self.C.copy(),
            bias_latent=self.bias_latent.copy(),
            bias_observed=self.bias_observed.copy(),
            config=self.config.update(),
            D=None if self.D is None else self.D.copy(),
            meta=self.meta.clone(),
        )

    def parameters(self) -> Dict[str, np.ndarray]:
        """Trainable arrays keyed by name (views, not copies)."""
        params = {
            'A': self.A, 'W': self.W, 'B': self.B, 'C': self.C,
            'bias_latent': self.bias_latent, 'bias_observed': self.bias_observed,
        }
        if self.D is not None:
            params['D'] = self.D
        return params

    def to_dict(self) -> Dict[str, Any]:
        payload = {name: arr.tolist() for name, arr in self.parameters().items()}
        payload['meta'] = self.meta.to_dict()
        payload['meta']['config'] = self.config.to_dict()
        payload['kind'] = 'plrnn'
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PLRNNWeights':
        meta = data['meta']
        config = PLRNNConfig.from_dict(meta['config'])
        return cls(
            A=data['A'], W=data['W'], B=data['B'], C=data['C'],
            bias_latent=data['bias_latent'], bias_observed=data['bias_observed'],
            config=config, D=data.get('D'),
            meta=WeightsMeta.from_dict(meta),
        )

    def save_json(self, path: Union[str, Path]) -> Path:
        return _save(self.to_dict(), path)

    @classmethod
    def load_json(cls, path: Union[str, Path]) -> 'PLRNNWeights':
        return cls.from_dict(json.loads(Path(path).read_text()))


# -----------------------------------------------------------------------------
# KalmanFormer
# -----------------------------------------------------------------------------

@dataclass
class EncoderLayerWeights:
    """One self-attention block: attention, feed-forward and two layer norms."""
    Wq: np.ndarray  # (heads, E, head_dim)
    Wk: np.ndarray
    Wv: np.ndarray
    Wo: np.ndarray  # (E, E)
    W1: np.ndarray  # (E, 4E)
    b1: np.ndarray
    W2: np.ndarray  # (4E, E)
    b2: np.ndarray
    ln1_gamma: np.ndarray
    ln1_beta: np.ndarray
    ln2_gamma: np.ndarray
    ln2_beta: np.ndarray

    FIELDS = ('Wq', 'Wk', 'Wv', 'Wo', 'W1', 'b1', 'W2', 'b2',
              'ln1_gamma', 'ln1_beta', 'ln2_gamma', 'ln2_beta')

    def validate(self, config: KalmanFormerConfig) -> None:
        E, h, hd = config.embed_dim, config.num_heads, config.head_dim
        shapes = {
            'Wq': (h, E, hd), 'Wk': (h, E, hd), 'Wv': (h, E, hd), 'Wo': (E, E),
            'W1': (E, 4 * E), 'b1': (4 * E,), 'W2': (4 * E, E), 'b2': (E,),
            'ln1_gamma': (E,), 'ln1_beta': (E,), 'ln2_gamma': (E,), 'ln2_beta': (E,),
        }
        for name, shape in shapes.items():
            setattr(self, name, _check(getattr(self, name), shape, name))

    @classmethod
    def initialize(cls, config: KalmanFormerConfig, rng: np.random.Generator) -> 'EncoderLayerWeights':
        E, h, hd = config.embed_dim, config.num_heads, config.head_dim
        return cls(
            Wq=np.stack([_xavier(rng, E, hd) for _ in range(h)]),
            Wk=np.stack([_xavier(rng, E, hd) for _ in range(h)]),
            Wv=np.stack([_xavier(rng, E, hd) for _ in range(h)]),
            Wo=_xavier(rng, E, E),
            W1=_xavier(rng, E, 4 * E),
            b1=np.zeros(4 * E),
            W2=_xavier(rng, 4 * E, E),
            b2=np.zeros(E),
            ln1_gamma=np.ones(E), ln1_beta=np.zeros(E),
            ln2_gamma=np.ones(E), ln2_beta=np.zeros(E),
        )

    def clone(self) -> 'EncoderLayerWeights':
        return EncoderLayerWeights(**{name: getattr(self, name).copy() for name in self.FIELDS})

    def to_dict(self) -> Dict[str, List]:
        return {name: getattr(self, name).tolist() for name in self.FIELDS}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EncoderLayerWeights':
        return cls(**{name: np.array(data[name], dtype=float) for name in cls.FIELDS})


def _gain_bias(n: int, m: int) -> np.ndarray:
    """Bias putting the learned gain near 0.5 on the diagonal and near 0 elsewhere."""
    return np.where(np.eye(n, m) > 0, 0.0, -4.0).ravel()


def positional_table(length: int, embed_dim: int) -> np.ndarray:
    """Fixed sinusoidal positional embeddings, shape (length, embed_dim)."""
    pos = np.arange(length)[:, None]
    i = np.arange(embed_dim)[None, :]
    angle = pos / np.power(10000.0, (2 * (i // 2)) / embed_dim)
    return np.where(i % 2 == 0, np.sin(angle), np.cos(angle))


@dataclass
class KalmanFormerWeights:
    """Parameters of the KalmanFormer hybrid.

    Kalman matrices ``F``, ``H``, ``Q``, ``R``; encoder layers; observation
    and positional embeddings; optional learned-gain head; blend head; and
    the readout mapping the current context to a state estimate.
    """
    F: np.ndarray
    H: np.ndarray
    Q: np.ndarray
    R: np.ndarray
    layers: List[EncoderLayerWeights]
    obs_embedding: np.ndarray      # (E, m)
    positional: np.ndarray         # (window, E)
    blend_weights: np.ndarray      # (E,)
    readout: np.ndarray            # (n, E)
    config: KalmanFormerConfig
    blend_bias: float = 0.0
    time_embedding: Optional[np.ndarray] = None   # (E,) for learned time embedding
    gain_weights: Optional[np.ndarray] = None     # (E, n*m)
    gain_bias: Optional[np.ndarray] = None        # (n*m,)
    meta: WeightsMeta = field(default_factory=WeightsMeta)

    def __post_init__(self):
        cfg = self.config
        n, m, E = cfg.state_dim, cfg.obs_dim, cfg.embed_dim
        self.F = _check(self.F, (n, n), 'F')
        self.H = _check(self.H, (m, n), 'H')
        self.Q = _check(self.Q, (n, n), 'Q')
        self.R = _check(self.R, (m, m), 'R')
        if len(self.layers) != cfg.num_layers:
            raise DimensionMismatchError(f"Expected {cfg.num_layers} encoder layers, got {len(self.layers)}")
        for layer in self.layers:
            layer.validate(cfg)
        self.obs_embedding = _check(self.obs_embedding, (E, m), 'obs_embedding')
        self.positional = _check(self.positional, (cfg.context_window, E), 'positional')
        self.blend_weights = _check(self.blend_weights, (E,), 'blend_weights')
        self.readout = _check(self.readout, (n, E), 'readout')
        self.blend_bias = float(self.blend_bias)
        if self.time_embedding is not None:
            self.time_embedding = _check(self.time_embedding, (E,), 'time_embedding')
        if self.gain_weights is not None:
            self.gain_weights = _check(self.gain_weights, (E, n * m), 'gain_weights')
            self.gain_bias = _check(
                np.zeros(n * m) if self.gain_bias is None else self.gain_bias, (n * m,), 'gain_bias'
            )

    @classmethod
    def initialize(cls, config: KalmanFormerConfig, rng: np.random.Generator) -> 'KalmanFormerWeights':
        n, m, E = config.state_dim, config.obs_dim, config.embed_dim
        return cls(
            F=np.eye(n),
            H=np.eye(m, n),
            Q=np.eye(n) * config.process_noise,
            R=np.eye(m) * config.measurement_noise,
            layers=[EncoderLayerWeights.initialize(config, rng) for _ in range(config.num_layers)],
            obs_embedding=_xavier(rng, E, m),
            positional=positional_table(config.context_window, E),
            blend_weights=rng.random(E) * 0.1,
            readout=_xavier(rng, n, E),
            config=config,
            time_embedding=_xavier(rng, 1, E)[0] if config.time_embedding == 'learned' else None,
            gain_weights=_xavier(rng, E, n * m) * 0.1 if config.learned_gain else None,
            gain_bias=_gain_bias(n, m) if config.learned_gain else None,
        )

    def clone(self) -> 'KalmanFormerWeights':
        def _copy(arr):
            return None if arr is None else arr.copy()

        return KalmanFormerWeights(
            F=self.F.copy(), H=self.H.copy(), Q=self.Q.copy(), R=self.R.copy(),
            layers=[layer.clone() for layer in self.layers],
            obs_embedding=self.obs_embedding.copy(),
            positional=self.positional.copy(),
            blend_weights=self.blend_weights.copy(),
            readout=self.readout.copy(),
            config=self.config.update(),
            blend_bias=self.blend_bias,
            time_embedding=_copy(self.time_embedding),
            gain_weights=_copy(self.gain_weights),
            gain_bias=_copy(self.gain_bias),
            meta=self.meta.clone(),
        )

    def parameter_count(self) -> Dict[str, int]:
        kalman = self.F.size + self.H.size + self.Q.size + self.R.size
        transformer = sum(
            sum(getattr(layer, name).size for name in EncoderLayerWeights.FIELDS)
            for layer in self.layers
        )
        embedding = self.obs_embedding.size + self.positional.size
        if self.time_embedding is not None:
            embedding += self.time_embedding.size
        heads = self.blend_weights.size + 1 + self.readout.size
        if self.gain_weights is not None:
            heads += self.gain_weights.size + self.gain_bias.size
        return {
            'kalman': kalman,
            'transformer': transformer,
            'embedding': embedding,
            'heads': heads,
            'total': kalman + transformer + embedding + heads,
        }

    def to_dict(self) -> Dict[str, Any]:
        def _list(arr):
            return None if arr is None else arr.tolist()

        meta = self.meta.to_dict()
        meta['config'] = self.config.to_dict()
        return {
            'kind': 'kalmanformer',
            'F': self.F.tolist(), 'H': self.H.tolist(),
            'Q': self.Q.tolist(), 'R': self.R.tolist(),
            'layers': [layer.to_dict() for layer in self.layers],
            'obs_embedding': self.obs_embedding.tolist(),
            'positional': self.positional.tolist(),
            'blend_weights': self.blend_weights.tolist(),
            'blend_bias': self.blend_bias,
            'readout': self.readout.tolist(),
            'time_embedding': _list(self.time_embedding),
            'gain_weights': _list(self.gain_weights),
            'gain_bias': _list(self.gain_bias),
            'meta': meta,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KalmanFormerWeights':
        config = KalmanFormerConfig.from_dict(data['meta']['config'])
        return cls(
            F=data['F'], H=data['H'], Q=data['Q'], R=data['R'],
            layers=[EncoderLayerWeights.from_dict(layer) for layer in data['layers']],
            obs_embedding=data['obs_embedding'],
            positional=data['positional'],
            blend_weights=data['blend_weights'],
            readout=data['readout'],
            config=config,
            blend_bias=data.get('blend_bias', 0.0),
            time_embedding=data.get('time_embedding'),
            gain_weights=data.get('gain_weights'),
            gain_bias=data.get('gain_bias'),
            meta=WeightsMeta.from_dict(data['meta']),
        )

    def save_json(self, path: Union[str, Path]) -> Path:
        return _save(self.to_dict(), path)

    @classmethod
    def load_json(cls, path: Union[str, Path]) -> 'KalmanFormerWeights':
        return cls.from_dict(json.loads(Path(path).read_text()))
