"""Multi-head self-attention encoder over a bounded observation window."""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Sequence

import numpy as np

from . import linalg
from .states import HistoryEntry
from .weights import EncoderLayerWeights, KalmanFormerWeights

LAYER_NORM_EPS = 1e-5


@dataclass
class EncoderOutput:
    """Encoded window.

    Attributes
    ----------
    hidden : np.ndarray, shape (L, E)
        Per-position context vectors; the last row is the current context
    attention : List[np.ndarray]
        Head-averaged attention matrix (L, L) for each layer
    """
    hidden: np.ndarray
    attention: List[np.ndarray]

    @property
    def current(self) -> np.ndarray:
        return self.hidden[-1]


def layer_norm(x: np.ndarray, gamma: np.ndarray, beta: np.ndarray) -> np.ndarray:
    mean = x.mean(axis=-1, keepdims=True)
    var = x.var(axis=-1, keepdims=True)
    return (x - mean) / np.sqrt(var + LAYER_NORM_EPS) * gamma + beta


class SequenceEncoder:
    """Transformer-style encoder reading weights from a KalmanFormerWeights.

    Each history entry is embedded as ``Wobs·obs + time(hour, day_of_week)``
    (cached on the entry) and receives its positional embedding when the
    window is encoded, so positions always match the entry's place in the
    current window.
    """

    def __init__(self, weights: KalmanFormerWeights):
        self.weights = weights
        self.config = weights.config

    def time_features(self, timestamp: datetime) -> np.ndarray:
        E = self.config.embed_dim
        if self.config.time_embedding == 'none':
            return np.zeros(E)

        hour = timestamp.hour + timestamp.minute / 60.0
        if self.config.time_embedding == 'learned':
            return self.weights.time_embedding * (hour / 24.0)

        day_of_week = timestamp.isoweekday() % 7  # Sunday = 0
        features = np.zeros(E)
        for i in range(0, E, 2):
            freq = 10000.0 ** (i / E)
            features[i] = np.sin(hour * 2 * np.pi / 24.0 / freq)
            if i + 1 < E:
                features[i + 1] = np.cos(day_of_week * 2 * np.pi / 7.0 / freq)
        return features

    def embed_observation(self, observation, timestamp: datetime) -> np.ndarray:
        """Position-free embedding of one observation."""
        obs = linalg.as_vector(observation, self.config.obs_dim, name="observation")
        return self.weights.obs_embedding @ obs + self.time_features(timestamp)

    def embed(self, observation, timestamp: datetime, position: int) -> np.ndarray:
        """Full embedding including the positional term for ``position``."""
        pos = self.weights.positional[position % self.config.context_window]
        return self.embed_observation(observation, timestamp) + pos

    def make_entry(self, observation, timestamp: datetime) -> HistoryEntry:
        return HistoryEntry(observation, timestamp, self.embed_observation(observation, timestamp))

    def window_embeddings(self, history: Sequence[HistoryEntry]) -> np.ndarray:
        """Stack embeddings of the last ``context_window`` entries with positions."""
        window = list(history)[-self.config.context_window:]
        rows = []
        for position, entry in enumerate(window):
            base = entry.embedding
            if base is None:
                base = self.embed_observation(entry.observation, entry.timestamp)
            rows.append(base + self.weights.positional[position])
        return np.array(rows, dtype=float).reshape(len(rows), self.config.embed_dim)

    def _attention(self, x: np.ndarray, layer: EncoderLayerWeights):
        heads = []
        maps = []
        scale = np.sqrt(self.config.head_dim) * self.config.temperature
        for h in range(self.config.num_heads):
            Q = x @ layer.Wq[h]
            K = x @ layer.Wk[h]
            V = x @ layer.Wv[h]
            probs = linalg.softmax_rows(Q @ K.T / scale)
            heads.append(probs @ V)
            maps.append(probs)
        attended = np.concatenate(heads, axis=1) @ layer.Wo
        return attended, np.mean(maps, axis=0)

    def encode(self, embeddings: np.ndarray) -> EncoderOutput:
        """Run all encoder layers over a (L, E) embedding matrix."""
        x = np.array(embeddings, dtype=float)
        if x.size == 0:
            return EncoderOutput(hidden=np.zeros((1, self.config.embed_dim)), attention=[])

        attention = []
        for layer in self.weights.layers:
            attended, probs = self._attention(x, layer)
            x = layer_norm(x + attended, layer.ln1_gamma, layer.ln1_beta)

            ff = np.maximum(x @ layer.W1 + layer.b1, 0.0) @ layer.W2 + layer.b2
            x = layer_norm(x + ff, layer.ln2_gamma, layer.ln2_beta)
            attention.append(probs)

        return EncoderOutput(hidden=x, attention=attention)

    def encode_history(self, history: Sequence[HistoryEntry]) -> EncoderOutput:
        return self.encode(self.window_embeddings(history))
