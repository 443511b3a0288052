"""Gradient accumulation and Adam updates over named parameter arrays."""

from dataclasses import dataclass, field
from typing import Dict, Mapping

import numpy as np


@dataclass
class GradientAccumulator:
    """Running sums of named gradients with a sample counter."""
    sums: Dict[str, np.ndarray] = field(default_factory=dict)
    count: int = 0

    def add(self, gradients: Mapping[str, np.ndarray]) -> None:
        for name, grad in gradients.items():
            if name in self.sums:
                self.sums[name] += grad
            else:
                self.sums[name] = np.array(grad, dtype=float)
        self.count += 1

    def average(self) -> Dict[str, np.ndarray]:
        if self.count == 0:
            return {}
        return {name: total / self.count for name, total in self.sums.items()}

    def reset(self) -> None:
        self.sums.clear()
        self.count = 0


@dataclass
class AdamOptimizer:
    """Adam with bias correction (Kingma & Ba, 2015).

    Moments are created lazily per parameter name and the step counter is
    global, advanced once per :meth:`step` call.
    """
    beta1: float = 0.9
    beta2: float = 0.999
    epsilon: float = 1e-8
    m: Dict[str, np.ndarray] = field(default_factory=dict)
    v: Dict[str, np.ndarray] = field(default_factory=dict)
    t: int = 0

    def step(self, params: Mapping[str, np.ndarray], grads: Mapping[str, np.ndarray],
             learning_rate: float) -> None:
        """Update ``params`` in place from ``grads``; names absent from either are skipped."""
        self.t += 1
        correction1 = 1.0 - self.beta1 ** self.t
        correction2 = 1.0 - self.beta2 ** self.t

        for name, grad in grads.items():
            if name not in params:
                continue
            param = params[name]
            m = self.m.setdefault(name, np.zeros_like(param))
            v = self.v.setdefault(name, np.zeros_like(param))

            m *= self.beta1
            m += (1.0 - self.beta1) * grad
            v *= self.beta2
            v += (1.0 - self.beta2) * grad ** 2

            m_hat = m / correction1
            v_hat = v / correction2
            param -= learning_rate * m_hat / (np.sqrt(v_hat) + self.epsilon)

    def reset(self) -> None:
        self.m.clear()
        self.v.clear()
        self.t = 0
