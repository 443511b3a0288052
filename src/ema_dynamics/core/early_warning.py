"""Critical-slowing-down indicators over a history of PLRNN states.

Compares an early and a late window of each latent dimension for rising
lag-1 autocorrelation, rising variance and flickering, plus a network-level
rise in mean absolute cross-correlation between the two halves of the
history. See Scheffer et al. (2009), "Early-warning signals for critical
transitions".
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from ..config.defaults import resolve_labels
from .states import PLRNNState

logger = logging.getLogger(__name__)

# Floor for ratios whose baseline can be exactly zero
EPS = 1e-10

SIGNAL_TYPES = ('autocorrelation', 'variance', 'flickering', 'connectivity')


@dataclass
class EarlyWarningSignal:
    """A detected precursor of an abrupt state transition.

    Attributes
    ----------
    type : str
        One of 'autocorrelation', 'variance', 'flickering', 'connectivity'
    dimension : str
        Dimension label, or 'network' for connectivity
    strength : float
        Relative increase over the early window (flickering: excess crossings)
    estimated_time_to_transition : float or None
        Hours until the expected transition, when estimable
    confidence : float
        Confidence in [0, 1]
    recommendation : str
        Human-readable advice
    """
    type: str
    dimension: str
    strength: float
    estimated_time_to_transition: Optional[float]
    confidence: float
    recommendation: str


def autocorrelation(series) -> float:
    """Lag-1 autocorrelation; 0 for fewer than 3 points or a constant series."""
    x = np.asarray(series, dtype=float)
    if x.size < 3:
        return 0.0
    d = x - x.mean()
    denominator = float(np.sum(d ** 2))
    if denominator <= 0:
        return 0.0
    return float(np.sum(d[:-1] * d[1:]) / denominator)


def variance(series) -> float:
    """Sample variance with n - 1 in the denominator; 0 below 2 points."""
    x = np.asarray(series, dtype=float)
    if x.size < 2:
        return 0.0
    return float(np.var(x, ddof=1))


def flickering(series) -> float:
    """Mean crossings relative to white noise, minus one, floored at 0.

    White noise crosses its mean about (n - 1) / 2 times; a series
    alternating between two regimes crosses more often.
    """
    x = np.asarray(series, dtype=float)
    if x.size < 5:
        return 0.0
    above = x >= x.mean()
    crossings = int(np.sum(above[1:] != above[:-1]))
    expected = (x.size - 1) / 2.0
    return max(0.0, crossings / expected - 1.0)


def correlation(x, y) -> float:
    """Pearson correlation; 0 for fewer than 3 points or zero spread."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.size < 3:
        return 0.0
    dx = x - x.mean()
    dy = y - y.mean()
    denom = np.sqrt(np.sum(dx ** 2) * np.sum(dy ** 2))
    return float(np.sum(dx * dy) / denom) if denom > 0 else 0.0


def mean_abs_correlation(latents: np.ndarray) -> float:
    """Mean |r| over all dimension pairs of a (T, n) latent matrix."""
    n = latents.shape[1]
    values = [abs(correlation(latents[:, i], latents[:, j]))
              for i in range(n) for j in range(i + 1, n)]
    return float(np.mean(values)) if values else 0.0


def estimate_transition_time(ac: float, dt: float = 1.0) -> Optional[float]:
    """Hours to transition, ``min(48, dt / (1 - AC))``, for AC >= 0.7."""
    if ac < 0.7:
        return None
    return float(min(48.0, dt / max(1.0 - ac, EPS)))


def detect_early_warnings(history: Sequence[PLRNNState], window_size: int,
                          dt: float = 1.0,
                          labels: Optional[Sequence[str]] = None,
                          include_connectivity: bool = True) -> List[EarlyWarningSignal]:
    """Scan a state history for early-warning signals.

    Parameters
    ----------
    history : Sequence[PLRNNState]
        Ordered states; the first and last ``window_size`` form the windows
    window_size : int
        Length of the early and late windows
    dt : float
        Hours per step, used for the transition-time estimate
    labels : Sequence[str], optional
        Dimension labels
    include_connectivity : bool
        Whether to test the network-level connectivity rule

    Returns
    -------
    List[EarlyWarningSignal]
        Empty when the history holds fewer than ``2 * window_size`` states
    """
    history = list(history)
    if window_size < 1 or len(history) < 2 * window_size:
        logger.debug("Early warning scan skipped: %d states for window %d", len(history), window_size)
        return []

    latents = np.array([s.latent_state for s in history])
    n = latents.shape[1]
    labels = resolve_labels(labels, n)
    early = latents[:window_size]
    late = latents[-window_size:]
    length_confidence = min(1.0, len(history) / 50.0)

    signals = []
    for dim in range(n):
        label = labels[dim]

        early_ac = autocorrelation(early[:, dim])
        late_ac = autocorrelation(late[:, dim])
        if late_ac > early_ac + 0.1 and late_ac > 0.5:
            signals.append(EarlyWarningSignal(
                type='autocorrelation',
                dimension=label,
                strength=(late_ac - early_ac) / max(1.0 - early_ac, EPS),
                estimated_time_to_transition=estimate_transition_time(late_ac, dt),
                confidence=length_confidence,
                recommendation=(f"Rising autocorrelation in {label} indicates an approaching "
                                "transition. A preventive intervention is advisable."),
            ))

        early_var = variance(early[:, dim])
        late_var = variance(late[:, dim])
        if late_var > early_var * 1.5:
            signals.append(EarlyWarningSignal(
                type='variance',
                dimension=label,
                strength=(late_var - early_var) / max(early_var, EPS),
                estimated_time_to_transition=None,
                confidence=length_confidence,
                recommendation=f"Increasing variability in {label}. The state is becoming less stable.",
            ))

        flicker = flickering(late[:, dim])
        if flicker > 0.3:
            signals.append(EarlyWarningSignal(
                type='flickering',
                dimension=label,
                strength=flicker,
                estimated_time_to_transition=12.0,
                confidence=0.6,
                recommendation=f"Flickering detected in {label}, a sign of switching between states.",
            ))

    if include_connectivity:
        midpoint = len(history) // 2
        early_conn = mean_abs_correlation(latents[:midpoint])
        late_conn = mean_abs_correlation(latents[midpoint:])
        if late_conn > early_conn * 1.3:
            signals.append(EarlyWarningSignal(
                type='connectivity',
                dimension='network',
                strength=(late_conn - early_conn) / max(early_conn, EPS),
                estimated_time_to_transition=None,
                confidence=0.7,
                recommendation=("Coupling between dimensions is strengthening. The system is "
                                "becoming more vulnerable to cascading effects."),
            ))

    return signals
