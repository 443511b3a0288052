"""Exception and warning types raised by the forecasting engines."""

from typing import Sequence


class EMADynamicsError(Exception):
    """Base class for all errors raised by ema_dynamics."""


class UninitializedModelError(EMADynamicsError, RuntimeError):
    """Raised when an engine is used before ``initialize()`` or ``load_weights()``."""

    def __init__(self, engine: str):
        super().__init__(f"{engine} not initialized. Call initialize() or load_weights() first.")
        self.engine = engine


class UnknownDimensionError(EMADynamicsError, KeyError):
    """Raised when a dimension label is not part of the configured label set.

    Parameters
    ----------
    label : str
        The requested label
    known : Sequence[str]
        Labels the engine was configured with
    """

    def __init__(self, label: str, known: Sequence[str]):
        super().__init__(label)
        self.label = label
        self.known = list(known)

    def __str__(self) -> str:
        return f"Unknown dimension '{self.label}'. Available: {self.known}"


class DimensionMismatchError(EMADynamicsError, ValueError):
    """Raised when an array does not have the shape an operation requires."""


class NumericalDegeneracyWarning(RuntimeWarning):
    """Emitted when a singular or vanishing computation falls back to a default."""
