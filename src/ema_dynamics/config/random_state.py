"""Seedable random generators for reproducible initialization and training.

Every engine, trainer and data generator receives its own
``np.random.Generator``; nothing in the package draws from global random
state.
"""

import hashlib
import os
from typing import List, Optional, Union

import numpy as np

SEED_ENV_VAR = 'EMA_DYNAMICS_SEED'
DEFAULT_SEED = 42

RandomLike = Union[None, int, np.random.Generator]


def make_rng(seed: RandomLike = None) -> np.random.Generator:
    """Create a random generator.

    Parameters
    ----------
    seed : None, int or np.random.Generator
        ``None`` uses :func:`get_environment_seed`; an int seeds a new
        PCG64 generator; an existing generator is returned unchanged

    Returns
    -------
    np.random.Generator

    Examples
    --------
    >>> rng = make_rng(42)
    >>> make_rng(rng) is rng
    True
    """
    if isinstance(seed, np.random.Generator):
        return seed
    if seed is None:
        seed = get_environment_seed()
    return np.random.default_rng(int(seed))


def spawn_rngs(rng: np.random.Generator, n: int) -> List[np.random.Generator]:
    """Derive ``n`` independent child generators from ``rng``."""
    return list(rng.spawn(n))


def create_deterministic_seed(base_string: str) -> int:
    """Create a deterministic seed from a string.

    Useful for deriving per-participant or per-experiment seeds from
    identifiers.

    Parameters
    ----------
    base_string : str
        String to hash for seed generation

    Returns
    -------
    int
        Deterministic seed value
    """
    hash_hex = hashlib.sha256(base_string.encode()).hexdigest()
    return int(hash_hex[:8], 16) % (2**31 - 1)


def get_environment_seed(default: Optional[int] = DEFAULT_SEED) -> int:
    """Get seed from the ``EMA_DYNAMICS_SEED`` environment variable if set.

    Non-integer values are hashed with :func:`create_deterministic_seed`.
    """
    env_seed = os.environ.get(SEED_ENV_VAR)

    if env_seed:
        try:
            return int(env_seed)
        except ValueError:
            return create_deterministic_seed(env_seed)

    return default
