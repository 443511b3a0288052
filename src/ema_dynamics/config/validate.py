"""Environment validation for ema_dynamics dependencies."""

import importlib
import sys
import warnings
from typing import Dict, List

import numpy as np
from packaging import version

# (import name, minimum version, what it is needed for)
REQUIRED_PACKAGES = [
    ('numpy', '1.25', 'array operations and Generator.spawn'),
    ('scipy', '1.11', 'linear solves'),
    ('pandas', '1.5', 'EMA table I/O'),
]

OPTIONAL_PACKAGES = [
    ('matplotlib', '3.5', 'visualizations'),
    ('seaborn', '0.12', 'heatmaps'),
    ('tqdm', '4.0', 'progress bars'),
    ('yaml', '6.0', 'YAML pipeline configs'),
    ('tomli_w', '1.0', 'writing TOML settings'),
]


def _installed_version(module_name: str):
    try:
        module = importlib.import_module(module_name)
    except ImportError:
        return None
    return getattr(module, '__version__', 'unknown')


def check_environment(min_numpy: str = "1.25", min_scipy: str = "1.11") -> None:
    """Check that environment meets minimum dependency requirements.

    Parameters
    ----------
    min_numpy : str, default="1.25"
        Minimum required NumPy version
    min_scipy : str, default="1.11"
        Minimum required SciPy version

    Raises
    ------
    RuntimeError
        If any dependency requirements are not met

    Examples
    --------
    >>> check_environment()  # Uses default minimums
    """
    errors: List[str] = []

    if sys.version_info < (3, 11):
        errors.append(f"Python 3.11+ required, found {sys.version_info.major}.{sys.version_info.minor}")

    minimums = {'numpy': min_numpy, 'scipy': min_scipy}
    for name, default_min, purpose in REQUIRED_PACKAGES:
        required = minimums.get(name, default_min)
        found = _installed_version(name)
        if found is None:
            errors.append(f"{name} not installed - required for {purpose}")
        elif found != 'unknown' and version.parse(found) < version.parse(required):
            errors.append(f"{name} {required}+ required, found {found}")

    optional_warnings: List[str] = []
    for name, recommended, purpose in OPTIONAL_PACKAGES:
        found = _installed_version(name)
        if found is None:
            optional_warnings.append(f"{name} not found - required for {purpose}")
        elif found != 'unknown' and version.parse(found) < version.parse(recommended):
            optional_warnings.append(f"{name} {recommended}+ recommended, found {found}")

    if errors:
        error_msg = "Environment validation failed:\n" + "\n".join(f"  - {err}" for err in errors)
        if optional_warnings:
            error_msg += "\n\nWarnings:\n" + "\n".join(f"  - {warn}" for warn in optional_warnings)
        error_msg += "\n\nTo install required dependencies:\n  pip install -e ."
        raise RuntimeError(error_msg)

    if optional_warnings:
        warning_msg = "Environment warnings:\n" + "\n".join(f"  - {warn}" for warn in optional_warnings)
        warnings.warn(warning_msg, UserWarning)


def get_dependency_versions() -> Dict[str, str]:
    """Get versions of all relevant dependencies.

    Returns
    -------
    dict
        Dictionary mapping package names to version strings
    """
    versions = {
        'python': f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    }
    for name, _, _ in REQUIRED_PACKAGES + OPTIONAL_PACKAGES:
        found = _installed_version(name)
        versions[name] = found if found is not None else 'not installed'
    versions['packaging'] = _installed_version('packaging') or 'not installed'
    versions['tomllib'] = 'built-in (3.11+)'
    return versions


def format_environment_info() -> str:
    """Human-readable summary of the environment, one package per line."""
    versions = get_dependency_versions()
    lines = ["ema_dynamics - Environment Information", "=" * 50]

    groups = [
        ("Core Dependencies", ['python', 'numpy', 'scipy', 'pandas']),
        ("Visualization", ['matplotlib', 'seaborn']),
        ("Configuration", ['packaging', 'tomllib', 'tomli_w', 'yaml']),
        ("Utilities", ['tqdm']),
    ]
    for title, names in groups:
        lines.append(f"\n{title}:")
        lines.extend(f"  {name:12}: {versions[name]}" for name in names if name in versions)

    lines.append("\nSystem Information:")
    lines.append(f"  Platform     : {sys.platform}")
    lines.append(f"  Architecture : {'64-bit' if sys.maxsize > 2**32 else '32-bit'}")
    return "\n".join(lines)


def validate_numerical_stability(seed: int = 0) -> None:
    """Check that the linear algebra the engines rely on behaves sanely."""
    test_array = np.array([1e-10, 1e10, -1e-10, -1e10])
    if not np.all(np.isfinite(test_array)):
        raise RuntimeError("NumPy numerical stability test failed")

    rng = np.random.default_rng(seed)
    test_matrix = rng.standard_normal((50, 50))
    eigenvals = np.linalg.eigvalsh(test_matrix @ test_matrix.T)
    if not np.all(eigenvals >= -1e-8):
        raise RuntimeError("Matrix operation numerical stability test failed")

    relu = np.maximum(test_matrix, 0.0)
    if relu.min() < 0:
        raise RuntimeError("ReLU stability test failed")
