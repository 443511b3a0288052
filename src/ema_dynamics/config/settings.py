"""Run settings aggregating model, training and data configuration, with TOML support."""

import logging
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import tomli_w

from .defaults import (KalmanFormerConfig, PLRNNConfig, RESEARCH_CONFIGS, TrainingConfig,
                       validate_config)

logger = logging.getLogger(__name__)


@dataclass
class DataConfig:
    """Where the EMA data comes from.

    With ``csv_path`` unset, a synthetic StudentLife-like dataset of the
    given size is generated.
    """
    csv_path: Optional[str] = None
    n_participants: int = 48
    duration_weeks: int = 10
    prompts_per_day: int = 5
    min_observations: int = 20

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DataConfig':
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


_SECTIONS = {
    'plrnn': PLRNNConfig,
    'kalmanformer': KalmanFormerConfig,
    'training': TrainingConfig,
    'data': DataConfig,
}


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    # TOML has no null
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class Settings:
    """Main configuration settings for an ema_dynamics run.

    Can be loaded from TOML files for user customization while providing
    sensible defaults for different research scenarios. Each call to a
    constructor returns an independent instance; nothing is cached at
    module level.
    """

    plrnn: PLRNNConfig = field(default_factory=PLRNNConfig)
    kalmanformer: KalmanFormerConfig = field(default_factory=KalmanFormerConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)
    data: DataConfig = field(default_factory=DataConfig)

    # Reproducibility
    random_seed: Optional[int] = None

    # Output
    output_dir: str = "output"
    figure_dpi: int = 150
    export_formats: List[str] = field(default_factory=lambda: ["png"])
    verbose: bool = False

    def __post_init__(self):
        warnings = self.validate()
        if warnings and self.verbose:
            for warning in warnings:
                logger.warning("Configuration warning: %s", warning)

    def validate(self) -> List[str]:
        return validate_config(self.plrnn, self.kalmanformer, self.training)

    def ensure_output_dir(self) -> Path:
        path = Path(self.output_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path

    @classmethod
    def from_preset(cls, preset: str) -> 'Settings':
        """Create settings from a preset configuration.

        Parameters
        ----------
        preset : str
            Preset name ('default', 'tuned', 'minimal')

        Returns
        -------
        Settings
            Settings object with preset values
        """
        if preset not in RESEARCH_CONFIGS:
            raise ValueError(f"Unknown preset '{preset}'. Available: {list(RESEARCH_CONFIGS.keys())}")

        plrnn, kalmanformer, training = RESEARCH_CONFIGS[preset]
        data = DataConfig(n_participants=4, duration_weeks=2) if preset == 'minimal' else DataConfig()
        return cls(
            plrnn=plrnn.update(),
            kalmanformer=kalmanformer.update(),
            training=training.update(),
            data=data,
        )

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> 'Settings':
        """Build settings from a nested mapping; a ``preset`` key selects the base.

        Keys that are neither sections nor settings fields are ignored, so a
        pipeline configuration can be passed in whole.
        """
        base = cls.from_preset(config_data['preset']) if 'preset' in config_data else cls()
        names = {f.name for f in fields(cls)}
        updates = {}
        for name, section in _SECTIONS.items():
            if config_data.get(name):
                current = getattr(base, name).to_dict()
                current.update(config_data[name])
                updates[name] = section.from_dict(current)
        for key, value in config_data.items():
            if key in names and key not in _SECTIONS:
                updates[key] = value
        return base.update(**updates)

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name).to_dict() for name in _SECTIONS}
        data.update({
            'random_seed': self.random_seed,
            'output_dir': self.output_dir,
            'figure_dpi': self.figure_dpi,
            'export_formats': list(self.export_formats),
            'verbose': self.verbose,
        })
        return data

    @classmethod
    def from_toml(cls, toml_path: Union[str, Path]) -> 'Settings':
        """Load settings from TOML file.

        Parameters
        ----------
        toml_path : Union[str, Path]
            Path to TOML configuration file

        Returns
        -------
        Settings
            Settings object with values from TOML file

        Raises
        ------
        FileNotFoundError
            If TOML file doesn't exist
        """
        toml_path = Path(toml_path)
        if not toml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {toml_path}")

        with open(toml_path, 'rb') as f:
            config_data = tomllib.load(f)
        return cls.from_dict(config_data)

    def to_toml(self, toml_path: Union[str, Path]) -> None:
        """Save settings to TOML file, one table per configuration section."""
        data = self.to_dict()
        config_data = _drop_none({k: v for k, v in data.items() if k not in _SECTIONS})
        for name in _SECTIONS:
            config_data[name] = _drop_none(data[name])

        toml_path = Path(toml_path)
        toml_path.parent.mkdir(parents=True, exist_ok=True)
        with open(toml_path, 'wb') as f:
            tomli_w.dump(config_data, f)

    def update(self, **kwargs) -> 'Settings':
        """Create new Settings with updated values.

        Parameters
        ----------
        **kwargs
            Settings fields to update

        Returns
        -------
        Settings
            New Settings object with updated values
        """
        names = {f.name for f in fields(self)}
        unknown = set(kwargs) - names
        if unknown:
            raise ValueError(f"Unknown settings fields: {sorted(unknown)}")
        current = {name: getattr(self, name) for name in names}
        current.update(kwargs)
        return Settings(**current)


def load_settings(path: Optional[Union[str, Path]] = None,
                  preset: Optional[str] = None) -> Settings:
    """Return a new Settings from a TOML file, a preset, or the defaults."""
    if path is not None:
        return Settings.from_toml(path)
    if preset is not None:
        return Settings.from_preset(preset)
    return Settings()
