from __future__ import annotations

"""High-level orchestration for the ema_dynamics forecasting pipeline.

This module bundles together data generation (or CSV loading), PLRNN
training, per-participant forecasting and diagnostics, visualization and
result archiving into a single *headless* entry-point so that external
scripts (`cli.py`, notebooks) can trigger complete runs without knowing
internal details.

Run configuration (JSON or YAML)::

    experiment_id: demo
    preset: minimal            # optional base preset
    random_seed: 42
    data: {n_participants: 4, duration_weeks: 2}   # or {csv_path: ...}
    plrnn: {...}               # PLRNNConfig overrides
    training: {...}            # TrainingConfig overrides
    forecast: {horizons: [short, medium, long], intervention: {...}}
    archive_root: results
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import json
import logging
import subprocess
import sys
import tempfile
from datetime import datetime

import numpy as np
import pandas as pd
from tqdm import tqdm

from ema_dynamics.config import Settings, make_rng, spawn_rngs
from ema_dynamics.core import (EMATrainingResult, KalmanFormerEngine, KalmanFormerTrainingSample,
                               PLRNNEngine, PLRNNTrainer, TrainingSequence)
from ema_dynamics.core.plrnn import HYBRID_HORIZONS
from ema_dynamics.data import EMADataset, generate_synthetic_ema, load_ema_csv, save_ema_csv
from ema_dynamics.viz import (
    plot_causal_network,
    plot_forecast,
    plot_horizon_metrics,
    plot_training_history,
    save_figure,
)
from result_archiving import stash_artifact, stage_for

logger = logging.getLogger(__name__)

_DEFAULT_LOG_DIR = Path("logs")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Early-warning window over the tail of each participant's sequence
EARLY_WARNING_WINDOW = 10


def load_run_config(config_path: Path | str) -> Dict[str, Any]:
    """Load a JSON or YAML run configuration.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file extension is unsupported.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".json":
        return json.loads(path.read_text())
    if suffix in {".yml", ".yaml"}:
        import yaml

        return yaml.safe_load(path.read_text()) or {}
    raise ValueError(f"Unsupported config type: {path.suffix}")


def _setup_logging(experiment_id: str,
                   log_dir: Path = _DEFAULT_LOG_DIR) -> Tuple[Path, logging.Handler]:
    """Attach a file handler for this run; return the log path and the handler."""
    log_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = log_dir / f"pipeline_{experiment_id}_{ts}.log"

    root = logging.getLogger()
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root.handlers):
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(console)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)
    if root.level == logging.NOTSET or root.level > logging.INFO:
        root.setLevel(logging.INFO)
    logger.debug("Logging initialised – file: %s", log_path)
    return log_path, file_handler


def _get_git_revision() -> str:
    try:
        return (
            subprocess.check_output(["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL)
            .decode()
            .strip()
        )
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def _write_json(path: Path, payload: Any) -> Path:
    path.write_text(json.dumps(payload, indent=2, default=_to_serializable))
    return path


def _to_serializable(obj):
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Not JSON serializable: {type(obj).__name__}")


# -----------------------------------------------------------------------------
# Stages
# -----------------------------------------------------------------------------

def load_dataset(settings: Settings, rng: np.random.Generator) -> EMADataset:
    """Load the configured CSV or generate a synthetic dataset."""
    data_cfg = settings.data
    if data_cfg.csv_path:
        logger.info("Loading EMA data from %s", data_cfg.csv_path)
        dataset = load_ema_csv(data_cfg.csv_path)
    else:
        logger.info("Generating synthetic EMA data – %d participants, %d weeks",
                    data_cfg.n_participants, data_cfg.duration_weeks)
        dataset = generate_synthetic_ema(
            n_participants=data_cfg.n_participants,
            duration_weeks=data_cfg.duration_weeks,
            prompts_per_day=data_cfg.prompts_per_day,
            rng=rng,
        )

    kept = [p for p in dataset.participants if len(p.observations) >= data_cfg.min_observations]
    if len(kept) < len(dataset.participants):
        logger.info("Dropped %d participants with fewer than %d observations",
                    len(dataset.participants) - len(kept), data_cfg.min_observations)
    return EMADataset(participants=kept, source=dataset.source, dimensions=dataset.dimensions)


def train_model(settings: Settings, dataset: EMADataset,
                rng: np.random.Generator) -> Tuple[PLRNNEngine, PLRNNTrainer, EMATrainingResult]:
    """Fit a PLRNN sized to the dataset's dimensions.

    The KalmanFormer used for short horizons is sized the same way and its
    readout is fitted on the prepared training sequences.
    """
    n = len(dataset.dimensions)
    labels = list(dataset.dimensions)
    plrnn_cfg = settings.plrnn.update(latent_dim=n, dimension_labels=labels)
    kf_cfg = settings.kalmanformer.update(state_dim=n, obs_dim=n, dimension_labels=labels)

    engine_rng, trainer_rng, kf_rng = spawn_rngs(rng, 3)
    kalmanformer = KalmanFormerEngine(kf_cfg, rng=kf_rng)
    engine = PLRNNEngine(plrnn_cfg, rng=engine_rng, kalmanformer=kalmanformer)
    engine.initialize()
    trainer = PLRNNTrainer(engine, settings.training, rng=trainer_rng)
    result = trainer.train_on_ema_data(dataset)

    sequences = trainer.prepare_training_data(dataset)
    report = kalmanformer.train([KalmanFormerTrainingSample(s.values, s.timestamps) for s in sequences])
    logger.info("KalmanFormer readout fitted – pre-fit loss %.4f over %d steps",
                report.loss, report.samples)
    return engine, trainer, result


def analyse_sequence(engine: PLRNNEngine, sequence: TrainingSequence,
                     horizons: List[str]) -> Dict[str, Any]:
    """Hybrid forecasts, early warnings and causal network for one participant."""
    state = engine.create_state(sequence.values[-1], sequence.timestamps[-1])

    forecasts = {label: engine.hybrid_predict(state, label) for label in horizons}

    history = [engine.create_state(v, ts) for v, ts in zip(sequence.values, sequence.timestamps)]
    window = min(EARLY_WARNING_WINDOW, len(history) // 2)
    signals = engine.detect_early_warnings(history, window) if window > 0 else []

    return {
        "participant_id": sequence.participant_id,
        "state": state,
        "forecasts": forecasts,
        "early_warnings": signals,
        "network": engine.extract_causal_network(state),
    }


def _forecast_rows(analysis: Dict[str, Any], labels: List[str]) -> List[Dict[str, Any]]:
    rows = []
    for horizon, prediction in analysis["forecasts"].items():
        ci = prediction.confidence_interval
        for i, label in enumerate(labels):
            rows.append({
                "participant_id": analysis["participant_id"],
                "horizon": horizon,
                "steps": HYBRID_HORIZONS[horizon],
                "dimension": label,
                "mean": float(prediction.mean_prediction[i]),
                "lower": float(ci.lower[i]),
                "upper": float(ci.upper[i]),
            })
    return rows


# -----------------------------------------------------------------------------
# Public API – imported by ``cli.py`` and other scripts.
# -----------------------------------------------------------------------------

def run_pipeline(config: Dict[str, Any] | str | Path) -> bool:  # noqa: D401
    """Run the ema_dynamics analysis pipeline.

    The pipeline consists of five stages: data, training, forecasting,
    visualisation and archiving. Recoverable errors in each stage are
    logged; processing continues with later stages where possible.

    Parameters
    ----------
    config
        Either a path to a YAML/JSON configuration file **or** an already
        parsed dictionary.

    Returns
    -------
    bool
        ``True`` if data loading and training completed, otherwise ``False``.

    Examples
    --------
    >>> from research_pipeline import run_pipeline
    >>> run_pipeline({'preset': 'minimal', 'random_seed': 1})
    True
    """
    if isinstance(config, (str, Path)):
        try:
            cfg: Dict[str, Any] = load_run_config(Path(config))
        except (OSError, ValueError) as exc:
            logger.error("Failed to load configuration: %s", exc)
            return False
    else:
        cfg = dict(config)

    experiment_id = str(cfg.get("experiment_id", "exp"))
    log_path, file_handler = _setup_logging(experiment_id,
                                            Path(cfg.get("log_dir", _DEFAULT_LOG_DIR)))
    try:
        return _run_stages(cfg, experiment_id, log_path)
    finally:
        logging.getLogger().removeHandler(file_handler)
        file_handler.close()


def _run_stages(cfg: Dict[str, Any], experiment_id: str, log_path: Path) -> bool:
    logger.info("Git revision: %s", _get_git_revision())
    logger.info("Starting pipeline – experiment_id=%s", experiment_id)

    try:
        settings = Settings.from_dict(cfg)
    except (TypeError, ValueError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return False

    rng = make_rng(settings.random_seed)
    data_rng, train_rng = spawn_rngs(rng, 2)
    forecast_cfg = cfg.get("forecast") or {}
    horizons = list(forecast_cfg.get("horizons", list(HYBRID_HORIZONS)))
    archive_root = cfg.get("archive_root")

    stage_success = {
        "data": False,
        "train": False,
        "forecast": False,
        "viz": False,
        "archive": False,
    }

    with tempfile.TemporaryDirectory(prefix="ema_run_") as tmp_str:
        tmp_dir = Path(tmp_str)
        settings.to_toml(tmp_dir / "settings.toml")

        # Stage 1 – data
        dataset: Optional[EMADataset] = None
        try:
            dataset = load_dataset(settings, data_rng)
            if not dataset.participants:
                raise ValueError("No participants with enough observations")
            logger.info("[1/5] %d participants, %d observations",
                        len(dataset.participants), dataset.total_observations)
            save_ema_csv(dataset, tmp_dir / "dataset.csv")
            _write_json(tmp_dir / "depression_labels.json", dataset.depression_labels())
            stage_success["data"] = True
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Data stage failed: %s", exc)

        # Stage 2 – training
        engine = trainer = result = None
        if stage_success["data"]:
            try:
                logger.info("[2/5] Training PLRNN for %d epochs", settings.training.epochs)
                engine, trainer, result = train_model(settings, dataset, train_rng)
                result.trained_weights.save_json(tmp_dir / "plrnn_weights.json")
                _write_json(tmp_dir / "training_metrics.json", {
                    "final_training_loss": result.metrics.final_training_loss,
                    "final_validation_loss": result.metrics.final_validation_loss,
                    "per_horizon_mae": result.metrics.per_horizon_mae,
                    "per_horizon_rmse": result.metrics.per_horizon_rmse,
                    "per_horizon_r2": result.metrics.per_horizon_r2,
                    "per_horizon_persistence": result.metrics.per_horizon_persistence,
                    "improvement_over_persistence": result.metrics.improvement_over_persistence,
                    "best_epoch": result.history.best_epoch,
                    "converged": result.history.converged,
                    "training_time": result.history.total_training_time,
                    "complexity": engine.complexity_metrics(),
                })
                stage_success["train"] = True
            except Exception as exc:  # pylint: disable=broad-except
                logger.exception("Training failed: %s", exc)

        # Stage 3 – forecasts and diagnostics
        analyses: List[Dict[str, Any]] = []
        if stage_success["train"]:
            try:
                sequences = trainer.prepare_training_data(dataset)
                for sequence in tqdm(sequences, desc="Forecasting", unit="participant",
                                     disable=not settings.verbose):
                    analyses.append(analyse_sequence(engine, sequence, horizons))

                rows = [row for a in analyses for row in _forecast_rows(a, engine.labels)]
                pd.DataFrame(rows).to_csv(tmp_dir / "forecasts.csv", index=False)
                _write_json(tmp_dir / "early_warnings.json", {
                    a["participant_id"]: [vars(s) for s in a["early_warnings"]] for a in analyses
                })

                intervention = forecast_cfg.get("intervention")
                if intervention and analyses:
                    simulation = engine.simulate_intervention(
                        analyses[0]["state"],
                        intervention["dimension"],
                        intervention.get("intervention", "increase"),
                        float(intervention.get("magnitude", 0.5)),
                    )
                    _write_json(tmp_dir / "intervention.json", {
                        "participant_id": analyses[0]["participant_id"],
                        "target": vars(simulation.target),
                        "response": vars(simulation.response),
                        "confidence": simulation.confidence,
                    })
                stage_success["forecast"] = True
            except Exception as exc:  # pylint: disable=broad-except
                logger.exception("Forecasting failed: %s", exc)

        # Stage 4 – visualisation
        if stage_success["train"]:
            try:
                figures_dir = tmp_dir / "figures"
                formats = settings.export_formats
                save_figure(plot_training_history(result.history), figures_dir,
                            "training_history", formats, settings.figure_dpi)
                save_figure(plot_horizon_metrics(result.metrics), figures_dir,
                            "horizon_metrics", formats, settings.figure_dpi)
                save_figure(plot_causal_network(engine.extract_causal_network()), figures_dir,
                            "causal_network", formats, settings.figure_dpi)
                if analyses and "long" in analyses[0]["forecasts"]:
                    first = analyses[0]
                    sequence = next(s for s in trainer.prepare_training_data(dataset)
                                    if s.participant_id == first["participant_id"])
                    save_figure(plot_forecast(sequence.values[-48:], first["forecasts"]["long"],
                                              engine.labels),
                                figures_dir, f"forecast_{first['participant_id']}",
                                formats, settings.figure_dpi)
                stage_success["viz"] = True
            except Exception as exc:  # pylint: disable=broad-except
                logger.exception("Visualization failed: %s", exc)

        # Stage 5 – archiving
        try:
            if any(stage_success.values()):
                for path in sorted(tmp_dir.rglob("*")):
                    if path.is_file():
                        stash_artifact(path, experiment_id=experiment_id, stage=stage_for(path),
                                       overwrite=True, archive_root=archive_root)
                stash_artifact(log_path, experiment_id=experiment_id, stage="logs",
                               overwrite=True, archive_root=archive_root)
                stage_success["archive"] = True
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Archiving failed: %s", exc)

        logger.info("Pipeline finished – success matrix: %s", stage_success)
        overall_ok = stage_success["data"] and stage_success["train"]

    return overall_ok


def train_only(config: Dict[str, Any], weights_out: Path | str) -> EMATrainingResult:
    """Load data, train and write the best weights to *weights_out*; exceptions propagate."""
    settings = Settings.from_dict(config)
    rng = make_rng(settings.random_seed)
    data_rng, train_rng = spawn_rngs(rng, 2)
    dataset = load_dataset(settings, data_rng)
    if not dataset.participants:
        raise ValueError("No participants with enough observations")
    _, _, result = train_model(settings, dataset, train_rng)
    result.trained_weights.save_json(weights_out)
    logger.info("Saved weights to %s (validation loss %.4f)",
                weights_out, result.history.best_validation_loss)
    return result
