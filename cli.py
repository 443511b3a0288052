import argparse
import json
import logging
import shutil
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

LOG_DIR = Path("logs")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """Configure root logger to log to stdout and a log file.

    Args:
        verbose: If ``True`` set console log level to ``DEBUG`` else ``INFO``.
        log_file: Optional path to a log file. If ``None`` a timestamped file is
            created under ``logs/``.
    """
    if log_file is None:
        LOG_DIR.mkdir(exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = LOG_DIR / f"cli_{timestamp}.log"

    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers.append(console_handler)

    # File handler (always DEBUG for maximum detail)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers.append(file_handler)

    logging.basicConfig(level=logging.DEBUG, handlers=handlers, force=True)
    logging.debug("Logging initialised. Log file: %s", log_file)


def _base_config(args: argparse.Namespace) -> Dict[str, Any]:
    """Run configuration from ``--config`` with ``--preset``/``--seed`` applied on top."""
    from research_pipeline import load_run_config

    config: Dict[str, Any] = {}
    if getattr(args, "config", None):
        config = load_run_config(args.config)
    if getattr(args, "preset", None):
        config["preset"] = args.preset
    if getattr(args, "seed", None) is not None:
        config["random_seed"] = args.seed
    return config


# -----------------------------------------------------------------------------
# Sub-command implementations
# -----------------------------------------------------------------------------

def _cmd_run(args: argparse.Namespace) -> int:
    """Entry point for the ``run`` sub-command."""
    logger = logging.getLogger(__name__)
    logger.info("Starting pipeline run – config: %s", args.config)

    try:
        config = _base_config(args)
    except (OSError, ValueError) as exc:
        logger.error("Failed to load configuration: %s", exc)
        return 1

    try:
        from research_pipeline import run_pipeline

        success: bool = run_pipeline(config)
        logger.info("Pipeline finished – success=%s", success)
        return 0 if success else 2
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Pipeline execution failed: %s", exc)
        return 1


def _cmd_train(args: argparse.Namespace) -> int:
    """Entry point for the ``train`` sub-command."""
    logger = logging.getLogger(__name__)

    try:
        config = _base_config(args)
    except (OSError, ValueError) as exc:
        logger.error("Failed to load configuration: %s", exc)
        return 1
    if args.csv:
        config.setdefault("data", {})["csv_path"] = args.csv
    if args.epochs is not None:
        config.setdefault("training", {})["epochs"] = args.epochs

    try:
        from research_pipeline import train_only

        result = train_only(config, args.weights_out)
        logger.info("Training complete – best epoch %d, improvement over persistence %.1f%%",
                    result.history.best_epoch, result.metrics.improvement_over_persistence)
        return 0
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Training failed: %s", exc)
        return 1


def _cmd_forecast(args: argparse.Namespace) -> int:
    """Entry point for the ``forecast`` sub-command."""
    logger = logging.getLogger(__name__)

    try:
        from ema_dynamics.config import TrainingConfig
        from ema_dynamics.core import PLRNNEngine, PLRNNTrainer, PLRNNWeights
        from ema_dynamics.data import denormalize, load_ema_csv

        engine = PLRNNEngine(rng=args.seed)
        engine.load_weights(PLRNNWeights.load_json(args.weights))
        dataset = load_ema_csv(args.csv)

        trainer = PLRNNTrainer(engine, TrainingConfig(bptt_truncation_window=1, bptt_overlap_steps=0))
        sequences = [s for s in trainer.prepare_training_data(dataset)
                     if args.participant is None or s.participant_id == args.participant]
        if not sequences:
            logger.error("No usable sequence for participant %s", args.participant)
            return 1

        report: List[Dict[str, Any]] = []
        for sequence in sequences:
            state = engine.create_state(sequence.values[-1], sequence.timestamps[-1])
            prediction = engine.hybrid_predict(state, args.horizon)
            mean = prediction.mean_prediction
            lower = prediction.confidence_interval.lower
            upper = prediction.confidence_interval.upper
            if sequence.norm_stats is not None:
                mean, lower, upper = (denormalize(v, sequence.norm_stats) for v in (mean, lower, upper))
            report.append({
                "participant_id": sequence.participant_id,
                "horizon": args.horizon,
                "forecast_time": prediction.trajectory[-1].timestamp.isoformat(),
                "mean": dict(zip(engine.labels, map(float, mean))),
                "lower": dict(zip(engine.labels, map(float, lower))),
                "upper": dict(zip(engine.labels, map(float, upper))),
            })

        text = json.dumps(report, indent=2)
        if args.output:
            Path(args.output).write_text(text)
            logger.info("Wrote %d forecast(s) to %s", len(report), args.output)
        else:
            print(text)
        return 0
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Forecast failed: %s", exc)
        return 1


def _cmd_info(args: argparse.Namespace) -> int:
    """Entry point for the ``info`` sub-command."""
    from ema_dynamics.config.validate import check_environment, format_environment_info

    print(format_environment_info())
    try:
        check_environment()
    except RuntimeError as exc:
        logging.getLogger(__name__).error("%s", exc)
        return 1
    return 0


def _cmd_clean(args: argparse.Namespace) -> int:
    """Entry point for the ``clean`` sub-command."""
    logger = logging.getLogger(__name__)
    logger.info("Cleaning temporary files and caches")

    root = Path(args.root)
    patterns = [
        "**/__pycache__",
        "**/*.py[cod]",
        "output",
    ]
    if args.logs:
        patterns.append("logs")

    for pattern in patterns:
        for path in list(root.glob(pattern)):
            try:
                if path.is_file():
                    path.unlink()
                elif path.is_dir():
                    shutil.rmtree(path)
                logger.debug("Removed %s", path)
            except OSError as exc:
                logger.warning("Could not remove %s: %s", path, exc)

    logger.info("Clean complete")
    return 0


# -----------------------------------------------------------------------------
# Argument parsing
# -----------------------------------------------------------------------------

def _add_config_arguments(parser: argparse.ArgumentParser, required: bool = False) -> None:
    parser.add_argument(
        "--config",
        required=required,
        type=str,
        help="Path to YAML/JSON run configuration file.",
    )
    parser.add_argument(
        "--preset",
        choices=["default", "tuned", "minimal"],
        help="Configuration preset used as the base.",
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed.")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ema_dynamics command-line interface",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging output.",
    )

    sub_parsers = parser.add_subparsers(dest="command", required=True)

    # run ---------------------------------------------------------------------
    run_parser = sub_parsers.add_parser("run", help="Execute full analysis pipeline")
    _add_config_arguments(run_parser)
    run_parser.set_defaults(func=_cmd_run)

    # train -------------------------------------------------------------------
    train_parser = sub_parsers.add_parser("train", help="Train a PLRNN and save its weights")
    _add_config_arguments(train_parser)
    train_parser.add_argument("--csv", type=str, help="Long-format EMA CSV; synthetic data if omitted.")
    train_parser.add_argument("--epochs", type=int, default=None, help="Override training epochs.")
    train_parser.add_argument(
        "--weights-out",
        type=str,
        default="plrnn_weights.json",
        help="Destination of the trained weights.",
    )
    train_parser.set_defaults(func=_cmd_train)

    # forecast ----------------------------------------------------------------
    forecast_parser = sub_parsers.add_parser("forecast", help="Forecast from saved weights")
    forecast_parser.add_argument("weights", type=str, help="PLRNN weights JSON file.")
    forecast_parser.add_argument("csv", type=str, help="Long-format EMA CSV.")
    forecast_parser.add_argument("--participant", type=str, default=None,
                                 help="Only forecast this participant.")
    forecast_parser.add_argument("--horizon", choices=["short", "medium", "long"], default="medium",
                                 help="Forecast horizon.")
    forecast_parser.add_argument("--output", type=str, default=None,
                                 help="Write JSON here instead of stdout.")
    forecast_parser.add_argument("--seed", type=int, default=None, help="Random seed.")
    forecast_parser.set_defaults(func=_cmd_forecast)

    # info --------------------------------------------------------------------
    info_parser = sub_parsers.add_parser("info", help="Show dependency versions")
    info_parser.set_defaults(func=_cmd_info)

    # clean -------------------------------------------------------------------
    clean_parser = sub_parsers.add_parser("clean", help="Remove temporary files and caches")
    clean_parser.add_argument("--root", type=str, default=".", help="Directory to clean.")
    clean_parser.add_argument("--logs", action="store_true", help="Also remove logs/.")
    clean_parser.set_defaults(func=_cmd_clean)

    return parser


# -----------------------------------------------------------------------------
# Main entry point
# -----------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None, log_file: Optional[Path] = None) -> int:
    """CLI entry point. Parse ``argv``, dispatch and return the exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    # Logging must be set up *after* parsing to respect --verbose flag.
    _setup_logging(verbose=args.verbose, log_file=log_file)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
