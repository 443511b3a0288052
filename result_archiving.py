from __future__ import annotations

"""Helper utilities for storing and retrieving pipeline artifacts.

Directory layout
----------------
Artifacts are stored under a root *archive* directory (by default `results/`) in
folders organised as::

    {date_run}/{experiment_id}/{stage}/{artifact_files}

Where
    date_run      ``YYYYMMDD`` local date when the pipeline was executed
    experiment_id Free-form identifier set by the caller (e.g. a participant cohort)
    stage         Processing stage (e.g. data, weights, metrics, figures, logs)

The module exposes two high-level helper functions:

* :pyfunc:`stash_artifact` – copy a file (or directory) into the archive and
  return its new path.
* :pyfunc:`retrieve_artifacts` – yield paths matching query parameters.
"""

from pathlib import Path
from datetime import datetime
import logging
import shutil
from typing import Iterator, List, Optional

logger = logging.getLogger(__name__)

ARCHIVE_ROOT = Path("results")

# Stage assigned to a file by its suffix when the caller does not choose one
STAGE_BY_SUFFIX = {
    ".png": "figures",
    ".pdf": "figures",
    ".svg": "figures",
    ".csv": "data",
    ".log": "logs",
}


def stage_for(path: str | Path, default: str = "artifacts") -> str:
    """Archive stage for *path* based on its suffix."""
    return STAGE_BY_SUFFIX.get(Path(path).suffix.lower(), default)


def _build_target_path(
    root: Path,
    date_run: str | None,
    experiment_id: str,
    stage: str,
    artifact_name: str,
) -> Path:
    date_str = date_run or datetime.now().strftime("%Y%m%d")
    target_dir = root / date_str / experiment_id / stage
    target_dir.mkdir(parents=True, exist_ok=True)
    return target_dir / artifact_name


def stash_artifact(
    src: str | Path,
    *,
    experiment_id: str,
    stage: str = "raw",
    date_run: str | None = None,
    tag: Optional[str] = None,
    overwrite: bool = False,
    archive_root: str | Path | None = None,
) -> Path:
    """Copy *src* into the archive tree and return its destination path.

    Args:
        src: Path to file or directory to be stored.
        experiment_id: Identifier for the experiment/run.
        stage: Processing stage (default ``raw``).
        date_run: Override date folder (``YYYYMMDD``). If ``None`` uses today.
        tag: Optional tag appended to filename stem before extension.
        overwrite: Overwrite target if exists (default ``False``).
        archive_root: Archive directory, ``results/`` when ``None``.

    Returns:
        Destination path inside the archive.

    Raises:
        FileNotFoundError: If *src* does not exist.
        FileExistsError: If the target exists and *overwrite* is ``False``.
    """
    src_path = Path(src)
    if not src_path.exists():
        raise FileNotFoundError(src)

    name = src_path.name
    if tag:
        name = f"{src_path.stem}_{tag}{src_path.suffix}"

    root = Path(archive_root) if archive_root is not None else ARCHIVE_ROOT
    dest = _build_target_path(root, date_run, experiment_id, stage, name)

    if dest.exists():
        if not overwrite:
            raise FileExistsError(dest)
        if dest.is_dir():
            shutil.rmtree(dest)
        else:
            dest.unlink()

    if src_path.is_dir():
        shutil.copytree(src_path, dest)
    else:
        shutil.copy2(src_path, dest)

    logger.info("Artifact stashed: %s -> %s", src_path, dest)
    return dest


def retrieve_artifacts(
    *,
    experiment_id: Optional[str] = None,
    stage: Optional[str] = None,
    date_run: Optional[str] = None,
    archive_root: str | Path | None = None,
) -> Iterator[Path]:
    """Yield artifact paths matching *experiment_id*, *stage* and *date_run*.

    Filters that are ``None`` match every directory at their level.
    """
    root = Path(archive_root) if archive_root is not None else ARCHIVE_ROOT
    if not root.exists():
        logger.warning("Archive path not found: %s", root)
        return iter([])

    pattern = "/".join([date_run or "*", experiment_id or "*", stage or "*"])
    return (p for stage_dir in sorted(root.glob(pattern)) if stage_dir.is_dir()
            for p in sorted(stage_dir.rglob("*")) if p.is_file())


def list_artifacts(**kwargs) -> List[Path]:
    """Return list wrapper around :pyfunc:`retrieve_artifacts`."""
    return list(retrieve_artifacts(**kwargs))
