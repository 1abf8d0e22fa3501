"""Voting ensemble of independently seeded Random Forests.

Training is an explicit parallel map over per-run seeds followed by a pure,
order-independent reduce (:class:`VoteCounter`). Runs never share state: each
gets its own child of one ``numpy.random.SeedSequence``, so results depend only
on the base seed and the run index, never on scheduling.
"""

from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from .config import PipelineConfig
from .errors import ShapeMismatch
from .forest import clamp_split_features, fit_forest, predict_labels
from .grid import (
    LABEL_DTYPE,
    NODATA,
    FeatureGrid,
    LabelSamples,
    TrainingSet,
    check_same_shape,
    training_matrix,
)

ENSEMBLE_LOGGER_NAME = "covervote.ensemble"


def _get_logger() -> logging.Logger:
    return logging.getLogger(ENSEMBLE_LOGGER_NAME)


class _ProgressManager:
    """Thin wrapper around a rich Progress bar for ensemble runs."""

    def __init__(self, total: int, enabled: bool = True):
        self.enabled = enabled
        self.total = total
        self._progress: Optional[Progress] = None
        self._task_id = None

    def __enter__(self) -> "_ProgressManager":
        if self.enabled:
            self._progress = Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                TimeRemainingColumn(),
                refresh_per_second=5,
            )
            self._progress.start()
            self._task_id = self._progress.add_task(
                "Ensemble runs", total=self.total
            )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._progress:
            self._progress.stop()
        self._progress = None
        self._task_id = None

    def advance(self) -> None:
        if self._progress and self._task_id is not None:
            self._progress.advance(self._task_id)


def run_seeds(seed: int, runs: int) -> List[int]:
    """Derive ``runs`` independent per-run seeds from one base seed."""

    children = np.random.SeedSequence(seed).spawn(runs)
    return [int(child.generate_state(1, dtype=np.uint32)[0]) for child in children]


class VoteCounter:
    """Streaming per-cell vote tally over label rasters.

    ``add`` is commutative, so the consensus is the same whether rasters arrive
    as they finish or all at once. NODATA cells cast no vote.
    """

    def __init__(self, shape: Tuple[int, int], classes: Sequence[int]):
        self.classes = tuple(sorted({int(c) for c in classes}))
        if not self.classes:
            raise ValueError("At least one class is required for voting.")
        self.shape = (int(shape[0]), int(shape[1]))
        self.counts = np.zeros(self.shape + (len(self.classes),), dtype=np.int32)
        self.rasters = 0
        self._lookup = {value: idx for idx, value in enumerate(self.classes)}

    def add(self, labels: np.ndarray) -> None:
        labels = np.asarray(labels)
        if labels.shape != self.shape:
            raise ShapeMismatch(
                f"Label raster shape {labels.shape} does not match {self.shape}."
            )
        voted = labels != NODATA
        unknown = np.setdiff1d(np.unique(labels[voted]), self.classes)
        if unknown.size:
            raise ValueError(
                f"Label raster contains classes {unknown.tolist()} outside "
                f"{list(self.classes)}."
            )
        for value, idx in self._lookup.items():
            self.counts[:, :, idx] += labels == value
        self.rasters += 1

    def consensus(self) -> np.ndarray:
        """Per-cell mode; ties go to the lowest class value."""

        # argmax returns the first maximum and classes are sorted ascending.
        best = self.counts.argmax(axis=2)
        out = np.asarray(self.classes, dtype=LABEL_DTYPE)[best]
        out[self.counts.sum(axis=2) == 0] = NODATA
        return out

    def agreement(self) -> np.ndarray:
        """Share of votes won by the consensus class (NaN where nobody voted)."""

        total = self.counts.sum(axis=2).astype("float32")
        top = self.counts.max(axis=2).astype("float32")
        with np.errstate(invalid="ignore", divide="ignore"):
            share = top / total
        share[total == 0] = np.nan
        return share


def _infer_classes(rasters: Sequence[np.ndarray]) -> Tuple[int, ...]:
    values: set = set()
    for raster in rasters:
        arr = np.asarray(raster)
        values.update(np.unique(arr[arr != NODATA]).tolist())
    return tuple(sorted(int(v) for v in values))


def majority_vote(
    rasters: Sequence[np.ndarray], classes: Optional[Sequence[int]] = None
) -> np.ndarray:
    """Reduce R label rasters of one shape to their per-cell mode."""

    rasters = list(rasters)
    if not rasters:
        raise ValueError("majority_vote needs at least one label raster.")
    shape = check_same_shape(*rasters, what="label rasters")
    for raster in rasters:
        if np.asarray(raster).ndim != 2:
            raise ShapeMismatch("Label rasters must be 2-D arrays.")

    class_set = tuple(classes) if classes is not None else _infer_classes(rasters)
    if not class_set:
        return np.full(shape, NODATA, dtype=LABEL_DTYPE)

    counter = VoteCounter(shape, class_set)
    for raster in rasters:
        counter.add(raster)
    return counter.consensus()


@dataclass(frozen=True, eq=False)
class _EnsembleTask:
    """Everything one run needs; shipped once to each worker process."""

    grid: FeatureGrid
    bands: Optional[Tuple[str, ...]]
    X: np.ndarray
    y: np.ndarray
    trees: int
    split_features: int
    block_size: int

    def run(self, seed: int) -> np.ndarray:
        model = fit_forest(
            self.X,
            self.y,
            n_estimators=self.trees,
            max_features=self.split_features,
            random_state=seed,
        )
        return predict_labels(model, self.grid, self.bands, block_size=self.block_size)


_ENSEMBLE_TASK: Optional[_EnsembleTask] = None


def _init_ensemble_worker(task: _EnsembleTask) -> None:
    global _ENSEMBLE_TASK
    _ENSEMBLE_TASK = task


def _ensemble_run_worker(run_index: int, seed: int) -> Tuple[int, np.ndarray]:
    if _ENSEMBLE_TASK is None:
        raise RuntimeError("Ensemble worker not initialized.")
    return run_index, _ENSEMBLE_TASK.run(seed)


def _prepare_task(
    grid: FeatureGrid,
    samples: LabelSamples,
    config: PipelineConfig,
    training: Optional[TrainingSet] = None,
) -> Tuple[_EnsembleTask, Tuple[int, ...]]:
    if training is None:
        training = training_matrix(grid, samples, config.bands, config.classes)
    X, y, classes = training
    split_features = clamp_split_features(config.split_features, X.shape[1])
    task = _EnsembleTask(
        grid=grid,
        bands=config.bands,
        X=X,
        y=y,
        trees=config.trees,
        split_features=split_features,
        block_size=config.block_size,
    )
    return task, classes


def _iter_runs(
    task: _EnsembleTask, config: PipelineConfig
) -> Iterator[Tuple[int, np.ndarray]]:
    seeds = run_seeds(config.seed, config.runs)
    workers = min(config.worker_count, config.runs)
    logger = _get_logger()

    if workers <= 1:
        for run_index, seed in enumerate(seeds):
            logger.debug("Ensemble run %d (seed %d).", run_index, seed)
            yield run_index, task.run(seed)
        return

    logger.info("Running %d ensemble members on %d workers.", config.runs, workers)
    max_pending = workers * 2
    with concurrent.futures.ProcessPoolExecutor(
        max_workers=workers,
        initializer=_init_ensemble_worker,
        initargs=(task,),
    ) as executor:
        futures: Dict[concurrent.futures.Future, int] = {}
        try:
            for run_index, seed in enumerate(seeds):
                future = executor.submit(_ensemble_run_worker, run_index, seed)
                futures[future] = run_index
                if len(futures) >= max_pending:
                    done, _ = concurrent.futures.wait(
                        futures, return_when=concurrent.futures.FIRST_COMPLETED
                    )
                    for finished in done:
                        del futures[finished]
                        yield finished.result()

            for finished in concurrent.futures.as_completed(list(futures)):
                del futures[finished]
                yield finished.result()
        finally:
            for pending in futures:
                pending.cancel()


def _run_ensemble(
    task: _EnsembleTask,
    classes: Tuple[int, ...],
    config: PipelineConfig,
    progress: Optional[bool],
) -> Iterator[Tuple[int, np.ndarray]]:
    logger = _get_logger()
    logger.info(
        "Training %d forests of %d trees on %d samples (%d bands, %d classes).",
        config.runs,
        config.trees,
        task.X.shape[0],
        task.X.shape[1],
        len(classes),
    )
    if progress is None:
        progress = logger.isEnabledFor(logging.INFO)
    with _ProgressManager(config.runs, enabled=progress) as bar:
        for result in _iter_runs(task, config):
            bar.advance()
            yield result


def iter_ensemble(
    grid: FeatureGrid,
    samples: LabelSamples,
    config: PipelineConfig,
    *,
    progress: Optional[bool] = None,
) -> Iterator[Tuple[int, np.ndarray]]:
    """Yield ``(run_index, label_raster)`` for each ensemble member as it finishes.

    Samples and bands are validated here, before any forest is trained. Each
    yielded raster is complete and never mutated afterwards.
    """

    task, classes = _prepare_task(grid, samples, config)
    return _run_ensemble(task, classes, config, progress)


def train_ensemble(
    grid: FeatureGrid,
    samples: LabelSamples,
    config: PipelineConfig,
    *,
    progress: Optional[bool] = None,
) -> List[np.ndarray]:
    """Train all R members and return their label rasters ordered by run index."""

    results = dict(iter_ensemble(grid, samples, config, progress=progress))
    return [results[idx] for idx in range(config.runs)]


def ensemble_consensus(
    grid: FeatureGrid,
    samples: LabelSamples,
    config: PipelineConfig,
    *,
    progress: Optional[bool] = None,
    training: Optional[TrainingSet] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Stream every member into a vote tally; return (consensus, agreement).

    ``training`` is an already validated ``training_matrix`` result; when given,
    the samples are not re-extracted.
    """

    task, classes = _prepare_task(grid, samples, config, training)
    counter = VoteCounter(grid.shape, classes)
    for _, labels in _run_ensemble(task, classes, config, progress):
        counter.add(labels)
    return counter.consensus(), counter.agreement()


__all__ = [
    "VoteCounter",
    "majority_vote",
    "run_seeds",
    "iter_ensemble",
    "train_ensemble",
    "ensemble_consensus",
]
