"""Feature grid and label sample containers shared by every pipeline stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .errors import FeatureMismatch, InsufficientSamples, ShapeMismatch

NODATA = -1
LABEL_DTYPE = "int16"

TrainingSet = Tuple[np.ndarray, np.ndarray, Tuple[int, ...]]


def _readonly(array: np.ndarray) -> np.ndarray:
    view = array.view()
    view.setflags(write=False)
    return view


def check_same_shape(*rasters: np.ndarray, what: str = "rasters") -> Tuple[int, int]:
    """Return the shared (rows, cols) of 2-D rasters or raise ShapeMismatch."""

    shapes = {tuple(r.shape[:2]) for r in rasters}
    if len(shapes) != 1:
        raise ShapeMismatch(
            f"All {what} must share one grid shape; got {sorted(shapes)}."
        )
    return shapes.pop()  # type: ignore[return-value]


@dataclass(frozen=True, eq=False)
class FeatureGrid:
    """Immutable (rows, cols, bands) feature stack with named bands.

    Non-finite values mark nodata. ``transform`` and ``crs`` are carried through
    untouched so every derived raster shares the grid's georeferencing.
    """

    data: np.ndarray
    bands: Tuple[str, ...]
    transform: Optional[Any] = None
    crs: Optional[Any] = None

    def __post_init__(self) -> None:
        data = np.array(self.data, dtype="float32", copy=True)
        if data.ndim == 2:
            data = data[:, :, np.newaxis]
        if data.ndim != 3:
            raise FeatureMismatch("Feature grid must be a (rows, cols, bands) array.")

        bands = tuple(str(b) for b in self.bands)
        if len(bands) != data.shape[2]:
            raise FeatureMismatch(
                f"Feature grid has {data.shape[2]} bands but {len(bands)} band names."
            )
        if len(set(bands)) != len(bands):
            raise FeatureMismatch("Band names must be unique.")

        object.__setattr__(self, "data", _readonly(data))
        object.__setattr__(self, "bands", bands)

    @classmethod
    def from_array(
        cls,
        data: np.ndarray,
        bands: Optional[Sequence[str]] = None,
        **georef: Any,
    ) -> "FeatureGrid":
        arr = np.asarray(data)
        count = arr.shape[2] if arr.ndim == 3 else 1
        names = tuple(bands) if bands is not None else tuple(
            f"band_{idx}" for idx in range(1, count + 1)
        )
        return cls(arr, names, **georef)

    @property
    def shape(self) -> Tuple[int, int]:
        return int(self.data.shape[0]), int(self.data.shape[1])

    @property
    def band_count(self) -> int:
        return int(self.data.shape[2])

    def band_positions(self, bands: Optional[Sequence[str]] = None) -> List[int]:
        if bands is None:
            return list(range(self.band_count))
        requested = [str(b) for b in bands]
        if not requested:
            raise FeatureMismatch("At least one band must be selected.")
        missing = [b for b in requested if b not in self.bands]
        if missing:
            raise FeatureMismatch(
                f"Bands {missing} are not in the feature grid "
                f"(available: {list(self.bands)})."
            )
        return [self.bands.index(b) for b in requested]

    def select(self, bands: Optional[Sequence[str]] = None) -> np.ndarray:
        """Return the (rows, cols, k) stack for ``bands`` (all bands if None)."""

        positions = self.band_positions(bands)
        if positions == list(range(self.band_count)):
            return self.data
        return _readonly(self.data[:, :, positions])

    def valid_mask(self, bands: Optional[Sequence[str]] = None) -> np.ndarray:
        return np.isfinite(self.select(bands)).all(axis=2)


@dataclass(frozen=True, eq=False)
class LabelSamples:
    """Immutable training points: one class label per grid cell location."""

    rows: np.ndarray
    cols: np.ndarray
    labels: np.ndarray
    decoder: Dict[int, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        rows = np.array(self.rows, dtype="int64", copy=True).reshape(-1)
        cols = np.array(self.cols, dtype="int64", copy=True).reshape(-1)
        labels = np.array(self.labels, copy=True).reshape(-1)
        if not (rows.size == cols.size == labels.size):
            raise ValueError("rows, cols and labels must have the same length.")
        if labels.size and not np.issubdtype(labels.dtype, np.integer):
            rounded = np.round(labels)
            if not np.allclose(labels, rounded):
                raise ValueError("Class labels must be integers.")
            labels = rounded
        labels = labels.astype("int64", copy=False)
        if np.any(labels < 0):
            raise ValueError("Class labels must be non-negative integers.")

        object.__setattr__(self, "rows", _readonly(rows))
        object.__setattr__(self, "cols", _readonly(cols))
        object.__setattr__(self, "labels", _readonly(labels))

    @classmethod
    def from_pairs(
        cls, pairs: Iterable[Tuple[Tuple[int, int], int]]
    ) -> "LabelSamples":
        rows: List[int] = []
        cols: List[int] = []
        labels: List[int] = []
        for (row, col), label in pairs:
            rows.append(int(row))
            cols.append(int(col))
            labels.append(int(label))
        return cls(np.asarray(rows), np.asarray(cols), np.asarray(labels))

    def __len__(self) -> int:
        return int(self.labels.size)

    def default_classes(self) -> Tuple[int, ...]:
        if not len(self):
            return ()
        first = 0 if int(self.labels.min()) == 0 else 1
        return tuple(range(first, int(self.labels.max()) + 1))

    def class_counts(self, classes: Sequence[int]) -> Dict[int, int]:
        return {int(c): int(np.count_nonzero(self.labels == c)) for c in classes}

    def check_bounds(self, shape: Tuple[int, int]) -> None:
        height, width = shape
        outside = (
            (self.rows < 0)
            | (self.rows >= height)
            | (self.cols < 0)
            | (self.cols >= width)
        )
        if np.any(outside):
            raise ValueError(
                f"{int(np.count_nonzero(outside))} label samples fall outside the "
                f"{height}x{width} feature grid."
            )

    def features(
        self, grid: FeatureGrid, bands: Optional[Sequence[str]] = None
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Extract (X, y) for training; samples on nodata cells are dropped."""

        self.check_bounds(grid.shape)
        stack = grid.select(bands)
        X = np.asarray(stack[self.rows, self.cols], dtype="float32")
        keep = np.isfinite(X).all(axis=1)
        return X[keep], np.asarray(self.labels[keep])


def resolve_classes(
    samples: LabelSamples, classes: Optional[Sequence[int]] = None
) -> Tuple[int, ...]:
    """Return the sorted fixed class set (defaults to 1..max, or 0..max, label)."""

    if classes is None:
        resolved = samples.default_classes()
    else:
        resolved = tuple(sorted({int(c) for c in classes}))
    if not resolved:
        raise InsufficientSamples("No training samples were provided.")
    unknown = sorted(set(np.unique(samples.labels).tolist()) - set(resolved))
    if unknown:
        raise ValueError(
            f"Label samples use classes {unknown} outside {list(resolved)}."
        )
    return resolved


def training_matrix(
    grid: FeatureGrid,
    samples: LabelSamples,
    bands: Optional[Sequence[str]] = None,
    classes: Optional[Sequence[int]] = None,
) -> TrainingSet:
    """Validate the band schema and class coverage, then return (X, y, classes).

    Raises FeatureMismatch for unknown bands and InsufficientSamples when any
    class of the fixed set ends up with no usable samples.
    """

    grid.band_positions(bands)
    resolved = resolve_classes(samples, classes)
    X, y = samples.features(grid, bands)
    present = set(np.unique(y).tolist())
    empty = [c for c in resolved if c not in present]
    if empty:
        raise InsufficientSamples(
            f"Classes {empty} have no training samples on valid grid cells."
        )
    return X, y.astype("int64", copy=False), resolved


__all__ = [
    "NODATA",
    "LABEL_DTYPE",
    "TrainingSet",
    "FeatureGrid",
    "LabelSamples",
    "check_same_shape",
    "resolve_classes",
    "training_matrix",
]
