"""Neighborhood-mode smoothing and connected-component sieving of class rasters."""

from __future__ import annotations

import logging

import numpy as np
from scipy import ndimage

from .config import CONNECTIVITIES
from .grid import LABEL_DTYPE, NODATA

DENOISE_LOGGER_NAME = "covervote.denoise"


def _get_logger() -> logging.Logger:
    return logging.getLogger(DENOISE_LOGGER_NAME)


def _as_label_raster(raster: np.ndarray) -> np.ndarray:
    arr = np.asarray(raster)
    if arr.ndim != 2:
        raise ValueError("Class rasters must be 2-D arrays.")
    if arr.size and not np.issubdtype(arr.dtype, np.integer):
        raise ValueError("Class rasters must hold integer class values.")
    return arr


def _structure(connectivity: int) -> np.ndarray:
    if connectivity not in CONNECTIVITIES:
        raise ValueError("connectivity must be 4 or 8.")
    return ndimage.generate_binary_structure(2, 1 if connectivity == 4 else 2)


def mode_filter(raster: np.ndarray, radius: int = 2) -> np.ndarray:
    """Replace each valid cell with the mode of its (2 * radius + 1) square window.

    Windows are truncated at the grid border. NODATA cells neither vote nor get
    filled, and count ties go to the lowest class value.
    """

    labels = _as_label_raster(raster)
    if radius < 0:
        raise ValueError("radius must be non-negative.")
    valid = labels != NODATA
    out = np.array(labels, dtype=LABEL_DTYPE, copy=True)
    if radius == 0 or not np.any(valid):
        return out

    class_values = np.unique(labels[valid])

    size = 2 * radius + 1
    kernel = np.ones((size, size), dtype=np.int32)
    best_count = np.full(labels.shape, -1, dtype=np.int32)
    best_class = np.full(labels.shape, NODATA, dtype=LABEL_DTYPE)
    for value in class_values:
        # Zero padding outside the grid makes this a truncated-window count.
        counts = ndimage.convolve(
            (labels == value).astype(np.int32), kernel, mode="constant", cval=0
        )
        better = counts > best_count
        best_count[better] = counts[better]
        best_class[better] = value

    out[valid] = best_class[valid]
    return out


def component_sizes(raster: np.ndarray, connectivity: int = 8) -> np.ndarray:
    """Size of the equal-class connected region each cell belongs to (0 for NODATA)."""

    labels = _as_label_raster(raster)
    structure = _structure(connectivity)
    sizes = np.zeros(labels.shape, dtype=np.int64)
    for value in np.unique(labels[labels != NODATA]):
        regions, count = ndimage.label(labels == value, structure=structure)
        if not count:
            continue
        region_sizes = np.bincount(regions.ravel())
        region_sizes[0] = 0
        member = regions > 0
        sizes[member] = region_sizes[regions[member]]
    return sizes


def sieve(
    raster: np.ndarray, min_size: int = 25, connectivity: int = 8
) -> np.ndarray:
    """Mask (NODATA) every cell whose connected region has ``<= min_size`` cells."""

    labels = _as_label_raster(raster)
    if min_size < 0:
        raise ValueError("min_size must be non-negative.")
    sizes = component_sizes(labels, connectivity)
    out = np.array(labels, dtype=LABEL_DTYPE, copy=True)
    small = (labels != NODATA) & (sizes <= min_size)
    out[small] = NODATA
    _get_logger().debug(
        "Sieve removed %d cells in regions of <= %d cells.", int(small.sum()), min_size
    )
    return out


def denoise(
    raster: np.ndarray,
    radius: int = 2,
    min_size: int = 25,
    connectivity: int = 8,
) -> np.ndarray:
    """Mode-filter then sieve a class raster; the order of the two passes matters."""

    smoothed = mode_filter(raster, radius)
    return sieve(smoothed, min_size, connectivity)


__all__ = ["mode_filter", "component_sizes", "sieve", "denoise"]
