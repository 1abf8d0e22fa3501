"""Raster and vector adapters that feed the pipeline and receive its rasters."""

from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import rasterio
from rasterio import features

from .grid import NODATA, FeatureGrid, LabelSamples

PathLike = Union[str, Path]
IO_LOGGER_NAME = "covervote.io"


def _get_logger() -> logging.Logger:
    return logging.getLogger(IO_LOGGER_NAME)


def expand_raster_inputs(
    image_path: Union[PathLike, Iterable[PathLike]],
) -> List[Path]:
    """Normalize raster inputs to a list of Paths.

    Accepts a single file/VRT, a directory (expands *.tif / *.tiff), or an
    iterable of mixed paths (files or directories).
    """

    paths: List[Path] = []

    def add_path(p: Path) -> None:
        if p.is_dir():
            candidates = sorted([*p.glob("*.tif"), *p.glob("*.tiff")])
            if not candidates:
                raise ValueError(f"No GeoTIFFs found in directory: {p}")
            paths.extend(candidates)
        elif p.is_file():
            paths.append(p)
        else:
            raise ValueError(f"Raster path not found: {p}")

    if isinstance(image_path, Iterable) and not isinstance(
        image_path, (str, bytes, Path)
    ):
        for item in image_path:
            add_path(Path(item))
    else:
        add_path(Path(image_path))  # type: ignore[arg-type]

    if not paths:
        raise ValueError("No raster paths were provided.")
    return paths


def _band_name(path: Path, band_idx: int, description: Optional[str]) -> str:
    if description:
        return description
    return f"{path.stem}_b{band_idx}"


def read_feature_grid(
    image_path: Union[PathLike, Iterable[PathLike]],
    *,
    band_names: Optional[Sequence[str]] = None,
    band_indices: Optional[Sequence[int]] = None,
) -> FeatureGrid:
    """Stack coregistered rasters band-wise into a FeatureGrid.

    Band nodata values become NaN. ``band_indices`` (1-based, over the stacked
    bands) selects a subset; ``band_names`` overrides the band descriptions.
    """

    paths = expand_raster_inputs(image_path)
    blocks: List[np.ndarray] = []
    names: List[str] = []
    transform: Any = None
    crs: Any = None
    shape: Optional[Tuple[int, int]] = None

    for path in paths:
        with rasterio.open(path) as ds:
            if shape is None:
                shape = (ds.height, ds.width)
                transform = ds.transform
                crs = ds.crs
            else:
                if (ds.height, ds.width) != shape:
                    raise ValueError("All rasters must have the same dimensions.")
                if not np.allclose(ds.transform, transform):
                    raise ValueError("All rasters must share the same transform/grid.")
                if crs is not None and ds.crs is not None and ds.crs != crs:
                    raise ValueError("All rasters must share the same CRS.")

            data = ds.read(out_dtype="float32")
            for band_idx in range(ds.count):
                band = data[band_idx]
                nodata = ds.nodatavals[band_idx]
                if nodata is not None and not np.isnan(nodata):
                    band[band == nodata] = np.nan
                blocks.append(band)
                names.append(
                    _band_name(path, band_idx + 1, ds.descriptions[band_idx])
                )

    if band_indices is not None:
        indices = [int(idx) for idx in band_indices]
        if not indices:
            raise ValueError("band_indices must include at least one band.")
        if len(set(indices)) != len(indices):
            raise ValueError("band_indices must not contain duplicates.")
        for idx in indices:
            if idx < 1 or idx > len(blocks):
                raise ValueError(f"band_indices must be between 1 and {len(blocks)}.")
        blocks = [blocks[idx - 1] for idx in indices]
        names = [names[idx - 1] for idx in indices]

    if band_names is not None:
        names = [str(name) for name in band_names]
    elif len(set(names)) != len(names):
        names = [f"band_{idx}" for idx in range(1, len(blocks) + 1)]

    _get_logger().info(
        "Loaded %d bands from %d rasters (%dx%d).",
        len(blocks),
        len(paths),
        shape[0] if shape else 0,
        shape[1] if shape else 0,
    )
    stack = np.stack(blocks, axis=2)
    return FeatureGrid(stack, tuple(names), transform=transform, crs=crs)


def _encode_labels(
    gdf: gpd.GeoDataFrame, label_column: str
) -> Tuple[np.ndarray, Dict[int, Any]]:
    values = gdf[label_column]
    if values.dtype.kind in "iu":
        return values.to_numpy(dtype="int64"), {}

    label_cat = values.astype("category")
    codes = label_cat.cat.codes.to_numpy(dtype="int64") + 1
    decoder = {idx + 1: value for idx, value in enumerate(label_cat.cat.categories)}
    return codes, decoder


def read_label_samples(
    grid: FeatureGrid,
    labels: Union[PathLike, gpd.GeoDataFrame],
    label_column: str,
) -> LabelSamples:
    """Rasterize training polygons onto the grid: one sample per covered cell.

    Integer label columns are used as class values directly (0 included,
    negatives rejected); other columns are coded 1..C in sorted category order
    and the mapping is kept on the samples.
    Where polygons overlap, the later polygon wins.
    """

    if grid.transform is None:
        raise ValueError("Feature grid has no transform; cannot rasterize labels.")

    gdf = labels if isinstance(labels, gpd.GeoDataFrame) else gpd.read_file(labels)
    if label_column not in gdf.columns:
        raise ValueError(f"Column '{label_column}' not found in training data.")

    if grid.crs is not None:
        if gdf.crs is None:
            warnings.warn(
                "Vector training data lacks CRS. Assuming raster CRS.", UserWarning
            )
            gdf = gdf.set_crs(grid.crs)
        else:
            gdf = gdf.to_crs(grid.crs)

    codes, decoder = _encode_labels(gdf, label_column)
    if codes.size and codes.min() < 0:
        raise ValueError(
            f"Column '{label_column}' holds negative class values; "
            "class labels must be non-negative integers."
        )
    shapes = []
    for geom, code in zip(gdf.geometry, codes):
        if geom is None or geom.is_empty:
            continue
        shapes.append((geom, int(code)))
    if not shapes:
        raise ValueError("No training samples were extracted. Check label geometries.")

    label_grid = features.rasterize(
        shapes,
        out_shape=grid.shape,
        transform=grid.transform,
        fill=NODATA,
        dtype="int32",
    )
    rows, cols = np.nonzero(label_grid != NODATA)
    if rows.size == 0:
        raise ValueError("No training samples were extracted. Check label geometries.")

    if decoder:
        preview = ", ".join(
            f"{code}:{label}" for code, label in list(decoder.items())[:10]
        )
        _get_logger().info(
            "Label codes => classes: %s%s", preview, " ..." if len(decoder) > 10 else ""
        )
    _get_logger().info("Extracted %d labeled cells.", rows.size)
    return LabelSamples(rows, cols, label_grid[rows, cols], decoder=decoder)


def write_raster(
    path: PathLike,
    data: np.ndarray,
    grid: FeatureGrid,
    *,
    nodata: Union[int, float, None],
) -> Path:
    """Write a (rows, cols) or (bands, rows, cols) array as a GeoTIFF on the grid."""

    arr = np.asarray(data)
    if arr.ndim == 2:
        arr = arr[np.newaxis, :, :]
    if arr.shape[1:] != grid.shape:
        raise ValueError(
            f"Raster shape {arr.shape[1:]} does not match the grid {grid.shape}."
        )

    out_path = Path(path)
    if out_path.suffix.lower() == ".vrt":
        out_path = out_path.with_suffix(".tif")
        _get_logger().warning(
            "Output path ended with .vrt; writing GeoTIFF to .tif instead."
        )
    out_path.parent.mkdir(parents=True, exist_ok=True)

    profile: Dict[str, Any] = {
        "driver": "GTiff",
        "height": grid.shape[0],
        "width": grid.shape[1],
        "count": arr.shape[0],
        "dtype": arr.dtype.name,
        "nodata": nodata,
    }
    if grid.crs is not None:
        profile["crs"] = grid.crs
    if grid.transform is not None:
        profile["transform"] = grid.transform

    with rasterio.open(out_path, "w", **profile) as dst:
        dst.write(arr)
    _get_logger().info("Wrote %s.", out_path)
    return out_path


__all__ = [
    "expand_raster_inputs",
    "read_feature_grid",
    "read_label_samples",
    "write_raster",
]
