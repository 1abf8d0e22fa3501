"""Console script entry point for covervote."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional, Sequence

import joblib

from .config import PipelineConfig
from .grid import NODATA
from .io import read_feature_grid, read_label_samples, write_raster
from .pipeline import run_pipeline

CLI_LOGGER_NAME = "covervote"


def configure_logging(verbosity: int) -> logging.Logger:
    """Map -v/-vv onto INFO/DEBUG for the covervote loggers."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(message)s")
    else:
        root.setLevel(level)

    logger = logging.getLogger(CLI_LOGGER_NAME)
    logger.setLevel(level)
    return logger


def _flatten_image_args(image_args: Sequence[Sequence[str]]) -> List[str]:
    images: List[str] = []
    for group in image_args:
        images.extend(group)
    return images


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="covervote",
        description=(
            "Ensemble Random Forest land-cover classification with majority "
            "voting, spatial denoising and per-pixel confidence."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    classify = subparsers.add_parser(
        "classify", help="Classify a feature raster stack from training polygons."
    )
    classify.add_argument(
        "--image",
        required=True,
        nargs="+",
        action="append",
        help=(
            "Feature raster(s): pass one or more GeoTIFF/VRT paths after --image, "
            "or repeat --image. Directories are expanded to TIFFs."
        ),
    )
    classify.add_argument(
        "--band-indices",
        nargs="+",
        type=int,
        help="Optional 1-based band indices to load from the stacked inputs.",
    )
    classify.add_argument(
        "--bands",
        nargs="+",
        help="Band names used for training (default: every loaded band).",
    )
    classify.add_argument(
        "--labels", required=True, help="Training polygons (Shapefile/GeoPackage)."
    )
    classify.add_argument(
        "--label-column",
        required=True,
        help="Column in labels containing class ids or names.",
    )
    classify.add_argument(
        "--classes",
        nargs="+",
        type=int,
        help=(
            "Fixed class values (default: 1..max label, starting at 0 when "
            "class 0 is labelled)."
        ),
    )
    classify.add_argument(
        "--output-dir", required=True, help="Directory for the output GeoTIFFs."
    )
    classify.add_argument(
        "--runs", type=int, default=1000, help="Ensemble members (default: 1000)."
    )
    classify.add_argument(
        "--trees", type=int, default=500, help="Trees per forest (default: 500)."
    )
    classify.add_argument(
        "--split-features",
        type=int,
        default=4,
        help="Features tried per split in ensemble forests (default: 4).",
    )
    classify.add_argument(
        "--probability-trees",
        type=int,
        default=None,
        help="Trees in the probability forest (default: --trees).",
    )
    classify.add_argument(
        "--radius",
        type=int,
        default=2,
        help="Mode filter radius in cells; window is 2r+1 square (default: 2).",
    )
    classify.add_argument(
        "--min-component-size",
        type=int,
        default=25,
        help="Mask regions with at most this many cells (default: 25).",
    )
    classify.add_argument(
        "--connectivity",
        type=int,
        choices=[4, 8],
        default=8,
        help="Neighborhood used for connected regions (default: 8).",
    )
    classify.add_argument(
        "--seed", type=int, default=42, help="Base random seed (default: 42)."
    )
    classify.add_argument(
        "--jobs",
        type=int,
        default=1,
        help="Parallel ensemble workers (default: 1). Use -1 for all cores.",
    )
    classify.add_argument(
        "--block-size",
        type=int,
        default=65536,
        help="Cells classified per prediction block (default: 65536).",
    )
    classify.add_argument(
        "--probs-out",
        action="store_true",
        help="Also write the class probability raster (probabilities.tif).",
    )
    classify.add_argument(
        "--model-out", help="Optional path to save the probability forest (.joblib)."
    )
    classify.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity: -v (info), -vv (debug).",
    )
    return parser


def _config_from_args(args: argparse.Namespace) -> PipelineConfig:
    return PipelineConfig(
        runs=args.runs,
        trees=args.trees,
        split_features=args.split_features,
        probability_trees=args.probability_trees,
        radius=args.radius,
        min_component_size=args.min_component_size,
        connectivity=args.connectivity,
        bands=tuple(args.bands) if args.bands else None,
        classes=tuple(args.classes) if args.classes else None,
        seed=args.seed,
        jobs=args.jobs,
        block_size=args.block_size,
    )


def _run_classify(
    args: argparse.Namespace, config: PipelineConfig, logger: logging.Logger
) -> None:
    grid = read_feature_grid(
        _flatten_image_args(args.image), band_indices=args.band_indices
    )
    samples = read_label_samples(grid, args.labels, args.label_column)
    result = run_pipeline(grid, samples, config)

    out_dir = Path(args.output_dir)
    write_raster(out_dir / "consensus.tif", result.consensus, grid, nodata=NODATA)
    write_raster(
        out_dir / "agreement.tif", result.agreement, grid, nodata=float("nan")
    )
    write_raster(
        out_dir / "classification.tif", result.classification, grid, nodata=NODATA
    )
    write_raster(
        out_dir / "confidence.tif",
        result.confidence.to_bands(),
        grid,
        nodata=float("nan"),
    )
    if args.probs_out:
        write_raster(
            out_dir / "probabilities.tif",
            result.probabilities.to_bands(),
            grid,
            nodata=float("nan"),
        )
    if args.model_out:
        model_out = Path(args.model_out)
        model_out.parent.mkdir(parents=True, exist_ok=True)
        result.forest.label_decoder = samples.decoder  # type: ignore[attr-defined]
        joblib.dump(result.forest, model_out)
        logger.info("Model saved to %s", model_out)

    logger.info("Classification written to %s", out_dir)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Dispatch to the requested subcommand."""
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    logger = configure_logging(args.verbose)

    try:
        config = _config_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        _run_classify(args, config, logger)
    except ValueError as exc:
        parser.error(str(exc))
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
