"""Options recognized by the classification pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

CONNECTIVITIES = (4, 8)


@dataclass(frozen=True)
class PipelineConfig:
    """Run parameters passed explicitly into every pipeline stage.

    ``runs``/``trees``/``split_features`` drive the voting ensemble,
    ``probability_trees`` the single probability forest (defaults to ``trees``),
    and ``radius``/``min_component_size``/``connectivity`` the denoiser.
    ``bands`` restricts training to named grid bands and ``classes`` fixes the
    class set (defaults to 1..max training label, or 0..max when 0 is used).
    ``jobs`` <= 0 uses all cores.
    """

    runs: int = 1000
    trees: int = 500
    split_features: int = 4
    probability_trees: Optional[int] = None
    radius: int = 2
    min_component_size: int = 25
    connectivity: int = 8
    bands: Optional[Tuple[str, ...]] = None
    classes: Optional[Tuple[int, ...]] = None
    seed: int = 42
    jobs: int = 1
    block_size: int = 65536

    def __post_init__(self) -> None:
        if self.runs < 1:
            raise ValueError("runs must be >= 1.")
        if self.trees < 1:
            raise ValueError("trees must be >= 1.")
        if self.split_features < 1:
            raise ValueError("split_features must be >= 1.")
        if self.probability_trees is not None and self.probability_trees < 1:
            raise ValueError("probability_trees must be >= 1.")
        if self.radius < 0:
            raise ValueError("radius must be non-negative.")
        if self.min_component_size < 0:
            raise ValueError("min_component_size must be non-negative.")
        if self.connectivity not in CONNECTIVITIES:
            raise ValueError("connectivity must be 4 or 8.")
        if self.block_size < 1:
            raise ValueError("block_size must be >= 1.")
        if self.bands is not None:
            object.__setattr__(self, "bands", tuple(str(b) for b in self.bands))
        if self.classes is not None:
            object.__setattr__(self, "classes", tuple(int(c) for c in self.classes))

    @property
    def forest_trees(self) -> int:
        if self.probability_trees is not None:
            return self.probability_trees
        return self.trees

    @property
    def worker_count(self) -> int:
        if self.jobs <= 0:
            return max(1, os.cpu_count() or 1)
        return self.jobs


__all__ = ["PipelineConfig", "CONNECTIVITIES"]
