"""Per-shape surrogate allocation.

Stage 1 clips every surrogate granule near the input shape to the shape
and sums the clipped weights; that sum normalizes everything after it.
Stage 2 intersects the clipped granules with each candidate grid cell.
Both stages stripe their work over a fixed number of workers (worker p
takes items p, p+W, p+2W, ...). Sums run in granule-index order, so the
result does not depend on thread scheduling.
"""

import math
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import shapely
from shapely.geometry.base import BaseGeometry

from config import RTREE_NODE_CAPACITY
from grid import GridCell, GridDefinition
from spherical import Bounds, Footprint
from surrogate import Granule, SurrogateDataset
from utils import resolve_worker_count, run_striped


class InputShape:
    """One emission source geometry, identified by its location key."""

    __slots__ = ('key', 'footprint', 'planar_bounds')

    def __init__(self, key: str, footprint: Footprint, planar_bounds: Optional[Bounds] = None):
        self.key = str(key)
        self.footprint = footprint
        self.planar_bounds = planar_bounds if planar_bounds is not None else footprint.bounds

    @classmethod
    def from_geometry(cls, key: str, geometry: BaseGeometry, crs) -> 'InputShape':
        """Shape from a geometry in ``crs``; transform failures raise ProjectionError."""
        return cls(key, Footprint.from_projected(geometry, crs), tuple(geometry.bounds))

    @property
    def bounds(self) -> Bounds:
        return self.footprint.bounds

    def __str__(self):
        return self.key

    def __repr__(self):
        return f"InputShape({self.key!r})"


@dataclass(frozen=True)
class AllocationResult:
    """Sparse allocation of one input shape onto a grid for one surrogate.

    ``cells`` may repeat a (row, col) after a merge; consumers sum them.
    ``total_weight`` is the raw surrogate weight found inside the shape.
    """
    cells: Tuple[GridCell, ...]
    covered: bool
    nx: int
    ny: int
    shape: Optional[InputShape] = None
    total_weight: float = 0.0

    @property
    def is_empty(self) -> bool:
        return len(self.cells) == 0

    def weight_at(self, row: int, col: int) -> float:
        return math.fsum(c.weight for c in self.cells if c.row == row and c.col == col)

    def total(self) -> float:
        return math.fsum(c.weight for c in self.cells)


class IntersectionEngine:
    """Two-stage spherical intersection of one shape with a grid and a surrogate."""

    def __init__(self, grid: GridDefinition, dataset: SurrogateDataset,
                 executor: Optional[Executor] = None, workers: Optional[int] = None):
        self.grid = grid
        self.dataset = dataset
        self.workers = resolve_worker_count(workers)
        self._executor = executor

    def calculate(self, shape: InputShape) -> AllocationResult:
        if self._executor is not None:
            return self._calculate(shape, self._executor)
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='srg') as pool:
            return self._calculate(shape, pool)

    def _calculate(self, shape: InputShape, pool: Executor) -> AllocationResult:
        covered = self.grid.covers(shape.footprint)
        cells, clips, total = self._intersections1(shape, pool)
        logging.debug("shape %s: %d candidate cells, %d surrogate clips, weight %g",
                      shape.key, len(cells), len(clips), total)
        if total == 0.0:
            # nothing to allocate: empty and not covered, which is not an error
            return AllocationResult((), False, self.grid.nx, self.grid.ny, shape, 0.0)
        result_cells = tuple(self._intersections2(cells, clips, total, pool))
        return AllocationResult(result_cells, covered, self.grid.nx, self.grid.ny, shape, total)

    def _intersections1(self, shape: InputShape, pool: Executor
                        ) -> Tuple[List[GridCell], List[Granule], float]:
        """Candidate cells, shape-clipped granules and their total weight."""
        candidates = [self.grid.cells[int(i)] for i in self.grid.query_bounds(shape.bounds)]

        granule_idx = self.dataset.query(shape.bounds)
        granules = self.dataset.granules
        dim = self.dataset.dimension

        def clip_worker(stripe: range, cancel: threading.Event):
            out = []
            for j in stripe:
                if cancel.is_set():
                    break
                gi = int(granule_idx[j])
                srg = granules[gi]
                clip = srg.footprint.intersection(shape.footprint)
                if clip.is_empty:
                    continue
                out.append((gi, Granule(clip, srg.weight), srg.weight * clip.measure(dim)))
            return out

        parts = run_striped(pool, len(granule_idx), self.workers, clip_worker)
        clipped = sorted((item for part in parts for item in part), key=lambda t: t[0])
        total = math.fsum(contrib for _, _, contrib in clipped)
        return candidates, [g for _, g, _ in clipped], total

    def _intersections2(self, cells: List[GridCell], clips: List[Granule], total: float,
                        pool: Executor) -> List[GridCell]:
        """Weighted share of the shape in each candidate cell; private cell copies.

        Points and lines lying on a shared cell edge intersect every cell
        along that edge. Their measure is split across those cells in
        proportion to the per-cell overlaps, so no granule contributes
        more than its own clipped measure.
        """
        dim = self.dataset.dimension
        clip_index = shapely.STRtree([g.footprint.geometry for g in clips],
                                     node_capacity=RTREE_NODE_CAPACITY)

        def cell_worker(stripe: range, cancel: threading.Event):
            out = []
            for k in stripe:
                if cancel.is_set():
                    break
                cell = cells[k]
                parts = []
                for gi in np.sort(clip_index.query(cell.footprint.geometry)):
                    isect = clips[int(gi)].footprint.intersection(cell.footprint)
                    if isect.is_empty:
                        continue
                    overlap = isect.measure(dim)
                    if overlap > 0.0:
                        parts.append((int(gi), overlap))
                if parts:
                    out.append((k, parts))
            return out

        found = run_striped(pool, len(cells), self.workers, cell_worker)
        overlaps = sorted((item for part in found for item in part), key=lambda t: t[0])

        share = [1.0] * len(clips)
        if dim < 2:
            seen: List[List[float]] = [[] for _ in clips]
            for _, parts in overlaps:
                for gi, overlap in parts:
                    seen[gi].append(overlap)
            for gi, clip in enumerate(clips):
                counted = math.fsum(seen[gi])
                if counted > 0.0:
                    # pieces outside the grid are never counted, so only shrink
                    share[gi] = min(clip.footprint.measure(dim) / counted, 1.0)

        result: List[GridCell] = []
        for k, parts in overlaps:
            weight = math.fsum(clips[gi].weight * overlap * share[gi] for gi, overlap in parts) / total
            if weight > 0.0:
                result.append(cells[k].copy(weight=weight))
        result.sort(key=lambda c: (c.row, c.col))
        return result


def allocate_shape(shape: InputShape, grid: GridDefinition, dataset: SurrogateDataset,
                   executor: Optional[Executor] = None, workers: Optional[int] = None) -> AllocationResult:
    """Allocate one shape; convenience wrapper around IntersectionEngine."""
    return IntersectionEngine(grid, dataset, executor=executor, workers=workers).calculate(shape)
