"""Turning sparse allocation results into grids, merges and shapefile records."""

import os
import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import geopandas as gpd

from intersection import AllocationResult
from utils import location_hash


def to_dense_array(result: AllocationResult) -> Tuple[Optional[np.ndarray], bool]:
    """Dense ``ny`` x ``nx`` weights for one result.

    Duplicate (row, col) entries are summed. Returns ``(None, False)``
    when nothing was allocated. The array is rescaled to sum to 1 only
    when the shape is fully covered by the grid; otherwise the raw
    weights are kept and their sum is the share of the shape inside it.
    """
    out = np.zeros((result.ny, result.nx), dtype=np.float64)
    if result.cells:
        rows = np.fromiter((c.row for c in result.cells), dtype=np.int64, count=len(result.cells))
        cols = np.fromiter((c.col for c in result.cells), dtype=np.int64, count=len(result.cells))
        weights = np.fromiter((c.weight for c in result.cells), dtype=np.float64, count=len(result.cells))
        np.add.at(out, (rows, cols), weights)
    total = out.sum()
    if total == 0:
        return None, False
    if result.covered:
        out *= 1.0 / total
    return out, result.covered


def merge_results(results: Sequence[AllocationResult], multipliers: Sequence[float]) -> AllocationResult:
    """Weighted concatenation of several results on the same grid.

    Cells are not deduplicated; ``to_dense_array`` sums them. The covered
    flag and the originating shape come from the first result.
    """
    if not results:
        raise ValueError("merge_results needs at least one result")
    if len(results) != len(multipliers):
        raise ValueError(f"{len(results)} results but {len(multipliers)} multipliers")
    nx, ny = results[0].nx, results[0].ny
    cells = []
    total_weight = 0.0
    for res, fac in zip(results, multipliers):
        if (res.nx, res.ny) != (nx, ny):
            raise ValueError(f"cannot merge results on different grids: {nx}x{ny} vs {res.nx}x{res.ny}")
        fac = float(fac)
        total_weight += fac * res.total_weight
        cells.extend(c.copy(weight=c.weight * fac) for c in res.cells)
    first = results[0]
    return AllocationResult(tuple(cells), first.covered, nx, ny, first.shape, total_weight)


def allocation_records(result: AllocationResult, crs=None) -> gpd.GeoDataFrame:
    """One record per surviving cell: ROW, COL, INPUT_ID, WEIGHT, COVERED, geometry."""
    input_id = ''
    if result.shape is not None:
        input_id = location_hash(result.shape.key, result.shape.footprint.to_wkb())
    frame = pd.DataFrame({
        'ROW': [c.row for c in result.cells],
        'COL': [c.col for c in result.cells],
        'INPUT_ID': [input_id] * len(result.cells),
        'WEIGHT': [c.weight for c in result.cells],
        'COVERED': ['T' if result.covered else 'F'] * len(result.cells),
    })
    return gpd.GeoDataFrame(frame, geometry=[c.polygon for c in result.cells], crs=crs)


def write_allocation_shp(result: AllocationResult, path: str, crs=None) -> str:
    """Write the allocation of a single input shape to a shapefile."""
    records = allocation_records(result, crs=crs)
    if records.empty:
        logging.warning("Not writing %s: allocation has no cells", path)
        return path
    outdir = os.path.dirname(os.path.abspath(path))
    os.makedirs(outdir, exist_ok=True)
    records.to_file(path, engine='pyogrio')
    return path

