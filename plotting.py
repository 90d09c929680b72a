"""Quick-look plots of gridded surrogates."""

import os
from typing import Optional

import numpy as np
import geopandas as gpd
import matplotlib

_display = os.environ.get('DISPLAY') or os.environ.get('WAYLAND_DISPLAY')
if not _display:
    matplotlib.use('Agg')

import matplotlib.pyplot as plt  # noqa: E402
from matplotlib.colors import Normalize  # noqa: E402

from config import LONLAT_CRS  # noqa: E402
from grid import GridDefinition  # noqa: E402


def _lon_label(v: float) -> str:
    return f"{abs(v):g}°{'W' if v < 0 else 'E'}"


def _lat_label(v: float) -> str:
    return f"{abs(v):g}°{'S' if v < 0 else 'N'}"


def plot_allocation(grid: GridDefinition, array: np.ndarray, ax=None, title: Optional[str] = None,
                    cmap: str = 'viridis', zero_as_blank: bool = True):
    """Draw a dense ``ny`` x ``nx`` allocation on the grid's lon/lat cell footprints.

    Returns the Axes. Zero cells are left unfilled unless ``zero_as_blank``
    is False.
    """
    if array.shape != (grid.ny, grid.nx):
        raise ValueError(f"array shape {array.shape} does not match grid {grid.ny}x{grid.nx}")
    values = np.array([array[c.row, c.col] for c in grid.cells], dtype=np.float64)
    gdf = gpd.GeoDataFrame({'WEIGHT': values},
                           geometry=[c.footprint.geometry for c in grid.cells], crs=LONLAT_CRS)
    if zero_as_blank:
        gdf = gdf[gdf['WEIGHT'] != 0]

    if ax is None:
        _, ax = plt.subplots(figsize=(8, 6))
    vmax = float(values.max()) if values.size and values.max() > 0 else 1.0
    if not gdf.empty:
        gdf.plot(column='WEIGHT', ax=ax, cmap=cmap, norm=Normalize(vmin=0.0, vmax=vmax),
                 edgecolor='#999999', linewidth=0.3, legend=True)
    minx, miny, maxx, maxy = grid.extent.bounds
    xticks = np.linspace(minx, maxx, 5)
    yticks = np.linspace(miny, maxy, 5)
    ax.set_xticks(xticks)
    ax.set_yticks(yticks)
    ax.set_xticklabels([_lon_label(round(v, 2)) for v in xticks], fontsize=8)
    ax.set_yticklabels([_lat_label(round(v, 2)) for v in yticks], fontsize=8)
    ax.set_xlim(minx, maxx)
    ax.set_ylim(miny, maxy)
    ax.grid(color='#cccccc', linewidth=0.5, alpha=0.8)
    ax.set_title(title or f"{grid.name} surrogate")
    return ax
