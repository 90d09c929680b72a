"""Output grid definitions for surrogate gridding.

##############################################################################
# GRID RULES
# - Rows follow y and columns follow x, both zero-based; cells are stored
#   row-major (all columns of row 0 first).
# - Irregular grids have a single column and one row per polygon.
# - Cell polygons stay in the grid's working CRS; every cell also carries a
#   lon/lat Footprint that all area and intersection math uses.
# - The spatial index and the coverage footprint are built in the
#   constructor and never touched again.
##############################################################################
"""

import os
import math
import re
import logging
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import geopandas as gpd
import netCDF4
import pyproj
import shapely
from shapely.geometry.base import BaseGeometry

from cache import file_signature, memoize
from config import COVERED_THRESHOLD, LONLAT_CRS, RTREE_NODE_CAPACITY, USE_SPHERICAL_EARTH
from errors import ProjectionError
from spherical import Bounds, Footprint, make_transformer, same_crs, transform_geometry, transform_xy

_CLEAN_NAME_QUOTE_RE = re.compile(r"['`,]")
_CLEAN_NAME_WHITESPACE_RE = re.compile(r"\s+")
_GRIDDESC_SPLIT_RE = re.compile(r',\s*|\s+')


class GridCell:
    """One output cell. ``weight`` is only ever accumulated on private copies."""

    __slots__ = ('polygon', 'footprint', 'row', 'col', 'weight', 'timezone')

    def __init__(self, polygon: BaseGeometry, footprint: Footprint, row: int, col: int,
                 weight: float = 0.0, timezone: Optional[str] = None):
        self.polygon = polygon
        self.footprint = footprint
        self.row = int(row)
        self.col = int(col)
        self.weight = float(weight)
        self.timezone = timezone

    @property
    def bounds(self) -> Bounds:
        return self.footprint.bounds

    def copy(self, weight: float = 0.0) -> 'GridCell':
        return GridCell(self.polygon, self.footprint, self.row, self.col, weight, self.timezone)

    def __repr__(self):
        return f"GridCell(row={self.row}, col={self.col}, weight={self.weight:.6g})"


class Location(NamedTuple):
    """Where a footprint falls on a grid (result of ``GridDefinition.locate``)."""
    cells: Tuple[Tuple[int, int], ...]
    fractions: Tuple[float, ...]
    in_grid: bool
    covered: bool


class GridDefinition:
    """The grid that surrogates are allocated to."""

    def __init__(self, name: str, cells: Sequence[GridCell], nx: int, ny: int, crs,
                 dx: float = 0.0, dy: float = 0.0, x0: float = 0.0, y0: float = 0.0,
                 irregular: bool = False):
        if len(cells) != nx * ny:
            raise ValueError(f"grid {name}: {len(cells)} cells for {nx}x{ny} dimensions")
        seen = set()
        for cell in cells:
            rc = (cell.row, cell.col)
            if rc in seen:
                raise ValueError(f"grid {name}: duplicate cell row={rc[0]} col={rc[1]}")
            seen.add(rc)

        self.name = name
        self.nx, self.ny = int(nx), int(ny)
        self.dx, self.dy = dx, dy
        self.x0, self.y0 = x0, y0
        self.crs = pyproj.CRS.from_user_input(crs)
        self.irregular = irregular
        self.cells: Tuple[GridCell, ...] = tuple(cells)
        self._by_rc: Dict[Tuple[int, int], int] = {(c.row, c.col): i for i, c in enumerate(self.cells)}
        self._index = shapely.STRtree([c.footprint.geometry for c in self.cells],
                                      node_capacity=RTREE_NODE_CAPACITY)
        self.extent = Footprint.union(c.footprint for c in self.cells)
        logging.debug("grid %s: %d cells indexed", name, len(self.cells))

    # ---- constructors ----

    @classmethod
    def regular(cls, name: str, nx: int, ny: int, dx: float, dy: float, x0: float, y0: float,
                crs) -> 'GridDefinition':
        """Regular grid of ``nx`` x ``ny`` equal cells anchored at (x0, y0) in ``crs``.

        All corners are projected in one call; any projection failure
        raises ProjectionError and no grid is returned.
        """
        nx, ny = int(nx), int(ny)
        x_edges = x0 + np.arange(nx + 1) * dx
        y_edges = y0 + np.arange(ny + 1) * dy
        xx, yy = np.meshgrid(x_edges, y_edges)  # (ny+1, nx+1)

        if same_crs(crs, LONLAT_CRS):
            lons, lats = xx, yy
        else:
            lon_flat, lat_flat = transform_xy(make_transformer(crs, LONLAT_CRS), xx.ravel(), yy.ravel())
            lons = lon_flat.reshape(ny + 1, nx + 1)
            lats = lat_flat.reshape(ny + 1, nx + 1)

        planar = shapely.polygons(_corner_rings(xx, yy))
        spherical = shapely.polygons(_corner_rings(lons, lats))
        r_idx, c_idx = np.indices((ny, nx))
        cells = [
            GridCell(p, Footprint(s), r, c)
            for p, s, r, c in zip(planar, spherical, r_idx.ravel(), c_idx.ravel())
        ]
        return cls(name, cells, nx, ny, crs, dx=dx, dy=dy, x0=x0, y0=y0)

    @classmethod
    def irregular_grid(cls, name: str, polygons: Iterable[BaseGeometry], input_crs,
                       output_crs=None, timezones: Optional[Sequence[str]] = None) -> 'GridDefinition':
        """Irregular grid: one cell per polygon, one column, rows in input order."""
        if output_crs is None:
            output_crs = input_crs
        if isinstance(polygons, (gpd.GeoDataFrame, gpd.GeoSeries)):
            polygons = list(polygons.geometry)
        polygons = list(polygons)

        to_output = None if same_crs(input_crs, output_crs) else make_transformer(input_crs, output_crs)
        cells = []
        for i, poly in enumerate(polygons):
            working = poly if to_output is None else transform_geometry(poly, to_output)
            tz = timezones[i] if timezones is not None else None
            cells.append(GridCell(working, Footprint.from_projected(working, output_crs), i, 0, timezone=tz))
        return cls(name, cells, 1, len(cells), output_crs, irregular=True)

    @classmethod
    def from_griddesc(cls, path: str, grid_name: str) -> 'GridDefinition':
        """Regular grid described by a named entry in an IOAPI GRIDDESC file."""
        coord_params, grid_params = extract_grid(path, grid_name)
        _, xorig, yorig, xcell, ycell, ncols, nrows = grid_params[:7]
        crs = ioapi_crs(*coord_params)
        return cls.regular(_clean_name(grid_name), int(ncols), int(nrows), xcell, ycell, xorig, yorig, crs)

    @classmethod
    def from_ioapi(cls, ncf_path: str) -> 'GridDefinition':
        """Regular grid taken from IOAPI NetCDF global attributes (GDNAM, XORIG, ...)."""
        coord_params, grid_params = read_ncf_grid_params(ncf_path)
        gdnam, xorig, yorig, xcell, ycell, ncols, nrows, _ = grid_params
        crs = ioapi_crs(*coord_params)
        return cls.regular(gdnam, ncols, nrows, xcell, ycell, xorig, yorig, crs)

    # ---- queries ----

    def cell_at(self, row: int, col: int) -> GridCell:
        try:
            return self.cells[self._by_rc[(row, col)]]
        except KeyError:
            raise KeyError(f"grid {self.name} has no cell row={row} col={col}") from None

    def query_bounds(self, bounds: Bounds) -> np.ndarray:
        """Indices of cells whose footprint bounds overlap ``bounds`` (ascending)."""
        idx = self._index.query(shapely.box(*bounds))
        return np.sort(np.asarray(idx, dtype=np.int64))

    def locate(self, footprint: Footprint) -> Location:
        """Cells the footprint overlaps and the share of the footprint in each.

        Fractions are each relative to the whole footprint, so they sum to
        the part of the footprint inside the grid. Cells meeting at a shared
        edge are each reported. Lines are measured by length and points by
        count; a point or line piece on a shared edge is split among the
        cells it touches.
        """
        dim = footprint.dimension
        if dim < 0:
            return Location((), (), False, False)
        if dim == 0:
            return self._locate_points(footprint)
        total = footprint.measure(dim)
        degenerate = total <= 0.0

        hits: List[Tuple[GridCell, float]] = []
        for i in self._index.query(footprint.geometry):
            cell = self.cells[int(i)]
            if not cell.footprint.intersects(footprint):
                continue
            if degenerate:
                hits.append((cell, 1.0))
                continue
            overlap = cell.footprint.intersection(footprint).measure(dim)
            if overlap > 0.0:
                hits.append((cell, overlap))

        if not hits:
            return Location((), (), False, False)
        hits.sort(key=lambda h: (h[0].row, h[0].col))
        if degenerate:
            fractions = tuple(1.0 / len(hits) for _ in hits)
        else:
            counted = math.fsum(m for _, m in hits)
            scale = 1.0 / total
            if dim == 1 and counted > 0.0:
                # pieces on shared edges are counted once per touching cell
                inside = self.extent.intersection(footprint).measure(dim)
                scale = min(inside / counted, 1.0) / total
            fractions = tuple(m * scale for _, m in hits)
        return self._location(hits, fractions)

    def _locate_points(self, footprint: Footprint) -> Location:
        points = [p for p in shapely.get_parts(footprint.geometry) if p.geom_type == 'Point']
        shares: Dict[int, List[float]] = {}
        for point in points:
            touching = self._index.query(point, predicate='intersects')
            for i in touching:
                shares.setdefault(int(i), []).append(1.0 / (len(touching) * len(points)))
        if not shares:
            return Location((), (), False, False)
        hits = sorted(((self.cells[i], math.fsum(s)) for i, s in shares.items()),
                      key=lambda h: (h[0].row, h[0].col))
        return self._location(hits, tuple(m for _, m in hits))

    @staticmethod
    def _location(hits: Sequence[Tuple[GridCell, float]], fractions: Tuple[float, ...]) -> Location:
        covered = math.fsum(fractions) > COVERED_THRESHOLD
        return Location(tuple((c.row, c.col) for c, _ in hits), fractions, True, covered)

    def covers(self, footprint: Footprint) -> bool:
        """True when (almost) all of ``footprint`` lies inside the grid coverage."""
        dim = footprint.dimension
        if dim < 0:
            return False
        total = footprint.measure(dim)
        if dim == 0 or total <= 0.0:
            return bool(self.extent.geometry.covers(footprint.geometry))
        inside = self.extent.intersection(footprint).measure(dim)
        return inside / total > COVERED_THRESHOLD

    # ---- output ----

    def to_frame(self) -> gpd.GeoDataFrame:
        gdf = gpd.GeoDataFrame(
            {
                'ROW': [c.row for c in self.cells],
                'COL': [c.col for c in self.cells],
            },
            geometry=[c.polygon for c in self.cells],
            crs=self.crs,
        )
        gdf['GRID_RC'] = gdf['ROW'].astype(str) + '_' + gdf['COL'].astype(str)
        return gdf

    def write_to_shp(self, outdir: str) -> str:
        """Write the cells (row/col attributes) to ``outdir``/<name>.shp."""
        base = os.path.join(outdir, self.name)
        for ext in ('.shp', '.prj', '.dbf', '.shx', '.cpg'):
            if os.path.exists(base + ext):
                os.remove(base + ext)
        path = base + '.shp'
        self.to_frame().to_file(path, engine='pyogrio')
        return path

    def __repr__(self):
        kind = 'irregular' if self.irregular else 'regular'
        return f"GridDefinition({self.name!r}, {kind}, nx={self.nx}, ny={self.ny})"


def _corner_rings(xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    """(ncells, 5, 2) closed rings BL, BR, TR, TL, BL from (ny+1, nx+1) corner arrays."""
    n_cells = (xs.shape[0] - 1) * (xs.shape[1] - 1)
    coords = np.empty((n_cells, 5, 2), dtype=np.float64)
    corners = [
        (xs[:-1, :-1], ys[:-1, :-1]),
        (xs[:-1, 1:], ys[:-1, 1:]),
        (xs[1:, 1:], ys[1:, 1:]),
        (xs[1:, :-1], ys[1:, :-1]),
    ]
    for k, (cx, cy) in enumerate(corners):
        coords[:, k, 0] = cx.ravel()
        coords[:, k, 1] = cy.ravel()
    coords[:, 4, :] = coords[:, 0, :]
    return coords


# ---- IOAPI grid descriptions ----

def ioapi_crs(gdtyp, p_alp, p_bet, p_gam, xcent, ycent) -> pyproj.CRS:
    """CRS for an IOAPI coordinate system (1 = lat-lon, 2 = Lambert conformal)."""
    gdtyp = int(gdtyp)
    if gdtyp == 1:
        return pyproj.CRS.from_user_input(LONLAT_CRS)
    if gdtyp != 2:
        raise ProjectionError(f"unsupported IOAPI grid type GDTYP={gdtyp}")
    a_b = "+a=6370000.0 +b=6370000.0" if USE_SPHERICAL_EARTH else "+ellps=WGS84 +datum=WGS84"
    proj4 = (
        f"+proj=lcc +lat_1={p_alp} +lat_2={p_bet} +lat_0={ycent} "
        f"+lon_0={xcent} {a_b} +x_0=0 +y_0=0 +units=m +no_defs"
    )
    try:
        return pyproj.CRS.from_proj4(proj4)
    except pyproj.exceptions.CRSError as exc:
        raise ProjectionError(f"invalid LCC parameters: {exc}") from exc


def _clean_name(raw: str) -> str:
    raw = raw.split('!')[0].strip()
    raw = _CLEAN_NAME_QUOTE_RE.sub('', raw)
    raw = _CLEAN_NAME_WHITESPACE_RE.sub(' ', raw)
    return raw.strip()


def _parse_number(tok: str) -> float:
    return float(tok.replace('D', 'E').replace('d', 'e'))


@memoize(maxsize=8)
def _load_griddesc(path: str, _signature: Tuple[str, Optional[int]]) -> Tuple[Dict, Dict]:
    del _signature  # only busts the cache when the file changes
    with open(path, 'r') as f:
        lines = [ln.rstrip('\n') for ln in f]

    def _is_blank_name(line: str) -> bool:
        return _clean_name(line) == '' and line.strip().startswith("'")

    try:
        sep_idx = next(i for i, ln in enumerate(lines) if i > 0 and _is_blank_name(ln))
    except StopIteration as exc:
        raise ValueError("Missing coordinate block terminator (' ')") from exc

    coords: Dict[str, List[float]] = {}
    i = 1 if lines and _is_blank_name(lines[0]) else 0
    while i < sep_idx:
        line = lines[i].strip()
        if line.startswith("'"):
            name = _clean_name(line)
            i += 1
            if i < sep_idx:
                tokens = [tok for tok in _GRIDDESC_SPLIT_RE.split(lines[i].split('!')[0].strip()) if tok]
                coords[name] = [_parse_number(tok) for tok in tokens]
        i += 1

    grids: Dict[str, list] = {}
    i = sep_idx + 1
    while i < len(lines):
        line = lines[i].strip()
        if line.startswith("'") and not _is_blank_name(line):
            gname = _clean_name(line)
            i += 1
            if i < len(lines):
                parts = [p.strip() for p in lines[i].split('!')[0].split(',') if p.strip()]
                if parts:
                    coord_ref = _clean_name(parts[0])
                    grids[gname] = [coord_ref] + [_parse_number(p) for p in parts[1:]]
        i += 1

    if not grids:
        raise ValueError("No grids found in the GRIDDESC file.")
    return coords, grids


def extract_grid(path: str, grid_id: Optional[str]):
    """Coordinate and grid parameters for ``grid_id`` (or all grid names if None)."""
    coords, grids = _load_griddesc(path, file_signature(path))

    if grid_id is None:
        return list(grids.keys())

    gid_clean = _clean_name(grid_id)
    if gid_clean not in grids:
        raise ValueError(f"Grid '{grid_id}' not found. Available: {', '.join(sorted(grids.keys()))}")

    grid_params = grids[gid_clean]
    coord_name = grid_params[0]
    if coord_name not in coords:
        raise ValueError(f"Projection '{coord_name}' referenced by grid '{gid_clean}' not defined in coords section.")
    return coords[coord_name], grid_params


def read_ncf_grid_params(ncf_path: str):
    """
    Extract grid parameters from IOAPI NetCDF global attributes.
    Returns:
        coord_params: (GDTYP, P_ALP, P_BET, P_GAM, XCENT, YCENT)
        grid_params:  (GDNAM, XORIG, YORIG, XCELL, YCELL, NCOLS, NROWS, NTHIK)
    """
    with netCDF4.Dataset(ncf_path, 'r') as ds:
        def get_attr(name, default=None):
            return getattr(ds, name) if hasattr(ds, name) else default

        coord_params = (
            int(get_attr('GDTYP', 2)),
            float(get_attr('P_ALP', 0.0)),
            float(get_attr('P_BET', 0.0)),
            float(get_attr('P_GAM', 0.0)),
            float(get_attr('XCENT', 0.0)),
            float(get_attr('YCENT', 0.0)),
        )
        grid_params = (
            str(get_attr('GDNAM', 'UNKNOWN')).strip(),
            float(get_attr('XORIG', 0.0)),
            float(get_attr('YORIG', 0.0)),
            float(get_attr('XCELL', 0.0)),
            float(get_attr('YCELL', 0.0)),
            int(get_attr('NCOLS', 0)),
            int(get_attr('NROWS', 0)),
            int(get_attr('NTHIK', 1)),
        )
    return coord_params, grid_params
