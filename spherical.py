"""Spherical footprints: lon/lat regions measured on the sphere.

A footprint keeps its geometry in EPSG:4326 degrees. Intersections are
computed by shapely on those coordinates, so every edge is treated as a
straight line in lon/lat. Areas use the exact spherical integral for such
edges (R^2 * |closed integral of sin(lat) dlon|), which makes the areas of
the pieces of a cut region add back up to the area of the region. The
allocation normalization depends on that additivity.

Regions crossing the antimeridian or enclosing a pole are not supported.
"""

from functools import lru_cache
from typing import Iterable, Optional, Tuple

import numpy as np
import pyproj
import shapely
from pyproj.exceptions import CRSError, ProjError
from shapely.geometry.base import BaseGeometry

from config import EARTH_RADIUS, LONLAT_CRS, USE_SPHERICAL_EARTH
from errors import ProjectionError

if USE_SPHERICAL_EARTH:
    GEOD = pyproj.Geod(a=EARTH_RADIUS, b=EARTH_RADIUS)
else:
    GEOD = pyproj.Geod(ellps='WGS84')

Bounds = Tuple[float, float, float, float]


def _ring_area(coords: np.ndarray) -> float:
    """Area on the unit sphere of one closed ring whose edges are straight in lon/lat."""
    if len(coords) < 4:
        return 0.0
    lon = np.radians(coords[:, 0])
    lat = np.radians(coords[:, 1])
    dlon = np.diff(lon)
    dlat = np.diff(lat)
    mid = 0.5 * (lat[:-1] + lat[1:])
    # cos(a) - cos(b) == 2 sin((a+b)/2) sin((b-a)/2); np.sinc keeps flat edges exact
    terms = dlon * np.sin(mid) * np.sinc(dlat / (2.0 * np.pi))
    return abs(float(terms.sum()))


def _polygon_area(poly) -> float:
    area = _ring_area(np.asarray(poly.exterior.coords)[:, :2])
    for ring in poly.interiors:
        area -= _ring_area(np.asarray(ring.coords)[:, :2])
    return max(area, 0.0)


def _unit_area(geometry: BaseGeometry) -> float:
    total = 0.0
    for part in shapely.get_parts(geometry):
        gtype = part.geom_type
        if gtype == 'Polygon':
            total += _polygon_area(part)
        elif gtype in ('MultiPolygon', 'GeometryCollection'):
            total += _unit_area(part)
    return total


def spherical_area(geometry: BaseGeometry) -> float:
    """Area in square meters of the polygonal parts of ``geometry``."""
    if geometry is None or geometry.is_empty:
        return 0.0
    return _unit_area(geometry) * EARTH_RADIUS * EARTH_RADIUS


def geodesic_length(geometry: BaseGeometry) -> float:
    """Length in meters of the linear parts of ``geometry``."""
    if geometry is None or geometry.is_empty:
        return 0.0
    total = 0.0
    for part in shapely.get_parts(geometry):
        if part.geom_type in ('LineString', 'LinearRing', 'MultiLineString'):
            total += GEOD.geometry_length(part)
    return float(total)


def point_count(geometry: BaseGeometry) -> float:
    if geometry is None or geometry.is_empty:
        return 0.0
    return float(sum(1 for part in shapely.get_parts(geometry) if part.geom_type == 'Point'))


@lru_cache(maxsize=32)
def make_transformer(src_crs, dst_crs=LONLAT_CRS) -> pyproj.Transformer:
    """Cached always-xy transformer; CRS problems surface as ProjectionError."""
    try:
        return pyproj.Transformer.from_crs(pyproj.CRS.from_user_input(src_crs),
                                           pyproj.CRS.from_user_input(dst_crs),
                                           always_xy=True)
    except (CRSError, ProjError) as exc:
        raise ProjectionError(f"cannot transform {src_crs} -> {dst_crs}: {exc}") from exc


def same_crs(a, b) -> bool:
    try:
        return pyproj.CRS.from_user_input(a) == pyproj.CRS.from_user_input(b)
    except CRSError as exc:
        raise ProjectionError(f"invalid CRS: {exc}") from exc


def transform_xy(transformer: pyproj.Transformer, x, y) -> Tuple[np.ndarray, np.ndarray]:
    """Vectorized transform that refuses to return non-finite coordinates."""
    try:
        tx, ty = transformer.transform(np.asarray(x, dtype=float), np.asarray(y, dtype=float), errcheck=True)
    except ProjError as exc:
        raise ProjectionError(f"coordinate transform failed: {exc}") from exc
    tx = np.asarray(tx, dtype=float)
    ty = np.asarray(ty, dtype=float)
    if not (np.all(np.isfinite(tx)) and np.all(np.isfinite(ty))):
        raise ProjectionError("coordinate transform produced non-finite values")
    return tx, ty


def transform_geometry(geometry: BaseGeometry, transformer: pyproj.Transformer) -> BaseGeometry:
    def _apply(coords: np.ndarray) -> np.ndarray:
        if len(coords) == 0:
            return coords
        x, y = transform_xy(transformer, coords[:, 0], coords[:, 1])
        return np.column_stack([x, y])

    return shapely.transform(geometry, _apply)


class Footprint:
    """A lon/lat region with spherical area, used for all intersection math."""

    __slots__ = ('geometry', '_area', '_length')

    def __init__(self, geometry: Optional[BaseGeometry] = None):
        if geometry is None:
            geometry = shapely.Polygon()
        self.geometry = geometry
        self._area: Optional[float] = None
        self._length: Optional[float] = None

    @classmethod
    def from_projected(cls, geometry: BaseGeometry, crs) -> 'Footprint':
        """Build from a geometry expressed in ``crs``."""
        if crs is None:
            raise ProjectionError("geometry has no coordinate reference system")
        if same_crs(crs, LONLAT_CRS):
            return cls(geometry)
        return cls(transform_geometry(geometry, make_transformer(crs, LONLAT_CRS)))

    @classmethod
    def union(cls, footprints: Iterable['Footprint']) -> 'Footprint':
        geoms = [fp.geometry for fp in footprints if not fp.is_empty]
        if not geoms:
            return cls()
        return cls(shapely.union_all(geoms))

    @property
    def is_empty(self) -> bool:
        return self.geometry.is_empty

    @property
    def bounds(self) -> Bounds:
        return tuple(self.geometry.bounds)

    @property
    def dimension(self) -> int:
        if self.is_empty:
            return -1
        return int(shapely.get_dimensions(self.geometry))

    @property
    def area(self) -> float:
        if self._area is None:
            self._area = spherical_area(self.geometry)
        return self._area

    @property
    def length(self) -> float:
        if self._length is None:
            self._length = geodesic_length(self.geometry)
        return self._length

    def measure(self, dimension: Optional[int] = None) -> float:
        """Area, length or point count depending on ``dimension`` (default: own)."""
        if dimension is None:
            dimension = self.dimension
        if dimension >= 2:
            return self.area
        if dimension == 1:
            return self.length
        if dimension == 0:
            return point_count(self.geometry)
        return 0.0

    def intersects(self, other: 'Footprint') -> bool:
        return bool(self.geometry.intersects(other.geometry))

    def intersection(self, other: 'Footprint') -> 'Footprint':
        return Footprint(self.geometry.intersection(other.geometry))

    def simplify(self, tolerance: float) -> 'Footprint':
        if not tolerance:
            return self
        return Footprint(self.geometry.simplify(tolerance, preserve_topology=True))

    def to_wkb(self) -> bytes:
        return shapely.to_wkb(self.geometry)

    @classmethod
    def from_wkb(cls, data: bytes) -> 'Footprint':
        return cls(shapely.from_wkb(data))

    def __repr__(self):
        return f"Footprint({self.geometry.geom_type}, area={self.area:.6g} m2)"
