"""Spatial surrogate datasets, row filters and surrogate specifications.

A surrogate specification is either *simple* (a weighted source layer) or
*merged* (a weighted sum of other specifications). Both carry a ``kind``
tag and callers dispatch on ``is_merged``.
"""

import io
import os
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import geopandas as gpd
import shapely
import yaml
from pyproj.exceptions import CRSError, ProjError

from cache import file_signature, memoize
from config import LONLAT_CRS, NO_FILTER, RTREE_NODE_CAPACITY
from errors import ProjectionError
from spherical import Bounds, Footprint
from utils import coerce_key


# ---- Filters ----

@dataclass(frozen=True)
class SurrogateFilter:
    """Restricts which source rows become granules: ``column`` (not) in ``values``."""
    column: str
    equal: bool
    values: Tuple[str, ...]

    def apply(self, frame: pd.DataFrame) -> pd.DataFrame:
        if self.column not in frame.columns:
            raise KeyError(f"surrogate filter column '{self.column}' not found; available: {list(frame.columns)}")
        keys = coerce_key(frame[self.column])
        mask = keys.isin(self.values)
        if not self.equal:
            mask = ~mask
        return frame.loc[mask.to_numpy()]

    def __str__(self):
        op = '=' if self.equal else '!='
        return f"{self.column}{op}{','.join(self.values)}"


def parse_surrogate_filter(text: Optional[str]) -> Optional[SurrogateFilter]:
    """Parse a SMOKE filter function such as ``STATE=06,41`` or ``TYPE!=WATER``.

    Empty text and the ``NONE`` sentinel mean no filter and return None.
    """
    if text is None:
        return None
    text = str(text).strip()
    if text == '' or text == NO_FILTER:
        return None
    if '!=' in text:
        column, _, rest = text.partition('!=')
        equal = False
    elif '=' in text:
        column, _, rest = text.partition('=')
        equal = True
    else:
        raise ValueError(f"invalid surrogate filter {text!r}: expected column=values or column!=values")
    column = column.strip()
    if not column:
        raise ValueError(f"invalid surrogate filter {text!r}: missing column name")
    values = tuple(v.strip() for v in rest.split(','))
    return SurrogateFilter(column, equal, values)


# ---- Datasets ----

class Granule(NamedTuple):
    footprint: Footprint
    weight: float


class SurrogateDataset:
    """Immutable, indexed set of weighted granules.

    ``dimension`` says how a clipped granule is measured: 2 = area,
    1 = length, 0 = point count. Weights are densities per unit of that
    measure, so ``weight * clip.measure()`` is the weight inside a clip.
    """

    def __init__(self, granules: Sequence[Granule], dimension: Optional[int] = None):
        self.granules: Tuple[Granule, ...] = tuple(granules)
        if dimension is None:
            dims = [g.footprint.dimension for g in self.granules]
            dimension = max(dims) if dims else 2
        self.dimension = int(dimension)
        self._index = shapely.STRtree([g.footprint.geometry for g in self.granules],
                                      node_capacity=RTREE_NODE_CAPACITY)

    def __len__(self):
        return len(self.granules)

    def __iter__(self):
        return iter(self.granules)

    def query(self, bounds: Bounds) -> np.ndarray:
        """Indices (ascending) of granules whose bounds overlap ``bounds``."""
        if not self.granules:
            return np.empty(0, dtype=np.int64)
        idx = self._index.query(shapely.box(*bounds))
        return np.sort(np.asarray(idx, dtype=np.int64))

    # ---- binary cache format ----

    def to_bytes(self) -> bytes:
        """Encode the flat granule list; the index is rebuilt on load."""
        wkbs = [g.footprint.to_wkb() for g in self.granules]
        offsets = np.zeros(len(wkbs) + 1, dtype=np.int64)
        if wkbs:
            offsets[1:] = np.cumsum([len(w) for w in wkbs])
        blob = np.frombuffer(b''.join(wkbs), dtype=np.uint8)
        weights = np.array([g.weight for g in self.granules], dtype=np.float64)
        buf = io.BytesIO()
        np.savez_compressed(buf, wkb=blob, offsets=offsets, weights=weights,
                            dimension=np.array([self.dimension], dtype=np.int64))
        return buf.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> 'SurrogateDataset':
        with np.load(io.BytesIO(data), allow_pickle=False) as arc:
            blob = arc['wkb'].tobytes()
            offsets = arc['offsets']
            weights = arc['weights']
            dimension = int(arc['dimension'][0])
        granules = [
            Granule(Footprint.from_wkb(blob[offsets[i]:offsets[i + 1]]), float(weights[i]))
            for i in range(len(weights))
        ]
        return cls(granules, dimension)

    # ---- building ----

    @classmethod
    def from_frame(
        cls,
        frame: gpd.GeoDataFrame,
        weight_columns: Sequence[str] = (),
        weight_factors: Sequence[float] = (),
        srg_filter: Optional[SurrogateFilter] = None,
        clip_to: Optional[Footprint] = None,
        simplify_tolerance: float = 0.0,
        as_density: bool = True,
    ) -> 'SurrogateDataset':
        """Build granules from surrogate source rows.

        Row weight is ``sum(factor * column)`` (1 per row without weight
        columns). The filter runs first, then rows are reprojected to
        lon/lat and, when ``clip_to`` is given, limited to rows touching
        it. With ``as_density`` polygon and line weights are divided by the
        row's own area or length.
        """
        if srg_filter is not None:
            frame = srg_filter.apply(frame)
        if frame.crs is None:
            raise ProjectionError("surrogate source has no CRS")
        try:
            frame = frame.to_crs(LONLAT_CRS)
        except (CRSError, ProjError) as exc:
            raise ProjectionError(f"cannot reproject surrogate source: {exc}") from exc
        frame = frame[~(frame.geometry.isna() | frame.geometry.is_empty)]

        if clip_to is not None and len(frame):
            hit = frame.sindex.query(clip_to.geometry, predicate='intersects')
            frame = frame.iloc[np.sort(np.unique(hit))]

        weights = _row_weights(frame, weight_columns, weight_factors)
        geoms = frame.geometry.to_numpy()
        if simplify_tolerance:
            geoms = shapely.simplify(geoms, simplify_tolerance, preserve_topology=True)

        footprints = [Footprint(g) for g in geoms]
        dims = [fp.dimension for fp in footprints]
        dimension = max(dims) if dims else 2

        granules: List[Granule] = []
        for fp, w in zip(footprints, weights):
            if fp.is_empty or not np.isfinite(w) or w == 0:
                continue
            if dimension == 0:
                # one granule per point, each carrying the row weight
                granules.extend(Granule(Footprint(p), float(w)) for p in shapely.get_parts(fp.geometry))
                continue
            if as_density and dimension > 0:
                measure = fp.measure(dimension)
                if measure <= 0:
                    continue
                w = w / measure
            granules.append(Granule(fp, float(w)))
        logging.debug("built %d surrogate granules from %d rows", len(granules), len(frame))
        return cls(granules, dimension)


def _row_weights(frame: pd.DataFrame, columns: Sequence[str], factors: Sequence[float]) -> np.ndarray:
    if not columns:
        return np.ones(len(frame), dtype=np.float64)
    if factors and len(factors) != len(columns):
        raise ValueError(f"{len(columns)} weight columns but {len(factors)} weight factors")
    total = np.zeros(len(frame), dtype=np.float64)
    for i, col in enumerate(columns):
        if col not in frame.columns:
            raise KeyError(f"surrogate weight column '{col}' not found")
        fac = float(factors[i]) if factors else 1.0
        total += fac * pd.to_numeric(frame[col], errors='coerce').fillna(0.0).to_numpy(dtype=np.float64)
    return total


@memoize(maxsize=6)
def _load_surrogate_frame(path: str, _signature: Tuple[str, Optional[int]]) -> gpd.GeoDataFrame:
    del _signature  # used only to bust caches when the underlying file changes
    return gpd.read_file(path, engine='pyogrio')


def read_surrogate_file(path: str) -> gpd.GeoDataFrame:
    return _load_surrogate_frame(path, file_signature(path))


# ---- Specifications ----

@dataclass
class SurrogateSpec:
    """A single surrogate: a weighted source layer, optionally filtered."""
    region: str
    code: str
    name: str
    source: Union[str, gpd.GeoDataFrame, None] = None
    weight_columns: Tuple[str, ...] = ()
    weight_factors: Tuple[float, ...] = ()
    filter: Optional[SurrogateFilter] = None
    kind: str = field(default='simple', init=False)

    @property
    def is_merged(self) -> bool:
        return False

    @property
    def components(self) -> Tuple:
        return ()

    @property
    def identifier(self) -> str:
        return f"{self.region}{self.code}"

    def frame(self) -> gpd.GeoDataFrame:
        if self.source is None:
            raise ValueError(f"surrogate {self.name!r} has no source data")
        if isinstance(self.source, gpd.GeoDataFrame):
            return self.source
        return read_surrogate_file(self.source)

    def granules(self, grid, shape, simplify_tolerance: float = 0.0) -> SurrogateDataset:
        """Indexed granules relevant to ``shape`` on ``grid``."""
        del grid  # granules do not depend on the grid
        return SurrogateDataset.from_frame(
            self.frame(),
            weight_columns=self.weight_columns,
            weight_factors=self.weight_factors,
            srg_filter=self.filter,
            clip_to=shape.footprint,
            simplify_tolerance=simplify_tolerance,
        )


@dataclass
class MergedSurrogateSpec:
    """A named weighted sum of other surrogate specifications."""
    region: str
    code: str
    name: str
    components: Tuple[Tuple[Any, float], ...] = ()
    kind: str = field(default='merged', init=False)

    @property
    def is_merged(self) -> bool:
        return True

    @property
    def identifier(self) -> str:
        return f"{self.region}{self.code}"

    @property
    def merge_names(self) -> List[str]:
        return [spec.name for spec, _ in self.components]

    @property
    def merge_multipliers(self) -> List[float]:
        return [float(mult) for _, mult in self.components]

    def granules(self, grid, shape, simplify_tolerance: float = 0.0):
        raise TypeError(f"merged surrogate {self.name!r} has no granules of its own")


AnySurrogateSpec = Union[SurrogateSpec, MergedSurrogateSpec]


class SurrogateSpecs:
    """Registry of surrogate specifications by (region, name) and (region, code)."""

    def __init__(self, specs: Iterable[AnySurrogateSpec] = ()):
        self._by_name: Dict[Tuple[str, str], AnySurrogateSpec] = {}
        self._by_code: Dict[Tuple[str, str], AnySurrogateSpec] = {}
        for spec in specs:
            self.add(spec)

    def __len__(self):
        return len(self._by_name)

    def add(self, spec: AnySurrogateSpec) -> None:
        self._by_name[(spec.region, spec.name)] = spec
        self._by_code[(spec.region, str(spec.code))] = spec

    def get_by_name(self, region: str, name: str) -> AnySurrogateSpec:
        try:
            return self._by_name[(region, name)]
        except KeyError:
            raise KeyError(f"no surrogate named {name!r} for region {region!r}") from None

    def get_by_code(self, region: str, code) -> AnySurrogateSpec:
        try:
            return self._by_code[(region, str(code))]
        except KeyError:
            raise KeyError(f"no surrogate code {code!r} for region {region!r}") from None

    @classmethod
    def from_yaml(cls, path: str) -> 'SurrogateSpecs':
        """Load specifications from YAML.

        Simple entries name a ``shapefile`` (relative to the YAML file),
        ``weight_columns``, ``weight_factors`` and ``filter``; merged
        entries list ``merge`` items of ``{name, multiplier}`` that refer
        to other entries of the same region.
        """
        with open(path, 'r') as f:
            doc = yaml.safe_load(f) or {}
        entries = doc.get('surrogates', []) if isinstance(doc, dict) else doc
        base_dir = os.path.dirname(os.path.abspath(path))

        registry = cls()
        merged: Dict[Tuple[str, str], dict] = {}
        for entry in entries:
            region = str(entry['region'])
            name = str(entry['name'])
            code = str(entry['code'])
            if entry.get('merge'):
                merged[(region, name)] = entry
                continue
            source = entry.get('shapefile')
            if source and not os.path.isabs(source):
                source = os.path.join(base_dir, source)
            registry.add(SurrogateSpec(
                region=region,
                code=code,
                name=name,
                source=source,
                weight_columns=tuple(entry.get('weight_columns') or ()),
                weight_factors=tuple(float(v) for v in (entry.get('weight_factors') or ())),
                filter=parse_surrogate_filter(entry.get('filter')),
            ))

        def _resolve(key: Tuple[str, str], stack: Tuple[Tuple[str, str], ...]) -> AnySurrogateSpec:
            if key in stack:
                raise ValueError(f"merged surrogate cycle: {' -> '.join(n for _, n in stack + (key,))}")
            if key in registry._by_name:
                return registry._by_name[key]
            if key not in merged:
                raise KeyError(f"no surrogate named {key[1]!r} for region {key[0]!r}")
            entry = merged[key]
            components = tuple(
                (_resolve((key[0], str(item['name'])), stack + (key,)), float(item['multiplier']))
                for item in entry['merge']
            )
            spec = MergedSurrogateSpec(region=key[0], code=str(entry['code']), name=key[1],
                                       components=components)
            registry.add(spec)
            return spec

        for key in merged:
            _resolve(key, ())
        return registry
