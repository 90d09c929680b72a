"""Drives surrogate gridding requests: worker pools, merged surrogates, caching."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, Mapping, Optional, Tuple

import numpy as np

from aggregator import merge_results, to_dense_array
from cache import GranuleStore, SingleFlightCache
from config import resolve_defaults
from errors import CacheReentrancyError, MissingLocationError, SurrogateComputationError
from grid import GridDefinition
from intersection import AllocationResult, InputShape, IntersectionEngine
from surrogate import SurrogateDataset
from utils import resolve_worker_count


class SurrogateOrchestrator:
    """One-shot pipeline per request: build granules, fan out, join, return.

    A fresh thread pool is created for every simple surrogate computation
    and shut down before the result is returned. Results are memoized in
    ``cache`` (if given) under ``surrogate_<region><code>_<grid>_<location>``;
    the components of a merged surrogate are always recomputed and never
    go through the cache.
    """

    def __init__(self, grid: GridDefinition, cache: Optional[SingleFlightCache] = None,
                 granule_store: Optional[GranuleStore] = None,
                 simplify_tolerance: Optional[float] = None, workers: Optional[int] = None,
                 settings: Optional[dict] = None):
        defaults = resolve_defaults(settings)
        self.grid = grid
        self.cache = cache
        self.granule_store = granule_store
        self.simplify_tolerance = (defaults['simplify_tolerance']
                                   if simplify_tolerance is None else float(simplify_tolerance))
        self.workers = resolve_worker_count(workers if workers is not None else defaults['workers'])

    def cache_key(self, spec, shape: InputShape) -> str:
        return f"surrogate_{spec.region}{spec.code}_{self.grid.name}_{shape.key}"

    def allocate(self, spec, shape: Optional[InputShape], key: Optional[str] = None) -> AllocationResult:
        """Allocate one input shape with one surrogate specification."""
        if shape is None:
            raise MissingLocationError(key or f"{spec.identifier} on grid {self.grid.name}")
        if self.cache is None:
            return self._run(spec, shape)
        return self.cache.get_or_compute(self.cache_key(spec, shape), lambda: self._run(spec, shape))

    def allocate_many(self, spec, keys: Iterable[str],
                      locations: Mapping[str, InputShape]) -> Dict[str, AllocationResult]:
        """Allocate several locations in turn; a missing key raises MissingLocationError."""
        out: Dict[str, AllocationResult] = {}
        for key in keys:
            out[key] = self.allocate(spec, locations.get(key), key=key)
        return out

    def gridded(self, spec, shape: InputShape) -> Tuple[Optional[np.ndarray], bool]:
        """Dense weights for ``shape``; ``(None, False)`` when nothing is allocated."""
        return to_dense_array(self.allocate(spec, shape))

    def _run(self, spec, shape: InputShape) -> AllocationResult:
        try:
            if spec.is_merged:
                return self._create_merged(spec, shape)
            return self._create_simple(spec, shape)
        except (SurrogateComputationError, CacheReentrancyError):
            raise
        except Exception as exc:
            raise SurrogateComputationError(spec.identifier, shape.key, exc) from exc

    def _create_merged(self, spec, shape: InputShape) -> AllocationResult:
        if not spec.components:
            raise ValueError(f"merged surrogate {spec.name!r} has no components")
        logging.info("merging surrogate `%s` from %s for location %s",
                     spec.name, ', '.join(spec.merge_names), shape.key)
        # Components are computed directly: going through the cache here can
        # block on a key this request is already filling.
        results = [self._run(component, shape) for component, _ in spec.components]
        return merge_results(results, spec.merge_multipliers)

    def _create_simple(self, spec, shape: InputShape) -> AllocationResult:
        logging.info("creating surrogate `%s` for location %s", spec.name, shape.key)
        dataset = self._granules(spec, shape)
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='srg') as pool:
            engine = IntersectionEngine(self.grid, dataset, executor=pool, workers=self.workers)
            return engine.calculate(shape)

    def _granules(self, spec, shape: InputShape) -> SurrogateDataset:
        def build() -> SurrogateDataset:
            return spec.granules(self.grid, shape, self.simplify_tolerance)

        if self.granule_store is None:
            return build()
        key = f"srgdata_{spec.identifier}_{self.grid.name}_{shape.key}_{self.simplify_tolerance:g}"
        return self.granule_store.load_or_build(
            key, build, SurrogateDataset.to_bytes, SurrogateDataset.from_bytes)
