"""Utility functions for SMKSRG."""

import os
import hashlib
import logging
import threading
from concurrent.futures import Executor, as_completed
from typing import Any, Callable, List, Optional

import numpy as np
import pandas as pd


def coerce_key(series: pd.Series) -> pd.Series:
    """Standardize a column to stripped strings so filter values compare cleanly.

    Integers and integral floats become their digit strings ('6037', not
    '6037.0'); missing values become None.
    """
    if not isinstance(series, pd.Series):
        series = pd.Series(series)

    if pd.api.types.is_integer_dtype(series):
        coerced = series.astype('Int64').astype(str).astype(object)
        return coerced.where(series.notna(), None).astype('object')

    if pd.api.types.is_float_dtype(series):
        arr = series.to_numpy(dtype=float, na_value=np.nan)
        finite = np.isfinite(arr)
        int_mask = finite & np.isclose(arr, np.round(arr))
        str_series = series.astype(str).astype(object)
        if int_mask.any():
            ints = pd.Series(np.round(arr[int_mask]).astype(np.int64), index=series.index[int_mask])
            str_series.loc[int_mask] = ints.astype(str)
        return str_series.where(series.notna(), None).astype('object')

    def _convert(val):
        if val is None or val is pd.NA or (isinstance(val, float) and np.isnan(val)):
            return None
        if isinstance(val, (int, np.integer)):
            return str(int(val))
        if isinstance(val, (float, np.floating)) and float(val).is_integer():
            return str(int(val))
        s_val = str(val).strip()
        return s_val or None

    out = series.astype(object).map(_convert)
    return out.where(out.notna(), None).astype(object)


def safe_slug(text: Optional[str]) -> str:
    """Generate a filename-safe slug from an arbitrary cache key."""
    text = str(text or 'default')
    slug = ''.join(ch if (ch.isalnum() or ch in {'-', '_', '.'}) else '_' for ch in text)
    slug = slug.strip('_.') or 'default'
    return slug


def resolve_worker_count(requested: Optional[int] = None) -> int:
    """Worker count for one allocation request: explicit value or logical cores."""
    if requested is not None and requested > 0:
        return int(requested)
    return max(1, os.cpu_count() or 1)


def location_hash(key: str, wkb: bytes = b'') -> str:
    """Stable identifier for an input location, used in exported records."""
    h = hashlib.sha1()
    h.update(str(key).encode('utf-8'))
    h.update(wkb)
    return h.hexdigest()[:16]


def run_striped(
    executor: Executor,
    n_items: int,
    n_workers: int,
    worker: Callable[[range, threading.Event], Any],
) -> List[Any]:
    """Fan ``worker`` out over index stripes and wait for all of them.

    Worker ``p`` receives ``range(p, n_items, n_workers)`` and a shared
    cancel event that it should check between items. The first exception
    raised by any stripe sets the event, cancels stripes that have not
    started yet and is re-raised once the running ones return. Later
    errors are discarded. Results come back in completion order.
    """
    if n_items <= 0:
        return []
    n_workers = max(1, min(int(n_workers), n_items))
    cancel = threading.Event()
    futures = [
        executor.submit(worker, range(p, n_items, n_workers), cancel)
        for p in range(n_workers)
    ]
    results: List[Any] = []
    first_error: Optional[BaseException] = None
    for fut in as_completed(futures):
        if fut.cancelled():
            continue
        exc = fut.exception()
        if exc is None:
            results.append(fut.result())
            continue
        if first_error is None:
            first_error = exc
            cancel.set()
            for other in futures:
                other.cancel()
        else:
            logging.debug("Discarding additional worker error: %s", exc)
    if first_error is not None:
        raise first_error
    return results
