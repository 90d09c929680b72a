"""Caches: single-flight memo for allocation results, on-disk granule store,
and the joblib-backed memoization used for file readers."""

import os
import logging
import tempfile
import threading
from collections import OrderedDict
from concurrent.futures import Future
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from joblib import Memory

from config import CACHE_DISABLED
from errors import CacheReentrancyError
from utils import safe_slug

_memory: Optional[Memory] = None


def _resolve_default_cache_dir() -> Optional[str]:
    configured = os.environ.get('SMKSRG_CACHE_DIR')
    candidates = [Path(configured)] if configured else []
    candidates.append(Path(tempfile.gettempdir()) / 'smksrg_cache')
    for target in candidates:
        try:
            target.mkdir(parents=True, exist_ok=True)
            return str(target)
        except OSError as exc:
            logging.warning("Cache directory %s unavailable: %s", target, exc)
    return None


if not CACHE_DISABLED:
    _cache_dir = _resolve_default_cache_dir()
    if _cache_dir:
        _memory = Memory(_cache_dir, verbose=0)


def memoize(maxsize: int = 4):
    """Disk-memoize with joblib when available, else keep a small in-process LRU."""
    def decorator(fn):
        if _memory is not None:
            return _memory.cache(fn)
        if CACHE_DISABLED:
            return fn
        return lru_cache(maxsize=maxsize)(fn)

    return decorator


def file_signature(path: str) -> Tuple[str, Optional[int]]:
    """(absolute path, mtime) pair; passing it to a memoized reader busts stale entries."""
    if not isinstance(path, (str, os.PathLike)):
        return (str(path), None)
    abs_path = os.path.abspath(path)
    try:
        return (abs_path, int(os.path.getmtime(abs_path)))
    except OSError:
        return (abs_path, None)


class SingleFlightCache:
    """Memo cache that runs at most one computation per key.

    A caller that asks for a key while another thread is computing it
    blocks on the same future and receives the same value or exception.
    Failures are never stored, so the next request recomputes. A thread
    that asks for a key it is itself computing gets CacheReentrancyError
    instead of waiting on itself forever.
    """

    def __init__(self, maxsize: Optional[int] = None):
        self.maxsize = maxsize
        self._lock = threading.Lock()
        self._values: 'OrderedDict[Hashable, Any]' = OrderedDict()
        self._inflight: Dict[Hashable, Tuple[Future, int]] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self):
        with self._lock:
            return len(self._values)

    def __contains__(self, key):
        with self._lock:
            return key in self._values

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        me = threading.get_ident()
        with self._lock:
            if key in self._values:
                self._values.move_to_end(key)
                self.hits += 1
                return self._values[key]
            pending = self._inflight.get(key)
            if pending is not None:
                future, owner = pending
                if owner == me:
                    raise CacheReentrancyError(f"re-entrant request for cache key {key!r}")
                self.hits += 1
                waiting = True
            else:
                future = Future()
                self._inflight[key] = (future, me)
                self.misses += 1
                waiting = False

        if waiting:
            return future.result()

        try:
            value = compute()
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(exc)
            raise
        with self._lock:
            self._inflight.pop(key, None)
            self._values[key] = value
            if self.maxsize is not None:
                while len(self._values) > self.maxsize:
                    self._values.popitem(last=False)
        future.set_result(value)
        return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._values.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()


class GranuleStore:
    """Directory of encoded granule datasets addressed by opaque string keys."""

    suffix = '.srg'

    def __init__(self, directory: Optional[str] = None):
        if directory is None:
            directory = _resolve_default_cache_dir() or tempfile.mkdtemp(prefix='smksrg_')
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.directory / (safe_slug(key) + self.suffix)

    def get(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def put(self, key: str, data: bytes) -> None:
        path = self.path_for(key)
        # one temp file per writer, renamed into place
        with tempfile.NamedTemporaryFile(dir=self.directory, prefix=path.stem, suffix='.tmp',
                                         delete=False) as tmp:
            tmp.write(data)
        try:
            os.replace(tmp.name, path)
        except OSError:
            os.unlink(tmp.name)
            raise

    def load_or_build(self, key: str, build: Callable[[], Any],
                      encode: Callable[[Any], bytes], decode: Callable[[bytes], Any]) -> Any:
        data = self.get(key)
        if data is not None:
            logging.debug("granule cache hit: %s", key)
            return decode(data)
        value = build()
        self.put(key, encode(value))
        return value
