import threading
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pandas as pd
import pytest

from utils import coerce_key, location_hash, resolve_worker_count, run_striped, safe_slug


def test_run_striped_visits_every_index_once():
    with ThreadPoolExecutor(max_workers=3) as pool:
        parts = run_striped(pool, 10, 3, lambda stripe, cancel: list(stripe))
    assert sorted(i for part in parts for i in part) == list(range(10))
    assert sorted(len(p) for p in parts) == [3, 3, 4]


def test_run_striped_caps_workers_at_items():
    with ThreadPoolExecutor(max_workers=4) as pool:
        parts = run_striped(pool, 2, 8, lambda stripe, cancel: list(stripe))
    assert sorted(parts) == [[0], [1]]
    with ThreadPoolExecutor(max_workers=1) as pool:
        assert run_striped(pool, 0, 4, lambda stripe, cancel: list(stripe)) == []


def test_run_striped_first_error_cancels_siblings():
    processed = []
    lock = threading.Lock()

    def worker(stripe, cancel):
        if stripe.start == 0:
            raise ValueError("stripe zero failed")
        for i in stripe:
            if cancel.is_set():
                return
            with lock:
                processed.append(i)
            time.sleep(0.01)

    with ThreadPoolExecutor(max_workers=2) as pool:
        with pytest.raises(ValueError, match='stripe zero'):
            run_striped(pool, 200, 2, worker)
    assert len(processed) < 100


def test_coerce_key():
    assert list(coerce_key(pd.Series([6037, 1]))) == ['6037', '1']
    assert list(coerce_key(pd.Series([6037.0, 1.5, np.nan]))) == ['6037', '1.5', None]
    assert list(coerce_key(pd.Series([' a ', '', None, 7]))) == ['a', None, None, '7']


def test_safe_slug():
    assert safe_slug('surrogate_USA100_GRID_a/b c') == 'surrogate_USA100_GRID_a_b_c'
    assert safe_slug(None) == 'default'
    assert safe_slug('///') == 'default'


def test_location_hash_is_stable():
    assert location_hash('06037', b'abc') == location_hash('06037', b'abc')
    assert location_hash('06037', b'abc') != location_hash('06038', b'abc')
    assert len(location_hash('x')) == 16


def test_resolve_worker_count():
    assert resolve_worker_count(3) == 3
    assert resolve_worker_count(None) >= 1
    assert resolve_worker_count(0) >= 1


def test_coerce_key_string_columns_keep_none():
    out = coerce_key(pd.Series(['06', None, ' 41 '], dtype='string'))
    assert list(out) == ['06', None, '41']
    assert out.dtype == object
    floats = coerce_key(pd.Series([1.0, np.nan]))
    assert floats.dtype == object
    assert floats.iloc[1] is None
