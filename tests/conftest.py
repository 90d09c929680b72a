from pathlib import Path
import os
import sys

import pytest

os.environ.setdefault('SMKSRG_DISABLE_CACHE', '1')
os.environ.setdefault('MPLBACKEND', 'Agg')

# Put the repository root on the import path (flat module layout)
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import geopandas as gpd  # noqa: E402
from shapely.geometry import box  # noqa: E402

from grid import GridDefinition  # noqa: E402
from surrogate import SurrogateDataset, SurrogateSpec  # noqa: E402


@pytest.fixture
def grid2x2():
    """2x2 lon/lat grid of 1 degree cells starting at (0, 0)."""
    return GridDefinition.regular('TEST2X2', 2, 2, 1.0, 1.0, 0.0, 0.0, 'EPSG:4326')


@pytest.fixture
def uniform_frame():
    """One surrogate polygon with uniform density covering the whole test area."""
    return gpd.GeoDataFrame({'POP': [1000.0]}, geometry=[box(-1.0, -1.0, 3.0, 3.0)], crs='EPSG:4326')


@pytest.fixture
def uniform_dataset(uniform_frame):
    return SurrogateDataset.from_frame(uniform_frame, weight_columns=['POP'])


@pytest.fixture
def uniform_spec(uniform_frame):
    return SurrogateSpec(region='USA', code='100', name='Population', source=uniform_frame,
                         weight_columns=('POP',))