import os

import netCDF4
import numpy as np
import pytest
from shapely.geometry import LineString, MultiPoint, Point, box

from errors import ProjectionError
from grid import GridCell, GridDefinition, extract_grid, ioapi_crs
from spherical import Footprint

GRIDDESC_TEXT = """' '
'LAM_40N97W'
  2  33.000  45.000  -97.000  -97.000  40.000
' '
'TEST3'
'LAM_40N97W', -12000.0, -12000.0, 4000.0, 4000.0, 6, 6, 1
' '
"""


def test_regular_cells_are_row_major(grid2x2):
    assert (grid2x2.nx, grid2x2.ny) == (2, 2)
    assert [(c.row, c.col) for c in grid2x2.cells] == [(0, 0), (0, 1), (1, 0), (1, 1)]
    cell = grid2x2.cell_at(1, 0)
    assert cell.bounds == pytest.approx((0.0, 1.0, 1.0, 2.0))
    assert cell.weight == 0.0
    with pytest.raises(KeyError):
        grid2x2.cell_at(2, 0)


def test_query_bounds_sorted(grid2x2):
    assert list(grid2x2.query_bounds((0.5, 0.5, 1.5, 0.6))) == [0, 1]


def test_locate_quadrant(grid2x2):
    loc = grid2x2.locate(Footprint(box(1, 1, 2, 2)))
    assert loc.cells == ((1, 1),)
    assert loc.fractions[0] == pytest.approx(1.0)
    assert loc.in_grid and loc.covered


def test_locate_straddling_query_sums_to_one(grid2x2):
    loc = grid2x2.locate(Footprint(box(0.25, 0.25, 1.75, 1.75)))
    assert len(loc.cells) == 4
    assert sum(loc.fractions) == pytest.approx(1.0)
    assert loc.covered


def test_locate_partially_outside(grid2x2):
    loc = grid2x2.locate(Footprint(box(1.5, 0.5, 2.5, 1.5)))
    assert loc.cells == ((0, 1), (1, 1))
    assert sum(loc.fractions) == pytest.approx(0.5, rel=1e-9)
    assert loc.in_grid
    assert not loc.covered


def test_locate_point_on_shared_edge(grid2x2):
    loc = grid2x2.locate(Footprint(Point(1.0, 0.5)))
    assert loc.cells == ((0, 0), (0, 1))
    assert loc.fractions == (0.5, 0.5)
    assert loc.covered


def test_locate_line_by_length(grid2x2):
    loc = grid2x2.locate(Footprint(LineString([(0.5, 0.5), (1.5, 0.5)])))
    assert loc.cells == ((0, 0), (0, 1))
    assert loc.fractions == pytest.approx((0.5, 0.5), rel=1e-6)


def test_locate_outside_grid(grid2x2):
    loc = grid2x2.locate(Footprint(box(10, 10, 11, 11)))
    assert loc.cells == ()
    assert not loc.in_grid and not loc.covered
    assert not grid2x2.locate(Footprint()).in_grid


def test_covers(grid2x2):
    assert grid2x2.covers(Footprint(box(0.1, 0.1, 1.9, 1.9)))
    assert not grid2x2.covers(Footprint(box(1.5, 0.5, 2.5, 1.5)))
    assert grid2x2.covers(Footprint(Point(2.0, 2.0)))


def test_lcc_grid_cell_areas():
    crs = ioapi_crs(2, 33.0, 45.0, -97.0, -97.0, 40.0)
    grid = GridDefinition.regular('LCC12', 3, 3, 12000.0, 12000.0, -18000.0, -18000.0, crs)
    areas = np.array([c.footprint.area for c in grid.cells])
    assert np.allclose(areas, 1.44e8, rtol=0.05)
    # planar polygons stay in meters
    assert grid.cell_at(0, 0).polygon.bounds == pytest.approx((-18000.0, -18000.0, -6000.0, -6000.0))


def test_regular_rejects_bad_crs():
    with pytest.raises(ProjectionError):
        GridDefinition.regular('BAD', 2, 2, 1.0, 1.0, 0.0, 0.0, 'EPSG:999999')


def test_ioapi_crs_unsupported_type():
    with pytest.raises(ProjectionError):
        ioapi_crs(5, 0, 0, 0, 0, 0)


def test_irregular_grid():
    polys = [box(0, 0, 1, 1), box(1, 0, 3, 1), box(0, 1, 3, 2)]
    grid = GridDefinition.irregular_grid('COUNTIES', polys, 'EPSG:4326', timezones=['EST', 'EST', 'CST'])
    assert (grid.nx, grid.ny) == (1, 3)
    assert grid.irregular
    assert [(c.row, c.col) for c in grid.cells] == [(0, 0), (1, 0), (2, 0)]
    assert grid.cell_at(2, 0).timezone == 'CST'
    loc = grid.locate(Footprint(box(0.5, 0.5, 1.5, 1.5)))
    assert sum(loc.fractions) == pytest.approx(1.0)


def test_duplicate_cells_rejected():
    fp = Footprint(box(0, 0, 1, 1))
    cells = [GridCell(fp.geometry, fp, 0, 0), GridCell(fp.geometry, fp, 0, 0)]
    with pytest.raises(ValueError):
        GridDefinition('DUP', cells, 1, 2, 'EPSG:4326')
    with pytest.raises(ValueError):
        GridDefinition('SHORT', cells[:1], 2, 2, 'EPSG:4326')


def test_griddesc(tmp_path):
    path = tmp_path / 'GRIDDESC'
    path.write_text(GRIDDESC_TEXT)
    assert extract_grid(str(path), None) == ['TEST3']
    coords, params = extract_grid(str(path), 'TEST3')
    assert coords == [2.0, 33.0, 45.0, -97.0, -97.0, 40.0]
    assert params[0] == 'LAM_40N97W'
    with pytest.raises(ValueError):
        extract_grid(str(path), 'NOPE')

    grid = GridDefinition.from_griddesc(str(path), 'TEST3')
    assert grid.name == 'TEST3'
    assert (grid.nx, grid.ny) == (6, 6)
    assert len(grid.cells) == 36
    assert grid.dx == 4000.0


def test_from_ioapi(tmp_path):
    path = str(tmp_path / 'grid.ncf')
    with netCDF4.Dataset(path, 'w') as ds:
        ds.setncattr('GDNAM', 'TEST_NC')
        ds.setncattr('GDTYP', np.int32(2))
        for name, value in (('P_ALP', 33.0), ('P_BET', 45.0), ('P_GAM', -97.0), ('XCENT', -97.0),
                            ('YCENT', 40.0), ('XORIG', 0.0), ('YORIG', 0.0), ('XCELL', 12000.0),
                            ('YCELL', 12000.0)):
            ds.setncattr(name, np.float64(value))
        ds.setncattr('NCOLS', np.int32(4))
        ds.setncattr('NROWS', np.int32(3))
    grid = GridDefinition.from_ioapi(path)
    assert grid.name == 'TEST_NC'
    assert (grid.nx, grid.ny) == (4, 3)


def test_write_to_shp(grid2x2, tmp_path):
    path = grid2x2.write_to_shp(str(tmp_path))
    assert os.path.exists(path)
    frame = grid2x2.to_frame()
    assert list(frame['GRID_RC']) == ['0_0', '0_1', '1_0', '1_1']


def test_locate_multipoint_counts_points(grid2x2):
    query = Footprint(MultiPoint([(0.5, 0.5), (0.6, 0.5), (1.5, 0.5), (5.0, 5.0)]))
    loc = grid2x2.locate(query)
    assert loc.cells == ((0, 0), (0, 1))
    assert loc.fractions == pytest.approx((0.5, 0.25))
    assert loc.in_grid
    assert not loc.covered


def test_locate_multipoint_shares_edge_points(grid2x2):
    loc = grid2x2.locate(Footprint(MultiPoint([(0.5, 0.5), (1.0, 0.5)])))
    assert loc.cells == ((0, 0), (0, 1))
    assert loc.fractions == pytest.approx((0.75, 0.25))
    assert loc.covered


def test_locate_line_on_shared_edge(grid2x2):
    loc = grid2x2.locate(Footprint(LineString([(1.0, 0.1), (1.0, 0.9)])))
    assert loc.cells == ((0, 0), (0, 1))
    assert loc.fractions == pytest.approx((0.5, 0.5))
    assert loc.covered
