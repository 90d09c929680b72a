import numpy as np
import pytest
import shapely
from shapely.geometry import LineString, MultiPoint, Point, Polygon, box

from config import EARTH_RADIUS
from errors import ProjectionError
from spherical import Footprint, spherical_area


def _cell_area(lon0, lat0, lon1, lat1):
    return EARTH_RADIUS ** 2 * np.radians(lon1 - lon0) * (np.sin(np.radians(lat1)) - np.sin(np.radians(lat0)))


def test_area_of_lonlat_cell_matches_closed_form():
    assert spherical_area(box(0, 0, 1, 1)) == pytest.approx(_cell_area(0, 0, 1, 1), rel=1e-12)
    assert spherical_area(box(-100, 40, -99, 41)) == pytest.approx(_cell_area(-100, 40, -99, 41), rel=1e-12)


def test_area_ignores_orientation_and_subtracts_holes():
    outer = [(0, 0), (0, 2), (2, 2), (2, 0), (0, 0)]  # clockwise
    hole = [(0.5, 0.5), (1.5, 0.5), (1.5, 1.5), (0.5, 1.5), (0.5, 0.5)]
    poly = Polygon(outer, [hole])
    expected = _cell_area(0, 0, 2, 2) - _cell_area(0.5, 0.5, 1.5, 1.5)
    assert spherical_area(poly) == pytest.approx(expected, rel=1e-12)


def test_pieces_add_up_to_whole():
    tri = Footprint(Polygon([(0, 0), (2, 0), (0, 2.5)]))
    left = tri.intersection(Footprint(box(0, 0, 1, 3)))
    right = tri.intersection(Footprint(box(1, 0, 2, 3)))
    assert left.area + right.area == pytest.approx(tri.area, rel=1e-9)


def test_measure_by_dimension():
    line = Footprint(LineString([(0, 0), (1, 0)]))
    assert line.dimension == 1
    assert line.measure() == pytest.approx(EARTH_RADIUS * np.radians(1.0), rel=1e-6)
    pts = Footprint(MultiPoint([(0, 0), (1, 1), (2, 2)]))
    assert pts.dimension == 0
    assert pts.measure() == 3.0
    assert Footprint().dimension == -1
    assert Footprint().measure() == 0.0


def test_touching_intersection_is_not_empty_but_has_no_area():
    a = Footprint(box(0, 0, 1, 1))
    b = Footprint(box(1, 0, 2, 1))
    edge = a.intersection(b)
    assert not edge.is_empty
    assert edge.area == 0.0


def test_from_projected_web_mercator():
    x, y = 111319.49079327357, 111325.14286638486  # ~ (1, 1) degrees in EPSG:3857
    fp = Footprint.from_projected(box(0, 0, x, y), 'EPSG:3857')
    minx, miny, maxx, maxy = fp.bounds
    assert (minx, miny) == pytest.approx((0.0, 0.0), abs=1e-9)
    assert (maxx, maxy) == pytest.approx((1.0, 1.0), abs=1e-5)


def test_from_projected_rejects_bad_crs():
    with pytest.raises(ProjectionError):
        Footprint.from_projected(Point(0, 0), 'EPSG:999999')
    with pytest.raises(ProjectionError):
        Footprint.from_projected(Point(0, 0), None)


def test_wkb_round_trip_keeps_geometry():
    fp = Footprint(box(0, 0, 1, 1))
    again = Footprint.from_wkb(fp.to_wkb())
    assert shapely.equals(fp.geometry, again.geometry)


def test_union_of_nothing_is_empty():
    assert Footprint.union([]).is_empty
