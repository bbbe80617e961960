import math

import pytest

from rankcheck import config
from rankcheck.geo import format_location_bias, generate_geo_grid, km_per_degree_lng, search_points
from rankcheck.inputs import InputValidationError
from rankcheck.models import GeoGridSpec, GeoPoint

LONDON = (51.5074, -0.1278)


@pytest.mark.parametrize("grid_size", [2, 3, 5])
def test_grid_has_grid_size_squared_points(grid_size):
    spec = GeoGridSpec(center_lat=LONDON[0], center_lng=LONDON[1], radius_km=5.0, grid_size=grid_size)
    points = generate_geo_grid(spec)
    assert len(points) == grid_size ** 2


def test_first_point_is_south_west_corner():
    spec = GeoGridSpec(center_lat=LONDON[0], center_lng=LONDON[1], radius_km=5.0, grid_size=3)
    first = generate_geo_grid(spec)[0]
    expected_lat = LONDON[0] - 5.0 / config.KM_PER_DEGREE_LAT
    expected_lng = LONDON[1] - 5.0 / (config.KM_PER_DEGREE_LAT * math.cos(math.radians(LONDON[0])))
    assert first.latitude == pytest.approx(expected_lat)
    assert first.longitude == pytest.approx(expected_lng)


def test_grid_is_row_major_north_then_east():
    spec = GeoGridSpec(center_lat=LONDON[0], center_lng=LONDON[1], radius_km=5.0, grid_size=3)
    points = generate_geo_grid(spec)
    # Within a row latitude is constant and longitude increases.
    assert points[0].latitude == pytest.approx(points[2].latitude)
    assert points[0].longitude < points[1].longitude < points[2].longitude
    # The next row is further north.
    assert points[3].latitude > points[0].latitude
    # Middle point is the center; last point is the north-east corner.
    assert points[4].latitude == pytest.approx(LONDON[0])
    assert points[4].longitude == pytest.approx(LONDON[1])
    assert points[8].latitude == pytest.approx(LONDON[0] + 5.0 / config.KM_PER_DEGREE_LAT)
    assert points[8].longitude == pytest.approx(LONDON[1] + 5.0 / km_per_degree_lng(LONDON[0]))


def test_grid_is_deterministic():
    spec = GeoGridSpec(center_lat=52.0, center_lng=21.0, radius_km=3.0, grid_size=4)
    assert generate_geo_grid(spec) == generate_geo_grid(spec)


def test_grid_size_one_is_rejected():
    spec = GeoGridSpec(center_lat=LONDON[0], center_lng=LONDON[1], radius_km=5.0, grid_size=1)
    with pytest.raises(InputValidationError):
        generate_geo_grid(spec)


@pytest.mark.parametrize("radius_km", [0.0, -1.0])
def test_non_positive_radius_is_rejected(radius_km):
    spec = GeoGridSpec(center_lat=LONDON[0], center_lng=LONDON[1], radius_km=radius_km, grid_size=2)
    with pytest.raises(InputValidationError):
        generate_geo_grid(spec)


def test_search_points_without_grid_is_single_locationless_point():
    assert search_points(None) == [None]


def test_location_bias_encoding():
    assert format_location_bias(GeoPoint(51.5, -0.12)) == "@51.5,-0.12,14z"
