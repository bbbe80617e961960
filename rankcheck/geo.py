"""Geospatial helpers."""
from __future__ import annotations

import math
from typing import List, Optional

from . import config
from .inputs import InputValidationError
from .models import GeoGridSpec, GeoPoint


def km_per_degree_lng(lat: float) -> float:
    return config.KM_PER_DEGREE_LAT * math.cos(math.radians(lat))


def validate_grid_spec(spec: GeoGridSpec) -> None:
    if spec.grid_size < 2:
        raise InputValidationError(
            f"Grid size must be >= 2 (got {spec.grid_size}); disable the geo grid for a single point"
        )
    if not spec.radius_km > 0:
        raise InputValidationError(f"Grid radius must be > 0 km (got {spec.radius_km})")
    if not -90.0 <= spec.center_lat <= 90.0:
        raise InputValidationError(f"Grid center latitude out of range: {spec.center_lat}")
    if not -180.0 <= spec.center_lng <= 180.0:
        raise InputValidationError(f"Grid center longitude out of range: {spec.center_lng}")


def generate_geo_grid(spec: GeoGridSpec) -> List[GeoPoint]:
    """Lattice of grid_size**2 points covering center +/- radius_km on both axes.

    Row-major from the south-west corner: each row steps north, each column
    steps east. Longitude degrees are scaled by cos(center_lat), which is
    not valid near the poles.
    """
    validate_grid_spec(spec)
    n = spec.grid_size
    lat_km = config.KM_PER_DEGREE_LAT
    lng_km = km_per_degree_lng(spec.center_lat)

    lat_step = (spec.radius_km * 2) / (n - 1) / lat_km
    lng_step = (spec.radius_km * 2) / (n - 1) / lng_km
    lat_min = spec.center_lat - spec.radius_km / lat_km
    lng_min = spec.center_lng - spec.radius_km / lng_km

    points = []
    for r in range(n):
        for c in range(n):
            points.append(GeoPoint(latitude=lat_min + r * lat_step, longitude=lng_min + c * lng_step))
    return points


def search_points(spec: Optional[GeoGridSpec]) -> List[Optional[GeoPoint]]:
    """Points to search for one task; a single location-less point when the grid is off."""
    if spec is None:
        return [None]
    return list(generate_geo_grid(spec))


def format_location_bias(point: GeoPoint, zoom: int = config.LOCATION_BIAS_ZOOM) -> str:
    return f"@{point.latitude},{point.longitude},{zoom}z"
