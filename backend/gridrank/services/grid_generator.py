from __future__ import annotations

import math
from dataclasses import dataclass

from gridrank.providers.errors import ScanValidationError

MILES_PER_DEGREE_LAT = 69.0
EARTH_RADIUS_MILES = 3958.8
MIN_GRID_SIZE = 3
MAX_GRID_SIZE = 15
MAX_RADIUS_MILES = 50.0
DEFAULT_ZOOM = 14


@dataclass(frozen=True)
class GridPoint:
    row: int
    col: int
    lat: float
    lng: float

    @property
    def coordinate(self) -> tuple[float, float]:
        return (self.lat, self.lng)


@dataclass(frozen=True)
class GridStats:
    total_points: int
    diameter_miles: float
    spacing_miles: float
    center_index: int


def validate_grid_config(center_lat: float, center_lng: float, radius_miles: float, grid_size: int) -> None:
    if not -90.0 < center_lat < 90.0:
        raise ScanValidationError("Center latitude must be between -90 and 90.", field="center_lat")
    if not -180.0 <= center_lng <= 180.0:
        raise ScanValidationError("Center longitude must be between -180 and 180.", field="center_lng")
    if not 0 < radius_miles <= MAX_RADIUS_MILES:
        raise ScanValidationError(f"Grid radius must be greater than 0 and at most {MAX_RADIUS_MILES:g} miles.", field="grid_radius_miles")
    if grid_size < MIN_GRID_SIZE or grid_size > MAX_GRID_SIZE or grid_size % 2 == 0:
        raise ScanValidationError(f"Grid size must be an odd number between {MIN_GRID_SIZE} and {MAX_GRID_SIZE}.", field="grid_size")


def grid_center_index(grid_size: int) -> int:
    return grid_size // 2


def grid_stats(radius_miles: float, grid_size: int) -> GridStats:
    diameter = radius_miles * 2
    return GridStats(
        total_points=grid_size * grid_size,
        diameter_miles=diameter,
        spacing_miles=diameter / (grid_size - 1),
        center_index=grid_center_index(grid_size),
    )


def generate_grid(center: tuple[float, float], radius_miles: float, grid_size: int) -> list[GridPoint]:
    """Square N x N lattice around ``center``, row 0 northmost, col 0 westmost.

    Corner cells sit ``radius_miles`` north/south and east/west of the centre.
    Offsets are multiples of a fixed step, so the middle cell carries the
    centre coordinate unchanged.
    """
    center_lat, center_lng = center
    validate_grid_config(center_lat, center_lng, radius_miles, grid_size)
    middle = grid_center_index(grid_size)
    spacing = grid_stats(radius_miles, grid_size).spacing_miles
    lat_step = spacing / MILES_PER_DEGREE_LAT
    lng_step = spacing / (MILES_PER_DEGREE_LAT * math.cos(math.radians(center_lat)))

    points: list[GridPoint] = []
    for row in range(grid_size):
        lat = center_lat + (middle - row) * lat_step
        for col in range(grid_size):
            lng = center_lng + (col - middle) * lng_step
            points.append(GridPoint(row=row, col=col, lat=lat, lng=lng))
    return points


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = math.sin(d_lat / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def format_coordinate(lat: float, lng: float, zoom: int = DEFAULT_ZOOM) -> str:
    return f"{lat:.7f},{lng:.7f},{zoom}"
