"""Coordinate helpers shared by georeferencing and tile compositing.

``pixel_to_latlng`` is a linear offset at Web-Mercator tile scale around a
known center, not a projection. Errors grow with distance from the center and
with latitude; callers that need survey-grade positions must not rely on it.
"""
import math
import logging
from typing import Dict, Optional, Sequence, Tuple, Union
from shapely.geometry import Point, Polygon, box
from .errors import ValidationError
from .types import GeoPoint


logger = logging.getLogger(__name__)

TILE_SIZE_PX = 256
EARTH_RADIUS_KM = 6371.0


def deg2num(lat: float, lng: float, zoom: int) -> Tuple[int, int]:
    n = 2 ** zoom
    x = int(math.floor((lng + 180.0) / 360.0 * n))
    lat_rad = math.radians(lat)
    y = int(math.floor((1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n))
    return x, y


def num2deg(x: float, y: float, zoom: int) -> Tuple[float, float]:
    n = 2 ** zoom
    lng = x / n * 360.0 - 180.0
    lat = math.degrees(math.atan(math.sinh(math.pi * (1.0 - 2.0 * y / n))))
    return lat, lng


def pixel_to_latlng(px: float, py: float, center: GeoPoint, width: int, height: int, zoom: int = 14) -> GeoPoint:
    scale = TILE_SIZE_PX * (2 ** zoom)
    # image rows grow southward
    lat_offset = (py - height / 2.0) / scale * 180.0
    lng_offset = (px - width / 2.0) / scale * 360.0
    return GeoPoint(lat=center.lat - lat_offset, lng=center.lng + lng_offset)


def bounding_box(center: GeoPoint, radius_km: float) -> Dict[str, float]:
    lat_offset = radius_km / EARTH_RADIUS_KM * (180.0 / math.pi)
    lng_offset = radius_km / (EARTH_RADIUS_KM * math.cos(math.radians(center.lat))) * (180.0 / math.pi)
    return {
        "north": center.lat + lat_offset,
        "south": center.lat - lat_offset,
        "east": center.lng + lng_offset,
        "west": center.lng - lng_offset,
    }


def parse_coordinates(value: Union[str, GeoPoint, Sequence[float]]) -> GeoPoint:
    if isinstance(value, GeoPoint):
        return value
    if isinstance(value, str):
        parts = [p.strip() for p in value.split(",")]
        if len(parts) != 2:
            raise ValidationError("Invalid coordinates format. Use: lat,lng")
        try:
            lat, lng = float(parts[0]), float(parts[1])
        except ValueError:
            raise ValidationError("Invalid coordinates format. Use: lat,lng") from None
    else:
        try:
            lat, lng = (float(v) for v in value)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid coordinate pair: {value!r}") from None
    if math.isnan(lat) or math.isnan(lng):
        raise ValidationError("Invalid coordinates format. Use: lat,lng")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        raise ValidationError(f"Coordinates out of range lat={lat} lng={lng}")
    return GeoPoint(lat=lat, lng=lng)


class ServiceRegion:
    def __init__(self, polygon: Optional[Polygon] = None, name: str = "Hyderabad region"):
        # lng/lat order; covers Hyderabad, Rangareddy, Sangareddy, Vikarabad, Medchal
        self.polygon = polygon if polygon is not None else box(77.5, 17.0, 79.0, 18.0)
        self.name = name

    def contains(self, point: GeoPoint) -> bool:
        return bool(self.polygon.covers(Point(point.lng, point.lat)))

    def require(self, point: GeoPoint) -> GeoPoint:
        if not self.contains(point):
            logger.warning("Point outside service region lat=%s lng=%s region=%s", point.lat, point.lng, self.name)
            raise ValidationError(f"Coordinates must be within the {self.name}")
        return point
