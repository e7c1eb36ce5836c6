import math
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, Iterable, List, Optional, Tuple, TypeVar

from ..core.config import EARTH_RADIUS_METERS
from ..core.models import GeoPoint

logger = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)

# Slack added to bounding boxes so float rounding never excludes a point on the circle
_BOX_EPSILON_DEGREES = 1e-9


def haversine_distance(a: GeoPoint, b: GeoPoint) -> float:
    """
    Great-circle distance between two points in meters.

    Planar approximations drift by hundreds of meters at the 50 km alert
    radius, so every within-radius decision in the service goes through here.
    """
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(b.lng - a.lng)

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))


def is_within_radius(point: GeoPoint, center: GeoPoint, radius_meters: float) -> bool:
    return haversine_distance(point, center) <= radius_meters


@dataclass(frozen=True)
class BoundingBox:
    """
    Latitude band plus longitude half-width around a center.

    `lng_half_width` is None when the circle contains a pole, in which case
    every longitude is inside the box.
    """

    min_lat: float
    max_lat: float
    center_lng: float
    lng_half_width: Optional[float]

    @classmethod
    def around(cls, center: GeoPoint, radius_meters: float) -> "BoundingBox":
        angular = radius_meters / EARTH_RADIUS_METERS
        lat_delta = math.degrees(angular)
        min_lat = center.lat - lat_delta
        max_lat = center.lat + lat_delta

        lng_half_width = None
        if min_lat > -90.0 and max_lat < 90.0 and angular < math.pi / 2:
            # Exact widest longitude reach of a spherical cap
            ratio = math.sin(angular) / math.cos(math.radians(center.lat))
            if ratio < 1.0:
                lng_half_width = math.degrees(math.asin(ratio)) + _BOX_EPSILON_DEGREES

        return cls(
            min_lat=min_lat - _BOX_EPSILON_DEGREES,
            max_lat=max_lat + _BOX_EPSILON_DEGREES,
            center_lng=center.lng,
            lng_half_width=lng_half_width,
        )

    def contains(self, point: GeoPoint) -> bool:
        if not self.min_lat <= point.lat <= self.max_lat:
            return False
        if self.lng_half_width is None:
            return True
        # Wrapped difference handles boxes that cross the antimeridian
        lng_diff = abs((point.lng - self.center_lng + 180.0) % 360.0 - 180.0)
        return lng_diff <= self.lng_half_width


def within_radius(
    entities: Iterable[T],
    center: GeoPoint,
    radius_meters: float,
    key: Callable[[T], GeoPoint],
) -> List[T]:
    """Filters an ad hoc collection down to the entities whose point lies within the radius."""
    box = BoundingBox.around(center, radius_meters)
    return [
        entity for entity in entities
        if box.contains(key(entity)) and haversine_distance(center, key(entity)) <= radius_meters
    ]


class SpatialIndex(Generic[K, T]):
    """
    Keyed store of points with radius queries.

    Each key holds exactly one point; `add` on an existing key replaces it.
    """

    def __init__(self):
        self._entries: Dict[K, Tuple[GeoPoint, T]] = {}

    def add(self, key: K, point: GeoPoint, entity: T):
        self._entries[key] = (point, entity)

    def remove(self, key: K) -> Optional[T]:
        entry = self._entries.pop(key, None)
        return entry[1] if entry else None

    def get(self, key: K) -> Optional[T]:
        entry = self._entries.get(key)
        return entry[1] if entry else None

    def point_of(self, key: K) -> Optional[GeoPoint]:
        entry = self._entries.get(key)
        return entry[0] if entry else None

    def __contains__(self, key) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def nearby(self, center: GeoPoint, radius_meters: float) -> List[T]:
        """Returns every stored entity whose point is within `radius_meters` of `center`."""
        box = BoundingBox.around(center, radius_meters)
        # Snapshot so concurrent add/remove during iteration is harmless
        entries = list(self._entries.values())
        return [
            entity for point, entity in entries
            if box.contains(point) and haversine_distance(center, point) <= radius_meters
        ]
