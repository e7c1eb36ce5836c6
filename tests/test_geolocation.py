import math

import pytest

from quickalert.core.config import EARTH_RADIUS_METERS
from quickalert.core.exceptions import ValidationError
from quickalert.core.models import GeoPoint
from quickalert.utils.geolocation import (
    BoundingBox,
    SpatialIndex,
    haversine_distance,
    is_within_radius,
    within_radius,
)

# Latitude offset that puts a point exactly 1000 m north of another on the sphere
ONE_KM_DEGREES = math.degrees(1000 / EARTH_RADIUS_METERS)


def test_haversine_distance_zero_for_same_point():
    p = GeoPoint(32.08, 34.78)
    assert haversine_distance(p, p) == 0


def test_haversine_distance_along_meridian():
    a = GeoPoint(10.0, 20.0)
    b = GeoPoint(10.0 + ONE_KM_DEGREES, 20.0)
    assert haversine_distance(a, b) == pytest.approx(1000, abs=1e-6)
    assert haversine_distance(b, a) == pytest.approx(haversine_distance(a, b))


def test_haversine_known_city_distance():
    """Tel Aviv to Jerusalem is roughly 54 km as the crow flies."""
    tel_aviv = GeoPoint(32.0853, 34.7818)
    jerusalem = GeoPoint(31.7683, 35.2137)
    assert 50_000 < haversine_distance(tel_aviv, jerusalem) < 58_000


def test_is_within_radius_boundary():
    center = GeoPoint(0.0, 0.0)
    point = GeoPoint(ONE_KM_DEGREES, 0.0)
    assert is_within_radius(point, center, 1001)
    assert not is_within_radius(point, center, 999)


def test_geopoint_parse_rejects_bad_input():
    with pytest.raises(ValidationError):
        GeoPoint.parse(91, 0)
    with pytest.raises(ValidationError):
        GeoPoint.parse(0, -181)
    with pytest.raises(ValidationError):
        GeoPoint.parse(float("nan"), 0)
    with pytest.raises(ValidationError):
        GeoPoint.parse("north", 0)
    assert GeoPoint.parse("32.1", 34.8) == GeoPoint(32.1, 34.8)


def test_bounding_box_spans_antimeridian():
    box = BoundingBox.around(GeoPoint(0.0, 179.99), 5000)
    assert box.contains(GeoPoint(0.0, -179.99))
    assert not box.contains(GeoPoint(0.0, 0.0))


def test_bounding_box_covering_pole_accepts_any_longitude():
    box = BoundingBox.around(GeoPoint(89.99, 0.0), 5000)
    assert box.lng_half_width is None
    assert box.contains(GeoPoint(89.995, 135.0))


def test_spatial_index_nearby_matches_brute_force():
    index = SpatialIndex()
    center = GeoPoint(32.0, 34.8)
    points = {
        f"p{i}": GeoPoint(32.0 + (i - 10) * 0.004, 34.8 + (i % 7 - 3) * 0.005)
        for i in range(21)
    }
    for key, point in points.items():
        index.add(key, point, key)

    radius = 2500
    expected = {k for k, p in points.items() if haversine_distance(center, p) <= radius}
    assert set(index.nearby(center, radius)) == expected
    assert expected  # the grid is dense enough to hit something


def test_spatial_index_add_replaces_existing_key():
    index = SpatialIndex()
    index.add("c1", GeoPoint(0.0, 0.0), "first")
    index.add("c1", GeoPoint(10.0, 10.0), "second")

    assert len(index) == 1
    assert index.get("c1") == "second"
    assert index.point_of("c1") == GeoPoint(10.0, 10.0)
    assert index.nearby(GeoPoint(0.0, 0.0), 1000) == []


def test_spatial_index_remove():
    index = SpatialIndex()
    index.add("c1", GeoPoint(0.0, 0.0), "entity")
    assert "c1" in index
    assert index.remove("c1") == "entity"
    assert "c1" not in index
    assert index.remove("c1") is None


def test_spatial_index_across_antimeridian():
    index = SpatialIndex()
    index.add("east", GeoPoint(0.0, 179.995), "east")
    index.add("west", GeoPoint(0.0, -179.995), "west")
    found = index.nearby(GeoPoint(0.0, 180.0), 1000)
    assert sorted(found) == ["east", "west"]


def test_within_radius_filters_by_key():
    items = [("near", GeoPoint(0.0, 0.001)), ("far", GeoPoint(0.0, 1.0))]
    found = within_radius(items, GeoPoint(0.0, 0.0), 500, key=lambda item: item[1])
    assert [name for name, _ in found] == ["near"]
