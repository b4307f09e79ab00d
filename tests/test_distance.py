"""
test_distance.py — Haversine distance, radius checks and bounding boxes.

Run with:
    pytest tests/test_distance.py -v
"""

from __future__ import annotations

import pytest
from hypothesis import given, settings as hyp_settings
from hypothesis import strategies as st

from backend.app.spatial.distance import (
    Coordinate,
    bounding_box,
    format_distance,
    haversine,
    inside_box,
    within,
)
from tests.fakes import COLOMBO, GALLE, KANDY, NEAR_COLOMBO

latitudes = st.floats(min_value=-85.0, max_value=85.0, allow_nan=False)
longitudes = st.floats(min_value=-179.0, max_value=179.0, allow_nan=False)
coordinates = st.builds(Coordinate, latitudes, longitudes)


class TestCoordinate:

    def test_rejects_out_of_range_latitude(self):
        with pytest.raises(ValueError):
            Coordinate(91.0, 0.0)

    def test_rejects_out_of_range_longitude(self):
        with pytest.raises(ValueError):
            Coordinate(0.0, -181.0)

    def test_to_dict(self):
        assert Coordinate(6.9, 79.8).to_dict() == {"latitude": 6.9, "longitude": 79.8}


class TestHaversine:

    def test_same_point_is_zero(self):
        assert haversine(COLOMBO, COLOMBO) == pytest.approx(0.0, abs=1e-9)

    def test_colombo_to_kandy(self):
        assert 90 < haversine(COLOMBO, KANDY) < 100

    def test_colombo_to_galle(self):
        assert 100 < haversine(COLOMBO, GALLE) < 112

    @given(coordinates, coordinates)
    @hyp_settings(max_examples=50)
    def test_symmetric(self, a, b):
        assert haversine(a, b) == pytest.approx(haversine(b, a), abs=1e-6)

    @given(coordinates, coordinates)
    @hyp_settings(max_examples=50)
    def test_bounded_by_half_circumference(self, a, b):
        assert 0.0 <= haversine(a, b) <= 20_038.0


class TestWithin:

    def test_nearby_point_within_50km(self):
        assert within(COLOMBO, NEAR_COLOMBO, 50.0)

    def test_kandy_outside_50km(self):
        assert not within(COLOMBO, KANDY, 50.0)

    def test_kandy_inside_100km(self):
        assert within(COLOMBO, KANDY, 100.0)


class TestBoundingBox:

    def test_box_contains_center(self):
        assert inside_box(COLOMBO, bounding_box(COLOMBO, 10.0))

    def test_box_excludes_far_point(self):
        assert not inside_box(GALLE, bounding_box(COLOMBO, 50.0))

    @given(coordinates, coordinates, st.floats(min_value=1.0, max_value=500.0))
    @hyp_settings(max_examples=100)
    def test_every_point_within_radius_is_inside_box(self, center, point, radius):
        if haversine(center, point) < radius * 0.999:
            assert inside_box(point, bounding_box(center, radius))


class TestFormatDistance:

    def test_metres_below_one_km(self):
        assert format_distance(0.45) == "450 m"

    def test_km_with_two_decimals(self):
        assert format_distance(3.7266) == "3.73 km"
