# tests/test_geo.py
"""Tests for herodispatch/core/dispatch/geo.py"""
import math

import pytest

from herodispatch.core.dispatch.geo import (
    METERS_PER_MILE,
    distance,
    haversine_m,
    in_band,
    miles_to_meters,
)
from herodispatch.core.domain import GeoPoint


class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_m(30.2672, -97.7431, 30.2672, -97.7431) == 0.0

    def test_one_degree_of_latitude(self):
        # R * pi / 180
        assert haversine_m(0, 0, 1, 0) == pytest.approx(111_194.9, abs=1.0)

    def test_symmetric(self):
        a = haversine_m(30.2672, -97.7431, 29.7604, -95.3698)
        b = haversine_m(29.7604, -95.3698, 30.2672, -97.7431)
        assert a == pytest.approx(b)

    def test_austin_to_houston(self):
        d = haversine_m(30.2672, -97.7431, 29.7604, -95.3698)
        assert 230_000 < d < 240_000

    def test_antipodal_points(self):
        assert haversine_m(0, 0, 0, 180) == pytest.approx(math.pi * 6_371_000, rel=1e-9)

    def test_distance_wraps_geopoints(self):
        a = GeoPoint(40.7128, -74.0060)
        b = GeoPoint(40.7306, -73.9352)
        assert distance(a, b) == pytest.approx(haversine_m(40.7128, -74.0060, 40.7306, -73.9352))


class TestBands:
    def test_inclusive_min_edge(self):
        assert in_band(3218.0, 3218.0, 4827.0) is True

    def test_inclusive_max_edge(self):
        assert in_band(4827.0, 3218.0, 4827.0) is True

    def test_outside(self):
        assert in_band(3217.9, 3218.0, 4827.0) is False
        assert in_band(4827.1, 3218.0, 4827.0) is False

    def test_degenerate_band(self):
        assert in_band(0.0, 0.0, 0.0) is True
        assert in_band(0.1, 0.0, 0.0) is False

    def test_miles_to_meters(self):
        assert miles_to_meters(2) == pytest.approx(2 * METERS_PER_MILE)
        assert miles_to_meters(2) == pytest.approx(3218.68)
