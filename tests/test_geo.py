"""Unit tests for distance helpers."""
import math

import pytest

from matching.geo import midpoint, precise_distance, rough_distance


class TestPreciseDistance:
    """Test cases for the haversine distance."""

    def test_nearby_points_in_berlin(self):
        """Test distance between two points a few hundred meters apart."""
        distance = precise_distance(52.5200, 13.4050, 52.5250, 13.4100)
        assert distance == pytest.approx(0.65, abs=0.01)

    def test_berlin_to_paris(self):
        """Test a long distance against a known value."""
        distance = precise_distance(52.5200, 13.4050, 48.8566, 2.3522)
        assert distance == pytest.approx(878, rel=0.01)

    def test_same_point_is_zero(self):
        """Test that identical coordinates are zero apart."""
        assert precise_distance(40.0, -74.0, 40.0, -74.0) == 0

    def test_symmetry(self):
        """Test that argument order does not matter."""
        forward = precise_distance(52.52, 13.405, 48.1351, 11.582)
        backward = precise_distance(48.1351, 11.582, 52.52, 13.405)
        assert forward == pytest.approx(backward, abs=1e-9)

    def test_nan_propagates(self):
        """Test that NaN input produces NaN output."""
        assert math.isnan(precise_distance(float('nan'), 0.0, 0.0, 0.0))


class TestRoughDistance:
    """Test cases for the flat-earth approximation."""

    def test_close_to_precise_at_city_scale(self):
        """Test that the approximation is within 1% over short distances."""
        rough = rough_distance(52.5200, 13.4050, 52.5250, 13.4100)
        precise = precise_distance(52.5200, 13.4050, 52.5250, 13.4100)
        assert rough == pytest.approx(precise, rel=0.01)

    def test_one_degree_of_latitude(self):
        """Test the fixed degree-to-kilometer conversion."""
        assert rough_distance(10.0, 20.0, 11.0, 20.0) == pytest.approx(111.32)

    def test_longitude_wraps_at_antimeridian(self):
        """Test that points on both sides of 180 degrees are close."""
        distance = rough_distance(0.0, 179.9, 0.0, -179.9)
        assert distance == pytest.approx(0.2 * 111.32, rel=1e-6)

    def test_never_negative(self):
        """Test that distances are non-negative regardless of direction."""
        assert rough_distance(10.0, 10.0, 9.0, 9.0) > 0
        assert rough_distance(9.0, 9.0, 10.0, 10.0) > 0


class TestMidpoint:
    """Test cases for the meeting point helper."""

    def test_midpoint(self):
        """Test the arithmetic midpoint of two coordinates."""
        lat, lng = midpoint(52.5200, 13.4050, 52.5250, 13.4100)
        assert lat == pytest.approx(52.5225)
        assert lng == pytest.approx(13.4075)
