import math
import random

from django.test import SimpleTestCase

from livetrack import geodesy


class GeodesyTests(SimpleTestCase):
    def test_haversine_one_degree_of_latitude(self):
        distance = geodesy.haversine_m((10.0, 20.0), (11.0, 20.0))
        self.assertAlmostEqual(distance, geodesy.EARTH_RADIUS_M * math.pi / 180, places=3)

    def test_haversine_is_symmetric_and_zero_on_same_point(self):
        a, b = (23.81, 90.41), (23.72, 90.42)
        self.assertAlmostEqual(geodesy.haversine_m(a, b), geodesy.haversine_m(b, a))
        self.assertEqual(geodesy.haversine_m(a, a), 0.0)

    def test_bearing_points_east_and_north(self):
        self.assertAlmostEqual(geodesy.bearing_deg((0.0, 0.0), (1.0, 0.0)), 0.0)
        self.assertAlmostEqual(geodesy.bearing_deg((0.0, 0.0), (0.0, 1.0)), 90.0)

    def test_meters_to_degrees_scales_longitude_by_latitude(self):
        d_lat, d_lng = geodesy.meters_to_degrees(60.0, 111_320.0, 111_320.0)
        self.assertAlmostEqual(d_lat, 1.0)
        self.assertAlmostEqual(d_lng, 2.0, places=6)

    def test_jitter_stays_inside_radius_box(self):
        rng = random.Random(7)
        for _ in range(200):
            lat, lng = geodesy.jitter_point(10.0, 20.0, 50.0, rng)
            self.assertLessEqual(abs(lat - 10.0) * geodesy.METERS_PER_DEGREE_LAT, 50.0 + 1e-9)
            east_m = abs(lng - 20.0) * geodesy.METERS_PER_DEGREE_LAT * math.cos(math.radians(10.0))
            self.assertLessEqual(east_m, 50.0 + 1e-6)

    def test_zero_jitter_returns_point_unchanged(self):
        self.assertEqual(geodesy.jitter_point(10.0, 20.0, 0), (10.0, 20.0))

    def test_coordinate_validation(self):
        self.assertTrue(geodesy.is_valid_coordinate(23.81, 90.41))
        self.assertTrue(geodesy.is_valid_coordinate(-90.0, 180.0))
        self.assertFalse(geodesy.is_valid_coordinate(float("nan"), 1.0))
        self.assertFalse(geodesy.is_valid_coordinate(1.0, float("inf")))
        self.assertFalse(geodesy.is_valid_coordinate(91.0, 0.0))
        self.assertFalse(geodesy.is_valid_coordinate(0.0, -180.5))
