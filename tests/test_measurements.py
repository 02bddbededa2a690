"""Tests for circumference estimation.

This module tests the ellipse fit, the circumference approximation and
the slicing of a body point cloud into measurement levels.
"""

import sys
import unittest
from pathlib import Path

import numpy as np
import pytest
from scipy import integrate

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))
sys.path.append(str(Path(__file__).resolve().parent))

from bodyscan import measurements
from synthetic_body import elliptic_cylinder_cloud


def ellipse_points(center, a, b, angle_deg, n=40):
    t = np.linspace(0, 2 * np.pi, n, endpoint=False)
    theta = np.radians(angle_deg)
    x = a * np.cos(t)
    y = b * np.sin(t)
    return np.column_stack((
        center[0] + x * np.cos(theta) - y * np.sin(theta),
        center[1] + x * np.sin(theta) + y * np.cos(theta),
    ))


class TestEllipseCircumference(unittest.TestCase):
    """Test Ramanujan's approximation."""

    def test_circle(self):
        self.assertAlmostEqual(measurements.ellipse_circumference(10, 10), 2 * np.pi * 10, places=9)

    def test_matches_elliptic_integral(self):
        a, b = 30.0, 20.0
        exact, _ = integrate.quad(lambda t: np.sqrt((a * np.sin(t)) ** 2 + (b * np.cos(t)) ** 2), 0, 2 * np.pi)
        self.assertAlmostEqual(measurements.ellipse_circumference(a, b), exact, delta=exact * 1e-6)

    def test_degenerate(self):
        self.assertEqual(measurements.ellipse_circumference(0, 0), 0.0)


class TestFitEllipse(unittest.TestCase):
    """Test the direct least squares ellipse fit."""

    def test_circle(self):
        points = ellipse_points((5.0, -3.0), 12.0, 12.0, 0.0)
        center, (a, b), _ = measurements.fit_ellipse(points)

        np.testing.assert_allclose(center, [5.0, -3.0], atol=1e-6)
        self.assertAlmostEqual(a, 12.0, places=6)
        self.assertAlmostEqual(b, 12.0, places=6)

    def test_rotated_ellipse(self):
        points = ellipse_points((100.0, 40.0), 30.0, 18.0, 30.0)
        center, (a, b), angle = measurements.fit_ellipse(points)

        np.testing.assert_allclose(center, [100.0, 40.0], atol=1e-6)
        self.assertAlmostEqual(a, 30.0, places=5)
        self.assertAlmostEqual(b, 18.0, places=5)
        # Major axis direction is defined up to a half turn
        self.assertAlmostEqual(angle % 180.0, 30.0, places=4)

    def test_partial_arc(self):
        t = np.linspace(0.2, 1.8, 9)
        points = np.column_stack((25.0 * np.cos(t), 15.0 * np.sin(t)))
        _, (a, b), _ = measurements.fit_ellipse(points)

        self.assertAlmostEqual(a, 25.0, places=4)
        self.assertAlmostEqual(b, 15.0, places=4)

    def test_too_few_points(self):
        self.assertIsNone(measurements.fit_ellipse(ellipse_points((0, 0), 5, 3, 0, n=4)))

    def test_duplicates_do_not_count(self):
        points = np.vstack([ellipse_points((0, 0), 5, 3, 0, n=3)] * 5)
        self.assertIsNone(measurements.fit_ellipse(points))

    def test_collinear_points(self):
        points = np.column_stack((np.linspace(0, 10, 8), np.linspace(0, 5, 8)))
        self.assertIsNone(measurements.fit_ellipse(points))

    def test_bad_shape(self):
        with pytest.raises(ValueError):
            measurements.fit_ellipse(np.zeros((10, 3)))


class TestComputeCircumferences(unittest.TestCase):
    """Test slicing of a body cloud into measurement levels."""

    def setUp(self):
        """Build a 100 cm tall body from elliptic cylinders.

        With the top at Y=100 the levels sit at chest 75, arm 70,
        waist 50, hip 40 and thigh 30. Slices are 2 cm thick on each side
        so neighbouring levels stay apart.
        """
        self.config = {"tolerance": 0.02}
        self.torso = (40.0, 30.0)
        self.cloud = np.vstack([
            # Head marker and feet marker fix the extent
            [[0.0, 100.0, 0.0]],
            [[0.0, 0.0, 1.0]],
            # Torso rings at chest, waist and hip heights
            elliptic_cylinder_cloud((0.0, 0.0), *self.torso, [75.0, 50.0, 40.0]),
            # Arms beside the chest
            elliptic_cylinder_cloud((-60.0, 0.0), 5.0, 5.0, [70.0]),
            elliptic_cylinder_cloud((60.0, 0.0), 5.0, 5.0, [70.0]),
            # Thighs
            elliptic_cylinder_cloud((-12.0, 0.0), 9.0, 8.0, [30.0]),
            elliptic_cylinder_cloud((12.0, 0.0), 9.0, 8.0, [30.0]),
        ])

    def test_levels(self):
        result = measurements.compute_circumferences(self.cloud, self.config)
        torso = measurements.ellipse_circumference(*self.torso)

        self.assertEqual(result.shape, (7,))
        named = measurements.measurements_to_dict(result)
        self.assertAlmostEqual(named["waist"], torso, delta=1e-3)
        self.assertAlmostEqual(named["chest"], torso, delta=1e-3)
        self.assertAlmostEqual(named["hips"], torso, delta=1e-3)
        self.assertAlmostEqual(named["thigh_left"], measurements.ellipse_circumference(9, 8), delta=1e-3)
        self.assertAlmostEqual(named["thigh_right"], named["thigh_left"], delta=1e-6)
        self.assertAlmostEqual(named["arm_left"], 2 * np.pi * 5, delta=1e-3)
        self.assertAlmostEqual(named["arm_right"], 2 * np.pi * 5, delta=1e-3)

    def test_invalid_points_ignored(self):
        cloud = np.vstack([self.cloud, np.zeros((20, 3)), np.full((3, 3), np.nan)])
        np.testing.assert_allclose(
            measurements.compute_circumferences(cloud, self.config),
            measurements.compute_circumferences(self.cloud, self.config)
        )

    def test_too_few_keypoints(self):
        np.testing.assert_array_equal(measurements.compute_circumferences(self.cloud[:9]), np.zeros(7))

    def test_all_invalid(self):
        np.testing.assert_array_equal(measurements.compute_circumferences(np.zeros((135, 3))), np.zeros(7))

    def test_flat_cloud(self):
        flat = self.cloud.copy()
        flat[:, 1] = 10.0
        np.testing.assert_array_equal(measurements.compute_circumferences(flat), np.zeros(7))

    def test_bad_shape(self):
        with pytest.raises(ValueError):
            measurements.compute_circumferences(np.zeros((135, 2)))

    def test_measurement_names(self):
        self.assertEqual(
            measurements.MEASUREMENT_NAMES,
            ("waist", "chest", "hips", "thigh_left", "thigh_right", "arm_left", "arm_right")
        )


def front_photo_keypoints():
    """33 keypoints of a front photo; unused landmarks lie outside the frame."""
    keypoints = np.full((33, 2), -1.0)
    keypoints[0] = (0.5, 0.1)      # nose
    keypoints[11] = (0.6, 0.25)    # left shoulder
    keypoints[12] = (0.4, 0.25)    # right shoulder
    keypoints[15] = (0.6, 0.65)    # left wrist
    keypoints[16] = (0.4, 0.65)    # right wrist
    keypoints[23] = (0.55, 0.5)    # left hip
    keypoints[24] = (0.45, 0.5)    # right hip
    keypoints[25] = (0.55, 0.7)    # left knee
    keypoints[26] = (0.45, 0.7)    # right knee
    keypoints[27:33] = (0.5, 0.9)  # ankles, heels and toes
    return keypoints


class TestMeasureFrom2D(unittest.TestCase):
    """Test circumference estimates from a single front photo."""

    def setUp(self):
        self.keypoints = front_photo_keypoints()
        self.height = 160.0
        # 0.8 of a 400 px photo spans 160 cm, so a pixel is 0.5 cm and a
        # normalized width w is 250 * w cm across a 500 px wide photo
        self.image_size = (500.0, 400.0)

    def circumference(self, width_norm):
        return 250.0 * width_norm * np.pi

    def test_scale(self):
        scale = measurements.single_view_scale(self.keypoints, self.height, 400.0)
        self.assertAlmostEqual(scale, 0.5)

    def test_scale_without_feet(self):
        """The lowest keypoint in the frame stands in for missing feet."""
        self.keypoints[27:33] = -1.0
        scale = measurements.single_view_scale(self.keypoints, self.height, 400.0)
        self.assertAlmostEqual(scale, 160.0 / (0.6 * 400.0))

    def test_widths(self):
        result = measurements.measure_from_2d(self.keypoints, self.height, self.image_size)

        expected = [
            0.0,                        # waist has no frontal width
            self.circumference(0.2),    # shoulder distance
            self.circumference(0.1),    # hip distance
            self.circumference(0.15),   # 1.5 x both half hip widths
            self.circumference(0.15),
            self.circumference(0.1),    # quarter of shoulder to wrist
            self.circumference(0.1),
        ]
        np.testing.assert_allclose(result, expected)

    def test_missing_shoulders_use_defaults(self):
        self.keypoints[[11, 12]] = -1.0
        result = measurements.measure_from_2d(self.keypoints, self.height, self.image_size)

        self.assertAlmostEqual(result[1], self.circumference(measurements.DEFAULT_CHEST_WIDTH))
        self.assertAlmostEqual(result[5], self.circumference(measurements.DEFAULT_ARM_WIDTH))
        self.assertAlmostEqual(result[6], self.circumference(measurements.DEFAULT_ARM_WIDTH))

    def test_hips_out_of_frame(self):
        """Hips below the frame still give a width, but no thighs."""
        self.keypoints[[23, 24], 1] = 1.2
        result = measurements.measure_from_2d(self.keypoints, self.height, self.image_size)

        self.assertAlmostEqual(result[2], self.circumference(0.1))
        self.assertEqual(result[3], 0.0)
        self.assertEqual(result[4], 0.0)

        self.keypoints[[23, 24]] = -1.0
        result = measurements.measure_from_2d(self.keypoints, self.height, self.image_size)
        self.assertAlmostEqual(result[2], self.circumference(measurements.DEFAULT_HIP_WIDTH))

    def test_one_thigh(self):
        self.keypoints[26] = -1.0
        result = measurements.measure_from_2d(self.keypoints, self.height, self.image_size)

        self.assertAlmostEqual(result[3], self.circumference(0.15))
        self.assertEqual(result[4], 0.0)

    def test_scale_is_width_independent(self):
        """Only the aspect ratio of the photo matters."""
        small = measurements.measure_from_2d(self.keypoints, self.height, (250.0, 200.0))
        large = measurements.measure_from_2d(self.keypoints, self.height, (1000.0, 800.0))
        np.testing.assert_allclose(small, large)

    def test_mapped_keypoints(self):
        mapped = np.vstack((self.keypoints, np.full((102, 2), 0.5)))
        np.testing.assert_allclose(
            measurements.measure_from_2d(mapped, self.height, self.image_size),
            measurements.measure_from_2d(self.keypoints, self.height, self.image_size)
        )

    def test_unmeasurable_photo(self):
        no_nose = self.keypoints.copy()
        no_nose[0] = -1.0
        for keypoints, height, size in (
            (no_nose, self.height, self.image_size),
            (self.keypoints[:20], self.height, self.image_size),
            (self.keypoints, 0.0, self.image_size),
            (self.keypoints, self.height, (0.0, 400.0)),
            (np.zeros((135, 2)), self.height, self.image_size),
        ):
            np.testing.assert_array_equal(measurements.measure_from_2d(keypoints, height, size), np.zeros(7))

    def test_bad_shape(self):
        with pytest.raises(ValueError):
            measurements.measure_from_2d(np.zeros((33, 3)), self.height, self.image_size)


if __name__ == "__main__":
    unittest.main()
