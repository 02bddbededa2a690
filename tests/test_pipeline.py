"""Tests for the complete scan pipeline.

This module tests the scan from mapped keypoints or raw landmarks to 3D
keypoints, measurements and a GLB mesh, and checks that the results
satisfy basic quality metrics.
"""

import sys
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))
sys.path.append(str(Path(__file__).resolve().parent))

from bodyscan import geometry, glb, landmarks, measurements, pipeline
from synthetic_body import POSE_LANDMARKS, pose_views


class StubDetector:
    """Detector returning the standing pose for every image."""

    def __init__(self):
        self.calls = 0

    def detect(self, image):
        self.calls += 1
        return POSE_LANDMARKS


class TestStages(unittest.TestCase):
    """Test the reconstruct, measure and synthesize_mesh entry points."""

    def setUp(self):
        self.views = pose_views()
        self.height = 175.0

    def test_pose_scenario(self):
        """Three identical views of a standing pose give a plausible scan."""
        points3d = pipeline.reconstruct(self.views, self.height)

        valid = geometry.valid_keypoint_mask(points3d)
        y_extent = points3d[valid, 1].max() - points3d[valid, 1].min()
        self.assertAlmostEqual(y_extent, self.height, delta=3.0)

        circumferences = pipeline.measure(points3d)
        self.assertEqual(circumferences.shape, (7,))
        waist, chest, hips = circumferences[:3]
        self.assertGreater(waist, 0)
        self.assertGreater(chest, 0)
        self.assertGreater(hips, 0)

        data = pipeline.synthesize_mesh(points3d)
        self.assertGreater(len(data), 0)

        gltf, _ = glb.read_glb(data)
        position = gltf["accessors"][0]
        self.assertGreater(position["count"], 0)
        mesh_height = position["max"][1] - position["min"][1]
        self.assertGreaterEqual(mesh_height, 1.0)
        self.assertLessEqual(mesh_height, 3.0)

    def test_repeatable(self):
        """The same inputs always give the same outputs."""
        first = pipeline.reconstruct(self.views, self.height)
        second = pipeline.reconstruct(self.views, self.height)
        np.testing.assert_array_equal(first, second)
        np.testing.assert_array_equal(pipeline.measure(first), pipeline.measure(second))
        self.assertEqual(pipeline.synthesize_mesh(first), pipeline.synthesize_mesh(second))

    def test_wrong_view_count(self):
        points3d = pipeline.reconstruct(self.views[:2], self.height)
        self.assertEqual(points3d.shape, (135, 3))
        self.assertFalse(np.any(points3d))

    def test_measure_degenerate_input(self):
        np.testing.assert_array_equal(pipeline.measure(np.zeros((135, 3))), np.zeros(7))

    def test_too_few_valid_keypoints_gives_no_mesh(self):
        """Too few keypoints is an explicit failure, not the placeholder."""
        points3d = pipeline.reconstruct(self.views, self.height)
        points3d[9:] = 0.0
        self.assertEqual(pipeline.synthesize_mesh(points3d), b"")

    def test_mesh_config(self):
        points3d = pipeline.reconstruct(self.views, self.height)
        coarse = pipeline.synthesize_mesh(points3d, {"mesh": {"segments": 8}})
        fine = pipeline.synthesize_mesh(points3d)
        self.assertLess(len(coarse), len(fine))


class TestProcessLandmarks(unittest.TestCase):
    """Test complete scans from detector landmarks."""

    def test_complete_scan(self):
        result = pipeline.process_landmarks([POSE_LANDMARKS] * 3, 175.0)

        self.assertTrue(result.succeeded)
        self.assertEqual(len(result.keypoints2d), 3)
        self.assertEqual(set(result.measurements_dict()), {
            "waist", "chest", "hips", "thigh_left", "thigh_right", "arm_left", "arm_right"
        })

        metrics = result.metrics.to_dict()
        self.assertEqual(metrics["n_views"], 3)
        self.assertEqual(metrics["valid_keypoints"], 135)
        self.assertEqual(metrics["scale_source"], "triangulated")
        self.assertTrue(np.isfinite(metrics["rmse_reproj_px"]))
        self.assertEqual(metrics["glb_bytes"], len(result.mesh_glb))
        self.assertGreater(metrics["mesh_vertices"], 0)
        self.assertFalse(metrics["placeholder_mesh"])
        self.assertGreater(metrics["runtime_s"], 0)
        for stage in ("map_landmarks", "reconstruct", "measure", "synthesize_mesh"):
            self.assertIn(stage, metrics["stage_timings"])

        summary = result.metrics.summary()
        self.assertIn("Valid keypoints: 135", summary)

    def test_missing_view(self):
        result = pipeline.process_landmarks([POSE_LANDMARKS] * 2, 175.0)

        self.assertFalse(result.succeeded)
        self.assertEqual(result.metrics.metrics["n_views"], 2)
        np.testing.assert_array_equal(result.measurements, np.zeros(7))

    def test_no_person_in_front_view(self):
        result = pipeline.process_landmarks([None, POSE_LANDMARKS, POSE_LANDMARKS], 175.0)

        self.assertFalse(result.succeeded)
        self.assertFalse(np.any(result.keypoints3d))
        self.assertEqual(result.metrics.metrics["valid_keypoints"], 0)

    def test_config_sections(self):
        config = {"triangulation": {"views": [0, 2]}, "measurements": {"min_points": 1000}}
        result = pipeline.process_landmarks([POSE_LANDMARKS] * 3, 175.0, config)

        self.assertTrue(result.succeeded)
        np.testing.assert_array_equal(result.measurements, np.zeros(7))


class TestProcessImages(unittest.TestCase):
    """Test complete scans from photos with an injected detector."""

    def test_detector_runs_once_per_view(self):
        detector = StubDetector()
        images = [np.zeros((480, 640, 3), dtype=np.uint8) for _ in range(3)]

        result = pipeline.process_images(images, detector, 175.0)

        self.assertEqual(detector.calls, 3)
        self.assertTrue(result.succeeded)
        self.assertIn("detect", result.metrics.metrics["stage_timings"])

        expected = pipeline.process_landmarks([POSE_LANDMARKS] * 3, 175.0)
        np.testing.assert_array_equal(result.keypoints3d, expected.keypoints3d)
        self.assertEqual(result.mesh_glb, expected.mesh_glb)


class TestSingleView(unittest.TestCase):
    """Test measurement-only scans from one front photo."""

    def test_landmarks(self):
        result = pipeline.process_single_view(POSE_LANDMARKS, 175.0)

        self.assertFalse(result.succeeded)
        self.assertEqual(result.mesh_glb, b"")
        np.testing.assert_array_equal(result.keypoints3d, np.zeros((135, 3)))
        self.assertEqual(len(result.keypoints2d), 1)
        self.assertEqual(result.metrics.metrics["n_views"], 1)

        expected = measurements.measure_from_2d(landmarks.map_landmarks(POSE_LANDMARKS), 175.0, (640.0, 480.0))
        np.testing.assert_array_equal(result.measurements, expected)
        self.assertEqual(result.measurements[0], 0.0)
        self.assertGreater(result.measurements[1], result.measurements[2])
        for stage in ("map_landmarks", "measure"):
            self.assertIn(stage, result.metrics.metrics["stage_timings"])

    def test_camera_resolution_from_config(self):
        config = {"camera": {"image_width": 480, "image_height": 640}}
        result = pipeline.process_single_view(POSE_LANDMARKS, 175.0, config)

        expected = measurements.measure_from_2d(landmarks.map_landmarks(POSE_LANDMARKS), 175.0, (480.0, 640.0))
        np.testing.assert_array_equal(result.measurements, expected)

    def test_no_person(self):
        result = pipeline.process_single_view(None, 175.0)
        np.testing.assert_array_equal(result.measurements, np.zeros(7))

    def test_image_size_from_photo(self):
        detector = StubDetector()
        image = np.zeros((640, 480, 3), dtype=np.uint8)

        result = pipeline.process_single_image(image, detector, 175.0)

        self.assertEqual(detector.calls, 1)
        self.assertIn("detect", result.metrics.metrics["stage_timings"])
        expected = measurements.measure_from_2d(landmarks.map_landmarks(POSE_LANDMARKS), 175.0, (480.0, 640.0))
        np.testing.assert_array_equal(result.measurements, expected)


if __name__ == "__main__":
    unittest.main()
