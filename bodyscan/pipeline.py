"""Scan pipeline entry points.

``reconstruct``, ``measure`` and ``synthesize_mesh`` expose the individual
stages; ``process_landmarks`` and ``process_images`` chain them into a
complete scan with timing and quality metrics. ``process_single_view`` and
``process_single_image`` estimate measurements from one front photo only.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from bodyscan import geometry, glb, landmarks, mesh, triangulation
from bodyscan.evaluate import ScanMetrics, Timer
from bodyscan.landmarks import LandmarkDetector
from bodyscan.measurements import MEASUREMENT_NAMES, compute_circumferences, measure_from_2d, measurements_to_dict

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Output of a complete scan.

    Attributes:
        keypoints3d: 135x3 keypoints in centimeters, (0, 0, 0) where missing
        mesh_glb: GLB file contents, empty when no mesh could be built
        measurements: Circumferences in centimeters, see MEASUREMENT_NAMES
        keypoints2d: Mapped 135x2 keypoints per view
        metrics: Collected scan metrics
    """

    keypoints3d: np.ndarray = field(default_factory=triangulation.empty_points3d)
    mesh_glb: bytes = b""
    measurements: np.ndarray = field(default_factory=lambda: np.zeros(len(MEASUREMENT_NAMES)))
    keypoints2d: list = field(default_factory=list)
    metrics: ScanMetrics = field(default_factory=ScanMetrics)

    @property
    def succeeded(self) -> bool:
        return len(self.mesh_glb) > 0

    def measurements_dict(self) -> Dict[str, float]:
        return measurements_to_dict(self.measurements)


def reconstruct(views: Sequence[np.ndarray], user_height_cm: float, config: Optional[Dict] = None) -> np.ndarray:
    """Reconstruct 135 metric 3D keypoints from front, left and right views.

    Args:
        views: Three 135x2 arrays of normalized keypoints
        user_height_cm: Real height of the user in centimeters
        config: Optional configuration with "camera" and "triangulation" sections

    Returns:
        135x3 array in centimeters, all zeros when the view count is wrong
    """
    points3d, _ = triangulation.triangulate_views(views, user_height_cm, config)
    return points3d


def measure(points3d: np.ndarray, config: Optional[Dict] = None) -> np.ndarray:
    """Compute the 7 body circumferences from 3D keypoints.

    Args:
        points3d: Nx3 keypoints in centimeters
        config: Optional configuration with a "measurements" section

    Returns:
        Array of [waist, chest, hips, thigh_left, thigh_right, arm_left, arm_right]
    """
    if config is None:
        config = {}
    return compute_circumferences(points3d, config.get("measurements", {}))


def synthesize_mesh(points3d: np.ndarray, config: Optional[Dict] = None) -> bytes:
    """Build a body mesh from 3D keypoints and serialize it as GLB.

    Args:
        points3d: Nx3 keypoints in centimeters
        config: Optional configuration with a "mesh" section

    Returns:
        GLB file contents, empty bytes when no mesh could be built
    """
    if config is None:
        config = {}
    return glb.write_glb(mesh.create_from_keypoints(points3d, config.get("mesh", {})))


def process_keypoints(
    keypoints2d: Sequence[np.ndarray],
    user_height_cm: float,
    config: Optional[Dict] = None,
    result: Optional[ScanResult] = None
) -> ScanResult:
    """Run reconstruction, measurement and mesh synthesis on mapped keypoints.

    Args:
        keypoints2d: Three 135x2 arrays of normalized keypoints
        user_height_cm: Real height of the user in centimeters
        config: Optional configuration dictionary
        result: Partially filled result to continue, e.g. with mapping timings

    Returns:
        ScanResult, empty when the number of views is not three
    """
    if config is None:
        config = {}
    if result is None:
        result = ScanResult()

    metrics = result.metrics
    start_time = time.perf_counter() - metrics.metrics["runtime_s"]

    if len(keypoints2d) != triangulation.NUM_VIEWS:
        logger.error(f"Expected {triangulation.NUM_VIEWS} views, got {len(keypoints2d)}")
        metrics.update("n_views", len(keypoints2d))
        return result

    result.keypoints2d = list(keypoints2d)

    with Timer("reconstruct", logger) as timer:
        result.keypoints3d, scale = triangulation.triangulate_views(result.keypoints2d, user_height_cm, config)
    metrics.update_stage_timing("reconstruct", timer.elapsed)
    metrics.compute_reconstruction_metrics(result.keypoints3d, result.keypoints2d, scale, config)

    with Timer("measure", logger) as timer:
        result.measurements = measure(result.keypoints3d, config)
    metrics.update_stage_timing("measure", timer.elapsed)

    with Timer("synthesize_mesh", logger) as timer:
        buffers = mesh.create_from_keypoints(result.keypoints3d, config.get("mesh", {}))
        result.mesh_glb = glb.write_glb(buffers)
    metrics.update_stage_timing("synthesize_mesh", timer.elapsed)
    metrics.compute_mesh_metrics(buffers, result.mesh_glb)

    metrics.update("runtime_s", time.perf_counter() - start_time)
    logger.info(
        f"Scan complete: {metrics.metrics['valid_keypoints']} valid keypoints, "
        f"{len(result.mesh_glb)} GLB bytes in {metrics.metrics['runtime_s']:.3f}s"
    )

    return result


def process_landmarks(
    landmark_sets: Sequence[Optional[np.ndarray]],
    user_height_cm: float,
    config: Optional[Dict] = None
) -> ScanResult:
    """Run a full scan from raw detector landmarks.

    Args:
        landmark_sets: 33 detector landmarks for each of the front, left and
            right views (None or empty where nobody was detected)
        user_height_cm: Real height of the user in centimeters
        config: Optional configuration dictionary

    Returns:
        ScanResult, empty when the number of views is not three
    """
    result = ScanResult()

    with Timer("map_landmarks", logger) as timer:
        keypoints2d = [landmarks.map_landmarks(lm) for lm in landmark_sets]
    result.metrics.update_stage_timing("map_landmarks", timer.elapsed)
    result.metrics.update("runtime_s", timer.elapsed)

    return process_keypoints(keypoints2d, user_height_cm, config, result)


def process_images(
    images: Sequence[np.ndarray],
    detector: LandmarkDetector,
    user_height_cm: float,
    config: Optional[Dict] = None
) -> ScanResult:
    """Run a full scan from the front, left and right photos.

    Args:
        images: Three images in front/left/right order
        detector: Pose detector returning 33 landmarks per image
        user_height_cm: Real height of the user in centimeters
        config: Optional configuration dictionary

    Returns:
        ScanResult of the scan
    """
    result = ScanResult()

    with Timer("detect", logger) as timer:
        keypoints2d = [landmarks.detect_keypoints(image, detector) for image in images]
    result.metrics.update_stage_timing("detect", timer.elapsed)
    result.metrics.update("runtime_s", timer.elapsed)

    return process_keypoints(keypoints2d, user_height_cm, config, result)


def measure_single_view(
    keypoints2d: np.ndarray,
    user_height_cm: float,
    config: Optional[Dict] = None,
    image_size: Optional[Tuple[float, float]] = None,
    result: Optional[ScanResult] = None
) -> ScanResult:
    """Estimate measurements from the mapped keypoints of one front photo.

    No 3D keypoints or mesh are produced: the result keeps 135 zero
    keypoints and empty GLB bytes.

    Args:
        keypoints2d: 135x2 normalized keypoints
        user_height_cm: Real height of the user in centimeters
        config: Optional configuration dictionary
        image_size: (width, height) of the photo in pixels, defaults to the
            camera resolution of the configuration
        result: Partially filled result to continue

    Returns:
        ScanResult with single-view measurements
    """
    if config is None:
        config = {}
    if result is None:
        result = ScanResult()
    if image_size is None:
        image_size = geometry.pixel_scale(config.get("camera", {}))

    metrics = result.metrics
    start_time = time.perf_counter() - metrics.metrics["runtime_s"]

    result.keypoints2d = [keypoints2d]
    metrics.update("n_views", 1)

    with Timer("measure", logger) as timer:
        result.measurements = measure_from_2d(keypoints2d, user_height_cm, image_size)
    metrics.update_stage_timing("measure", timer.elapsed)

    metrics.update("runtime_s", time.perf_counter() - start_time)
    return result


def process_single_view(
    landmark_set: Optional[np.ndarray],
    user_height_cm: float,
    config: Optional[Dict] = None,
    image_size: Optional[Tuple[float, float]] = None
) -> ScanResult:
    """Run a single-photo scan from raw detector landmarks.

    Args:
        landmark_set: 33 detector landmarks of the front photo, None or
            empty when nobody was detected
        user_height_cm: Real height of the user in centimeters
        config: Optional configuration dictionary
        image_size: (width, height) of the photo in pixels

    Returns:
        ScanResult with measurements only
    """
    result = ScanResult()

    with Timer("map_landmarks", logger) as timer:
        keypoints2d = landmarks.map_landmarks(landmark_set)
    result.metrics.update_stage_timing("map_landmarks", timer.elapsed)
    result.metrics.update("runtime_s", timer.elapsed)

    return measure_single_view(keypoints2d, user_height_cm, config, image_size, result)


def process_single_image(
    image: np.ndarray,
    detector: LandmarkDetector,
    user_height_cm: float,
    config: Optional[Dict] = None
) -> ScanResult:
    """Run a single-photo scan, measuring widths in the photo's own pixels."""
    result = ScanResult()

    with Timer("detect", logger) as timer:
        keypoints2d = landmarks.detect_keypoints(image, detector)
    result.metrics.update_stage_timing("detect", timer.elapsed)
    result.metrics.update("runtime_s", timer.elapsed)

    image_size = (float(image.shape[1]), float(image.shape[0]))
    return measure_single_view(keypoints2d, user_height_cm, config, image_size, result)
