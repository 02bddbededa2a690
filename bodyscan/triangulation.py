"""Multi-view triangulation of body keypoints.

Recovers 135 metric 3D keypoints from three views of 135 normalized 2D
keypoints and the user's known height. The scale factor relating the
triangulated cloud to centimeters is estimated per call and returned with
the points as a ScaleContext.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np

from bodyscan import geometry
from bodyscan.landmarks import NUM_KEYPOINTS

logger = logging.getLogger(__name__)

NUM_VIEWS = 3
TRIANGULATION_VIEWS = (0, 1)
SCALE_KEYPOINTS = 50
MIN_SPAN = 1e-6


@dataclass(frozen=True)
class ScaleContext:
    """Height-derived scale of a single reconstruction.

    Attributes:
        scale_factor: Multiplier from triangulated units to centimeters
        reference_span: Vertical span the user height was matched against
        source: "triangulated", "pinhole" or "identity"
    """

    scale_factor: float = 1.0
    reference_span: float = 0.0
    source: str = "identity"


def empty_points3d() -> np.ndarray:
    """135 invalid (0, 0, 0) keypoints."""
    return np.zeros((NUM_KEYPOINTS, 3), dtype=np.float64)


def estimate_scale(
    front_view: np.ndarray,
    raw_points: np.ndarray,
    valid: np.ndarray,
    user_height_cm: float,
    K: np.ndarray,
    config: Optional[Dict] = None
) -> ScaleContext:
    """Estimate the centimeter scale of a triangulated cloud.

    The first keypoints of the front view that lie inside the frame define
    the body's vertical span. Their triangulated vertical extent is matched
    against the user's height. When too few of them triangulated, the span
    is converted with the pinhole model at the rig distance instead.

    Args:
        front_view: 135x2 normalized keypoints of the front view
        raw_points: 135x3 unscaled triangulated points
        valid: Boolean mask of successfully triangulated points
        user_height_cm: Real height of the user
        K: 3x3 camera intrinsic matrix
        config: Optional configuration with "scale_keypoints", "image_height"
            and "distance_cm"

    Returns:
        ScaleContext for this reconstruction
    """
    if config is None:
        config = {}

    n = min(config.get("scale_keypoints", SCALE_KEYPOINTS), len(front_view))
    ys = front_view[:n, 1]
    in_frame = np.isfinite(ys) & (ys > 0.0) & (ys < 1.0)

    candidates = in_frame & valid[:n]
    if np.sum(candidates) >= 2:
        raw_y = raw_points[:n][candidates, 1]
        span = float(np.max(raw_y) - np.min(raw_y))
        if span > MIN_SPAN:
            return ScaleContext(user_height_cm / span, span, "triangulated")

    if np.sum(in_frame) >= 2:
        span_norm = float(np.max(ys[in_frame]) - np.min(ys[in_frame]))
        image_height = config.get("image_height", geometry.IMAGE_HEIGHT)
        distance = config.get("distance_cm", geometry.CAMERA_DISTANCE_CM)
        estimated = span_norm * image_height * distance / K[1, 1]
        if estimated > MIN_SPAN:
            logger.warning(
                f"Too few triangulated reference points, using pinhole height estimate {estimated:.2f}"
            )
            return ScaleContext(user_height_cm / estimated, estimated, "pinhole")

    logger.warning("Could not estimate body span, leaving reconstruction unscaled")
    return ScaleContext()


def triangulate_views(
    views: Sequence[np.ndarray],
    user_height_cm: float,
    config: Optional[Dict] = None
) -> tuple[np.ndarray, ScaleContext]:
    """Triangulate 135 keypoints from the front, left and right views.

    Args:
        views: Three 135x2 arrays of normalized keypoints (front, left, right)
        user_height_cm: Real height of the user in centimeters
        config: Optional configuration with "camera" and "triangulation" sections

    Returns:
        Tuple of (points3d, scale) where points3d is a 135x3 array in
        centimeters with +Y up and (0, 0, 0) marking failed keypoints
    """
    if config is None:
        config = {}
    camera_config = config.get("camera", {})
    tri_config = config.get("triangulation", {})

    if len(views) != NUM_VIEWS:
        logger.warning(f"Expected {NUM_VIEWS} views, got {len(views)}")
        return empty_points3d(), ScaleContext()

    views = [np.asarray(view, dtype=np.float64) for view in views]
    for i, view in enumerate(views):
        if view.shape != (NUM_KEYPOINTS, 2):
            raise ValueError(f"View {i} must have shape ({NUM_KEYPOINTS}, 2), got {view.shape}")

    if not np.isfinite(user_height_cm) or user_height_cm <= 0:
        raise ValueError(f"User height must be a positive number of centimeters, got {user_height_cm}")

    K, _, projections = geometry.build_camera_rig(camera_config)
    width, height = geometry.pixel_scale(camera_config)
    used = tuple(tri_config.get("views", TRIANGULATION_VIEWS))

    # Denormalize to pixel coordinates of the assumed resolution
    with np.errstate(over="ignore", invalid="ignore"):
        pixels = [view * np.array([width, height]) for view in views]

    detected = np.ones(NUM_KEYPOINTS, dtype=bool)
    for v in used:
        # Huge normalized coordinates overflow once in pixels
        finite = np.all(np.isfinite(views[v]), axis=1) & np.all(np.isfinite(pixels[v]), axis=1)
        nonzero = np.any(views[v] != 0, axis=1)
        detected &= finite & nonzero

    raw_points = np.zeros((NUM_KEYPOINTS, 3))
    valid = np.zeros(NUM_KEYPOINTS, dtype=bool)
    P_used = [projections[v] for v in used]

    for i in np.flatnonzero(detected):
        try:
            with np.errstate(over="ignore", invalid="ignore"):
                X = geometry.triangulate_point(P_used, [pixels[v][i] for v in used])
        except np.linalg.LinAlgError:
            logger.debug(f"Linear solve failed for keypoint {i}")
            continue
        if X[3] == 0 or not np.all(np.isfinite(X)):
            continue
        raw_points[i] = X[:3]
        valid[i] = True

    n_front = geometry.check_cheirality(P_used[0], P_used[1], raw_points[valid])
    logger.debug(f"Triangulated {np.sum(valid)}/{NUM_KEYPOINTS} keypoints, {n_front} in front of both cameras")

    scale_config = dict(tri_config)
    scale_config.setdefault("image_height", height)
    scale_config.setdefault("distance_cm", camera_config.get("distance_cm", geometry.CAMERA_DISTANCE_CM))
    scale = estimate_scale(views[0], raw_points, valid, user_height_cm, K, scale_config)

    # Scale to centimeters and flip the image-down Y axis so +Y points up
    points3d = raw_points * scale.scale_factor
    points3d[:, 1] *= -1.0

    points3d[~valid] = 0.0
    points3d[~np.all(np.isfinite(points3d), axis=1)] = 0.0

    logger.info(
        f"Reconstructed {int(np.sum(geometry.valid_keypoint_mask(points3d)))}/{NUM_KEYPOINTS} keypoints "
        f"(scale={scale.scale_factor:.4f} from {scale.source} span {scale.reference_span:.2f})"
    )

    return points3d, scale
