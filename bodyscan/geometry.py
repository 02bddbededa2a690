"""Camera geometry for the three-view body scanning rig.

This module implements the multi-view geometry the scanner relies on:
the synthetic intrinsic matrix and the three fixed camera poses, point
projection, Hartley normalization and linear (DLT) triangulation.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Rig defaults, overridable through the "camera" config section
IMAGE_WIDTH = 640
IMAGE_HEIGHT = 480
FIELD_OF_VIEW_DEG = 60.0
CAMERA_DISTANCE_CM = 200.0
VIEW_ANGLES_DEG = (0.0, 120.0, -120.0)
VIEW_NAMES = ("front", "left", "right")


def camera_intrinsics(
    width: int = IMAGE_WIDTH,
    height: int = IMAGE_HEIGHT,
    fov_deg: float = FIELD_OF_VIEW_DEG
) -> np.ndarray:
    """Build the synthetic camera intrinsic matrix.

    The focal length follows from the horizontal field of view across the
    image width, and the principal point sits at the image center.

    Args:
        width: Image width in pixels
        height: Image height in pixels
        fov_deg: Horizontal field of view in degrees

    Returns:
        3x3 camera intrinsic matrix
    """
    focal_length = width / (2.0 * np.tan(np.radians(fov_deg) / 2.0))

    K = np.array([
        [focal_length, 0, width / 2],
        [0, focal_length, height / 2],
        [0, 0, 1]
    ], dtype=np.float64)

    return K


def camera_pose(angle_deg: float, distance: float = CAMERA_DISTANCE_CM) -> tuple[np.ndarray, np.ndarray]:
    """Pose of a camera placed on a circle around the subject.

    The camera sits at ``distance`` from the origin, rotated by ``angle_deg``
    about the vertical axis, and looks at the origin. With a zero angle it
    is the front camera at (0, 0, -distance).

    Args:
        angle_deg: Rotation around the vertical axis in degrees
        distance: Radius of the camera circle

    Returns:
        Tuple of (R, t) mapping world points into the camera frame
    """
    theta = np.radians(angle_deg)
    c, s = np.cos(theta), np.sin(theta)

    R = np.array([
        [c, 0, s],
        [0, 1, 0],
        [-s, 0, c]
    ], dtype=np.float64)

    # The origin maps onto the optical axis at depth `distance`
    t = np.array([0.0, 0.0, distance]).reshape(3, 1)

    return R, t


def camera_center(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Camera center in world coordinates, C = -R^T t."""
    return (-R.T @ np.asarray(t).reshape(3, 1)).ravel()


def build_camera_rig(
    config: Optional[Dict] = None
) -> tuple[np.ndarray, list[tuple[np.ndarray, np.ndarray]], list[np.ndarray]]:
    """Build intrinsics, poses and projection matrices for the scanning rig.

    Args:
        config: Optional "camera" configuration section

    Returns:
        Tuple of (K, poses, projections) with one pose and one 3x4
        projection matrix per view, in front/left/right order
    """
    if config is None:
        config = {}

    width = config.get("image_width", IMAGE_WIDTH)
    height = config.get("image_height", IMAGE_HEIGHT)
    fov_deg = config.get("fov_deg", FIELD_OF_VIEW_DEG)
    distance = config.get("distance_cm", CAMERA_DISTANCE_CM)
    angles = config.get("view_angles_deg", VIEW_ANGLES_DEG)

    K = camera_intrinsics(width, height, fov_deg)

    poses = []
    projections = []
    for angle in angles:
        R, t = camera_pose(angle, distance)
        poses.append((R, t))
        projections.append(K @ np.hstack((R, t)))

    logger.debug(
        f"Camera rig: {len(projections)} views at {list(angles)} deg, "
        f"distance={distance:.1f}, focal={K[0, 0]:.2f}px"
    )

    return K, poses, projections


def project_points(P: np.ndarray, points3d: np.ndarray) -> np.ndarray:
    """Project 3D points into an image.

    Args:
        P: 3x4 projection matrix
        points3d: Nx3 array of 3D points

    Returns:
        Nx2 array of pixel coordinates (NaN where the depth is zero)
    """
    points3d = np.asarray(points3d, dtype=np.float64).reshape(-1, 3)
    points_homogeneous = np.hstack((points3d, np.ones((points3d.shape[0], 1))))
    projected = (P @ points_homogeneous.T).T

    with np.errstate(divide="ignore", invalid="ignore"):
        pixels = projected[:, :2] / projected[:, 2:3]

    pixels[projected[:, 2] == 0] = np.nan
    return pixels


def normalize_points(pts: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Normalize points using Hartley's method.

    Applies isotropic scaling to 2D points so they have zero mean and
    average distance of sqrt(2) from the origin.

    Args:
        pts: Nx2 array of 2D points

    Returns:
        Tuple of (normalized_points, transformation_matrix)
    """
    if pts.ndim != 2 or pts.shape[1] != 2:
        raise ValueError(f"Expected Nx2 points array, got shape {pts.shape}")

    centroid = np.mean(pts, axis=0)
    centered_pts = pts - centroid

    avg_distance = np.mean(np.sqrt(np.sum(centered_pts**2, axis=1)))
    scale = np.sqrt(2) / avg_distance if avg_distance > 0 else 1.0

    T = np.array([
        [scale, 0, -scale * centroid[0]],
        [0, scale, -scale * centroid[1]],
        [0, 0, 1]
    ])

    normalized_pts = centered_pts * scale

    logger.debug(f"Normalized {pts.shape[0]} points: scale={scale:.5f}")
    return normalized_pts, T


def triangulate_point(projections: Sequence[np.ndarray], points: Sequence[np.ndarray]) -> np.ndarray:
    """Triangulate a 3D point from its projections in two or more views.

    Implements the linear (DLT) triangulation method using SVD. Each view
    contributes two rows to the design matrix:
    x * P[2,:] - P[0,:] and y * P[2,:] - P[1,:].

    Args:
        projections: 3x4 projection matrices, one per view
        points: 2D pixel coordinates [x,y], one per view

    Returns:
        Homogeneous coordinates of the 3D point [X,Y,Z,W], divided through
        by W unless W is zero
    """
    if len(projections) != len(points) or len(projections) < 2:
        raise ValueError(
            f"Need matching projections and points for at least 2 views, "
            f"got {len(projections)} and {len(points)}"
        )

    A = np.zeros((2 * len(projections), 4))
    for k, (P, x) in enumerate(zip(projections, points)):
        A[2 * k] = x[0] * P[2, :] - P[0, :]
        A[2 * k + 1] = x[1] * P[2, :] - P[1, :]

    # The solution is the last right singular vector
    _, _, Vt = np.linalg.svd(A)
    X = Vt[-1]

    if X[3] != 0:
        X = X / X[3]

    return X


def check_cheirality(P1: np.ndarray, P2: np.ndarray, points_3d: np.ndarray) -> int:
    """Count triangulated points lying in front of both cameras.

    Args:
        P1: 3x4 projection matrix of the first camera
        P2: 3x4 projection matrix of the second camera
        points_3d: Nx3 array of 3D points

    Returns:
        Number of points with positive depth in both views
    """
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    points_homogeneous = np.hstack((points_3d, np.ones((points_3d.shape[0], 1))))

    # Third row of K [R|t] is [r3 | t3] because K's last row is [0, 0, 1]
    z1 = points_homogeneous @ P1[2, :]
    z2 = points_homogeneous @ P2[2, :]

    return int(np.sum((z1 > 0) & (z2 > 0)))


def valid_keypoint_mask(points3d: np.ndarray) -> np.ndarray:
    """Boolean mask of valid 3D keypoints.

    A keypoint is invalid when any coordinate is NaN/Inf or when it is the
    (0, 0, 0) "undetected" sentinel.

    Args:
        points3d: Nx3 array of 3D keypoints

    Returns:
        Boolean array of length N
    """
    points3d = np.asarray(points3d, dtype=np.float64)
    finite = np.all(np.isfinite(points3d), axis=-1)
    nonzero = np.any(points3d != 0, axis=-1)
    return finite & nonzero


def is_valid_keypoint(point: np.ndarray) -> bool:
    """Check a single 3D keypoint against the invalid sentinel."""
    return bool(valid_keypoint_mask(np.asarray(point, dtype=np.float64).reshape(1, 3))[0])


def view_names(n_views: int) -> List[str]:
    """Human-readable names for the first ``n_views`` rig views."""
    return [VIEW_NAMES[i] if i < len(VIEW_NAMES) else f"view{i}" for i in range(n_views)]


def pixel_scale(config: Optional[Dict] = None) -> Tuple[float, float]:
    """Pixel resolution assumed for normalized keypoints."""
    if config is None:
        config = {}
    return float(config.get("image_width", IMAGE_WIDTH)), float(config.get("image_height", IMAGE_HEIGHT))
