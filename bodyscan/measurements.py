"""Body circumference estimation from 3D keypoints.

Horizontal slices of the reconstructed point cloud are projected onto the
ground plane and fitted with an ellipse; Ramanujan's second approximation
turns the fitted semi-axes into a circumference. A single front photo only
gives keypoint widths, which are turned into cylinder circumferences.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import numpy as np
from scipy import linalg

from bodyscan import geometry
from bodyscan.landmarks import NUM_LANDMARKS

logger = logging.getLogger(__name__)

MEASUREMENT_NAMES = (
    "waist",
    "chest",
    "hips",
    "thigh_left",
    "thigh_right",
    "arm_left",
    "arm_right",
)

# Slice heights as fractions of body height, measured down from the top
LEVELS = {
    "chest": 0.25,
    "arm": 0.30,
    "waist": 0.50,
    "hip": 0.60,
    "thigh": 0.70,
}

TOLERANCE = 0.05
MIN_POINTS = 5
MIN_KEYPOINTS = 10

# Single-view estimates: widths in normalized image units when a landmark is missing
DEFAULT_CHEST_WIDTH = 0.18
DEFAULT_HIP_WIDTH = 0.16
DEFAULT_ARM_WIDTH = 0.08
THIGH_EXPANSION = 1.5
ARM_WIDTH_RATIO = 0.25

NOSE = 0
LEFT_SHOULDER, RIGHT_SHOULDER = 11, 12
LEFT_WRIST, RIGHT_WRIST = 15, 16
LEFT_HIP, RIGHT_HIP = 23, 24
LEFT_KNEE, RIGHT_KNEE = 25, 26
FEET = range(27, 33)


def ellipse_circumference(a: float, b: float) -> float:
    """Ramanujan's second approximation for ellipse circumference.

    Args:
        a: First semi-axis
        b: Second semi-axis

    Returns:
        Circumference, 0.0 for a degenerate ellipse
    """
    if a + b <= 0:
        return 0.0
    h = ((a - b) / (a + b)) ** 2
    return float(np.pi * (a + b) * (1.0 + 3.0 * h / (10.0 + np.sqrt(4.0 - 3.0 * h))))


def _conic_to_ellipse(coeffs: np.ndarray) -> Optional[Tuple[np.ndarray, Tuple[float, float], float]]:
    """Center, semi-axes and orientation of the conic Ax^2+Bxy+Cy^2+Dx+Ey+F=0."""
    A, B, C, D, E, F = coeffs

    det = 4 * A * C - B * B
    if det <= 0:
        return None

    x0 = (B * E - 2 * C * D) / det
    y0 = (B * D - 2 * A * E) / det

    # Value of the conic at its center
    F0 = A * x0 * x0 + B * x0 * y0 + C * y0 * y0 + D * x0 + E * y0 + F

    eigvals, eigvecs = np.linalg.eigh(np.array([[A, B / 2], [B / 2, C]]))
    with np.errstate(divide="ignore", invalid="ignore"):
        radii_sq = -F0 / eigvals
    if not np.all(np.isfinite(radii_sq)) or np.any(radii_sq <= 0):
        return None

    radii = np.sqrt(radii_sq)
    major = int(np.argmax(radii))
    angle = float(np.degrees(np.arctan2(eigvecs[1, major], eigvecs[0, major])))

    return np.array([x0, y0]), (float(radii[major]), float(radii[1 - major])), angle


def fit_ellipse(points2d: np.ndarray) -> Optional[Tuple[np.ndarray, Tuple[float, float], float]]:
    """Fit an ellipse to 2D points by direct least squares.

    Uses the numerically stable Halir-Flusser formulation of Fitzgibbon's
    ellipse-specific fit on Hartley-normalized points. The design matrix
    is split into quadratic and linear parts, the linear coefficients are
    eliminated, and the ellipse constraint 4AC - B^2 > 0 selects the
    eigenvector of the reduced scatter matrix.

    Args:
        points2d: Nx2 array of points

    Returns:
        Tuple of (center, (semi_major, semi_minor), angle_deg), or None if
        fewer than 5 distinct points are given or the fit is degenerate
    """
    points2d = np.asarray(points2d, dtype=np.float64)
    if points2d.ndim != 2 or points2d.shape[1] != 2:
        raise ValueError(f"Expected Nx2 points array, got shape {points2d.shape}")

    points2d = points2d[np.all(np.isfinite(points2d), axis=1)]
    if len(np.unique(points2d, axis=0)) < MIN_POINTS:
        return None

    norm_pts, T = geometry.normalize_points(points2d)
    x = norm_pts[:, 0]
    y = norm_pts[:, 1]

    D1 = np.column_stack((x * x, x * y, y * y))
    D2 = np.column_stack((x, y, np.ones_like(x)))

    # Collinear points cannot bound an ellipse
    if np.linalg.matrix_rank(D2) < 3:
        return None

    S1 = D1.T @ D1
    S2 = D1.T @ D2
    S3 = D2.T @ D2

    try:
        T_lin = -linalg.solve(S3, S2.T, assume_a="pos")
    except linalg.LinAlgError:
        return None

    M = S1 + S2 @ T_lin
    # Premultiply by the inverse of the constraint matrix [[0,0,2],[0,-1,0],[2,0,0]]
    M = np.vstack((M[2] / 2.0, -M[1], M[0] / 2.0))

    eigvals, eigvecs = linalg.eig(M)
    real = np.abs(eigvals.imag) <= 1e-9 * (1.0 + np.abs(eigvals.real))
    eigvecs = eigvecs.real
    cond = 4 * eigvecs[0] * eigvecs[2] - eigvecs[1] ** 2

    candidates = np.flatnonzero(real & (cond > 0))
    if len(candidates) == 0:
        logger.debug("Ellipse fit found no eigenvector satisfying the ellipse constraint")
        return None

    best = candidates[np.argmin(np.abs(eigvals.real[candidates]))]
    a1 = eigvecs[:, best]
    coeffs = np.concatenate((a1, T_lin @ a1))

    ellipse = _conic_to_ellipse(coeffs)
    if ellipse is None:
        return None

    # Undo the isotropic normalization
    center, (a, b), angle = ellipse
    scale = T[0, 0]
    centroid = -T[:2, 2] / scale

    return center / scale + centroid, (a / scale, b / scale), angle


def circumference_at_level(
    points3d: np.ndarray,
    target_y: float,
    tolerance: float,
    side: Optional[str] = None,
    min_points: int = MIN_POINTS
) -> float:
    """Estimate the circumference of a horizontal body slice.

    Args:
        points3d: Nx3 array of valid 3D points
        target_y: Height of the slice
        tolerance: Half-thickness of the slice
        side: "left" (x < 0), "right" (x > 0) or None for the whole slice
        min_points: Minimum number of points required for a fit

    Returns:
        Circumference in the units of the points, 0.0 if it cannot be fitted
    """
    mask = np.abs(points3d[:, 1] - target_y) < tolerance
    if side == "left":
        mask &= points3d[:, 0] < 0
    elif side == "right":
        mask &= points3d[:, 0] > 0

    # Project onto the horizontal (X, Z) plane
    slice_pts = points3d[mask][:, [0, 2]]
    if len(slice_pts) < min_points:
        return 0.0

    fit = fit_ellipse(slice_pts)
    if fit is None:
        return 0.0

    _, (a, b), _ = fit
    circumference = ellipse_circumference(a, b)
    return circumference if np.isfinite(circumference) and circumference > 0 else 0.0


def compute_circumferences(points3d: np.ndarray, config: Optional[Dict] = None) -> np.ndarray:
    """Compute body circumferences from 3D keypoints.

    Args:
        points3d: Nx3 array of 3D keypoints in centimeters, +Y up
        config: Optional "measurements" configuration section

    Returns:
        Array of 7 circumferences in centimeters:
        [waist, chest, hips, thigh_left, thigh_right, arm_left, arm_right]
    """
    if config is None:
        config = {}

    tolerance_frac = config.get("tolerance", TOLERANCE)
    min_points = config.get("min_points", MIN_POINTS)
    levels = {**LEVELS, **config.get("levels", {})}

    measurements = np.zeros(len(MEASUREMENT_NAMES))

    points3d = np.asarray(points3d, dtype=np.float64)
    if points3d.ndim != 2 or points3d.shape[1] != 3:
        raise ValueError(f"Expected Nx3 keypoint array, got shape {points3d.shape}")

    if len(points3d) < MIN_KEYPOINTS:
        logger.debug(f"Only {len(points3d)} keypoints, skipping measurements")
        return measurements

    points = points3d[geometry.valid_keypoint_mask(points3d)]
    if len(points) == 0:
        return measurements

    min_y = np.min(points[:, 1])
    max_y = np.max(points[:, 1])
    height = max_y - min_y
    if height <= 0:
        return measurements

    tolerance = height * tolerance_frac

    def level_y(name: str) -> float:
        return max_y - height * levels[name]

    measurements[0] = circumference_at_level(points, level_y("waist"), tolerance, min_points=min_points)
    measurements[1] = circumference_at_level(points, level_y("chest"), tolerance, min_points=min_points)
    measurements[2] = circumference_at_level(points, level_y("hip"), tolerance, min_points=min_points)
    measurements[3] = circumference_at_level(points, level_y("thigh"), tolerance, "left", min_points)
    measurements[4] = circumference_at_level(points, level_y("thigh"), tolerance, "right", min_points)
    measurements[5] = circumference_at_level(points, level_y("arm"), tolerance, "left", min_points)
    measurements[6] = circumference_at_level(points, level_y("arm"), tolerance, "right", min_points)

    logger.info(
        "Circumferences (cm): "
        + ", ".join(f"{name}={value:.1f}" for name, value in zip(MEASUREMENT_NAMES, measurements))
    )

    return measurements


def measurements_to_dict(measurements: np.ndarray) -> Dict[str, float]:
    """Name the entries of a measurement vector."""
    return {name: float(value) for name, value in zip(MEASUREMENT_NAMES, measurements)}


def _in_frame(keypoints2d: np.ndarray) -> np.ndarray:
    finite = np.all(np.isfinite(keypoints2d), axis=1)
    with np.errstate(invalid="ignore"):
        inside = np.all((keypoints2d >= 0.0) & (keypoints2d <= 1.0), axis=1)
    return finite & inside


def single_view_scale(
    keypoints2d: np.ndarray,
    user_height_cm: float,
    image_height: float
) -> Optional[float]:
    """Centimeters per pixel of one photo from the nose-to-feet span.

    The lowest in-frame ankle, heel or toe landmark marks the feet; when
    none is visible the lowest in-frame keypoint is used instead.

    Args:
        keypoints2d: Nx2 normalized keypoints in detector landmark order
        user_height_cm: Real height of the user
        image_height: Height of the photo in pixels

    Returns:
        Centimeters per pixel, or None without a visible nose or a
        positive body span
    """
    inside = _in_frame(keypoints2d)
    if not inside[NOSE]:
        return None

    feet = [i for i in FEET if inside[i]]
    if feet:
        feet_y = float(np.max(keypoints2d[feet, 1]))
    else:
        feet_y = float(np.max(keypoints2d[inside, 1]))

    span_px = (feet_y - float(keypoints2d[NOSE, 1])) * image_height
    if span_px <= 0:
        return None
    return user_height_cm / span_px


def measure_from_2d(
    keypoints2d: np.ndarray,
    user_height_cm: float,
    image_size: Tuple[float, float]
) -> np.ndarray:
    """Estimate circumferences from the keypoints of a single front photo.

    Each body part is treated as a cylinder whose diameter is a width read
    off the keypoints: shoulder distance for the chest, hip distance for
    the hips, 1.5 times each half hip width for the thighs and a quarter of
    the shoulder-to-wrist length for the arms. Widths are converted to
    centimeters with the scale from the user's height. The waist has no
    frontal width and stays 0.

    Args:
        keypoints2d: Nx2 normalized keypoints in detector landmark order,
            N >= 33
        user_height_cm: Real height of the user in centimeters
        image_size: (width, height) of the photo in pixels

    Returns:
        Array of 7 circumferences ordered as MEASUREMENT_NAMES, all zeros
        when the body span cannot be measured
    """
    measurements = np.zeros(len(MEASUREMENT_NAMES))

    keypoints2d = np.asarray(keypoints2d, dtype=np.float64)
    if keypoints2d.ndim != 2 or keypoints2d.shape[1] != 2:
        raise ValueError(f"Expected Nx2 keypoint array, got shape {keypoints2d.shape}")

    width, height = image_size
    if len(keypoints2d) < NUM_LANDMARKS or not user_height_cm > 0 or width <= 0 or height <= 0:
        return measurements

    cm_per_px = single_view_scale(keypoints2d, user_height_cm, height)
    if cm_per_px is None:
        logger.debug("No head-to-feet span in the photo, skipping measurements")
        return measurements

    inside = _in_frame(keypoints2d)
    x = keypoints2d[:, 0]

    def circumference(width_norm: float) -> float:
        return width_norm * width * cm_per_px * np.pi

    def arm_width(shoulder: int, wrist: int) -> float:
        if inside[shoulder] and inside[wrist]:
            return ARM_WIDTH_RATIO * float(np.linalg.norm(keypoints2d[wrist] - keypoints2d[shoulder]))
        return DEFAULT_ARM_WIDTH

    if inside[LEFT_SHOULDER] and inside[RIGHT_SHOULDER]:
        chest = abs(x[RIGHT_SHOULDER] - x[LEFT_SHOULDER])
    else:
        chest = DEFAULT_CHEST_WIDTH

    # Hips whose x lies in the frame still give a width and a body center
    hip_x = x[[LEFT_HIP, RIGHT_HIP]]
    with np.errstate(invalid="ignore"):
        hip_x_visible = bool(np.all((hip_x >= 0.0) & (hip_x <= 1.0)))
    hip_width = abs(hip_x[1] - hip_x[0]) if hip_x_visible else 0.0
    if (inside[LEFT_HIP] and inside[RIGHT_HIP]) or hip_width > 0:
        hips = hip_width
    else:
        hips = DEFAULT_HIP_WIDTH
    center_x = float(np.mean(hip_x)) if hip_x_visible else 0.5

    measurements[1] = circumference(chest)
    measurements[2] = circumference(hips)
    for k, (hip, knee) in enumerate(((LEFT_HIP, LEFT_KNEE), (RIGHT_HIP, RIGHT_KNEE))):
        if inside[hip] and inside[knee]:
            measurements[3 + k] = circumference(2.0 * THIGH_EXPANSION * abs(x[hip] - center_x))
    measurements[5] = circumference(arm_width(LEFT_SHOULDER, LEFT_WRIST))
    measurements[6] = circumference(arm_width(RIGHT_SHOULDER, RIGHT_WRIST))

    logger.info(
        "Single-view circumferences (cm): "
        + ", ".join(f"{name}={value:.1f}" for name, value in zip(MEASUREMENT_NAMES, measurements))
    )

    return measurements
