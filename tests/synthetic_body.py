"""Synthetic inputs shared by the tests."""

import numpy as np

from bodyscan import geometry
from bodyscan.landmarks import map_landmarks

# Symmetric standing pose in normalized image coordinates (x, y, visibility),
# in detector landmark order, elbows out and hands resting on the hips
POSE_LANDMARKS = np.array([
    [0.50, 0.090, 1.0],   # nose
    [0.51, 0.065, 1.0],   # left eye inner
    [0.52, 0.065, 1.0],   # left eye
    [0.53, 0.065, 1.0],   # left eye outer
    [0.49, 0.065, 1.0],   # right eye inner
    [0.48, 0.065, 1.0],   # right eye
    [0.47, 0.065, 1.0],   # right eye outer
    [0.54, 0.075, 1.0],   # left ear
    [0.46, 0.075, 1.0],   # right ear
    [0.51, 0.110, 1.0],   # mouth left
    [0.49, 0.110, 1.0],   # mouth right
    [0.58, 0.265, 1.0],   # left shoulder
    [0.42, 0.265, 1.0],   # right shoulder
    [0.70, 0.305, 1.0],   # left elbow
    [0.30, 0.305, 1.0],   # right elbow
    [0.64, 0.505, 1.0],   # left wrist
    [0.36, 0.505, 1.0],   # right wrist
    [0.625, 0.595, 1.0],  # left pinky
    [0.375, 0.595, 1.0],  # right pinky
    [0.605, 0.605, 1.0],  # left index
    [0.395, 0.605, 1.0],  # right index
    [0.62, 0.530, 1.0],   # left thumb
    [0.38, 0.530, 1.0],   # right thumb
    [0.55, 0.520, 1.0],   # left hip
    [0.45, 0.520, 1.0],   # right hip
    [0.56, 0.720, 1.0],   # left knee
    [0.44, 0.720, 1.0],   # right knee
    [0.56, 0.910, 1.0],   # left ankle
    [0.44, 0.910, 1.0],   # right ankle
    [0.555, 0.930, 1.0],  # left heel
    [0.445, 0.930, 1.0],  # right heel
    [0.58, 0.950, 1.0],   # left foot index
    [0.42, 0.950, 1.0],   # right foot index
])


def pose_views():
    """Three identical mapped views of the standing pose."""
    keypoints = map_landmarks(POSE_LANDMARKS)
    return [keypoints.copy() for _ in range(3)]


def box_points(n=135, seed=0):
    """Random points in a body-sized box, +Y up, in centimeters."""
    rng = np.random.default_rng(seed)
    return np.column_stack((
        rng.uniform(-40, 40, n),
        rng.uniform(-70, 70, n),
        rng.uniform(-15, 15, n),
    ))


def project_to_views(points_up, config=None):
    """Project +Y-up points into the rig and return normalized 2D views."""
    _, _, projections = geometry.build_camera_rig(config)
    width, height = geometry.pixel_scale(config)

    # The rig looks at an image-down Y axis
    world = points_up * np.array([1.0, -1.0, 1.0])
    return [geometry.project_points(P, world) / np.array([width, height]) for P in projections]


def elliptic_cylinder_cloud(center_xz, a, b, y_levels, n_around=24):
    """Points on the surface of a vertical elliptic cylinder."""
    angles = np.linspace(0, 2 * np.pi, n_around, endpoint=False)
    rings = [
        np.column_stack((
            center_xz[0] + a * np.cos(angles),
            np.full(n_around, y),
            center_xz[1] + b * np.sin(angles),
        ))
        for y in y_levels
    ]
    return np.vstack(rings)
