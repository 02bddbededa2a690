"""Landmark mapping from the pose detector to the 135-keypoint schema.

The external pose detector reports 33 landmarks per image. The rest of the
pipeline works on a fixed 135-keypoint layout: the 33 landmarks are copied
verbatim, midpoints between adjacent limb landmarks follow, and the tail is
padded so every view has the same length.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import numpy as np

logger = logging.getLogger(__name__)

NUM_LANDMARKS = 33
NUM_KEYPOINTS = 135

# Limb landmark pairs whose midpoints fill indices 33 onwards, in order
MIDPOINT_PAIRS = (
    (11, 12), (12, 13),  # left arm
    (23, 24), (24, 25),  # right arm
    (17, 18), (18, 19),  # left leg
    (29, 30), (30, 31),  # right leg
)

DEFAULT_KEYPOINT = (0.5, 0.5)


class LandmarkDetector(Protocol):
    """Capability object wrapping an external pose detector.

    ``detect`` returns 33 normalized landmarks ``(x, y, z_or_confidence)``
    for the single person in the image, or an empty sequence when nobody
    was found.
    """

    def detect(self, image: np.ndarray) -> np.ndarray:
        ...


def is_valid_landmark(point: np.ndarray) -> bool:
    """A landmark is usable when its coordinates are finite and x > 0."""
    point = np.asarray(point, dtype=np.float64)
    return bool(np.all(np.isfinite(point[:2])) and point[0] > 0)


def empty_keypoints() -> np.ndarray:
    """All-zero keypoints, the "no detection" signal."""
    return np.zeros((NUM_KEYPOINTS, 2), dtype=np.float64)


def map_landmarks(landmarks: Optional[np.ndarray]) -> np.ndarray:
    """Map 33 detector landmarks onto the 135-keypoint schema.

    Args:
        landmarks: 33xD array of normalized landmarks with D >= 2. Extra
            columns (depth or confidence) are ignored.

    Returns:
        135x2 array of normalized keypoints, all zeros if the detector did
        not return exactly 33 landmarks
    """
    if landmarks is None or len(landmarks) == 0:
        logger.debug("No landmarks supplied, returning empty keypoints")
        return empty_keypoints()

    landmarks = np.asarray(landmarks, dtype=np.float64)
    if landmarks.ndim != 2 or landmarks.shape[1] < 2:
        raise ValueError(f"Expected an NxD landmark array with D >= 2, got shape {landmarks.shape}")

    if landmarks.shape[0] != NUM_LANDMARKS:
        logger.debug(f"Expected {NUM_LANDMARKS} landmarks, got {landmarks.shape[0]}")
        return empty_keypoints()

    keypoints = empty_keypoints()
    keypoints[:NUM_LANDMARKS] = landmarks[:, :2]

    idx = NUM_LANDMARKS
    for a, b in MIDPOINT_PAIRS:
        if idx >= NUM_KEYPOINTS:
            break
        if is_valid_landmark(landmarks[a]) and is_valid_landmark(landmarks[b]):
            keypoints[idx] = (landmarks[a, :2] + landmarks[b, :2]) / 2.0
            idx += 1

    n_interpolated = idx - NUM_LANDMARKS

    # Pad by repeating the previous keypoint, or the image center if it is unusable
    while idx < NUM_KEYPOINTS:
        if keypoints[idx - 1, 0] > 0:
            keypoints[idx] = keypoints[idx - 1]
        else:
            keypoints[idx] = DEFAULT_KEYPOINT
        idx += 1

    logger.debug(
        f"Mapped {NUM_LANDMARKS} landmarks to {NUM_KEYPOINTS} keypoints "
        f"({n_interpolated} midpoints, {NUM_KEYPOINTS - NUM_LANDMARKS - n_interpolated} padded)"
    )

    return keypoints


def detect_keypoints(image: np.ndarray, detector: LandmarkDetector) -> np.ndarray:
    """Run the injected detector on an image and map its output.

    Args:
        image: Input image
        detector: Pose detector capability

    Returns:
        135x2 array of normalized keypoints, all zeros when no person is found
    """
    landmarks = detector.detect(image)

    if landmarks is None or len(landmarks) < NUM_LANDMARKS:
        logger.info("No person detected in image")
        return empty_keypoints()

    return map_landmarks(landmarks)
