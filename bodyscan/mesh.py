"""Primitive-based body mesh synthesis.

This module builds a coarse body mesh from 3D keypoints by placing
ellipsoids (head, torso, pelvis) and cylinders (neck, limbs) between joints,
and normalizes the result to a metric scale suitable for viewers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np

from bodyscan import geometry

logger = logging.getLogger(__name__)

MIN_MESH_KEYPOINTS = 19
MIN_VALID_KEYPOINTS = 10
DEFAULT_SEGMENTS = 16

# Reference proportions in centimeters
REFERENCE_TORSO_LENGTH = 45.0
CANONICAL_SHOULDER_WIDTH = 40.0
CANONICAL_HIP_WIDTH = 30.0

# Output normalization, in meters
TARGET_HEIGHT = 1.5
MIN_EXTENT = 1e-6


@dataclass
class MeshBuffers:
    """Indexed triangle mesh with per-vertex normals.

    Attributes:
        vertices: Vx3 float32 positions
        normals: Vx3 float32 unit normals
        indices: Flat uint32 triangle indices, three per triangle
        placeholder: Whether this is the fallback mannequin
    """

    vertices: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.float32))
    normals: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.float32))
    indices: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.uint32))
    placeholder: bool = False

    def __post_init__(self):
        self.vertices = np.asarray(self.vertices, dtype=np.float32).reshape(-1, 3)
        self.normals = np.asarray(self.normals, dtype=np.float32).reshape(-1, 3)
        self.indices = np.asarray(self.indices, dtype=np.uint32).ravel()

    @property
    def is_empty(self) -> bool:
        return self.vertex_count == 0 or len(self.indices) == 0

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    @property
    def triangle_count(self) -> int:
        return len(self.indices) // 3

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """Axis-aligned bounding box as (min, max), zeros when empty."""
        if self.vertex_count == 0:
            return np.zeros(3, dtype=np.float32), np.zeros(3, dtype=np.float32)
        return self.vertices.min(axis=0), self.vertices.max(axis=0)

    def max_extent(self) -> float:
        lo, hi = self.bounds()
        return float(np.max(hi - lo))

    def append(self, other: MeshBuffers) -> None:
        """Append another mesh, offsetting its indices past our vertices."""
        if other.vertex_count == 0:
            return
        offset = self.vertex_count
        self.vertices = np.vstack((self.vertices, other.vertices))
        self.normals = np.vstack((self.normals, other.normals))
        self.indices = np.concatenate((self.indices, other.indices + np.uint32(offset)))


class SegmentShape(Enum):
    ELLIPSOID = "ellipsoid"
    CYLINDER = "cylinder"


@dataclass(frozen=True)
class SegmentRule:
    """How a body segment is built from joints.

    Each radius is a (basis, fraction) pair: the basis names a body
    dimension ("length" of the segment, "shoulder_width", "hip_width" or
    "body_scale") that is multiplied by the fraction. Ellipsoids take three
    radii and are centered on the mean of their joints; cylinders take one
    radius and run from the first joint to the second.
    """

    shape: SegmentShape
    joints: Tuple[str, ...]
    radii: Tuple[Tuple[str, float], ...]


class BodySegment(Enum):
    HEAD = SegmentRule(
        SegmentShape.ELLIPSOID, ("nose",),
        (("shoulder_width", 0.20), ("shoulder_width", 0.26), ("shoulder_width", 0.22)),
    )
    NECK = SegmentRule(SegmentShape.CYLINDER, ("neck", "nose"), (("shoulder_width", 0.12),))
    TORSO = SegmentRule(
        SegmentShape.ELLIPSOID, ("neck", "mid_hip"),
        (("shoulder_width", 0.5), ("length", 0.5), ("body_scale", 12.0)),
    )
    PELVIS = SegmentRule(
        SegmentShape.ELLIPSOID, ("left_hip", "right_hip"),
        (("hip_width", 0.75), ("body_scale", 10.0), ("body_scale", 11.0)),
    )
    LEFT_THIGH = SegmentRule(SegmentShape.CYLINDER, ("left_hip", "left_knee"), (("length", 0.12),))
    RIGHT_THIGH = SegmentRule(SegmentShape.CYLINDER, ("right_hip", "right_knee"), (("length", 0.12),))
    LEFT_SHIN = SegmentRule(SegmentShape.CYLINDER, ("left_knee", "left_ankle"), (("length", 0.10),))
    RIGHT_SHIN = SegmentRule(SegmentShape.CYLINDER, ("right_knee", "right_ankle"), (("length", 0.10),))
    LEFT_UPPER_ARM = SegmentRule(SegmentShape.CYLINDER, ("left_shoulder", "left_elbow"), (("length", 0.10),))
    RIGHT_UPPER_ARM = SegmentRule(SegmentShape.CYLINDER, ("right_shoulder", "right_elbow"), (("length", 0.10),))
    LEFT_FOREARM = SegmentRule(SegmentShape.CYLINDER, ("left_elbow", "left_wrist"), (("length", 0.08),))
    RIGHT_FOREARM = SegmentRule(SegmentShape.CYLINDER, ("right_elbow", "right_wrist"), (("length", 0.08),))


@dataclass(frozen=True)
class JointLayout:
    """Keypoint indices of the joints used for mesh synthesis.

    ``neck`` and ``mid_hip`` default to the midpoints of the shoulders and
    hips when the layout has no dedicated keypoint for them.
    """

    nose: int
    left_shoulder: int
    right_shoulder: int
    left_elbow: int
    right_elbow: int
    left_wrist: int
    right_wrist: int
    left_hip: int
    right_hip: int
    left_knee: int
    right_knee: int
    left_ankle: int
    right_ankle: int
    neck: Optional[int] = None
    mid_hip: Optional[int] = None

    def resolve(self, points3d: np.ndarray) -> Dict[str, Optional[np.ndarray]]:
        """Look up joint positions, None for missing or invalid keypoints."""
        valid = geometry.valid_keypoint_mask(points3d)

        def lookup(index: Optional[int]) -> Optional[np.ndarray]:
            if index is None or index >= len(points3d) or not valid[index]:
                return None
            return points3d[index]

        def midpoint(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> Optional[np.ndarray]:
            if a is None or b is None:
                return None
            return (a + b) / 2.0

        joints = {
            name: lookup(getattr(self, name))
            for name in (
                "nose", "left_shoulder", "right_shoulder", "left_elbow", "right_elbow",
                "left_wrist", "right_wrist", "left_hip", "right_hip", "left_knee",
                "right_knee", "left_ankle", "right_ankle",
            )
        }
        joints["neck"] = (
            lookup(self.neck) if self.neck is not None
            else midpoint(joints["left_shoulder"], joints["right_shoulder"])
        )
        joints["mid_hip"] = (
            lookup(self.mid_hip) if self.mid_hip is not None
            else midpoint(joints["left_hip"], joints["right_hip"])
        )
        return joints


# Detector landmark order, as produced by landmarks.map_landmarks
MEDIAPIPE_LAYOUT = JointLayout(
    nose=0,
    left_shoulder=11, right_shoulder=12,
    left_elbow=13, right_elbow=14,
    left_wrist=15, right_wrist=16,
    left_hip=23, right_hip=24,
    left_knee=25, right_knee=26,
    left_ankle=27, right_ankle=28,
)

BODY25_LAYOUT = JointLayout(
    nose=0, neck=1,
    right_shoulder=2, right_elbow=3, right_wrist=4,
    left_shoulder=5, left_elbow=6, left_wrist=7,
    mid_hip=8,
    right_hip=9, right_knee=10, right_ankle=11,
    left_hip=12, left_knee=13, left_ankle=14,
)

JOINT_LAYOUTS = {
    "mediapipe": MEDIAPIPE_LAYOUT,
    "body25": BODY25_LAYOUT,
}


def generate_ellipsoid(center: np.ndarray, radii: np.ndarray, segments: int = DEFAULT_SEGMENTS) -> MeshBuffers:
    """Generate an axis-aligned ellipsoid as a UV sphere.

    Args:
        center: Center of the ellipsoid
        radii: Semi-axes along X, Y and Z
        segments: Number of sectors around the vertical axis; half as many
            rings run from pole to pole

    Returns:
        MeshBuffers with outward normals and counter-clockwise triangles
    """
    center = np.asarray(center, dtype=np.float64)
    radii = np.asarray(radii, dtype=np.float64)
    rings = max(segments // 2, 2)
    sectors = max(segments, 3)

    theta = np.linspace(0.0, np.pi, rings + 1)
    phi = np.linspace(0.0, 2.0 * np.pi, sectors + 1)
    theta_grid, phi_grid = np.meshgrid(theta, phi, indexing="ij")

    unit = np.stack((
        np.sin(theta_grid) * np.cos(phi_grid),
        np.cos(theta_grid),
        np.sin(theta_grid) * np.sin(phi_grid),
    ), axis=-1).reshape(-1, 3)

    vertices = center + unit * radii

    # Gradient of the implicit surface gives the outward normal
    normals = unit / radii
    normals /= np.linalg.norm(normals, axis=1, keepdims=True)

    indices = []
    for i in range(rings):
        for j in range(sectors):
            first = i * (sectors + 1) + j
            second = first + sectors + 1
            # Triangles touching a pole collapse to a line
            if i != 0:
                indices.extend((first, first + 1, second))
            if i != rings - 1:
                indices.extend((first + 1, second + 1, second))

    return MeshBuffers(vertices, normals, indices)


def generate_cylinder(
    start: np.ndarray,
    end: np.ndarray,
    radius: float,
    segments: int = DEFAULT_SEGMENTS
) -> MeshBuffers:
    """Generate the side surface of a cylinder between two points.

    Args:
        start: Center of the first end
        end: Center of the second end
        radius: Cylinder radius
        segments: Number of vertices around each end

    Returns:
        MeshBuffers without end caps, empty if the axis has zero length
    """
    start = np.asarray(start, dtype=np.float64)
    end = np.asarray(end, dtype=np.float64)
    axis = end - start
    length = np.linalg.norm(axis)
    if length <= 0 or not np.isfinite(length):
        return MeshBuffers()

    direction = axis / length
    reference = np.array([0.0, 1.0, 0.0]) if abs(direction[1]) < 0.9 else np.array([1.0, 0.0, 0.0])
    u = np.cross(direction, reference)
    u /= np.linalg.norm(u)
    v = np.cross(direction, u)

    angles = 2.0 * np.pi * np.arange(segments) / segments
    normals = np.outer(np.cos(angles), u) + np.outer(np.sin(angles), v)

    vertices = np.vstack((start + radius * normals, end + radius * normals))
    normals = np.vstack((normals, normals))

    j = np.arange(segments)
    a0 = j
    a1 = (j + 1) % segments
    b0 = segments + a0
    b1 = segments + a1
    indices = np.column_stack((a0, a1, b0, a1, b1, b0)).ravel()

    return MeshBuffers(vertices, normals, indices)


def create_placeholder_mesh(segments: int = DEFAULT_SEGMENTS) -> MeshBuffers:
    """Generic 1.5 m mannequin made of a torso and a head ellipsoid."""
    buffers = generate_ellipsoid(np.array([0.0, 0.6, 0.0]), np.array([0.22, 0.6, 0.13]), segments)
    buffers.append(generate_ellipsoid(np.array([0.0, 1.35, 0.0]), np.array([0.11, 0.15, 0.12]), segments))
    buffers.placeholder = True
    return buffers


def normalize_mesh(buffers: MeshBuffers, target_height: float = TARGET_HEIGHT) -> MeshBuffers:
    """Center a mesh and bring it to meter scale.

    Meshes larger than 100 units are assumed to be in centimeters and
    scaled by 0.01; meshes smaller than 1 unit are stretched to
    ``target_height``. Anything in between is only centered.

    Args:
        buffers: Mesh to normalize
        target_height: Height in meters for undersized meshes

    Returns:
        New MeshBuffers with transformed vertices
    """
    if buffers.vertex_count == 0:
        return buffers

    vertices = buffers.vertices.astype(np.float64)
    lo, hi = vertices.min(axis=0), vertices.max(axis=0)
    vertices -= (lo + hi) / 2.0

    extent = float(np.max(hi - lo))
    if extent > 100.0:
        vertices *= 0.01
    elif extent < 1.0:
        span = float(hi[1] - lo[1])
        if span <= 0:
            span = extent
        if span > 0:
            vertices *= target_height / span

    logger.debug(f"Normalized mesh: extent {extent:.3f} -> {float(np.max(np.ptp(vertices, axis=0))):.3f}")

    return MeshBuffers(vertices, buffers.normals.copy(), buffers.indices.copy(), buffers.placeholder)


def _body_dimensions(joints: Dict[str, Optional[np.ndarray]]) -> Dict[str, float]:
    def distance(a: str, b: str) -> float:
        if joints[a] is None or joints[b] is None:
            return 0.0
        return float(np.linalg.norm(joints[a] - joints[b]))

    body_scale = distance("neck", "mid_hip") / REFERENCE_TORSO_LENGTH
    if body_scale <= 0 or not np.isfinite(body_scale):
        body_scale = 1.0

    shoulder_width = distance("left_shoulder", "right_shoulder")
    if shoulder_width <= 0:
        shoulder_width = CANONICAL_SHOULDER_WIDTH * body_scale

    hip_width = distance("left_hip", "right_hip")
    if hip_width <= 0:
        hip_width = CANONICAL_HIP_WIDTH * body_scale

    return {
        "body_scale": body_scale,
        "shoulder_width": shoulder_width,
        "hip_width": hip_width,
    }


def build_segment(
    segment: BodySegment,
    joints: Dict[str, Optional[np.ndarray]],
    dimensions: Dict[str, float],
    segments: int = DEFAULT_SEGMENTS
) -> MeshBuffers:
    """Build one body segment, empty when a joint is missing or sizes are degenerate."""
    rule = segment.value
    points = [joints.get(name) for name in rule.joints]
    if any(p is None for p in points):
        return MeshBuffers()

    length = float(np.linalg.norm(points[-1] - points[0])) if len(points) > 1 else 0.0
    bases = {**dimensions, "length": length}
    radii = np.array([bases[basis] * fraction for basis, fraction in rule.radii])
    if not np.all(np.isfinite(radii)) or np.any(radii <= 0):
        logger.debug(f"Skipping {segment.name.lower()}: degenerate size {radii}")
        return MeshBuffers()

    if rule.shape is SegmentShape.ELLIPSOID:
        return generate_ellipsoid(np.mean(points, axis=0), radii, segments)

    return generate_cylinder(points[0], points[1], float(radii[0]), segments)


def create_from_keypoints(points3d: np.ndarray, config: Optional[Dict] = None) -> MeshBuffers:
    """Synthesize a body mesh from 3D keypoints.

    Args:
        points3d: Nx3 array of 3D keypoints in centimeters, +Y up
        config: Optional "mesh" configuration section with "segments" and
            "joint_layout"

    Returns:
        Normalized MeshBuffers, the placeholder mannequin when no segment
        could be built, or empty buffers when there are too few keypoints
    """
    if config is None:
        config = {}

    segments = config.get("segments", DEFAULT_SEGMENTS)
    layout = JOINT_LAYOUTS[config.get("joint_layout", "mediapipe")]

    points3d = np.asarray(points3d, dtype=np.float64)
    if points3d.ndim != 2 or points3d.shape[1] != 3:
        raise ValueError(f"Expected Nx3 keypoint array, got shape {points3d.shape}")

    if len(points3d) < MIN_MESH_KEYPOINTS:
        logger.warning(f"Need at least {MIN_MESH_KEYPOINTS} keypoints for a mesh, got {len(points3d)}")
        return MeshBuffers()

    n_valid = int(np.sum(geometry.valid_keypoint_mask(points3d)))
    if n_valid < MIN_VALID_KEYPOINTS:
        logger.warning(f"Need at least {MIN_VALID_KEYPOINTS} valid keypoints for a mesh, got {n_valid}")
        return MeshBuffers()

    joints = layout.resolve(points3d)
    dimensions = _body_dimensions(joints)

    buffers = MeshBuffers()
    built = []
    for segment in BodySegment:
        piece = build_segment(segment, joints, dimensions, segments)
        if not piece.is_empty:
            buffers.append(piece)
            built.append(segment.name.lower())

    logger.debug(f"Built segments: {', '.join(built) or 'none'}")

    if buffers.is_empty or buffers.max_extent() < MIN_EXTENT:
        logger.warning("No body segment could be built, using placeholder mesh")
        buffers = create_placeholder_mesh(segments)

    buffers = normalize_mesh(buffers)

    # Keypoints beyond float32 range leave inf/NaN vertices
    if not np.all(np.isfinite(buffers.vertices)):
        logger.warning("Body mesh has non-finite vertices, using placeholder mesh")
        buffers = normalize_mesh(create_placeholder_mesh(segments))

    logger.info(f"Mesh: {buffers.vertex_count} vertices, {buffers.triangle_count} triangles")
    return buffers
