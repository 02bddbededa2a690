"""Visualization utilities for body scans.

This module provides an interactive Open3D viewer for the camera rig,
reconstructed keypoints and synthesized mesh, and Matplotlib renderings of
the 2D keypoints per view.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import cv2
import matplotlib.pyplot as plt
import numpy as np
import open3d as o3d

from bodyscan import geometry
from bodyscan.landmarks import NUM_LANDMARKS

logger = logging.getLogger(__name__)

# Displayed in meters, keypoints are in centimeters
CM_TO_M = 0.01


def create_camera_frustum(
    R: np.ndarray,
    t: np.ndarray,
    width: float = 0.4,
    height: float = 0.3,
    depth: float = 0.3,
    color: Tuple[float, float, float] = (0.8, 0.2, 0.8),
    scale: float = CM_TO_M
) -> o3d.geometry.LineSet:
    """Create a camera frustum for visualization.

    Args:
        R: 3x3 camera rotation
        t: Camera translation
        width: Width of the frustum base
        height: Height of the frustum base
        depth: Depth of the frustum
        color: RGB color for the frustum
        scale: Factor applied to the camera center

    Returns:
        Open3D LineSet representing the camera frustum
    """
    C = geometry.camera_center(R, t) * scale

    # Camera axes in world space
    x_axis = R.T @ np.array([1.0, 0.0, 0.0])
    y_axis = R.T @ np.array([0.0, 1.0, 0.0])
    z_axis = R.T @ np.array([0.0, 0.0, 1.0])

    hw = width / 2
    hh = height / 2
    corners = [
        C + sx * hw * x_axis + sy * hh * y_axis + depth * z_axis
        for sx, sy in ((1, 1), (-1, 1), (-1, -1), (1, -1))
    ]
    points = np.vstack([C] + corners)

    # The keypoint frame has +Y up, the camera frame has +Y down
    points[:, 1] *= -1.0

    lines = [
        [0, 1], [0, 2], [0, 3], [0, 4],
        [1, 2], [2, 3], [3, 4], [4, 1]
    ]

    line_set = o3d.geometry.LineSet()
    line_set.points = o3d.utility.Vector3dVector(points)
    line_set.lines = o3d.utility.Vector2iVector(lines)
    line_set.colors = o3d.utility.Vector3dVector([color for _ in range(len(lines))])

    return line_set


def array_to_pcd(
    points: np.ndarray,
    colors: Optional[np.ndarray] = None
) -> o3d.geometry.PointCloud:
    """Convert numpy arrays to Open3D point cloud.

    Args:
        points: Nx3 array of point coordinates
        colors: Nx3 array of RGB colors (optional)

    Returns:
        Open3D PointCloud object
    """
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64))

    if colors is not None:
        if np.max(colors) > 1.0:
            colors = colors / 255.0
        pcd.colors = o3d.utility.Vector3dVector(colors)

    return pcd


def keypoint_colors(n: int) -> np.ndarray:
    """Detector landmarks in one color, derived keypoints in another."""
    colors = np.tile(np.array([0.9, 0.6, 0.1]), (n, 1))
    colors[:min(n, NUM_LANDMARKS)] = (0.1, 0.7, 0.9)
    return colors


def show(
    poses: List[Tuple[np.ndarray, np.ndarray]],
    keypoints3d: Optional[np.ndarray] = None,
    mesh: Optional[o3d.geometry.TriangleMesh] = None,
    save_path: Optional[str] = None,
    window_size: Tuple[int, int] = (1280, 720)
) -> None:
    """Visualize the scan in an interactive window.

    Args:
        poses: List of camera poses (R, t)
        keypoints3d: 135x3 keypoints in centimeters (optional)
        mesh: Triangle mesh in meters (optional)
        save_path: Path to save screenshot (optional)
        window_size: Visualization window size
    """
    vis = o3d.visualization.Visualizer()
    vis.create_window(width=window_size[0], height=window_size[1])

    vis.add_geometry(o3d.geometry.TriangleMesh.create_coordinate_frame(size=0.5))

    for i, (R, t) in enumerate(poses):
        hue = float(i) / max(1, len(poses) - 1)
        vis.add_geometry(create_camera_frustum(R, t, color=plt.cm.viridis(hue)[:3]))

    if keypoints3d is not None:
        valid = geometry.valid_keypoint_mask(keypoints3d)
        if np.any(valid):
            pcd = array_to_pcd(keypoints3d[valid] * CM_TO_M, keypoint_colors(len(keypoints3d))[valid])
            vis.add_geometry(pcd)

    if mesh is not None:
        mesh.compute_vertex_normals()
        vis.add_geometry(mesh)

    view_control = vis.get_view_control()
    view_control.set_zoom(0.5)

    opt = vis.get_render_option()
    opt.background_color = np.array([0.1, 0.1, 0.1])
    opt.point_size = 6.0
    opt.mesh_show_back_face = True

    vis.poll_events()
    vis.update_renderer()

    if save_path is not None:
        vis.capture_screen_image(save_path)
        logger.info(f"Screenshot saved to {save_path}")

    vis.run()
    vis.destroy_window()


def save_keypoint_overlay(
    keypoints2d: Sequence[np.ndarray],
    output_path: str,
    images: Optional[Sequence[Optional[np.ndarray]]] = None,
    image_size: Tuple[int, int] = (geometry.IMAGE_WIDTH, geometry.IMAGE_HEIGHT)
) -> None:
    """Draw the normalized 2D keypoints of every view side by side.

    Args:
        keypoints2d: 135x2 normalized keypoints per view
        output_path: Path to save the figure
        images: Optional BGR images to draw on, one per view
        image_size: Canvas size used when no image is given
    """
    names = geometry.view_names(len(keypoints2d))
    fig, axs = plt.subplots(1, len(keypoints2d), figsize=(6 * len(keypoints2d), 5), squeeze=False)

    for i, (ax, keypoints) in enumerate(zip(axs[0], keypoints2d)):
        image = images[i] if images is not None and i < len(images) else None
        if image is not None:
            h, w = image.shape[:2]
            ax.imshow(cv2.cvtColor(image, cv2.COLOR_BGR2RGB))
        else:
            w, h = image_size
            ax.imshow(np.full((h, w, 3), 255, dtype=np.uint8))

        keypoints = np.asarray(keypoints, dtype=np.float64)
        detected = np.any(keypoints != 0, axis=1)
        colors = keypoint_colors(len(keypoints))
        ax.scatter(
            keypoints[detected, 0] * w, keypoints[detected, 1] * h,
            c=colors[detected], s=12
        )

        ax.set_title(f"{names[i]} ({int(np.sum(detected))} keypoints)")
        ax.axis('off')

    plt.tight_layout()
    plt.savefig(output_path, dpi=120, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"Keypoint overlay saved to {output_path}")


def save_keypoints3d_plot(keypoints3d: np.ndarray, output_path: str) -> None:
    """Plot front (X-Y) and side (Z-Y) projections of the 3D keypoints.

    Args:
        keypoints3d: 135x3 keypoints in centimeters
        output_path: Path to save the figure
    """
    valid = geometry.valid_keypoint_mask(keypoints3d)
    points = keypoints3d[valid]
    colors = keypoint_colors(len(keypoints3d))[valid]

    fig, axs = plt.subplots(1, 2, figsize=(10, 8))
    for ax, (axis, label) in zip(axs, ((0, "X (cm)"), (2, "Z (cm)"))):
        ax.scatter(points[:, axis], points[:, 1], c=colors, s=12)
        ax.set_xlabel(label)
        ax.set_ylabel("Y (cm)")
        ax.set_aspect("equal", adjustable="datalim")
        ax.grid(True, alpha=0.3)

    axs[0].set_title("Front")
    axs[1].set_title("Side")

    plt.tight_layout()
    plt.savefig(output_path, dpi=120, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"3D keypoint plot saved to {output_path}")
