"""Quality metrics and timing for body scans.

This module implements the metrics reported alongside a scan: keypoint
coverage, reprojection error of the reconstructed keypoints, mesh size
and per-stage timings.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Sequence, Union

import numpy as np

from bodyscan import geometry
from bodyscan.triangulation import TRIANGULATION_VIEWS, ScaleContext

logger = logging.getLogger(__name__)


def reprojection_rmse(
    points3d: np.ndarray,
    views: Sequence[np.ndarray],
    scale: ScaleContext,
    config: Optional[Dict] = None,
    view_indices: Sequence[int] = TRIANGULATION_VIEWS
) -> float:
    """Calculate the root mean square reprojection error of a reconstruction.

    The metric keypoints are brought back into the triangulation frame by
    undoing the Y flip and the height scale, then projected into each view.

    Args:
        points3d: 135x3 reconstructed keypoints in centimeters
        views: Normalized 2D keypoints per view
        scale: Scale context returned with the reconstruction
        config: Optional "camera" configuration section
        view_indices: Views to evaluate

    Returns:
        Root mean square reprojection error in pixels, inf when no keypoint
        could be reprojected
    """
    if config is None:
        config = {}

    _, _, projections = geometry.build_camera_rig(config)
    width, height = geometry.pixel_scale(config)

    valid = geometry.valid_keypoint_mask(points3d)
    if not np.any(valid) or scale.scale_factor == 0:
        logger.warning("No valid keypoints for reprojection error calculation")
        return float("inf")

    raw = points3d[valid] / scale.scale_factor
    raw[:, 1] *= -1.0

    squared_errors = []
    for v in view_indices:
        if v >= len(views) or v >= len(projections):
            continue
        observed = np.asarray(views[v], dtype=np.float64)[valid] * np.array([width, height])
        projected = geometry.project_points(projections[v], raw)
        error = np.sum((observed - projected) ** 2, axis=1)
        squared_errors.append(error[np.isfinite(error)])

    if not squared_errors or sum(len(e) for e in squared_errors) == 0:
        logger.warning("No valid reprojections for error calculation")
        return float("inf")

    return float(np.sqrt(np.mean(np.concatenate(squared_errors))))


class Timer:
    """Utility class for timing operations with context manager support."""

    def __init__(self, name: str = "Timer", logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = None
        self.end_time = None

    def start(self) -> None:
        self.start_time = time.perf_counter()
        self.end_time = None

    def stop(self) -> float:
        """Stop the timer and return elapsed time in seconds."""
        if self.start_time is None:
            self.logger.warning(f"{self.name}: Timer stopped without being started")
            return 0.0

        self.end_time = time.perf_counter()
        elapsed = self.end_time - self.start_time
        self.logger.debug(f"{self.name}: {elapsed:.4f}s")
        return elapsed

    def __enter__(self) -> "Timer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    @property
    def elapsed(self) -> float:
        """Elapsed time, frozen once the timer is stopped."""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time


class ScanMetrics:
    """Class for collecting and reporting scan metrics."""

    def __init__(self):
        self.metrics = {
            "n_views": 0,
            "valid_keypoints": 0,
            "keypoints_in_front": 0,
            "scale_factor": 1.0,
            "scale_source": "identity",
            "rmse_reproj_px": None,
            "mesh_vertices": 0,
            "mesh_triangles": 0,
            "placeholder_mesh": False,
            "glb_bytes": 0,
            "runtime_s": 0.0,
            "stage_timings": {},
        }

    def update(self, metric_name: str, value: Union[int, float, bool, str, Dict]) -> None:
        self.metrics[metric_name] = value

    def update_stage_timing(self, stage_name: str, time_s: float) -> None:
        self.metrics["stage_timings"][stage_name] = time_s

    def compute_reconstruction_metrics(
        self,
        points3d: np.ndarray,
        views: Sequence[np.ndarray],
        scale: ScaleContext,
        config: Optional[Dict] = None
    ) -> None:
        """Record keypoint coverage, scale and reprojection error.

        Args:
            points3d: 135x3 reconstructed keypoints
            views: Normalized 2D keypoints per view
            scale: Scale context of the reconstruction
            config: Optional configuration with "camera" and "triangulation" sections
        """
        if config is None:
            config = {}
        camera_config = config.get("camera", {})
        used = tuple(config.get("triangulation", {}).get("views", TRIANGULATION_VIEWS))

        valid = geometry.valid_keypoint_mask(points3d)
        self.metrics["n_views"] = len(views)
        self.metrics["valid_keypoints"] = int(np.sum(valid))
        self.metrics["scale_factor"] = float(scale.scale_factor)
        self.metrics["scale_source"] = scale.source

        if not np.any(valid):
            return

        _, _, projections = geometry.build_camera_rig(camera_config)
        raw = points3d[valid] / scale.scale_factor
        raw[:, 1] *= -1.0
        self.metrics["keypoints_in_front"] = geometry.check_cheirality(projections[used[0]], projections[used[1]], raw)

        self.metrics["rmse_reproj_px"] = reprojection_rmse(points3d, views, scale, camera_config, used)

    def compute_mesh_metrics(self, buffers, glb: bytes) -> None:
        """Record mesh size and GLB size."""
        self.metrics["mesh_vertices"] = buffers.vertex_count
        self.metrics["mesh_triangles"] = buffers.triangle_count
        self.metrics["placeholder_mesh"] = bool(buffers.placeholder)
        self.metrics["glb_bytes"] = len(glb)

    def to_dict(self) -> Dict:
        return {**self.metrics, "stage_timings": dict(self.metrics["stage_timings"])}

    def summary(self) -> str:
        """Generate a human-readable summary of metrics.

        Returns:
            Summary string
        """
        lines = [
            "Scan Metrics:",
            f"  Views: {self.metrics['n_views']}",
            f"  Valid keypoints: {self.metrics['valid_keypoints']} "
            f"({self.metrics['keypoints_in_front']} in front of cameras)",
            f"  Scale: {self.metrics['scale_factor']:.4f} ({self.metrics['scale_source']})",
        ]

        if self.metrics["rmse_reproj_px"] is not None:
            lines.append(f"  Reprojection RMSE: {self.metrics['rmse_reproj_px']:.4f} px")

        mesh_kind = "placeholder" if self.metrics["placeholder_mesh"] else "body"
        lines.append(
            f"  Mesh ({mesh_kind}): {self.metrics['mesh_vertices']} vertices, "
            f"{self.metrics['mesh_triangles']} triangles, {self.metrics['glb_bytes']} GLB bytes"
        )
        lines.append(f"  Total runtime: {self.metrics['runtime_s']:.2f}s")

        if self.metrics["stage_timings"]:
            lines.append("  Stage timings:")
            for stage, time_s in self.metrics["stage_timings"].items():
                lines.append(f"    {stage}: {time_s:.3f}s")

        return "\n".join(lines)
