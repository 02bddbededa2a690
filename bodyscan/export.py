"""Saving scan results to disk.

GLB files are written as produced by the pipeline; OBJ and PLY exports go
through Open3D, and measurements are written as JSON and CSV.
"""

from __future__ import annotations

import csv
import json
import logging
import os
from typing import Dict

import numpy as np
import open3d as o3d

from bodyscan.measurements import MEASUREMENT_NAMES, measurements_to_dict
from bodyscan.mesh import MeshBuffers

logger = logging.getLogger(__name__)

MESH_FORMATS = ("glb", "obj", "ply")


def to_o3d_mesh(buffers: MeshBuffers) -> o3d.geometry.TriangleMesh:
    """Convert mesh buffers to an Open3D triangle mesh.

    Args:
        buffers: Mesh to convert

    Returns:
        Open3D TriangleMesh carrying the same vertices, normals and triangles
    """
    mesh = o3d.geometry.TriangleMesh()
    mesh.vertices = o3d.utility.Vector3dVector(buffers.vertices.astype(np.float64))
    mesh.triangles = o3d.utility.Vector3iVector(buffers.indices.reshape(-1, 3).astype(np.int32))
    mesh.vertex_normals = o3d.utility.Vector3dVector(buffers.normals.astype(np.float64))
    mesh.paint_uniform_color([0.8, 0.8, 0.8])
    return mesh


def save_glb(glb: bytes, output_path: str) -> bool:
    """Write GLB bytes to a file, refusing empty data."""
    if not glb:
        logger.error(f"No mesh to save to {output_path}")
        return False

    with open(output_path, "wb") as f:
        f.write(glb)

    logger.info(f"GLB saved to {output_path} ({len(glb)} bytes)")
    return True


def save_mesh(buffers: MeshBuffers, output_path: str, file_format: str = "obj") -> bool:
    """Save mesh buffers to file.

    Args:
        buffers: Mesh to save
        output_path: Output file path
        file_format: Output file format (obj or ply)

    Returns:
        True if successful, False otherwise
    """
    if buffers.is_empty:
        logger.error(f"No mesh to save to {output_path}")
        return False

    mesh = to_o3d_mesh(buffers)
    mesh.remove_degenerate_triangles()

    if file_format.lower() == "obj":
        ok = o3d.io.write_triangle_mesh(output_path, mesh, write_vertex_colors=True)
    else:
        ok = o3d.io.write_triangle_mesh(output_path, mesh)

    if ok:
        logger.info(f"Mesh saved to {output_path}")
    else:
        logger.error(f"Failed to save mesh to {output_path}")
    return bool(ok)


def save_measurements(measurements: np.ndarray, output_dir: str, user_height_cm: float) -> Dict[str, str]:
    """Write measurements as JSON and CSV.

    Args:
        measurements: Circumferences in centimeters
        output_dir: Directory to write into
        user_height_cm: Height of the user, recorded alongside

    Returns:
        Mapping of format to written file path
    """
    os.makedirs(output_dir, exist_ok=True)
    values = measurements_to_dict(measurements)

    json_path = os.path.join(output_dir, "measurements.json")
    with open(json_path, "w") as f:
        json.dump({"height_cm": float(user_height_cm), "circumferences_cm": values}, f, indent=2)

    csv_path = os.path.join(output_dir, "measurements.csv")
    with open(csv_path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["measurement", "value_cm"])
        writer.writerow(["height", f"{user_height_cm:.1f}"])
        for name in MEASUREMENT_NAMES:
            writer.writerow([name, f"{values[name]:.1f}"])

    logger.info(f"Measurements saved to {json_path} and {csv_path}")
    return {"json": json_path, "csv": csv_path}
