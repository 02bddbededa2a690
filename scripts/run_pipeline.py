#!/usr/bin/env python3
"""
Body Scan Pipeline

This script runs the complete body scan from the pose landmarks detected in
a front, left and right photo: 3D keypoint reconstruction, circumference
measurements and a GLB body mesh.
"""

from __future__ import annotations

import argparse
import datetime
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

import cv2
import numpy as np
import yaml
from tqdm import tqdm

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from bodyscan import evaluate, export, geometry, glb, pipeline, visualise


# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    handlers=[
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("pipeline")

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp")


def load_config(config_path: Optional[str] = None) -> Dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary
    """
    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"

    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    for section in ("camera", "triangulation", "measurements", "mesh", "io"):
        config.setdefault(section, {})

    return config


def read_landmarks(path: str) -> Optional[np.ndarray]:
    """Read detector landmarks for one view from a JSON file.

    The file holds either a list of [x, y] / [x, y, z] rows or an object
    with such a list under "landmarks". An empty list means no detection.

    Args:
        path: Path to the JSON file

    Returns:
        Nx2 or Nx3 landmark array, or None when nothing was detected
    """
    with open(path, "r") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("landmarks", [])

    if not data:
        logger.warning(f"No landmarks in {path}")
        return None

    return np.asarray(data, dtype=np.float64)


def read_view_images(image_dir: str) -> List[Optional[np.ndarray]]:
    """Read the front, left and right photos from a directory.

    Images are matched by file stem (front.jpg, left.png, ...).

    Args:
        image_dir: Path to directory containing the photos

    Returns:
        One image per view, None where the photo is missing or unreadable
    """
    files = {
        p.stem.lower(): p for p in Path(image_dir).iterdir()
        if p.suffix.lower() in IMAGE_EXTENSIONS
    }

    images = []
    for name in tqdm(geometry.VIEW_NAMES, desc="Reading images"):
        image = None
        if name in files:
            image = cv2.imread(str(files[name]))
            if image is None:
                logger.warning(f"Failed to read {files[name]}")
        else:
            logger.warning(f"No {name} image in {image_dir}")
        images.append(image)

    return images


def save_results(
    output_dir: str,
    result: pipeline.ScanResult,
    user_height_cm: float,
    formats: List[str],
    metrics: Optional[Dict] = None
) -> None:
    """Save scan results to output directory.

    Args:
        output_dir: Path to output directory
        result: Scan result
        user_height_cm: Height of the user
        formats: Mesh formats to write (glb, obj, ply)
        metrics: Scan metrics (optional)
    """
    logger.info(f"Saving results to {output_dir}")
    os.makedirs(output_dir, exist_ok=True)

    points_file = os.path.join(output_dir, "keypoints3d.npy")
    with open(points_file, "wb") as f:
        np.save(f, result.keypoints3d)

    export.save_measurements(result.measurements, output_dir, user_height_cm)

    if result.mesh_glb:
        export.save_glb(result.mesh_glb, os.path.join(output_dir, "body.glb"))

        other_formats = [fmt for fmt in formats if fmt != "glb"]
        if other_formats:
            buffers = glb.buffers_from_glb(result.mesh_glb)
            for fmt in other_formats:
                export.save_mesh(buffers, os.path.join(output_dir, f"body.{fmt}"), fmt)
    else:
        logger.warning("Scan produced no mesh")

    if metrics is not None:
        metrics_file = os.path.join(output_dir, "report.json")
        with open(metrics_file, "w") as f:
            json.dump(metrics, f, indent=2)

    logger.info("Results saved successfully")


def run_pipeline(
    landmark_paths: List[str],
    user_height_cm: float,
    output_dir: str,
    formats: Optional[List[str]] = None,
    image_dir: Optional[str] = None,
    visualise_results: bool = False,
    config_path: Optional[str] = None
) -> Dict:
    """Run the complete body scan pipeline.

    Args:
        landmark_paths: JSON landmark files for the front, left and right views,
            or the front view alone for a single-photo estimate
        user_height_cm: Height of the user in centimeters
        output_dir: Path to output directory
        formats: Mesh formats to write, defaults to the config's io.formats
        image_dir: Directory with front/left/right photos for overlays (optional)
        visualise_results: Whether to open the interactive viewer
        config_path: Path to configuration file

    Returns:
        Dictionary of scan metrics
    """
    pipeline_timer = evaluate.Timer("Pipeline")
    pipeline_timer.start()

    os.makedirs(output_dir, exist_ok=True)

    # Set up file logging
    file_handler = logging.FileHandler(os.path.join(output_dir, "log.txt"))
    file_handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"))
    logging.getLogger().addHandler(file_handler)

    config = load_config(config_path)
    config["io"]["output_dir"] = output_dir
    if formats is None:
        formats = config["io"].get("formats", ["glb"])

    try:
        # === Stage 1: Read Landmarks ===
        with evaluate.Timer("Read Landmarks") as timer:
            landmark_sets = [read_landmarks(p) for p in tqdm(landmark_paths, desc="Reading landmarks")]
        read_time = timer.elapsed

        # === Stage 2: Scan ===
        if len(landmark_sets) == 1:
            logger.info("Single view given, estimating measurements from the front photo only")
            result = pipeline.process_single_view(landmark_sets[0], user_height_cm, config)
        else:
            result = pipeline.process_landmarks(landmark_sets, user_height_cm, config)
        metrics = result.metrics
        metrics.update_stage_timing("read_landmarks", read_time)

        for name, value in result.measurements_dict().items():
            logger.info(f"{name}: {value:.1f} cm")

        # === Stage 3: Overlays ===
        images = read_view_images(image_dir) if image_dir is not None else None
        if config["io"].get("save_overlays", True) and result.keypoints2d:
            with evaluate.Timer("Overlays") as timer:
                visualise.save_keypoint_overlay(
                    result.keypoints2d, os.path.join(output_dir, "keypoints2d.png"), images
                )
                visualise.save_keypoints3d_plot(result.keypoints3d, os.path.join(output_dir, "keypoints3d.png"))
            metrics.update_stage_timing("overlays", timer.elapsed)

        # === Stage 4: Save Results ===
        with evaluate.Timer("Save Results") as timer:
            metrics.update("runtime_s", pipeline_timer.elapsed)

            metrics_dict = metrics.to_dict()
            metrics_dict["datetime"] = datetime.datetime.now().isoformat()
            metrics_dict["height_cm"] = float(user_height_cm)
            metrics_dict["measurements_cm"] = result.measurements_dict()

            save_results(output_dir, result, user_height_cm, formats, metrics_dict)
        metrics.update_stage_timing("save_results", timer.elapsed)

        logger.info("\n" + metrics.summary())

        # === Stage 5: Interactive Visualization (optional) ===
        if visualise_results:
            _, poses, _ = geometry.build_camera_rig(config["camera"])
            mesh_obj = export.to_o3d_mesh(glb.buffers_from_glb(result.mesh_glb)) if result.mesh_glb else None
            visualise.show(
                poses, result.keypoints3d, mesh_obj,
                save_path=os.path.join(output_dir, "scan.png")
            )
    finally:
        logging.getLogger().removeHandler(file_handler)
        file_handler.close()

    return metrics.to_dict()


def main():
    """Main function to parse arguments and run the pipeline."""
    parser = argparse.ArgumentParser(description="Body Scan Pipeline")
    parser.add_argument(
        "--front", dest="front", required=True,
        help="JSON file with the front view landmarks"
    )
    parser.add_argument(
        "--left", dest="left", default=None,
        help="JSON file with the left view landmarks (omit with --right for a front-only scan)"
    )
    parser.add_argument(
        "--right", dest="right", default=None,
        help="JSON file with the right view landmarks"
    )
    parser.add_argument(
        "--height", dest="height_cm", type=float, required=True,
        help="Height of the user in centimeters"
    )
    parser.add_argument(
        "--output", "-o", dest="output_dir", default="results/scan",
        help="Path to output directory"
    )
    parser.add_argument(
        "--format", "-f", dest="formats", action="append",
        choices=list(export.MESH_FORMATS),
        help="Mesh format to write, may be repeated (default: glb)"
    )
    parser.add_argument(
        "--images", "-i", dest="image_dir", default=None,
        help="Directory with front/left/right photos for keypoint overlays"
    )
    parser.add_argument(
        "--visualise", "-v", dest="visualise", action="store_true",
        help="Visualize results"
    )
    parser.add_argument(
        "--config", "-c", dest="config_path", default=None,
        help="Path to configuration file"
    )

    args = parser.parse_args()

    if args.height_cm <= 0:
        parser.error("--height must be positive")
    if (args.left is None) != (args.right is None):
        parser.error("--left and --right must be given together")

    landmark_paths = [args.front]
    if args.left is not None:
        landmark_paths += [args.left, args.right]

    try:
        run_pipeline(
            landmark_paths,
            args.height_cm,
            args.output_dir,
            args.formats,
            args.image_dir,
            args.visualise,
            args.config_path
        )
    except Exception as e:
        logger.exception(f"Error running pipeline: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
