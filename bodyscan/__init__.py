"""Three-view body scanning from 2D pose landmarks.

Reconstructs metric 3D body keypoints from a front, left and right photo,
estimates body circumferences and synthesizes a GLB body mesh.
"""

from __future__ import annotations

__version__ = "0.1.0"
