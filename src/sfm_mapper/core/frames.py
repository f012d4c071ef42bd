# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Coordinate-convention boundary between the platform and vision frames.

The platform (robot body, field/world) uses x-forward, y-left, z-up. The
vision library (OpenCV camera and object points) uses x-right, y-down,
z-forward. The two are related by a fixed permutation with sign flips:

    vision (x, y, z) = platform (-y, -z, +x)

Every axis permutation in the code base goes through the functions below;
estimators and residuals never swap axes inline.

The tag corner model lives here as well, because both the PnP estimator and
the projection factors must agree on it: a tag's face is its local Y/Z plane
(normal along local +X) and corner ``i`` sits at ``(0, cx_i, cy_i)``.
"""

from __future__ import annotations

import jax.numpy as jnp

# vision_point = VISION_FROM_PLATFORM @ platform_point
VISION_FROM_PLATFORM = jnp.array(
    [
        [0.0, -1.0, 0.0],
        [0.0, 0.0, -1.0],
        [1.0, 0.0, 0.0],
    ]
)

# Corner winding shared with the detector: (-,-), (+,-), (+,+), (-,+)
_CORNER_SIGNS = ((-1.0, -1.0), (1.0, -1.0), (1.0, 1.0), (-1.0, 1.0))


def to_vision_point(p: jnp.ndarray) -> jnp.ndarray:
    """Platform-convention point(s) (..., 3) -> vision convention."""
    return jnp.asarray(p) @ VISION_FROM_PLATFORM.T


def to_platform_point(v: jnp.ndarray) -> jnp.ndarray:
    """Vision-convention point(s) (..., 3) -> platform convention."""
    return jnp.asarray(v) @ VISION_FROM_PLATFORM


def to_vision_rotation(R: jnp.ndarray) -> jnp.ndarray:
    """Re-express a platform-convention rotation in vision axes."""
    return VISION_FROM_PLATFORM @ jnp.asarray(R) @ VISION_FROM_PLATFORM.T


def to_platform_rotation(R: jnp.ndarray) -> jnp.ndarray:
    """Re-express a vision-convention rotation in platform axes."""
    return VISION_FROM_PLATFORM.T @ jnp.asarray(R) @ VISION_FROM_PLATFORM


def tag_corner_offsets(tag_size: float) -> jnp.ndarray:
    """
    Local corner offsets of a square tag, shape (4, 3).

    The offsets lie in the tag's Y/Z plane at ±tag_size/2, in the corner
    order detections are reported in.
    """
    h = 0.5 * tag_size
    return jnp.array([[0.0, sx * h, sy * h] for sx, sy in _CORNER_SIGNS])
