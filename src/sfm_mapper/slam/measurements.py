# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Residual models (measurement factors) for sfm-mapper.

Each function implements a residual

      r(poses; params) ∈ ℝᵏ

where ``poses`` stacks the 4×4 transforms of the factor's variables in
``var_ids`` order. Factor types used by the mapper are mapped to these
functions via `FactorGraph.register_residual` (see `DEFAULT_RESIDUALS`).

1. Pose priors
--------------
    • `prior_residual`:
        r = [t_E, log R_E],  E = target⁻¹ ∘ T
      Anchors the root robot state (and optionally tag landmarks).

2. Odometry
-----------
    • `between_residual`:
        r = err( meas, T_i⁻¹ ∘ T_j )
      Relative-pose constraint between consecutive robot states, built from
      one odometry delta.

3. Tag observations
-------------------
    • `tag_projection_residual`:
        variables [robot, tag]; the four tag corners are placed in the world
        by the tag pose, moved into the camera through robot ∘ robot_to_camera,
        converted to vision axes and projected with a pinhole model. The
        residual is predicted minus measured pixels (8 values).

    • `fixed_tag_projection_residual`:
        same model for a tag whose pose is constant (passed in params), so the
        only variable is the robot state.

4. Weighting
------------
    • `_apply_weight(r, params)`:
        scalar weight  -> information, r' = sqrt(w) r
        vector weight  -> per-component sqrt-information, r' = w r

    • `sigma_to_weight(sigma)` converts standard deviations into a weight
      understood by `_apply_weight`.
"""

from __future__ import annotations
from typing import Dict

import jax.numpy as jnp

from sfm_mapper.core.frames import to_vision_point
from sfm_mapper.core.math3d import se3_error, se3_inverse, transform_points
from sfm_mapper.vision.camera import project_points


def _apply_weight(residual: jnp.ndarray, params: dict, key: str = "weight") -> jnp.ndarray:
    """
    Scale a residual by ``params[key]`` when present.

    A 0-d weight is an information value and is applied as ``sqrt(w) * r``;
    anything else is a per-component sqrt-information vector applied as
    ``w * r``.
    """
    w = params.get(key)
    if w is None:
        return residual
    w = jnp.asarray(w)
    return jnp.sqrt(w) * residual if w.ndim == 0 else w * residual


def sigma_to_weight(sigma):
    """
    Weight for `_apply_weight` from standard deviation(s).

    Scalar ``sigma`` gives the information ``1 / sigma²``; a vector gives the
    per-component sqrt-information ``1 / sigma``.
    """
    s = jnp.asarray(sigma, dtype=jnp.float64)
    if s.ndim == 0:
        return 1.0 / (s * s)
    return 1.0 / s


def prior_residual(poses: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Prior on a single pose:
        residual = err(target, T)
    """
    r = se3_error(params["target"], poses[0])
    return _apply_weight(r, params)


def between_residual(poses: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Relative SE(3) constraint from pose i to pose j:

        residual = err(measurement, T_i^{-1} T_j)

    ``measurement`` is the 4×4 body-frame motion reported by odometry.
    """
    T_i = poses[0]
    T_j = poses[1]
    r = se3_error(params["measurement"], se3_inverse(T_i) @ T_j)
    return _apply_weight(r, params)


def _project_tag(
    world_T_robot: jnp.ndarray,
    world_T_tag: jnp.ndarray,
    params: Dict[str, jnp.ndarray],
) -> jnp.ndarray:
    corners_world = transform_points(world_T_tag, params["corner_offsets"])
    world_T_camera = world_T_robot @ params["robot_to_camera"]
    corners_camera = transform_points(se3_inverse(world_T_camera), corners_world)
    return project_points(params["camera_matrix"], to_vision_point(corners_camera))


def tag_projection_residual(poses: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Reprojection error of one tag's four corners.

    poses: [world_T_robot, world_T_tag]

    params:
      - "measured": (4, 2) undistorted corner pixels
      - "corner_offsets": (4, 3) tag-local corner positions
      - "robot_to_camera": (4, 4) camera mounting transform
      - "camera_matrix": (3, 3) pinhole intrinsics
      - "weight": pixel noise weight
    """
    predicted = _project_tag(poses[0], poses[1], params)
    r = (predicted - params["measured"]).reshape(-1)
    return _apply_weight(r, params)


def fixed_tag_projection_residual(poses: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Reprojection error against a tag whose pose is held constant.

    poses: [world_T_robot]; the tag transform comes from params["tag_pose"].
    """
    predicted = _project_tag(poses[0], params["tag_pose"], params)
    r = (predicted - params["measured"]).reshape(-1)
    return _apply_weight(r, params)


DEFAULT_RESIDUALS = {
    "prior": prior_residual,
    "between": between_residual,
    "tag_projection": tag_projection_residual,
    "fixed_tag_projection": fixed_tag_projection_residual,
}
