# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Rigid-body math on SO(3) and SE(3).

Pose vectors are ``[tx, ty, tz, wx, wy, wz]``: a translation followed by a
rotation vector. Residuals and the incremental solver work on 4×4
homogeneous matrices instead, which keeps the logarithm map off the
linearization path.

Rotations
---------
so3_exp(w), so3_log(R)
    Rotation vector <-> rotation matrix. The logarithm has dedicated
    branches for tiny angles and for angles approaching π.

hat(w), vee(W)
    3-vector <-> skew-symmetric matrix.

Poses
-----
pose_matrix(v), pose_vector(T)
    Pose vector <-> 4×4 transform.

compose_pose_se3(a, b), inverse_pose_se3(a)
    Group operations on pose vectors.

se3_retract_left(T, delta)
    Tangent update ``Exp(delta) · T`` used as the linearization chart.

se3_error(T_meas, T_est)
    Six-dimensional discrepancy ``log(T_meas⁻¹ T_est)`` for prior and
    between residuals.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp


def pose_vec_to_rt(v: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """Return ``(translation, rotation_vector)`` of a pose vector."""
    v = jnp.asarray(v)
    return v[:3], v[3:6]


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """Skew-symmetric matrix with ``hat(v) @ u == cross(v, u)``."""
    return jnp.array(
        [
            [0.0, -v[2], v[1]],
            [v[2], 0.0, -v[0]],
            [-v[1], v[0], 0.0],
        ]
    )


def vee(W: jnp.ndarray) -> jnp.ndarray:
    """
    Axial vector of the antisymmetric part of ``W``.

    Exact inverse of `hat` on skew matrices; for a rotation matrix it gives
    ``sin(θ) · axis``.
    """
    return 0.5 * jnp.array([W[2, 1] - W[1, 2], W[0, 2] - W[2, 0], W[1, 0] - W[0, 1]])


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """Rodrigues' formula, switching to a Taylor series below 1e-5 rad."""
    w = jnp.asarray(w)
    theta = jnp.linalg.norm(w)
    eye = jnp.eye(3)

    def taylor() -> jnp.ndarray:
        W = hat(w)
        return eye + W + 0.5 * (W @ W)

    def rodrigues() -> jnp.ndarray:
        K = hat(w / theta)
        return eye + jnp.sin(theta) * K + (1.0 - jnp.cos(theta)) * (K @ K)

    return jax.lax.cond(theta < 1e-5, taylor, rodrigues)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Rotation vector ``w`` with ``so3_exp(w) ≈ R``.

    Three regimes:
      - θ < 1e-5: ``vee(R - I)``;
      - θ < 3.0: ``θ / sin θ · vee(R)``;
      - otherwise the antisymmetric part is too small to trust, so the axis
        comes from the symmetric part ``(R + Rᵀ)/2 - cos θ · I = (1 - cos θ) a aᵀ``
        and only its sign from ``vee(R)``.
    """
    R = jnp.asarray(R)
    eye = jnp.eye(3, dtype=R.dtype)
    cos_theta = jnp.clip(0.5 * (jnp.trace(R) - 1.0), -1.0, 1.0)
    # atan2 keeps dθ/dR finite next to π, where arccos is ill-conditioned
    theta = jnp.arctan2(jnp.linalg.norm(vee(R)), cos_theta)

    def tiny(_) -> jnp.ndarray:
        return vee(R - eye)

    def regular(_) -> jnp.ndarray:
        return theta / jnp.sin(theta) * vee(R)

    def near_pi(_) -> jnp.ndarray:
        aat = (0.5 * (R + R.T) - cos_theta * eye) / (1.0 - cos_theta)
        i = jnp.argmax(jnp.diag(aat))
        axis = aat[:, i] / jnp.sqrt(aat[i, i])
        sign = jnp.where(jnp.dot(vee(R), axis) < 0.0, -1.0, 1.0)
        return sign * theta * axis

    def large(_) -> jnp.ndarray:
        return jax.lax.cond(theta < 3.0, regular, near_pi, operand=None)

    return jax.lax.cond(theta < 1e-5, tiny, large, operand=None)


def pose_matrix(v: jnp.ndarray) -> jnp.ndarray:
    t, w = pose_vec_to_rt(v)
    return jnp.eye(4).at[:3, :3].set(so3_exp(w)).at[:3, 3].set(t)


def pose_vector(T: jnp.ndarray) -> jnp.ndarray:
    T = jnp.asarray(T)
    return jnp.concatenate([T[:3, 3], so3_log(T[:3, :3])])


def se3_inverse(T: jnp.ndarray) -> jnp.ndarray:
    Rt = T[:3, :3].T
    return jnp.eye(4).at[:3, :3].set(Rt).at[:3, 3].set(-Rt @ T[:3, 3])


def transform_points(T: jnp.ndarray, points: jnp.ndarray) -> jnp.ndarray:
    """Map an (N, 3) array of points through ``T``."""
    return points @ T[:3, :3].T + T[:3, 3]


def compose_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """Pose vector of ``a ∘ b`` (``b`` expressed in the frame of ``a``)."""
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)
    Ra = so3_exp(wa)
    return jnp.concatenate([Ra @ tb + ta, so3_log(Ra @ so3_exp(wb))])


def inverse_pose_se3(a: jnp.ndarray) -> jnp.ndarray:
    t, w = pose_vec_to_rt(a)
    return jnp.concatenate([-so3_exp(w).T @ t, -w])


def se3_retract_left(T: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """
    Apply a tangent step on the left of a 4×4 transform.

        delta = [dt, dw]      Exp(delta) · T = [ R_d R   R_d t + dt ]
                                               [   0          1     ]

    with ``R_d = so3_exp(dw)``. Only the exponential appears, so the
    derivative at ``delta = 0`` is well defined for every ``T``.
    """
    dt, dw = pose_vec_to_rt(delta)
    R_d = so3_exp(dw)
    return jnp.eye(4).at[:3, :3].set(R_d @ T[:3, :3]).at[:3, 3].set(R_d @ T[:3, 3] + dt)


def se3_error(T_meas: jnp.ndarray, T_est: jnp.ndarray) -> jnp.ndarray:
    """
    ``[t_E, log(R_E)]`` of ``E = T_meas⁻¹ T_est``; zero when they agree.
    """
    E = se3_inverse(T_meas) @ T_est
    return jnp.concatenate([E[:3, 3], so3_log(E[:3, :3])])
