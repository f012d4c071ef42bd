from __future__ import annotations

import jax.numpy as jnp
import numpy as np

from sfm_mapper.core.frames import (
    tag_corner_offsets,
    to_platform_point,
    to_platform_rotation,
    to_vision_point,
    to_vision_rotation,
)
from sfm_mapper.core.math3d import so3_exp


def test_vision_point_axis_mapping():
    v = to_vision_point(jnp.array([1.0, 2.0, 3.0]))
    assert jnp.allclose(v, jnp.array([-2.0, -3.0, 1.0]))


def test_point_round_trip_batched():
    pts = jnp.array([[1.0, -2.0, 0.5], [0.0, 4.0, -1.0]])
    assert jnp.allclose(to_platform_point(to_vision_point(pts)), pts)
    assert jnp.allclose(to_vision_point(to_platform_point(pts)), pts)


def test_rotation_conversion_commutes_with_points():
    R = so3_exp(jnp.array([0.1, -0.4, 0.7]))
    p = jnp.array([0.3, 1.2, -0.8])

    lhs = to_vision_rotation(R) @ to_vision_point(p)
    rhs = to_vision_point(R @ p)
    assert jnp.allclose(lhs, rhs, atol=1e-12)
    assert jnp.allclose(to_platform_rotation(to_vision_rotation(R)), R, atol=1e-12)


def test_tag_corner_offsets_order_and_plane():
    c = np.asarray(tag_corner_offsets(0.2))
    assert c.shape == (4, 3)
    assert np.allclose(c[:, 0], 0.0)
    expected_yz = [[-0.1, -0.1], [0.1, -0.1], [0.1, 0.1], [-0.1, 0.1]]
    assert np.allclose(c[:, 1:], expected_yz)
