from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from sfm_mapper.core.factor_graph import FactorGraph
from sfm_mapper.core.math3d import pose_matrix
from sfm_mapper.core.types import Factor, FactorId, Key, KeyKind, Variable
from sfm_mapper.slam.manifold import build_manifold_metadata
from sfm_mapper.slam.measurements import between_residual, prior_residual


def _chain_graph():
    fg = FactorGraph()
    fg.register_residual("prior", prior_residual)
    fg.register_residual("between", between_residual)

    x0 = Key(0, KeyKind.ROBOT_STATE)
    x1 = Key(1, KeyKind.ROBOT_STATE)
    fg.add_variable(Variable(x0, "robot_pose", jnp.zeros(6)))
    fg.add_variable(Variable(x1, "robot_pose", jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0])))

    fg.add_factor(Factor(fg.next_factor_id(), "prior", (x0,), {"target": jnp.eye(4)}))
    meas = pose_matrix(jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0]))
    fg.add_factor(Factor(fg.next_factor_id(), "between", (x0, x1), {"measurement": meas}))
    return fg, x0, x1


def test_total_error_zero_at_consistent_values():
    fg, _, _ = _chain_graph()
    assert fg.total_error() == pytest.approx(0.0, abs=1e-12)


def test_total_error_positive_when_inconsistent():
    fg, _, x1 = _chain_graph()
    fg.variables[x1].value = jnp.array([1.5, 0.0, 0.0, 0.0, 0.0, 0.0])
    # only the between factor is violated: 0.5 * 0.5^2
    assert fg.total_error() == pytest.approx(0.125, abs=1e-9)


def test_factor_with_unknown_key_is_rejected():
    fg, x0, _ = _chain_graph()
    ghost = Key(7, KeyKind.LANDMARK)
    with pytest.raises(KeyError):
        fg.add_factor(Factor(FactorId(10), "between", (x0, ghost), {"measurement": jnp.eye(4)}))
    assert FactorId(10) not in fg.factors
    assert fg.factors_touching(x0) == {FactorId(0), FactorId(1)}


def test_duplicate_variable_is_rejected():
    fg, x0, _ = _chain_graph()
    with pytest.raises(ValueError):
        fg.add_variable(Variable(x0, "robot_pose", jnp.zeros(6)))


def test_pack_unpack_and_manifold_layout_agree():
    fg, x0, x1 = _chain_graph()
    x, index = fg.pack_state()
    values = fg.unpack_state(x, index)
    assert np.allclose(values[x1], [1.0, 0.0, 0.0, 0.0, 0.0, 0.0])

    block_slices, manifold_types, dim = build_manifold_metadata(
        (k, v.type) for k, v in fg.variables.items()
    )
    assert dim == 12
    for key in (x0, x1):
        start, length = index[key]
        assert block_slices[key] == slice(start, start + length)
        assert manifold_types[key] == "se3"


def test_copy_does_not_share_containers():
    fg, x0, _ = _chain_graph()
    other = fg.copy()
    other.add_variable(Variable(Key(2, KeyKind.LANDMARK), "tag_pose", jnp.zeros(6)))
    assert len(fg.variables) == 2
    assert len(other.variables) == 3
    assert fg.factors_touching(x0) == other.factors_touching(x0)
