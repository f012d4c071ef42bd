# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
JIT-compiled linearization of residual functions.

The incremental solver linearizes one factor at a time. Compiling a fused
residual for the whole graph would force a recompile every time the graph
grows, so instead each factor *type* gets one jitted function

    linearize(poses, params) -> (r, J)

that evaluates the residual at the factor's current linearization point and
its Jacobian with respect to a left tangent perturbation of every pose:

    J = d r( Exp(δ_1) T_1, ..., Exp(δ_k) T_k ) / dδ  at δ = 0

JAX caches the compiled executable per input shape, so all factors of a type
share a single compilation for the lifetime of the process.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Tuple

import jax
import jax.numpy as jnp

from sfm_mapper.core.factor_graph import ResidualFn
from sfm_mapper.core.math3d import se3_retract_left

POSE_TANGENT_DIM = 6


@dataclass
class JittedLinearizer:
    """
    Jitted (residual, Jacobian) evaluator for one factor type.

    Usage:
        lin = JittedLinearizer.from_residual(between_residual)
        r, J = lin(poses, params)      # poses: (k, 4, 4)
    """
    fn: Callable[[jnp.ndarray, Dict[str, jnp.ndarray]], Tuple[jnp.ndarray, jnp.ndarray]]

    def __call__(self, poses: jnp.ndarray, params: Dict[str, jnp.ndarray]):
        return self.fn(poses, params)

    @staticmethod
    def from_residual(residual_fn: ResidualFn) -> "JittedLinearizer":
        def linearize(poses: jnp.ndarray, params: Dict[str, jnp.ndarray]):
            k = poses.shape[0]

            def residual_at(delta: jnp.ndarray) -> jnp.ndarray:
                moved = jnp.stack([
                    se3_retract_left(poses[i], delta[POSE_TANGENT_DIM * i:POSE_TANGENT_DIM * (i + 1)])
                    for i in range(k)
                ])
                return residual_fn(moved, params)

            zero = jnp.zeros(POSE_TANGENT_DIM * k, dtype=poses.dtype)
            return residual_at(zero), jax.jacfwd(residual_at)(zero)

        return JittedLinearizer(fn=jax.jit(linearize))


@dataclass
class LinearizerCache:
    """Lazily builds one JittedLinearizer per registered factor type."""
    residual_fns: Dict[str, ResidualFn]
    _cache: Dict[str, JittedLinearizer] = field(default_factory=dict)

    def get(self, factor_type: str) -> JittedLinearizer:
        lin = self._cache.get(factor_type)
        if lin is None:
            residual_fn = self.residual_fns.get(factor_type)
            if residual_fn is None:
                raise ValueError(f"No residual fn registered for factor type '{factor_type}'")
            lin = JittedLinearizer.from_residual(residual_fn)
            self._cache[factor_type] = lin
        return lin


# Eager pose conversions are dominated by dispatch overhead; compile once.
jit_retract = jax.jit(se3_retract_left)
