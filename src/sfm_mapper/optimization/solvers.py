# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Gauss–Newton building blocks for sfm-mapper.

This module holds the pieces shared by the incremental solver
(`optimization.incremental`) and a batch reference solver:

GNConfig
    Dataclass holding solver configuration:
    - max_iters: maximum number of linearize/solve passes per update
    - damping: Levenberg–Marquardt-style diagonal damping
    - max_step_norm: clamp on the norm of a tangent-space step
    - relinearize_threshold: a variable whose pending tangent update exceeds
      this (infinity norm) gets a new linearization point

LinearFactor
    A factor linearized at its variables' linearization points, stored as
    its normal-equation contribution (JᵀJ, Jᵀr) plus its squared error.

assemble_normal_equations(...)
    Sums factor contributions into the dense system H Δ = -g.

solve_normal_equations(H, g, cfg)
    Damped Cholesky solve. Raises `SolverError` on non-finite or
    non-positive-definite systems.

gauss_newton_manifold(graph, linearizers, cfg)
    Batch Gauss–Newton over every factor of a graph, relinearizing all
    factors each iteration. Used as the ground truth the incremental solver
    is checked against.

Notes
-----
Linearization (residual + Jacobian) is done by JAX in
`optimization.jit_wrappers`; the linear algebra here runs in NumPy on the
assembled dense system.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Tuple

import numpy as np

from sfm_mapper.core.factor_graph import FactorGraph
from sfm_mapper.core.math3d import pose_matrix
from sfm_mapper.core.types import Key
from sfm_mapper.errors import SolverError
from sfm_mapper.slam.manifold import build_manifold_metadata

from .jit_wrappers import LinearizerCache, jit_retract


@dataclass
class GNConfig:
    max_iters: int = 25
    damping: float = 1e-6              # LM-style diagonal damping
    max_step_norm: float = 10.0        # clamp step size for stability
    relinearize_threshold: float = 1e-6


@dataclass
class LinearFactor:
    hessian: np.ndarray     # JᵀJ, (6k, 6k)
    gradient: np.ndarray    # Jᵀr, (6k,)
    error: float            # 0.5 ||r||²


def linearize_factor(linearizers: LinearizerCache, factor, poses: np.ndarray) -> LinearFactor:
    r, J = linearizers.get(factor.type)(poses, factor.params)
    r = np.asarray(r, dtype=np.float64)
    J = np.asarray(J, dtype=np.float64)
    if not (np.all(np.isfinite(r)) and np.all(np.isfinite(J))):
        raise SolverError(f"Non-finite linearization for factor {factor.id} ({factor.type})")
    return LinearFactor(hessian=J.T @ J, gradient=J.T @ r, error=0.5 * float(r @ r))


def assemble_normal_equations(
    contributions: Iterable[Tuple[Tuple[Key, ...], LinearFactor]],
    block_slices: Mapping[Key, slice],
    dim: int,
) -> Tuple[np.ndarray, np.ndarray, float]:
    """Sum (JᵀJ, Jᵀr) blocks into a dense (H, g); also returns total error."""
    H = np.zeros((dim, dim))
    g = np.zeros(dim)
    error = 0.0
    for var_ids, lf in contributions:
        idx = np.concatenate([np.arange(block_slices[k].start, block_slices[k].stop) for k in var_ids])
        H[np.ix_(idx, idx)] += lf.hessian
        g[idx] += lf.gradient
        error += lf.error
    return H, g, error


def solve_normal_equations(H: np.ndarray, g: np.ndarray, cfg: GNConfig) -> np.ndarray:
    """
    Solve (H + λI) Δ = -g and clamp the step norm.
    """
    if not (np.all(np.isfinite(H)) and np.all(np.isfinite(g))):
        raise SolverError("Normal equations contain non-finite values")

    n = H.shape[0]
    H_damped = H + cfg.damping * np.eye(n)
    try:
        L = np.linalg.cholesky(H_damped)
    except np.linalg.LinAlgError as exc:
        raise SolverError(f"Linear system is not positive definite: {exc}") from exc

    y = np.linalg.solve(L, -g)
    delta = np.linalg.solve(L.T, y)

    step_norm = np.linalg.norm(delta)
    if step_norm > cfg.max_step_norm:
        delta = delta * (cfg.max_step_norm / step_norm)
    return delta


def gauss_newton_manifold(
    graph: FactorGraph,
    linearizers: LinearizerCache,
    cfg: GNConfig,
) -> Dict[Key, np.ndarray]:
    """
    Batch manifold Gauss–Newton from the graph's stored variable values.

    Every iteration relinearizes every factor; updates are applied with the
    left SE(3) retraction. Returns Key -> optimized 4×4 transform.
    """
    block_slices, _, dim = build_manifold_metadata(
        (k, v.type) for k, v in graph.variables.items()
    )
    values = {k: np.asarray(pose_matrix(v.value)) for k, v in graph.variables.items()}

    for _ in range(cfg.max_iters):
        contributions = [
            (f.var_ids, linearize_factor(linearizers, f, np.stack([values[k] for k in f.var_ids])))
            for f in graph.factors.values()
        ]
        H, g, _ = assemble_normal_equations(contributions, block_slices, dim)
        delta = solve_normal_equations(H, g, cfg)

        for k, sl in block_slices.items():
            values[k] = np.asarray(jit_retract(values[k], delta[sl]))

        if np.max(np.abs(delta), initial=0.0) < cfg.relinearize_threshold:
            return values

    raise SolverError(f"Gauss-Newton did not converge in {cfg.max_iters} iterations")
