# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Incremental nonlinear least-squares solver.

`IncrementalSolver` keeps a persistent factor graph and, for every variable,
a linearization point θ (4×4 transform) and a pending tangent update Δ. The
current estimate of a variable is ``Exp(Δ) θ``.

Each factor caches its linearization at the θ of its variables. An update:

    1. stages the new variables and factors on copies of the persistent state
       and checks every factor key exists or is being added;
    2. linearizes the new factors (old factors keep their cached linear form);
    3. solves the assembled normal equations for Δ;
    4. moves θ for every variable whose |Δ|∞ exceeds the relinearization
       threshold, marks the factors touching it for relinearization, and
       repeats from 2 until no variable moves;
    5. commits the staged state.

This is fluid relinearization as in iSAM2, minus the Bayes tree: factors whose
variables did not move are never relinearized again, and a call never starts
over from the initial guesses. A failed update raises `SolverError` and leaves
the persistent state exactly as before the call.

Limits
------
Only linearizations are reused between calls, not elimination. Every
iteration assembles a dense (dim × dim) system over all variables and
factors it with a full Cholesky, so memory grows as O(N²) and time per
iteration as O(N³) in the number of graph variables. This is fine for
trajectories of a few hundred robot states. Longer runs need a sparse or
Bayes-tree backend.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

import jax
import numpy as np

from sfm_mapper.core.factor_graph import FactorGraph
from sfm_mapper.core.math3d import pose_matrix, pose_vector
from sfm_mapper.core.types import Factor, FactorId, FactorSpec, Key, Variable
from sfm_mapper.errors import SolverError
from sfm_mapper.slam.manifold import build_manifold_metadata
from sfm_mapper.slam.measurements import DEFAULT_RESIDUALS

from .jit_wrappers import LinearizerCache, jit_retract
from .solvers import (
    GNConfig,
    LinearFactor,
    assemble_normal_equations,
    linearize_factor,
    solve_normal_equations,
)

logger = logging.getLogger(__name__)

_jit_pose_matrix = jax.jit(pose_matrix)
_jit_pose_vector = jax.jit(pose_vector)


@dataclass
class UpdateResult:
    iterations: int = 0
    relinearized_factors: int = 0
    error: float = 0.0
    num_factors: int = 0
    num_variables: int = 0


@dataclass
class _SolverState:
    graph: FactorGraph
    lin_point: Dict[Key, np.ndarray]
    delta: Dict[Key, np.ndarray]
    linear: Dict[FactorId, LinearFactor]
    stale: Set[FactorId] = field(default_factory=set)

    def copy(self) -> "_SolverState":
        return _SolverState(
            graph=self.graph.copy(),
            lin_point=dict(self.lin_point),
            delta=dict(self.delta),
            linear=dict(self.linear),
            stale=set(self.stale),
        )


class IncrementalSolver:
    """Persistent incremental Gauss–Newton over SE(3) variables."""

    def __init__(self, cfg: Optional[GNConfig] = None, residual_fns=None) -> None:
        self.cfg = cfg or GNConfig()
        graph = FactorGraph()
        for factor_type, fn in (residual_fns or DEFAULT_RESIDUALS).items():
            graph.register_residual(factor_type, fn)
        self._linearizers = LinearizerCache(graph.residual_fns)
        self._state = _SolverState(graph=graph, lin_point={}, delta={}, linear={})
        self.last_result: Optional[UpdateResult] = None

    # --- Queries ---

    @property
    def graph(self) -> FactorGraph:
        return self._state.graph

    @property
    def linearizers(self) -> LinearizerCache:
        return self._linearizers

    def __contains__(self, key: Key) -> bool:
        return key in self._state.lin_point

    def keys(self) -> List[Key]:
        return sorted(self._state.lin_point)

    def estimate_matrix(self, key: Key) -> np.ndarray:
        st = self._state
        return np.asarray(jit_retract(st.lin_point[key], st.delta[key]))

    def estimate(self, key: Key) -> np.ndarray:
        """Current estimate as a 6-vector [tx, ty, tz, wx, wy, wz]."""
        return np.asarray(_jit_pose_vector(self.estimate_matrix(key)))

    def calculate_estimate(self) -> Dict[Key, np.ndarray]:
        return {k: self.estimate(k) for k in self.keys()}

    # --- Update ---

    def update(
        self,
        new_factors: Sequence[FactorSpec] = (),
        new_values: Optional[Mapping[Key, Variable]] = None,
        solve: bool = True,
    ) -> UpdateResult:
        """
        Add variables and factors, then (optionally) re-solve.

        With ``solve=False`` the additions are committed but not linearized;
        they are picked up by the next solving update.
        """
        st = self._state.copy()
        new_values = new_values or {}

        for key, var in new_values.items():
            if key in st.graph.variables:
                raise ValueError(f"Variable {key} already exists in the solver")
            st.graph.add_variable(Variable(key, var.type, np.asarray(var.value, dtype=np.float64)))
            st.lin_point[key] = np.asarray(_jit_pose_matrix(np.asarray(var.value, dtype=np.float64)))
            st.delta[key] = np.zeros(6)

        for spec in new_factors:
            fid = st.graph.next_factor_id()
            st.graph.add_factor(Factor(id=fid, type=spec.type, var_ids=tuple(spec.var_ids), params=spec.params))
            st.stale.add(fid)

        result = UpdateResult(num_factors=len(st.graph.factors), num_variables=len(st.graph.variables))
        if solve:
            self._solve(st, result)
        self._sync_values(st, new_values.keys() if not solve else st.lin_point.keys())

        self._state = st
        self.last_result = result
        logger.debug(
            "update: +%d factors, +%d values, %d iterations, %d relinearized, error %.6g",
            len(new_factors), len(new_values), result.iterations,
            result.relinearized_factors, result.error,
        )
        return result

    def _relinearize(self, st: _SolverState, result: UpdateResult) -> None:
        for fid in sorted(st.stale):
            factor = st.graph.factors[fid]
            poses = np.stack([st.lin_point[k] for k in factor.var_ids])
            st.linear[fid] = linearize_factor(self._linearizers, factor, poses)
        result.relinearized_factors += len(st.stale)
        st.stale.clear()

    def _solve(self, st: _SolverState, result: UpdateResult) -> None:
        block_slices, _, dim = build_manifold_metadata(
            (k, v.type) for k, v in st.graph.variables.items()
        )
        if dim == 0:
            return

        cfg = self.cfg
        for it in range(cfg.max_iters):
            self._relinearize(st, result)
            H, g, result.error = assemble_normal_equations(
                ((st.graph.factors[fid].var_ids, lf) for fid, lf in st.linear.items()),
                block_slices,
                dim,
            )
            delta = solve_normal_equations(H, g, cfg)

            moved: List[Key] = []
            for key, sl in block_slices.items():
                st.delta[key] = delta[sl]
                if np.max(np.abs(delta[sl])) > cfg.relinearize_threshold:
                    moved.append(key)

            result.iterations = it + 1
            if not moved:
                return

            for key in moved:
                st.lin_point[key] = np.asarray(jit_retract(st.lin_point[key], st.delta[key]))
                st.delta[key] = np.zeros(6)
                st.stale.update(st.graph.factors_touching(key))

        raise SolverError(f"Incremental update did not converge in {cfg.max_iters} iterations")

    def _sync_values(self, st: _SolverState, keys: Iterable[Key]) -> None:
        """Mirror current estimates into the graph's Variable values."""
        for key in keys:
            T = jit_retract(st.lin_point[key], st.delta[key])
            st.graph.variables[key].value = np.asarray(_jit_pose_vector(T))
