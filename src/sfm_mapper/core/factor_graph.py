# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Pose and landmark factor graph.

A `FactorGraph` holds three tables: variables keyed by `Key`, factors keyed
by `FactorId`, and residual functions keyed by factor type. Every residual
function has the form

    r = fn(poses, params)

with ``poses`` a (k, 4, 4) stack of the transforms of the factor's
variables, in ``var_ids`` order, and ``params`` a dict of arrays. Passing
transforms lets the solver linearize through `se3_retract_left` without
going through the logarithm map.

Methods
-------
add_variable / add_factor / register_residual
    Insert into the graph; duplicates and dangling keys are rejected.

factors_touching(key)
    Factors adjacent to a variable, for selective relinearization.

pack_state() / unpack_state(x, index)
    Flat vector of all 6D values in key order, and its inverse.

build_residual_function() / total_error()
    Whole-graph residual r(x) and the cost ``0.5 ||r||²``.

The graph itself does no numerical work; linearization lives in
`optimization.jit_wrappers`.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Set, Tuple

import jax.numpy as jnp

from .math3d import pose_matrix
from .types import FactorId, Factor, Key, Variable


ResidualFn = Callable[[jnp.ndarray, Dict[str, jnp.ndarray]], jnp.ndarray]
StateIndex = Dict[Key, Tuple[int, int]]


@dataclass
class FactorGraph:
    variables: Dict[Key, Variable] = field(default_factory=dict)
    factors: Dict[FactorId, Factor] = field(default_factory=dict)
    residual_fns: Dict[str, ResidualFn] = field(default_factory=dict)
    _adjacency: Dict[Key, Set[FactorId]] = field(default_factory=dict, repr=False)

    def add_variable(self, var: Variable) -> None:
        if var.id in self.variables:
            raise ValueError(f"Variable {var.id} already exists")
        self.variables[var.id] = var
        self._adjacency.setdefault(var.id, set())

    def add_factor(self, factor: Factor) -> None:
        if factor.id in self.factors:
            raise ValueError(f"Factor {factor.id} already exists")
        missing = [k for k in factor.var_ids if k not in self.variables]
        if missing:
            raise KeyError(
                f"Factor {factor.id} ({factor.type}) references unknown keys: "
                + ", ".join(str(k) for k in missing)
            )
        self.factors[factor.id] = factor
        for k in factor.var_ids:
            self._adjacency[k].add(factor.id)

    def register_residual(self, factor_type: str, fn: ResidualFn) -> None:
        self.residual_fns[factor_type] = fn

    def next_factor_id(self) -> FactorId:
        return FactorId(len(self.factors))

    def factors_touching(self, key: Key) -> Set[FactorId]:
        return self._adjacency.get(key, set())

    def copy(self) -> "FactorGraph":
        """Shallow copy: new containers, shared (immutable) values."""
        return FactorGraph(
            variables={k: Variable(v.id, v.type, v.value) for k, v in self.variables.items()},
            factors=dict(self.factors),
            residual_fns=dict(self.residual_fns),
            _adjacency={k: set(fids) for k, fids in self._adjacency.items()},
        )

    # --- Flat state ---

    def _build_state_index(self) -> StateIndex:
        """Key -> (offset, dim) in key order."""
        index: StateIndex = {}
        offset = 0
        for key in sorted(self.variables):
            dim = int(jnp.shape(self.variables[key].value)[0])
            index[key] = (offset, dim)
            offset += dim
        return index

    def pack_state(self) -> Tuple[jnp.ndarray, StateIndex]:
        index = self._build_state_index()
        if not index:
            return jnp.zeros((0,)), index
        x = jnp.concatenate([jnp.asarray(self.variables[key].value) for key in index])
        return x, index

    def unpack_state(self, x: jnp.ndarray, index: StateIndex) -> Dict[Key, jnp.ndarray]:
        return {key: x[start:start + dim] for key, (start, dim) in index.items()}

    # --- Cost ---

    def build_residual_function(self):
        """
        Closure ``r(x)`` stacking every factor's residual over a packed state.

        The incremental solver never calls this; it backs `total_error` and
        the batch `gauss_newton_manifold` reference.
        """
        _, index = self.pack_state()
        factors: List[Factor] = list(self.factors.values())
        fns = dict(self.residual_fns)
        unknown = sorted({f.type for f in factors if f.type not in fns})
        if unknown:
            raise ValueError(f"no residual registered for factor type(s): {', '.join(unknown)}")

        def residual(x: jnp.ndarray) -> jnp.ndarray:
            values = self.unpack_state(x, index)
            parts = [
                fns[f.type](jnp.stack([pose_matrix(values[k]) for k in f.var_ids]), f.params)
                for f in factors
            ]
            return jnp.concatenate(parts) if parts else jnp.zeros((0,), dtype=x.dtype)

        return residual

    def total_error(self) -> float:
        """``0.5 ||r||²`` at the stored values."""
        x, _ = self.pack_state()
        r = self.build_residual_function()(x)
        return 0.5 * float(jnp.sum(r ** 2))
