# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Core typed data structures for sfm-mapper.

This module defines the lightweight containers shared by the factor graph,
the incremental solver and the mapping layer. They store structure and
initial values only; all numerical work happens in JAX functions in
`core.math3d`, `slam.measurements` and `optimization`.

Classes
-------
Pose3
    Rigid transform in platform convention, stored as a translation plus a
    rotation vector (axis-angle). The 6-vector form
    ``[tx, ty, tz, wx, wy, wz]`` is what the graph optimizes.

KeyKind / Key
    Opaque graph-node identifiers. A Key is an arena index (monotonic, never
    reused) tagged with the kind of quantity it names: a robot state at a
    point in time or a tag landmark.

Variable
    A node in the factor graph: key, variable type string and value.

Factor
    A constraint between one or more variables:
    - id: unique identifier
    - type: string key selecting a residual function
    - var_ids: ordered keys used by the residual
    - params: dictionary of arrays passed into the residual function

FactorSpec
    A factor that has not been added to a graph yet (no id). Produced by the
    mapping layer and consumed by the incremental solver.

Notes
-----
Variables and factors are plain mutable containers and are never passed into
jitted code directly; the solver extracts their arrays first.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import NewType, NamedTuple, Dict, Any, Sequence

import numpy as np

FactorId = NewType("FactorId", int)


@dataclass(frozen=True)
class Pose3:
    """Rigid-body transform: translation (m) + rotation vector (rad)."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    wx: float = 0.0
    wy: float = 0.0
    wz: float = 0.0

    @staticmethod
    def from_vector(v: Sequence[float]) -> "Pose3":
        v = np.asarray(v, dtype=np.float64).reshape(6,)
        return Pose3(*(float(c) for c in v))

    def to_vector(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z, self.wx, self.wy, self.wz], dtype=np.float64)

    @property
    def translation(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)

    @property
    def rotation_vector(self) -> np.ndarray:
        return np.array([self.wx, self.wy, self.wz], dtype=np.float64)


class KeyKind(Enum):
    ROBOT_STATE = "x"
    LANDMARK = "l"


@dataclass(frozen=True, order=True)
class Key:
    """Opaque graph-node identifier (arena index + kind)."""
    index: int
    kind: KeyKind

    def __str__(self) -> str:
        return f"{self.kind.value}{self.index}"


class KeyAllocator:
    """Monotonic arena handing out keys; an index is never reused."""

    def __init__(self, next_index: int = 0) -> None:
        self.next_index = next_index

    def allocate(self, kind: KeyKind) -> Key:
        key = Key(self.next_index, kind)
        self.next_index += 1
        return key

    def copy(self) -> "KeyAllocator":
        return KeyAllocator(self.next_index)


@dataclass
class Variable:
    """Optimization variable node in the factor graph."""
    id: Key
    type: str          # "robot_pose" or "tag_pose"
    value: Any         # 6-vector [tx, ty, tz, wx, wy, wz]


@dataclass
class Factor:
    """Constraint connecting variables."""
    id: FactorId
    type: str          # e.g. "prior", "between", "tag_projection"
    var_ids: tuple[Key, ...]
    params: Dict[str, Any]  # measurement, camera model, sqrt-information


class FactorSpec(NamedTuple):
    """Factor awaiting insertion; the solver assigns its id."""
    type: str
    var_ids: tuple
    params: Dict[str, Any]
