# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Manifold metadata for the variables of the mapping graph.

The solver works in a local tangent space while the state lives on a
manifold. Both variable kinds used by the mapper (robot states and tag
landmarks) are SE(3) poses, updated through `core.math3d.se3_retract_left`;
the table below is where a new variable type would declare otherwise.

    • `TYPE_TO_MANIFOLD`           (var type → manifold name)
    • `TANGENT_DIM`                (manifold name → tangent dimension)
    • `build_manifold_metadata`    (Key → slice in the global tangent vector)
"""

from __future__ import annotations

from typing import Dict, Iterable, Tuple

from sfm_mapper.core.types import Key

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "robot_pose": "se3",
    "tag_pose": "se3",
}

TANGENT_DIM: Dict[str, int] = {
    "se3": 6,
}


def get_manifold_for_var_type(var_type: str) -> str:
    try:
        return TYPE_TO_MANIFOLD[var_type]
    except KeyError:
        raise ValueError(f"Unknown variable type '{var_type}'") from None


def build_manifold_metadata(
    var_types: Iterable[Tuple[Key, str]],
) -> Tuple[Dict[Key, slice], Dict[Key, str], int]:
    """
    Lay out the global tangent vector for a set of variables.

    Returns:
      - block_slices: Key -> slice in the tangent vector
      - manifold_types: Key -> manifold name
      - total tangent dimension
    """
    block_slices: Dict[Key, slice] = {}
    manifold_types: Dict[Key, str] = {}
    offset = 0
    for key, var_type in sorted(var_types):
        manifold = get_manifold_for_var_type(var_type)
        dim = TANGENT_DIM[manifold]
        block_slices[key] = slice(offset, offset + dim)
        manifold_types[key] = manifold
        offset += dim
    return block_slices, manifold_types, offset
