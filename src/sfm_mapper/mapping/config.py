# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Construction-time configuration of the incremental mapper.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

from sfm_mapper.core.types import Pose3
from sfm_mapper.optimization.solvers import GNConfig

Sigmas6 = Tuple[float, float, float, float, float, float]


@dataclass
class MapperNoiseConfig:
    """
    Noise (standard deviation) per factor type.

    These are in the same units as the residuals:
      - odom / root prior / tag prior: R^6 pose (m, m, m, rad, rad, rad)
      - camera: pixels, applied to every corner coordinate
    """
    odom_sigmas: Sigmas6 = (0.02, 0.02, 0.02, 0.01, 0.01, 0.01)
    root_prior_sigmas: Sigmas6 = (1e-3, 1e-3, 1e-3, 1e-3, 1e-3, 1e-3)  # very strong prior on initial pose
    camera_sigma: float = 1.0
    tag_prior_sigmas: Optional[Sigmas6] = None  # None: free tags are unconstrained


@dataclass
class MapperConfig:
    """
    Mapper construction parameters.

    The first odometry sample ever seen creates a root robot state holding
    ``initial_pose``. It is indexed at ``initial_time`` when that is set, in
    which case every odometry time must be greater than it; with the default
    ``None`` the root sits one clock tick before the first odometry sample,
    so a stream may start at any time, including 0.
    """
    initial_pose: Pose3 = field(default_factory=Pose3)
    initial_time: Optional[int] = None
    fixed_tags: FrozenSet[int] = frozenset()
    max_anchor_gap: Optional[int] = None  # same clock units as OdomPoseDelta.time
    noise: MapperNoiseConfig = field(default_factory=MapperNoiseConfig)
    solver: GNConfig = field(default_factory=GNConfig)

    def __post_init__(self) -> None:
        self.fixed_tags = frozenset(int(i) for i in self.fixed_tags)
