# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Exceptions raised by sfm-mapper.

Recoverable conditions (too few tag correspondences, a keyframe that cannot
be anchored, an unknown fiducial id) are not exceptions: they surface as
``None`` results or dropped inputs with a logged warning. The classes below
cover the failures that must reach the caller.
"""

from __future__ import annotations


class MapperError(Exception):
    """Base class for sfm-mapper errors."""


class SequencingError(MapperError, ValueError):
    """Odometry or index timestamps are not strictly increasing."""


class SolverError(MapperError, RuntimeError):
    """The incremental solve produced a singular or non-finite system, or
    did not converge. Persistent state is left as it was before the call."""
