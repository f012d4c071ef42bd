# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
sfm-mapper: incremental tag-map and trajectory optimization with JAX.
"""

import jax

# Pose graphs mix metre-scale translations with pixel residuals weighted by
# large information values; single precision is not enough.
jax.config.update("jax_enable_x64", True)

__version__ = "0.1.0"
