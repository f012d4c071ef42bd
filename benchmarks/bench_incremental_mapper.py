# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.

import time

import numpy as np

from sfm_mapper.core.math3d import compose_pose_se3, pose_matrix
from sfm_mapper.core.types import FactorSpec, Key, KeyKind, Variable
from sfm_mapper.optimization.incremental import IncrementalSolver
from sfm_mapper.optimization.solvers import GNConfig


def step_factor(i: int, j: int, meas: np.ndarray) -> FactorSpec:
    return FactorSpec(
        "between",
        (Key(i, KeyKind.ROBOT_STATE), Key(j, KeyKind.ROBOT_STATE)),
        {"measurement": meas, "weight": np.full(6, 20.0)},
    )


def run_benchmark(num_poses: int = 200, loop_every: int = 10):
    """
    Grow an SE3 chain one pose per update, adding a loop closure back to
    pose 0 every `loop_every` poses, and time each incremental update.
    """
    print("=== Incremental SE3 chain benchmark ===")
    print(f"num_poses = {num_poses}, loop_every = {loop_every}")

    solver = IncrementalSolver(GNConfig(max_iters=30))
    step = np.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.05])
    meas = np.asarray(pose_matrix(step))

    x0 = Key(0, KeyKind.ROBOT_STATE)
    solver.update(
        [FactorSpec("prior", (x0,), {"target": np.eye(4), "weight": np.full(6, 100.0)})],
        {x0: Variable(x0, "robot_pose", np.zeros(6))},
    )

    timings = []
    for i in range(1, num_poses):
        key = Key(i, KeyKind.ROBOT_STATE)
        prev = solver.estimate(Key(i - 1, KeyKind.ROBOT_STATE))
        seed = np.asarray(compose_pose_se3(prev, step)) + 0.01
        factors = [step_factor(i - 1, i, meas)]
        if i % loop_every == 0:
            # pose 0 is the identity, so the true 0 -> i motion is meas^i
            factors.append(step_factor(0, i, np.linalg.matrix_power(meas, i)))

        t0 = time.perf_counter()
        result = solver.update(factors, {key: Variable(key, "robot_pose", seed)})
        timings.append(time.perf_counter() - t0)

        if i % 50 == 0:
            print(
                f"pose {i:4d}: {timings[-1] * 1000:7.2f} ms, {result.iterations} iters, "
                f"{result.relinearized_factors} relinearized"
            )

    warm = np.array(timings[5:])
    print(f"mean update: {warm.mean() * 1000:.3f} ms, max: {warm.max() * 1000:.3f} ms")


if __name__ == "__main__":
    run_benchmark()
