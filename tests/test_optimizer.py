from __future__ import annotations

import numpy as np
import pytest

from sfm_mapper.core.types import Pose3
from sfm_mapper.errors import SequencingError, SolverError
from sfm_mapper.mapping.config import MapperConfig
from sfm_mapper.mapping.optimizer import IncrementalOptimizer, MapperState
from sfm_mapper.mapping.types import KeyframeData, OdomPoseDelta, OptimizerState, TagDetection, TagLayout

START = Pose3(-3.0, 1.0, 0.0)


def _pose_close(a: Pose3, b: Pose3, atol: float) -> bool:
    return np.allclose(a.to_vector(), b.to_vector(), atol=atol)


def _optimizer(layout, intrinsics, fixed=(1, 2)):
    config = MapperConfig(initial_pose=START, initial_time=0, fixed_tags=frozenset(fixed))
    return IncrementalOptimizer(layout, {0: intrinsics}, config)


def test_keyframe_before_odometry_is_dropped(two_tag_layout, intrinsics, renderer):
    opt = _optimizer(two_tag_layout, intrinsics)
    dets = renderer(START, two_tag_layout, intrinsics.camera_matrix, [1, 2])

    out = opt.optimize(OptimizerState.batch(keyframes=[KeyframeData(5, 0, dets)]))

    assert opt.state is MapperState.UNINITIALIZED
    assert not opt.has_keyframe
    assert opt.estimate() == {}
    assert opt.time_index.is_empty()
    assert out.robot_poses == {}
    assert out.latest_pose is None


def test_odometry_only_dead_reckons(two_tag_layout, intrinsics):
    opt = _optimizer(two_tag_layout, intrinsics)
    out = opt.optimize(OptimizerState.batch([OdomPoseDelta(1, Pose3(0.5, 0.0, 0.0))]))

    assert opt.state is MapperState.ACTIVE
    assert not opt.has_keyframe
    assert sorted(out.robot_poses) == [0, 1]
    assert _pose_close(out.latest_pose, Pose3(-2.5, 1.0, 0.0), 1e-9)


def test_default_config_accepts_odometry_at_time_zero(two_tag_layout, intrinsics):
    opt = IncrementalOptimizer(two_tag_layout, {0: intrinsics}, MapperConfig())
    out = opt.optimize(OptimizerState.batch([OdomPoseDelta(0, Pose3(0.5, 0.0, 0.0))]))

    assert opt.state is MapperState.ACTIVE
    assert sorted(out.robot_poses) == [-1, 0]
    assert _pose_close(out.robot_poses[0], Pose3(0.5, 0.0, 0.0), 1e-9)


def test_sequencing_violation_leaves_state_untouched(two_tag_layout, intrinsics):
    opt = _optimizer(two_tag_layout, intrinsics)
    opt.optimize(OptimizerState.batch([OdomPoseDelta(1, Pose3(0.5, 0.0, 0.0))]))
    latest = opt.latest_key
    n_factors = len(opt.solver.graph.factors)

    with pytest.raises(SequencingError):
        opt.optimize(OptimizerState.batch([
            OdomPoseDelta(2, Pose3(0.5, 0.0, 0.0)),
            OdomPoseDelta(1, Pose3(0.5, 0.0, 0.0)),
        ]))

    assert opt.latest_key == latest
    assert len(opt.time_index) == 2
    assert len(opt.solver.graph.factors) == n_factors


@pytest.mark.parametrize("odom_dx, atol", [(0.5, 1e-6), (0.45, 1e-2)])
def test_end_to_end_two_fixed_tags(two_tag_layout, intrinsics, renderer, odom_dx, atol):
    """
    Tags 1 (origin) and 2 (+2 m in y), camera starting at (-3, 1, 0), one
    odometry delta of +0.5 m forward, then a keyframe seeing both tags from
    the true post-delta pose.
    """
    truth = Pose3(-2.5, 1.0, 0.0)
    opt = _optimizer(two_tag_layout, intrinsics)
    dets = renderer(truth, two_tag_layout, intrinsics.camera_matrix, [1, 2])

    out = opt.optimize(OptimizerState.batch(
        [OdomPoseDelta(1, Pose3(odom_dx, 0.0, 0.0))],
        [KeyframeData(1, 0, dets)],
    ))

    assert opt.has_keyframe
    assert _pose_close(out.robot_poses[1], truth, atol)
    assert _pose_close(out.latest_pose, truth, atol)
    for tag_id in (1, 2):
        assert out.tag_poses[tag_id] == two_tag_layout.poses[tag_id]


def test_incremental_equivalence(three_tag_layout, intrinsics, renderer):
    """Two disjoint batches give the same estimate as their concatenation."""
    guess = three_tag_layout.with_poses({3: Pose3(0.35, 1.08, 0.55, 0.0, 0.02, 0.15)})
    truths = {t: Pose3(-3.0 + 0.25 * t, 1.0 + 0.05 * t, 0.0, 0.0, 0.0, 0.02 * t) for t in range(5)}

    # measured deltas are biased a little so the keyframes have work to do
    odometry = []
    for t in range(1, 5):
        a, b = truths[t - 1], truths[t]
        c, s = np.cos(a.wz), np.sin(a.wz)
        dx, dy = b.x - a.x, b.y - a.y
        odometry.append(OdomPoseDelta(t, Pose3(
            1.05 * (c * dx + s * dy), -s * dx + c * dy, 0.0, 0.0, 0.0, b.wz - a.wz,
        )))
    keyframes = {
        t: KeyframeData(t, 0, renderer(truths[t], three_tag_layout, intrinsics.camera_matrix, [1, 2, 3]))
        for t in (2, 4)
    }

    def make():
        config = MapperConfig(initial_pose=truths[0], fixed_tags=frozenset({1, 2}))
        return IncrementalOptimizer(guess, {0: intrinsics}, config)

    split = make()
    split.optimize(OptimizerState.batch(odometry[:2], [keyframes[2]]))
    out_split = split.optimize(OptimizerState.batch(odometry[2:], [keyframes[4]]))

    whole = make()
    out_whole = whole.optimize(OptimizerState.batch(odometry, [keyframes[2], keyframes[4]]))

    assert sorted(out_split.robot_poses) == sorted(out_whole.robot_poses) == [0, 1, 2, 3, 4]
    for t in out_whole.robot_poses:
        assert _pose_close(out_split.robot_poses[t], out_whole.robot_poses[t], 1e-5)
    assert _pose_close(out_split.tag_poses[3], out_whole.tag_poses[3], 1e-5)

    # the free tag moved from its guess towards where it really is
    assert not _pose_close(guess.poses[3], three_tag_layout.poses[3], 1e-2)
    assert _pose_close(out_whole.tag_poses[3], three_tag_layout.poses[3], 1e-2)
    assert out_whole.tag_poses[1] == three_tag_layout.poses[1]


def test_solver_failure_rolls_back(two_tag_layout, intrinsics, renderer):
    opt = _optimizer(two_tag_layout, intrinsics)
    opt.optimize(OptimizerState.batch([OdomPoseDelta(1, Pose3(0.5, 0.0, 0.0))]))
    before = opt.robot_poses()
    n_factors = len(opt.solver.graph.factors)

    broken = [TagDetection(1, np.full((4, 2), np.nan)), TagDetection(2, np.full((4, 2), np.nan))]
    with pytest.raises(SolverError):
        opt.optimize(OptimizerState.batch(
            [OdomPoseDelta(2, Pose3(0.5, 0.0, 0.0))],
            [KeyframeData(2, 0, broken)],
        ))

    assert not opt.has_keyframe
    assert len(opt.time_index) == 2
    assert len(opt.solver.graph.factors) == n_factors
    assert opt.robot_poses() == before

    # the optimizer is still usable afterwards
    truth = Pose3(-2.0, 1.0, 0.0)
    dets = renderer(truth, two_tag_layout, intrinsics.camera_matrix, [1, 2])
    out = opt.optimize(OptimizerState.batch(
        [OdomPoseDelta(2, Pose3(0.5, 0.0, 0.0))],
        [KeyframeData(2, 0, dets)],
    ))
    assert _pose_close(out.latest_pose, truth, 1e-6)


def test_tag_layout_reports_free_tag_estimates(three_tag_layout, intrinsics, renderer):
    opt = _optimizer(three_tag_layout, intrinsics)
    truth = Pose3(-2.5, 1.0, 0.0)
    dets = renderer(truth, three_tag_layout, intrinsics.camera_matrix, [1, 2, 3])
    opt.optimize(OptimizerState.batch([OdomPoseDelta(1, Pose3(0.5, 0.0, 0.0))], [KeyframeData(1, 0, dets)]))

    layout = opt.tag_layout()
    assert isinstance(layout, TagLayout)
    assert layout.ids() == [1, 2, 3]
    assert 3 in opt.landmark_keys
    assert _pose_close(layout.poses[3], three_tag_layout.poses[3], 1e-5)


def test_anchored_keyframes_keyed_by_robot_state(two_tag_layout, intrinsics, renderer):
    opt = _optimizer(two_tag_layout, intrinsics)
    assert opt.anchored_keyframes() == {}

    truth = Pose3(-2.5, 1.0, 0.0)
    kf = KeyframeData(1, 0, renderer(truth, two_tag_layout, intrinsics.camera_matrix, [1, 2]))
    opt.optimize(OptimizerState.batch([OdomPoseDelta(1, Pose3(0.5, 0.0, 0.0))], [kf]))

    anchors = opt.anchored_keyframes()
    assert list(anchors) == [opt.latest_key]
    assert anchors[opt.latest_key] is kf

    # a batch without keyframes clears the report
    opt.optimize(OptimizerState.batch([OdomPoseDelta(2, Pose3(0.5, 0.0, 0.0))]))
    assert opt.anchored_keyframes() == {}
