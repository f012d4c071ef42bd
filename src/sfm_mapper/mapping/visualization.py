# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Top-down plots of the mapper output.

`plot_map` draws an `OptimizerState` snapshot in the x–y plane:

    - the robot trajectory (robot states in time order)
    - every tag pose, with a short stroke along the tag normal (local +X)
    - optionally the layout guess the map started from, for comparison

Fixed tags are drawn in a different colour from mapped (free) tags.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

import cv2
import matplotlib.pyplot as plt
import numpy as np

from sfm_mapper.core.types import Pose3

from .types import OptimizerState, TagLayout


def _normal_xy(pose: Pose3, length: float) -> np.ndarray:
    R, _ = cv2.Rodrigues(pose.rotation_vector)
    return length * R[:2, 0]


def plot_map(
    state: OptimizerState,
    layout_guess: Optional[TagLayout] = None,
    fixed_tags: Iterable[int] = (),
    ax=None,
    show: bool = False,
    show_labels: bool = True,
) -> Tuple["plt.Figure", "plt.Axes"]:
    """
    :param state: snapshot returned by `IncrementalOptimizer.optimize`.
    :param layout_guess: initial tag layout, drawn as hollow markers.
    :param fixed_tags: ids drawn as fixed tags.
    :param ax: axes to draw into; a new figure is created when omitted.
    :param show: call ``plt.show()`` before returning.
    :return: (figure, axes)
    """
    fixed = {int(i) for i in fixed_tags}
    if ax is None:
        fig, ax = plt.subplots()
    else:
        fig = ax.figure
    ax.set_aspect("equal")

    times = sorted(state.robot_poses)
    if times:
        xy = np.array([[state.robot_poses[t].x, state.robot_poses[t].y] for t in times])
        ax.plot(xy[:, 0], xy[:, 1], "-o", color="C0", markersize=3, linewidth=1.0, label="trajectory")

    if layout_guess is not None:
        for tag_id, pose in layout_guess.pose_array():
            ax.scatter(pose.x, pose.y, s=40, facecolors="none", edgecolors="gray")

    for tag_id, pose in sorted(state.tag_poses.items()):
        color = "C3" if tag_id in fixed else "C2"
        n = _normal_xy(pose, 0.3)
        ax.scatter(pose.x, pose.y, s=30, c=color)
        ax.plot([pose.x, pose.x + n[0]], [pose.y, pose.y + n[1]], color=color, linewidth=1.0)
        if show_labels:
            ax.text(pose.x + 0.05, pose.y + 0.05, str(tag_id), fontsize=7)

    ax.set_xlabel("x [m]")
    ax.set_ylabel("y [m]")
    ax.set_title("sfm-mapper (top-down)")
    if times:
        ax.legend(loc="best", fontsize=7)

    fig.tight_layout()
    if show:
        plt.show()
    return fig, ax
