"""Triangulation of new map points between a keyframe and its covisible neighbours."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from .geometry import skew_symmetric
from .mappoint import MapPoint

# Chi-square thresholds (95%) for the monocular and stereo reprojection errors.
CHI2_MONO = 5.991
CHI2_STEREO = 7.8

# Minimum baseline / median scene depth ratio for monocular triangulation.
MIN_BASELINE_DEPTH_RATIO = 0.01

# Rays closer than this cosine are too parallel to triangulate without stereo.
MAX_COS_PARALLAX = 0.9998


def fundamental_matrix(keyframe1, keyframe2) -> np.ndarray:
    """Return ``F12`` such that ``x1.T @ F12 @ x2 == 0`` for matching pixels."""
    r1w = np.asarray(keyframe1.rotation(), dtype=float)
    t1w = np.asarray(keyframe1.translation(), dtype=float).reshape(3)
    r2w = np.asarray(keyframe2.rotation(), dtype=float)
    t2w = np.asarray(keyframe2.translation(), dtype=float).reshape(3)

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w

    k1 = np.asarray(keyframe1.k, dtype=float)
    k2 = np.asarray(keyframe2.k, dtype=float)
    return np.linalg.inv(k1.T) @ skew_symmetric(t12) @ r12 @ np.linalg.inv(k2)


@dataclass
class _View:
    keyframe: object
    rcw: np.ndarray
    tcw: np.ndarray
    rwc: np.ndarray
    projection: np.ndarray
    center: np.ndarray

    @classmethod
    def of(cls, keyframe) -> "_View":
        rcw = np.asarray(keyframe.rotation(), dtype=float)
        tcw = np.asarray(keyframe.translation(), dtype=float).reshape(3)
        return cls(
            keyframe=keyframe,
            rcw=rcw,
            tcw=tcw,
            rwc=rcw.T,
            projection=np.hstack([rcw, tcw[:, None]]),
            center=np.asarray(keyframe.camera_center(), dtype=float).reshape(3),
        )

    def normalized(self, keypoint) -> np.ndarray:
        kf = self.keyframe
        return np.array(
            [(keypoint.pt[0] - kf.cx) * kf.invfx, (keypoint.pt[1] - kf.cy) * kf.invfy, 1.0]
        )


def _reprojection_ok(view: _View, x3d, keypoint, u_right, stereo, bf) -> bool:
    kf = view.keyframe
    xc = view.rcw @ x3d + view.tcw
    invz = 1.0 / xc[2]
    u = kf.fx * xc[0] * invz + kf.cx
    v = kf.fy * xc[1] * invz + kf.cy
    error = (u - keypoint.pt[0]) ** 2 + (v - keypoint.pt[1]) ** 2
    sigma2 = kf.level_sigma2[keypoint.octave]
    if not stereo:
        return error <= CHI2_MONO * sigma2
    u_r = u - bf * invz
    error += (u_r - u_right) ** 2
    return error <= CHI2_STEREO * sigma2


def _triangulate(view1: _View, view2: _View, idx1, idx2) -> Optional[np.ndarray]:
    kf1, kf2 = view1.keyframe, view2.keyframe
    kp1, kp2 = kf1.keys_un[idx1], kf2.keys_un[idx2]
    ur1, ur2 = kf1.u_right[idx1], kf2.u_right[idx2]
    stereo1, stereo2 = ur1 >= 0, ur2 >= 0

    xn1 = view1.normalized(kp1)
    xn2 = view2.normalized(kp2)
    ray1 = view1.rwc @ xn1
    ray2 = view2.rwc @ xn2
    cos_rays = float(ray1 @ ray2 / (np.linalg.norm(ray1) * np.linalg.norm(ray2)))

    cos_stereo1 = cos_stereo2 = cos_rays + 1
    if stereo1:
        cos_stereo1 = math.cos(2 * math.atan2(kf1.b / 2, kf1.depth[idx1]))
    elif stereo2:
        cos_stereo2 = math.cos(2 * math.atan2(kf2.b / 2, kf2.depth[idx2]))
    cos_stereo = min(cos_stereo1, cos_stereo2)

    if cos_rays < cos_stereo and cos_rays > 0 and (stereo1 or stereo2 or cos_rays < MAX_COS_PARALLAX):
        p1, p2 = view1.projection, view2.projection
        a = np.array(
            [
                xn1[0] * p1[2] - p1[0],
                xn1[1] * p1[2] - p1[1],
                xn2[0] * p2[2] - p2[0],
                xn2[1] * p2[2] - p2[1],
            ]
        )
        _, _, vt = np.linalg.svd(a)
        homogeneous = vt[3]
        if homogeneous[3] == 0:
            return None
        x3d = homogeneous[:3] / homogeneous[3]
    elif stereo1 and cos_stereo1 < cos_stereo2:
        x3d = kf1.unproject_stereo(idx1)
    elif stereo2 and cos_stereo2 < cos_stereo1:
        x3d = kf2.unproject_stereo(idx2)
    else:
        return None
    if x3d is None:
        return None
    x3d = np.asarray(x3d, dtype=float).reshape(3)

    if view1.rcw[2] @ x3d + view1.tcw[2] <= 0:
        return None
    if view2.rcw[2] @ x3d + view2.tcw[2] <= 0:
        return None

    # Both stereo checks use the baseline of the keyframe being processed.
    if not _reprojection_ok(view1, x3d, kp1, ur1, stereo1, kf1.bf):
        return None
    if not _reprojection_ok(view2, x3d, kp2, ur2, stereo2, kf1.bf):
        return None

    dist1 = float(np.linalg.norm(x3d - view1.center))
    dist2 = float(np.linalg.norm(x3d - view2.center))
    if dist1 == 0 or dist2 == 0:
        return None
    ratio_dist = dist2 / dist1
    ratio_octave = kf1.scale_factors[kp1.octave] / kf2.scale_factors[kp2.octave]
    ratio_factor = 1.5 * kf1.scale_factor
    if ratio_dist * ratio_factor < ratio_octave or ratio_dist > ratio_octave * ratio_factor:
        return None
    return x3d


def create_new_map_points(
    current,
    neighbours,
    matcher,
    world_map,
    monocular,
    interrupted: Optional[Callable[[], bool]] = None,
) -> list:
    """Triangulate matches between ``current`` and each neighbour; return the new points.

    ``matcher.search_for_triangulation(kf1, kf2, f12, only_stereo)`` must return
    pairs of keypoint indices. ``interrupted`` is polled before every neighbour
    after the first and stops the search when it returns true.
    """
    view1 = _View.of(current)
    created = []

    for position, neighbour in enumerate(neighbours):
        if position > 0 and interrupted is not None and interrupted():
            break

        view2 = _View.of(neighbour)
        baseline = float(np.linalg.norm(view2.center - view1.center))
        if not monocular:
            if baseline < neighbour.b:
                continue
        else:
            try:
                median_depth = neighbour.compute_scene_median_depth(2)
            except ValueError:
                continue
            if baseline / median_depth < MIN_BASELINE_DEPTH_RATIO:
                continue

        f12 = fundamental_matrix(current, neighbour)
        pairs = matcher.search_for_triangulation(current, neighbour, f12, False)

        for idx1, idx2 in pairs:
            x3d = _triangulate(view1, view2, idx1, idx2)
            if x3d is None:
                continue

            point = MapPoint(x3d, current, world_map)
            point.add_observation(current, idx1)
            point.add_observation(neighbour, idx2)
            current.add_map_point(point, idx1)
            neighbour.add_map_point(point, idx2)
            point.compute_distinctive_descriptors()
            point.update_normal_and_depth()
            world_map.add_map_point(point)
            created.append(point)

    return created