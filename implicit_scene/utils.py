"""
Utility functions for camera poses, seeding and running statistics.
"""

from __future__ import annotations

import math
import random

import numpy as np
import torch


def set_seed(seed: int):
    """Set random seeds for reproducibility."""
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


def look_at_pose(eye, target=(0.0, 0.0, 0.0), up=(0.0, 0.0, 1.0)) -> torch.Tensor:
    """
    Camera-to-world matrix for a camera at ``eye`` looking at ``target``.

    The camera looks down its local -Z axis with +Y as image up.

    Returns
    -------
    torch.Tensor
        4x4 camera-to-world matrix.
    """
    eye = torch.as_tensor(eye, dtype=torch.float32)
    target = torch.as_tensor(target, dtype=torch.float32)
    up = torch.as_tensor(up, dtype=torch.float32)

    forward = target - eye
    forward = forward / torch.norm(forward)

    right = torch.linalg.cross(forward, up)
    if torch.norm(right) < 1e-6:
        raise ValueError("Viewing direction is parallel to the up vector")
    right = right / torch.norm(right)

    up = torch.linalg.cross(right, forward)

    c2w = torch.eye(4)
    c2w[:3, 0] = right
    c2w[:3, 1] = up
    c2w[:3, 2] = -forward
    c2w[:3, 3] = eye
    return c2w


def orbit_pose(t: float, radius: float = 4.0) -> torch.Tensor:
    """
    Pose on a slow orbit around the origin.

    The azimuth advances with ``t`` while the angle from the zenith swings
    between 0.1*pi and 0.45*pi.
    """
    s = (math.cos(t * 0.6) + 1.0) / 2.0
    polar = 0.1 * math.pi + (0.45 * math.pi - 0.1 * math.pi) * s
    eye = (
        radius * math.sin(polar) * math.cos(t),
        radius * math.sin(polar) * math.sin(t),
        radius * math.cos(polar),
    )
    return look_at_pose(eye)


def camera_position(pose: torch.Tensor) -> torch.Tensor:
    return torch.as_tensor(pose, dtype=torch.float32)[:3, 3]


class AverageMeter:
    """Track running averages for metrics."""

    def __init__(self, name: str = ""):
        self.name = name
        self.reset()

    def reset(self):
        self.val = 0
        self.avg = 0
        self.sum = 0
        self.count = 0

    def update(self, val: float, n: int = 1):
        self.val = val
        self.sum += val * n
        self.count += n
        self.avg = self.sum / self.count

    def __str__(self) -> str:
        return f"{self.name}: {self.avg:.4f}"
