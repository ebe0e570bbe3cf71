"""
Ray field generation for the implicit scene model.

This module handles:
- Validating camera-to-world poses
- Generating one ray per pixel from a camera pose
- Localizing ray origins around the scene origin
"""

from __future__ import annotations

import math
from typing import Optional

import torch


ORTHONORMAL_TOL = 1e-3
MIN_DIRECTION_NORM = 1e-12


class MalformedPoseError(ValueError):
    """Raised when a camera pose cannot produce a valid ray field."""


def validate_pose(pose) -> torch.Tensor:
    """
    Check that a camera-to-world matrix is a rigid transform.

    Parameters
    ----------
    pose : array-like
        4x4 camera-to-world matrix, row-major (Blender ``transform_matrix``).

    Returns
    -------
    torch.Tensor
        The pose as a float32 tensor of shape (4, 4).

    Raises
    ------
    MalformedPoseError
        If the matrix has the wrong shape, contains non-finite values, has a
        rotation block that is not orthonormal, or a last row other than
        ``[0, 0, 0, 1]``.
    """
    pose = torch.as_tensor(pose, dtype=torch.float32)
    if pose.shape != (4, 4):
        raise MalformedPoseError(f"Expected a 4x4 pose, got shape {tuple(pose.shape)}")

    if not torch.isfinite(pose).all():
        raise MalformedPoseError("Pose contains non-finite values")

    rotation = pose[:3, :3]
    gram = rotation.T @ rotation
    eye = torch.eye(3, dtype=pose.dtype, device=pose.device)
    err = (gram - eye).abs().max().item()
    if err > ORTHONORMAL_TOL:
        raise MalformedPoseError(
            f"Rotation basis is not orthonormal (max |R^T R - I| = {err:.2e})"
        )

    last_row = torch.tensor([0.0, 0.0, 0.0, 1.0], dtype=pose.dtype, device=pose.device)
    if (pose[3] - last_row).abs().max().item() > ORTHONORMAL_TOL:
        raise MalformedPoseError(f"Last pose row must be [0, 0, 0, 1], got {pose[3].tolist()}")

    return pose


def get_pixel_coords(
    resolution: int,
    half_fov_x: float,
    jitter: bool = False,
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """
    Normalized image-plane coordinates for every pixel.

    The outermost samples sit at ``(1 - 1/R) * tan(half_fov_x)`` so they stay
    strictly inside the field of view. Column index grows with camera +x and
    row index grows with camera -y (row 0 is the top of the image).

    Returns
    -------
    torch.Tensor
        Coordinates of shape (R, R, 2) holding (x, y).
    """
    if resolution < 1:
        raise ValueError(f"resolution must be >= 1, got {resolution}")
    if not math.isfinite(half_fov_x) or half_fov_x <= 0 or half_fov_x >= math.pi / 2:
        raise ValueError(f"half_fov_x must lie in (0, pi/2), got {half_fov_x}")

    max_coord = (1.0 - 1.0 / resolution) * math.tan(half_fov_x)
    xs = torch.linspace(-max_coord, max_coord, resolution)
    ys = torch.linspace(max_coord, -max_coord, resolution)

    x, y = torch.meshgrid(xs, ys, indexing="xy")
    coords = torch.stack([x, y], dim=-1)

    if jitter:
        # Sub-pixel randomization
        noise = torch.rand(coords.shape, generator=generator)
        coords = coords + (noise * 2.0 - 1.0) / resolution

    return coords


def get_ray_field(
    pose,
    half_fov_x: float,
    resolution: int,
    jitter: bool = False,
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """
    Build the per-pixel network input for a camera pose.

    The camera looks down its local -Z axis. Each camera-space direction
    ``(x, y, -1)`` is rotated into world space and normalized. The ray origin
    is then moved to the point on the ray closest to the world origin:

        t = -dot(o, d),  origin = o + t * d

    Parameters
    ----------
    pose : array-like
        4x4 camera-to-world matrix.
    half_fov_x : float
        Half of the horizontal field of view, in radians.
    resolution : int
        Number of rays per side.
    jitter : bool
        Add uniform sub-pixel noise in [-1/R, 1/R] to each coordinate pair.
    generator : torch.Generator, optional
        Source of randomness for the jitter.

    Returns
    -------
    torch.Tensor
        Ray field of shape (R, R, 6): localized origin then unit direction.
    """
    c2w = validate_pose(pose)

    coords = get_pixel_coords(resolution, half_fov_x, jitter=jitter, generator=generator)
    coords = coords.to(c2w.device)
    directions = torch.cat([coords, -torch.ones_like(coords[..., :1])], dim=-1)

    # Rotate directions from camera to world
    rays_d = torch.sum(directions[..., None, :] * c2w[:3, :3], dim=-1)

    norms = torch.norm(rays_d, dim=-1, keepdim=True)
    if norms.min().item() < MIN_DIRECTION_NORM:
        raise MalformedPoseError("Pose produced a zero-length ray direction")
    rays_d = rays_d / norms

    # Localize rays by using the closest point to the scene origin
    rays_o = c2w[:3, 3].expand(rays_d.shape)
    t = -torch.sum(rays_o * rays_d, dim=-1, keepdim=True)
    rays_o = rays_o + rays_d * t

    return torch.cat([rays_o, rays_d], dim=-1)


def split_ray_field(field: torch.Tensor):
    """Split a (..., 6) ray field into (origins, directions)."""
    return field[..., :3], field[..., 3:]
