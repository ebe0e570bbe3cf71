"""
Preview rendering for the interactive camera.

The view cache keeps the last displayable prediction and the ray field it
was computed from. It only recomputes when marked dirty, and reuses the
cached ray field when just the parameters changed.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional

import numpy as np
import torch
from PIL import Image

from .model import ImplicitSceneModel
from .rays import get_ray_field, validate_pose


class RefreshReason(Enum):
    CAMERA_MOVED = "camera_moved"
    TRAINED = "trained"
    RESET = "reset"


class ViewCache:
    """
    Cached preview image for the current interactive camera.

    Parameters
    ----------
    model_provider : callable
        Returns the current model. Called on every refresh so a model that
        was replaced by a reset is picked up.
    half_fov_x : float
        Half of the horizontal field of view in radians.
    resolution : int
        Preview resolution (rays per side).
    """

    def __init__(
        self,
        model_provider: Callable[[], ImplicitSceneModel],
        half_fov_x: float,
        resolution: int,
    ):
        self.model_provider = model_provider
        self.half_fov_x = half_fov_x
        self.resolution = resolution

        self.field: Optional[torch.Tensor] = None
        self.field_pose: Optional[torch.Tensor] = None
        self.preview = torch.zeros(resolution, resolution, 4)

        self.dirty = False
        self.pose_changed = False

        # Work counters
        self.refresh_count = 0
        self.field_builds = 0

    def get_input(self, pose, jitter: bool = False) -> torch.Tensor:
        return get_ray_field(pose, self.half_fov_x, self.resolution, jitter=jitter)

    def mark_dirty(self, reason: RefreshReason):
        self.dirty = True
        if reason is RefreshReason.CAMERA_MOVED:
            self.pose_changed = True

    @property
    def is_dirty(self) -> bool:
        return self.dirty

    def _build_field(self, pose: torch.Tensor):
        self.field = None
        self.field = self.get_input(pose)
        self.field_pose = pose.clone()
        self.field_builds += 1

    def _render(self) -> torch.Tensor:
        pred = self.model_provider().predict(self.field)
        self.preview = torch.clamp((pred + 1.0) / 2.0, 0.0, 1.0).cpu()
        self.refresh_count += 1
        self.dirty = False
        self.pose_changed = False
        return self.preview

    def refresh(self, pose, reason: RefreshReason) -> torch.Tensor:
        """
        Recompute the preview for ``pose``.

        The cached ray field is reused unless the camera moved or the pose
        differs from the one the field was built for.
        """
        pose = validate_pose(pose)
        reuse = (
            reason is not RefreshReason.CAMERA_MOVED
            and self.field is not None
            and torch.equal(self.field_pose, pose)
        )
        if not reuse:
            self._build_field(pose)
        return self._render()

    def update_view(self, pose, same_input: bool = False) -> torch.Tensor:
        """Refresh, reusing the last ray field as-is when ``same_input`` is set."""
        if same_input and self.field is not None:
            return self._render()
        self._build_field(validate_pose(pose))
        return self._render()

    def refresh_if_dirty(self, pose) -> bool:
        """Refresh only when marked dirty. Returns True if a refresh ran."""
        if not self.dirty:
            return False
        reason = RefreshReason.CAMERA_MOVED if self.pose_changed else RefreshReason.TRAINED
        self.refresh(pose, reason)
        return True

    def clear(self):
        """Drop the cached ray field."""
        self.field = None
        self.field_pose = None

    def to_pil(self) -> Image.Image:
        """Preview as an 8-bit RGBA image."""
        pixels = (self.preview.numpy() * 255.0).round().clip(0, 255).astype(np.uint8)
        return Image.fromarray(pixels)
