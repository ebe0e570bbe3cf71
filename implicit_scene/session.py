"""
Frame-driven orchestration of loading, training and preview.

A viewer owns one ``SceneSession`` and calls ``tick()`` once per display
frame. Each tick loads at most one queued image, runs at most one training
step and performs at most one preview refresh, in that order.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import torch
from PIL import Image

from .config import SceneConfig
from .data import SceneDataset, SceneTransforms, ImageLoadQueue, load_transforms
from .rays import validate_pose
from .train import Trainer, StepResult
from .utils import look_at_pose, camera_position
from .view import ViewCache, RefreshReason


class SceneSession:
    """
    Shared state for one interactive scene.

    Parameters
    ----------
    config : SceneConfig, optional
        Full configuration. ``config.data.transforms_path`` is read when
        ``transforms`` is not given.
    transforms : SceneTransforms, optional
        Pre-loaded camera metadata.
    """

    def __init__(
        self,
        config: Optional[SceneConfig] = None,
        transforms: Optional[SceneTransforms] = None,
    ):
        self.config = config or SceneConfig()
        if transforms is None:
            if self.config.data.transforms_path is None:
                raise ValueError("Either transforms or config.data.transforms_path is required")
            transforms = load_transforms(
                self.config.data.transforms_path,
                max_images=self.config.data.max_images,
            )

        resolution = self.config.rays.resolution
        half_fov_x = self.config.rays.half_fov_x
        if half_fov_x is None:
            half_fov_x = transforms.half_fov_x

        self.dataset = SceneDataset(transforms, resolution)
        self.loader = ImageLoadQueue(
            transforms,
            resolution,
            on_loaded=self.dataset.add,
            on_drained=self._on_drained,
        )
        self.trainer = Trainer(
            self.dataset,
            model_config=self.config.model,
            config=self.config.train,
            half_fov_x=half_fov_x,
        )
        self.view = ViewCache(lambda: self.trainer.model, half_fov_x, resolution)

        view_cfg = self.config.view
        self.camera_pose = look_at_pose(view_cfg.eye, view_cfg.target, view_cfg.up)
        self.camera_moved = False

        self.train_steps_done = 0
        self.train_steps_max = self.config.train.burst_steps
        self.selected_view = 0
        self.last_result: Optional[StepResult] = None

        self.view.update_view(self.camera_pose)

    def _on_drained(self):
        print(f"Loaded {len(self.dataset)}/{self.dataset.num_frames} images")

    # Loading

    def load_images(self, n: Optional[int] = None) -> int:
        """Queue the next ``n`` images (all remaining when None)."""
        return self.loader.request(n)

    @property
    def can_load_more(self) -> bool:
        """Whether a full ``load_batch`` of unrequested frames is left."""
        return self.loader.can_request(self.config.data.load_batch)

    def load_more(self) -> int:
        """Queue the next ``load_batch`` images. Returns 0 once fewer remain."""
        if not self.can_load_more:
            return 0
        return self.loader.request(self.config.data.load_batch)

    @property
    def is_ready(self) -> bool:
        return self.dataset.is_complete

    # Camera

    def set_camera_pose(self, pose):
        self.camera_pose = validate_pose(pose)
        self.camera_moved = True

    def jump_to_view(self) -> Optional[int]:
        """Move the camera to the next loaded training pose, cycling."""
        if len(self.dataset) == 0:
            return None
        self.selected_view %= len(self.dataset)
        idx = self.selected_view
        self.set_camera_pose(self.dataset[idx].pose)
        self.selected_view += 1
        return idx

    def nearest_views(self) -> List[int]:
        return self.dataset.nearest_views(camera_position(self.camera_pose))

    # Training

    def start_training(self, long: bool = False):
        """Start a new burst of training steps."""
        self.train_steps_done = 0
        if long:
            self.train_steps_max = self.config.train.long_burst_steps

    @property
    def training_progress(self) -> Tuple[int, int]:
        return self.train_steps_done, self.train_steps_max

    @property
    def is_training(self) -> bool:
        return self.train_steps_done < self.train_steps_max

    def reset_model(self):
        """Replace model and optimizer with a fresh draw and refresh the preview."""
        self.trainer.reset()
        self.view.clear()
        self.view.refresh(self.camera_pose, RefreshReason.RESET)

    # Frame loop

    def tick(self) -> Optional[StepResult]:
        """
        Advance one display frame.

        Returns the training step result, or None if no step ran.
        """
        self.loader.process_next()

        if self.camera_moved:
            self.view.mark_dirty(RefreshReason.CAMERA_MOVED)

        result = None
        if self.dataset.is_complete:
            if self.is_training:
                result = self.trainer.train_step()
                self.train_steps_done += 1
                if result is not None and result.applied:
                    self.view.mark_dirty(RefreshReason.TRAINED)
            else:
                self.train_steps_max = self.config.train.burst_steps

        self.view.refresh_if_dirty(self.camera_pose)
        self.camera_moved = False
        self.last_result = result
        return result

    # Core operations

    def train_step(self) -> Optional[StepResult]:
        return self.trainer.train_step()

    def update_view(self, same_input: bool = False) -> torch.Tensor:
        return self.view.update_view(self.camera_pose, same_input=same_input)

    def get_input(self, pose=None, jitter: bool = False) -> torch.Tensor:
        """Ray field for ``pose``, or for the interactive camera when None."""
        if pose is None:
            pose = self.camera_pose
        return self.view.get_input(pose, jitter=jitter)

    def predict(self, field: torch.Tensor) -> torch.Tensor:
        return self.trainer.model.predict(field)

    @property
    def preview(self) -> torch.Tensor:
        return self.view.preview

    def preview_image(self) -> Image.Image:
        return self.view.to_pil()
