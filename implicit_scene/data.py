"""
Data loading utilities for implicit scene training.

Handles the NeRF Synthetic (Blender) transform metadata, conversion of
images to signed training targets, and incremental, in-order loading of
training examples into an explicit dataset object.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
import torch
from PIL import Image

from .rays import validate_pose
from .utils import camera_position


@dataclass
class SceneTransforms:
    """
    Camera metadata for one split of a Blender scene.

    Attributes
    ----------
    half_fov_x : float
        Half of the horizontal field of view in radians (``camera_angle_x``).
    poses : torch.Tensor
        Camera-to-world matrices of shape (N, 4, 4).
    image_paths : list of Path
        Image file for each frame, in frame order.
    """
    half_fov_x: float
    poses: torch.Tensor
    image_paths: List[Path]

    def __len__(self) -> int:
        return len(self.image_paths)


@dataclass(frozen=True)
class TrainingExample:
    """
    One posed training image.

    Attributes
    ----------
    index : int
        Frame index in the transform metadata.
    pose : torch.Tensor
        Camera-to-world matrix of shape (4, 4).
    target : torch.Tensor
        RGBA target of shape (R, R, 4) in [-1, 1].
    """
    index: int
    pose: torch.Tensor
    target: torch.Tensor


def load_transforms(
    transforms_path: Path,
    max_images: Optional[int] = None,
) -> SceneTransforms:
    """
    Load a ``transforms_<split>.json`` file.

    Frame ``i`` uses ``frames[i]["file_path"] + ".png"`` when present and
    ``<split>/r_<i>.png`` otherwise, both relative to the JSON's directory.

    Parameters
    ----------
    transforms_path : Path
        Path to the metadata file.
    max_images : int, optional
        Only keep the first ``max_images`` frames.

    Returns
    -------
    SceneTransforms
        Parsed metadata with validated poses.
    """
    transforms_path = Path(transforms_path)
    if not transforms_path.exists():
        raise FileNotFoundError(f"Missing transforms file: {transforms_path}")

    with open(transforms_path, "r") as f:
        meta = json.load(f)

    if "camera_angle_x" not in meta or "frames" not in meta:
        raise ValueError(
            f"{transforms_path} must define 'camera_angle_x' and 'frames'"
        )

    scene_dir = transforms_path.parent
    split = transforms_path.stem.replace("transforms_", "")

    frames = meta["frames"]
    if max_images is not None:
        frames = frames[:max_images]

    poses = []
    image_paths = []
    for i, frame in enumerate(frames):
        poses.append(validate_pose(frame["transform_matrix"]))

        file_path = frame.get("file_path")
        if file_path is not None:
            image_paths.append(scene_dir / f"{file_path}.png")
        else:
            image_paths.append(scene_dir / split / f"r_{i}.png")

    if poses:
        poses = torch.stack(poses, dim=0)
    else:
        poses = torch.zeros(0, 4, 4)

    return SceneTransforms(
        half_fov_x=float(meta["camera_angle_x"]),
        poses=poses,
        image_paths=image_paths,
    )


def normalize_pixels(pixels: np.ndarray) -> torch.Tensor:
    """Map 8-bit channel values to [-1, 1] as ``2v/255 - 1``."""
    values = torch.from_numpy(np.asarray(pixels, dtype=np.float32))
    return values * (2.0 / 255.0) - 1.0


def denormalize_pixels(values: torch.Tensor) -> np.ndarray:
    """Inverse of :func:`normalize_pixels`, rounded to uint8."""
    values = torch.clamp(values.detach().cpu(), -1.0, 1.0)
    return ((values + 1.0) / 2.0 * 255.0).round().numpy().astype(np.uint8)


def image_to_target(img: Image.Image, resolution: int) -> torch.Tensor:
    """
    Convert an image to an RGBA training target.

    Returns
    -------
    torch.Tensor
        Target of shape (resolution, resolution, 4) in [-1, 1].
    """
    img = img.convert("RGBA")
    if img.size != (resolution, resolution):
        img = img.resize((resolution, resolution), Image.LANCZOS)
    return normalize_pixels(np.array(img, dtype=np.uint8))


class SceneDataset:
    """
    Training examples registered so far for one scene.

    This is the context object shared by the loader, the trainer and the
    viewer; it is passed around explicitly.
    """

    def __init__(self, transforms: SceneTransforms, resolution: int):
        self.transforms = transforms
        self.resolution = resolution
        self.examples: List[TrainingExample] = []

    @property
    def half_fov_x(self) -> float:
        return self.transforms.half_fov_x

    @property
    def num_frames(self) -> int:
        return len(self.transforms)

    @property
    def is_complete(self) -> bool:
        """True once every frame of the metadata has an example."""
        return self.num_frames > 0 and len(self.examples) >= self.num_frames

    def __len__(self) -> int:
        return len(self.examples)

    def __getitem__(self, idx: int) -> TrainingExample:
        return self.examples[idx]

    def add(self, example: TrainingExample):
        expected = (self.resolution, self.resolution, 4)
        if tuple(example.target.shape) != expected:
            raise ValueError(
                f"Target shape {tuple(example.target.shape)} does not match {expected}"
            )
        validate_pose(example.pose)
        self.examples.append(example)

    def nearest_views(self, position) -> List[int]:
        """
        Rank loaded examples by view direction.

        All cameras are assumed to look at the origin, so each camera is
        compared by its unit camera-to-origin direction.

        Parameters
        ----------
        position : array-like
            World position of the query camera.

        Returns
        -------
        list of int
            Positions into ``examples``, closest view first.
        """
        if not self.examples:
            return []
        position = torch.as_tensor(position, dtype=torch.float32)
        query = -position / torch.norm(position).clamp_min(1e-12)

        centers = torch.stack([camera_position(ex.pose) for ex in self.examples], dim=0)
        cto = -centers / torch.norm(centers, dim=-1, keepdim=True).clamp_min(1e-12)

        dist = torch.sum((cto - query) ** 2, dim=-1)
        return torch.argsort(dist, stable=True).tolist()


class ImageLoadQueue:
    """
    In-order image loader driven one item at a time.

    ``request(n)`` enqueues the next ``n`` unrequested frames. Each
    ``process_next()`` call loads one image and emits ``on_loaded(example)``;
    when the queue runs empty ``on_drained()`` fires once.
    """

    def __init__(
        self,
        transforms: SceneTransforms,
        resolution: int,
        on_loaded: Optional[Callable[[TrainingExample], None]] = None,
        on_drained: Optional[Callable[[], None]] = None,
    ):
        self.transforms = transforms
        self.resolution = resolution
        self.on_loaded = on_loaded
        self.on_drained = on_drained

        self.pending: deque = deque()
        self.next_frame = 0
        self.num_loaded = 0

    @property
    def is_busy(self) -> bool:
        return len(self.pending) > 0

    @property
    def remaining(self) -> int:
        """Frames that have not been requested yet."""
        return len(self.transforms) - self.next_frame

    def can_request(self, n: Optional[int] = None) -> bool:
        if n is None:
            return self.remaining > 0
        return self.remaining >= n

    def request(self, n: Optional[int] = None) -> int:
        """
        Enqueue up to ``n`` frames (all remaining when None).

        Requests made while a previous request is still loading are ignored.

        Returns
        -------
        int
            Number of frames enqueued.
        """
        if self.is_busy:
            return 0
        n = self.remaining if n is None else min(n, self.remaining)
        for idx in range(self.next_frame, self.next_frame + n):
            self.pending.append(idx)
        self.next_frame += n
        return n

    def load_example(self, idx: int) -> TrainingExample:
        path = self.transforms.image_paths[idx]
        if not path.exists():
            raise FileNotFoundError(f"Missing image: {path}")
        with Image.open(path) as img:
            target = image_to_target(img, self.resolution)
        return TrainingExample(index=idx, pose=self.transforms.poses[idx], target=target)

    def process_next(self) -> Optional[TrainingExample]:
        """Load the next queued frame, or return None if nothing is queued."""
        if not self.pending:
            return None

        idx = self.pending[0]
        example = self.load_example(idx)
        self.pending.popleft()
        self.num_loaded += 1

        if self.on_loaded is not None:
            self.on_loaded(example)
        if not self.pending and self.on_drained is not None:
            self.on_drained()
        return example

    def drain(self) -> List[TrainingExample]:
        """Process every queued frame."""
        loaded = []
        while self.pending:
            loaded.append(self.process_next())
        return loaded
