"""
implicit-scene: an online-trained coordinate network for posed images.

A camera pose becomes one ray per pixel, each ray goes through a small
sine-activated network, and the network is trained one image at a time
while a cached preview is refreshed for an interactive camera.
"""

__version__ = "0.1.0"

from .config import SceneConfig, ModelConfig, RayConfig, DataConfig, TrainConfig, ViewConfig
from .rays import MalformedPoseError, validate_pose, get_ray_field, get_pixel_coords
from .model import ActivationKind, ImplicitSceneModel, create_model
from .data import (
    SceneTransforms,
    TrainingExample,
    SceneDataset,
    ImageLoadQueue,
    load_transforms,
    image_to_target,
    normalize_pixels,
    denormalize_pixels,
)
from .train import Trainer, StepResult, train
from .view import ViewCache, RefreshReason
from .session import SceneSession
from .metrics import compute_mse, compute_psnr
from .logger import ExperimentLogger, TrainingMetrics
from .utils import look_at_pose, orbit_pose, set_seed

__all__ = [
    # Config
    "SceneConfig",
    "ModelConfig",
    "RayConfig",
    "DataConfig",
    "TrainConfig",
    "ViewConfig",
    # Rays
    "MalformedPoseError",
    "validate_pose",
    "get_ray_field",
    "get_pixel_coords",
    # Model
    "ActivationKind",
    "ImplicitSceneModel",
    "create_model",
    # Data
    "SceneTransforms",
    "TrainingExample",
    "SceneDataset",
    "ImageLoadQueue",
    "load_transforms",
    "image_to_target",
    "normalize_pixels",
    "denormalize_pixels",
    # Training
    "Trainer",
    "StepResult",
    "train",
    # View
    "ViewCache",
    "RefreshReason",
    "SceneSession",
    # Metrics
    "compute_mse",
    "compute_psnr",
    # Logging
    "ExperimentLogger",
    "TrainingMetrics",
    # Utils
    "look_at_pose",
    "orbit_pose",
    "set_seed",
]
