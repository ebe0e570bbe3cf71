"""
Configuration management for implicit scene training and preview.
"""

from dataclasses import dataclass, field
from typing import Tuple, Optional
from pathlib import Path


@dataclass
class ModelConfig:
    """Configuration for the coordinate network architecture."""

    # Localized ray origin (3) + unit direction (3)
    in_features: int = 6

    # Sine-activated hidden layers
    hidden_widths: Tuple[int, ...] = (32, 64, 32)

    # RGBA in signed color space
    out_features: int = 4

    # Uniform bound for first-layer weights, controls input frequency range
    first_layer_limit: float = 1.5

    def __post_init__(self):
        if not 1.5 <= self.first_layer_limit <= 2.0:
            raise ValueError(
                f"first_layer_limit must lie in [1.5, 2.0], got {self.first_layer_limit}"
            )
        if len(self.hidden_widths) == 0:
            raise ValueError("hidden_widths must name at least one layer")


@dataclass
class RayConfig:
    """Configuration for ray field generation."""

    resolution: int = 64                 # Working resolution (R x R rays)
    half_fov_x: Optional[float] = None   # None = take camera_angle_x from metadata

    def __post_init__(self):
        if self.resolution < 1:
            raise ValueError(f"resolution must be >= 1, got {self.resolution}")


@dataclass
class DataConfig:
    """Configuration for data loading."""

    transforms_path: Optional[Path] = None   # e.g. data/lego/transforms_train.json
    max_images: Optional[int] = None         # Cap on frames used from the metadata
    load_batch: int = 10                     # Frames enqueued by a "load more" request


@dataclass
class TrainConfig:
    """Configuration for online training."""

    # Optimization
    lr: float = 0.01

    # Interactive training bursts
    burst_steps: int = 100
    long_burst_steps: int = 1000

    # Headless training schedule
    num_steps: int = 2000

    # Logging and checkpointing
    log_every: int = 100
    save_every: int = 1000
    preview_every: int = 250

    # Output directory
    output_dir: Path = field(default_factory=lambda: Path("outputs"))
    experiment_name: str = "auto"

    # Device
    device: str = "cpu"

    # Reproducibility
    seed: int = 42

    def __post_init__(self):
        if self.lr <= 0:
            raise ValueError(f"lr must be positive, got {self.lr}")


@dataclass
class ViewConfig:
    """Initial interactive camera (look-at form)."""

    eye: Tuple[float, float, float] = (0.0, -5.0, 5.0)
    target: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    up: Tuple[float, float, float] = (0.0, 0.0, 1.0)


@dataclass
class SceneConfig:
    """Complete configuration for a scene session."""

    model: ModelConfig = field(default_factory=ModelConfig)
    rays: RayConfig = field(default_factory=RayConfig)
    data: DataConfig = field(default_factory=DataConfig)
    train: TrainConfig = field(default_factory=TrainConfig)
    view: ViewConfig = field(default_factory=ViewConfig)

    def __post_init__(self):
        # Convert paths
        if isinstance(self.train.output_dir, str):
            self.train.output_dir = Path(self.train.output_dir)
        if isinstance(self.data.transforms_path, str):
            self.data.transforms_path = Path(self.data.transforms_path)
