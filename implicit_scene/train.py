"""
Online training for the implicit scene model.

Supports:
- One stochastic step per call on a randomly chosen training image
- Skipping (or reverting) updates that produce non-finite values
- Checkpointing
- A headless training loop with CSV / TensorBoard logging
"""

from __future__ import annotations

import argparse
import copy
import math
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import torch
from torch.optim import Adam

from .config import SceneConfig, ModelConfig, RayConfig, DataConfig, TrainConfig
from .model import ImplicitSceneModel, create_model
from .data import SceneDataset, ImageLoadQueue, load_transforms
from .rays import get_ray_field
from .metrics import compute_mse, compute_psnr, is_finite
from .logger import ExperimentLogger, TrainingMetrics
from .utils import set_seed, look_at_pose, AverageMeter


@dataclass
class StepResult:
    """Outcome of a single training step."""
    step: int
    index: int
    loss: float
    psnr: float
    applied: bool = True


class Trainer:
    """
    Owns the model and its Adam state and advances them one image at a time.

    Parameters
    ----------
    dataset : SceneDataset
        Registered training examples. Read only.
    model_config : ModelConfig, optional
        Architecture of the model built here and on every reset.
    config : TrainConfig, optional
        Learning rate, device and seed.
    half_fov_x : float, optional
        Overrides the field of view stored in the dataset metadata.
    """

    def __init__(
        self,
        dataset: SceneDataset,
        model_config: Optional[ModelConfig] = None,
        config: Optional[TrainConfig] = None,
        half_fov_x: Optional[float] = None,
    ):
        self.dataset = dataset
        self.model_config = model_config or ModelConfig()
        self.config = config or TrainConfig()
        self.half_fov_x = half_fov_x if half_fov_x is not None else dataset.half_fov_x
        self.device = self.config.device

        self.generator = torch.Generator().manual_seed(self.config.seed)
        self.model: Optional[ImplicitSceneModel] = None
        self.optimizer: Optional[torch.optim.Optimizer] = None
        self._build()

    def _build(self):
        self.model = create_model(self.model_config, device=self.device)
        self.optimizer = Adam(self.model.parameters(), lr=self.config.lr)
        self.step = 0

    def reset(self):
        """Discard parameters and optimizer state and start from a fresh draw."""
        self.optimizer.state.clear()
        self.optimizer = None
        self.model = None
        if str(self.device).startswith("cuda"):
            torch.cuda.empty_cache()
        self._build()

    def _params_finite(self) -> bool:
        return all(is_finite(p.detach()) for p in self.model.parameters())

    def train_step(self) -> Optional[StepResult]:
        """
        Run one optimization step on a uniformly sampled training example.

        Returns None when no examples are registered.
        """
        if len(self.dataset) == 0:
            return None

        idx = int(torch.randint(len(self.dataset), (1,), generator=self.generator))
        example = self.dataset[idx]

        field = get_ray_field(
            example.pose,
            self.half_fov_x,
            self.dataset.resolution,
            jitter=True,
            generator=self.generator,
        ).to(self.device)
        target = example.target.to(self.device)

        self.optimizer.zero_grad()
        pred = self.model(field)
        loss = compute_mse(pred, target)
        loss_val = loss.item()

        if not math.isfinite(loss_val):
            self.optimizer.zero_grad()
            print(f"Warning: non-finite loss at step {self.step}, update skipped")
            return StepResult(step=self.step, index=idx, loss=loss_val,
                              psnr=float("nan"), applied=False)

        snapshot = (
            copy.deepcopy(self.model.state_dict()),
            copy.deepcopy(self.optimizer.state_dict()),
        )
        loss.backward()
        self.optimizer.step()

        if not self._params_finite():
            self.model.load_state_dict(snapshot[0])
            self.optimizer.load_state_dict(snapshot[1])
            print(f"Warning: non-finite parameters after step {self.step}, update reverted")
            return StepResult(step=self.step, index=idx, loss=loss_val,
                              psnr=float("nan"), applied=False)

        self.step += 1
        psnr = compute_psnr(pred.detach(), target).item()
        return StepResult(step=self.step, index=idx, loss=loss_val, psnr=psnr)

    def save_checkpoint(self, path: Path, scene_config: Optional[SceneConfig] = None):
        """Save model, optimizer and step count."""
        checkpoint = {
            "step": self.step,
            "model": self.model.state_dict(),
            "optimizer": self.optimizer.state_dict(),
            "model_config": self.model_config.__dict__,
            "half_fov_x": self.half_fov_x,
            "resolution": self.dataset.resolution,
        }
        if scene_config is not None:
            checkpoint["train_config"] = {
                k: str(v) if isinstance(v, Path) else v
                for k, v in scene_config.train.__dict__.items()
            }
        torch.save(checkpoint, path)

    def load_checkpoint(self, path: Path) -> int:
        """Load a checkpoint saved by :meth:`save_checkpoint`. Returns the step."""
        checkpoint = torch.load(path, map_location=self.device)
        self.model.load_state_dict(checkpoint["model"])
        self.optimizer.load_state_dict(checkpoint["optimizer"])
        self.step = checkpoint.get("step", 0)
        return self.step


def generate_experiment_name(scene: str, base_name: str = "") -> str:
    """
    Generate experiment name with timestamp.

    Format: {scene}_{base_name}_{timestamp} or {scene}_{timestamp}
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    if base_name:
        return f"{scene}_{base_name}_{timestamp}"
    return f"{scene}_{timestamp}"


def resolve_experiment_name(config: SceneConfig) -> str:
    """Fill in an auto-generated experiment name and return it."""
    if config.train.experiment_name in ("auto", ""):
        path = config.data.transforms_path
        scene = path.parent.name if path is not None else "scene"
        config.train.experiment_name = generate_experiment_name(scene)
    return config.train.experiment_name


def load_dataset(config: SceneConfig) -> SceneDataset:
    """Load every frame named by the transform metadata into a dataset."""
    if config.data.transforms_path is None:
        raise ValueError("config.data.transforms_path is not set")

    transforms = load_transforms(config.data.transforms_path, max_images=config.data.max_images)
    dataset = SceneDataset(transforms, config.rays.resolution)
    queue = ImageLoadQueue(transforms, config.rays.resolution, on_loaded=dataset.add)
    queue.request()
    queue.drain()
    return dataset


def train(config: SceneConfig) -> Trainer:
    """
    Headless training loop.

    Trains for ``config.train.num_steps`` steps, logging metrics, preview
    snapshots from the configured view camera, and checkpoints.
    """
    from .view import ViewCache

    set_seed(config.train.seed)
    device = config.train.device
    if device.startswith("cuda") and not torch.cuda.is_available():
        print("CUDA not available, falling back to CPU")
        device = "cpu"
        config.train.device = device

    exp_name = resolve_experiment_name(config)
    output_dir = config.train.output_dir / exp_name
    output_dir.mkdir(parents=True, exist_ok=True)

    logger = ExperimentLogger(output_dir=output_dir, experiment_name=exp_name)
    logger.log_config(config)

    print(f"{'=' * 60}")
    print(f"Implicit Scene Training")
    print(f"{'=' * 60}")
    print(f"Transforms: {config.data.transforms_path}")
    print(f"Experiment: {exp_name}")
    print(f"Output: {output_dir}")
    print(f"Device: {device}")

    dataset = load_dataset(config)
    print(f"Training images: {len(dataset)}")
    print(f"Resolution: {dataset.resolution} x {dataset.resolution}")

    trainer = Trainer(
        dataset,
        model_config=config.model,
        config=config.train,
        half_fov_x=config.rays.half_fov_x,
    )
    logger.log_model_info(trainer.model, "model")

    view = ViewCache(lambda: trainer.model, trainer.half_fov_x, dataset.resolution)
    view_pose = look_at_pose(config.view.eye, config.view.target, config.view.up)

    print(f"\n{'=' * 60}")
    print(f"Starting training for {config.train.num_steps:,} steps")
    print(f"{'=' * 60}\n")

    loss_meter = AverageMeter("loss")
    start_time = time.time()

    try:
        for it in range(1, config.train.num_steps + 1):
            step_start = time.time()
            result = trainer.train_step()
            if result is None:
                print("No training images registered, nothing to do")
                break
            step_time = time.time() - step_start

            if result.applied:
                loss_meter.update(result.loss)

            logger.log_training(TrainingMetrics(
                iteration=it,
                loss=result.loss,
                psnr=result.psnr,
                example_index=dataset[result.index].index,
                learning_rate=trainer.optimizer.param_groups[0]["lr"],
                time_per_iter=step_time,
                applied=result.applied,
            ))

            if it % config.train.log_every == 0:
                elapsed = time.time() - start_time
                print(
                    f"[{it:7d}/{config.train.num_steps}] "
                    f"loss: {loss_meter.avg:.5f} | "
                    f"psnr: {result.psnr:.2f} | "
                    f"time: {elapsed/60:.1f}min"
                )
                loss_meter.reset()

            if it % config.train.preview_every == 0:
                view.update_view(view_pose, same_input=view.field is not None)
                logger.log_preview("view", view.preview, it)

            if it % config.train.save_every == 0:
                path = output_dir / f"checkpoint_{it:07d}.pt"
                trainer.save_checkpoint(path, config)
                print(f"Saved checkpoint to {path}")

        # Final checkpoint
        final_path = output_dir / "checkpoint_latest.pt"
        trainer.save_checkpoint(final_path, config)
        print(f"Saved checkpoint to {final_path}")

        view.update_view(view_pose, same_input=view.field is not None)
        logger.log_preview("view_final", view.preview, trainer.step)

        logger.save_summary()
    finally:
        logger.close()

    total_time = time.time() - start_time
    print(f"\n{'=' * 60}")
    print(f"Training complete!")
    print(f"Total time: {total_time / 60:.2f} minutes")
    print(f"Results saved to: {output_dir}")
    print(f"{'=' * 60}")

    return trainer


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Train the implicit scene model on a Blender scene",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Train on the lego training split at 64x64
  python -m implicit_scene.train --transforms data/lego/transforms_train.json

  # Quick run on the first 10 images
  python -m implicit_scene.train --transforms data/lego/transforms_train.json --max_images 10 --num_steps 500
        """
    )

    # Data args
    parser.add_argument("--transforms", type=str, required=True,
                        help="Path to transforms_<split>.json")
    parser.add_argument("--max_images", type=int, default=None,
                        help="Only use the first N frames")
    parser.add_argument("--resolution", type=int, default=64,
                        help="Working resolution (rays per side)")

    # Model args
    parser.add_argument("--first_layer_limit", type=float, default=1.5,
                        help="Uniform bound for first-layer weights (1.5 to 2)")

    # Training args
    parser.add_argument("--num_steps", type=int, default=2000,
                        help="Number of training steps")
    parser.add_argument("--lr", type=float, default=0.01,
                        help="Learning rate")

    # Logging args
    parser.add_argument("--log_every", type=int, default=100,
                        help="Print training metrics every N steps")
    parser.add_argument("--preview_every", type=int, default=250,
                        help="Save a preview image every N steps")
    parser.add_argument("--save_every", type=int, default=1000,
                        help="Save checkpoint every N steps")

    # Output args
    parser.add_argument("--output_dir", type=str, default="outputs",
                        help="Output directory")
    parser.add_argument("--exp_name", type=str, default="auto",
                        help="Experiment name (default: auto-generated)")
    parser.add_argument("--plot", action="store_true",
                        help="Plot training curves when done")

    # Other args
    parser.add_argument("--device", type=str, default="cpu",
                        help="Device (cuda or cpu)")
    parser.add_argument("--seed", type=int, default=42,
                        help="Random seed")

    args = parser.parse_args()

    config = SceneConfig(
        model=ModelConfig(first_layer_limit=args.first_layer_limit),
        rays=RayConfig(resolution=args.resolution),
        data=DataConfig(
            transforms_path=Path(args.transforms),
            max_images=args.max_images,
        ),
        train=TrainConfig(
            lr=args.lr,
            num_steps=args.num_steps,
            log_every=args.log_every,
            preview_every=args.preview_every,
            save_every=args.save_every,
            output_dir=Path(args.output_dir),
            experiment_name=args.exp_name,
            device=args.device,
            seed=args.seed,
        ),
    )

    exp_dir = config.train.output_dir / resolve_experiment_name(config)
    trainer = train(config)

    if args.plot:
        from .visualize import plot_training_curves
        plot_training_curves(exp_dir, output_path=exp_dir / "training_curves.png", show=False)

    return trainer


if __name__ == "__main__":
    main()
