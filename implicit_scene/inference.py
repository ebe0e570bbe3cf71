"""
Inference script for trained implicit scene models.

Load a checkpoint and:
- Render a preview from a look-at camera
- Render an orbit around the scene as PNG frames and an animated GIF
"""

from __future__ import annotations

import argparse
import math
from pathlib import Path
from typing import List, Tuple

import torch
from PIL import Image

from .config import ModelConfig
from .model import ImplicitSceneModel
from .rays import get_ray_field
from .logger import save_image
from .utils import look_at_pose, orbit_pose


def load_checkpoint(
    checkpoint_path: Path,
    device: str = "cpu",
) -> Tuple[ImplicitSceneModel, dict]:
    """
    Load a checkpoint written by ``Trainer.save_checkpoint``.

    Returns
    -------
    model : ImplicitSceneModel
        The model with loaded weights, in eval mode.
    checkpoint : dict
        The raw checkpoint (step, half_fov_x, resolution, configs).
    """
    checkpoint = torch.load(checkpoint_path, map_location=device)

    cfg = dict(checkpoint.get("model_config", {}))
    if "hidden_widths" in cfg:
        cfg["hidden_widths"] = tuple(cfg["hidden_widths"])
    model = ImplicitSceneModel(ModelConfig(**cfg)).to(device)
    model.load_state_dict(checkpoint["model"])
    model.eval()

    return model, checkpoint


def render_preview(
    model: ImplicitSceneModel,
    pose: torch.Tensor,
    half_fov_x: float,
    resolution: int,
) -> torch.Tensor:
    """Render one unjittered view as an (R, R, 4) image in [0, 1]."""
    field = get_ray_field(pose, half_fov_x, resolution)
    pred = model.predict(field)
    return torch.clamp((pred + 1.0) / 2.0, 0.0, 1.0).cpu()


def render_orbit(
    model: ImplicitSceneModel,
    half_fov_x: float,
    resolution: int,
    num_frames: int = 60,
    radius: float = 4.0,
) -> List[torch.Tensor]:
    """Render ``num_frames`` views along one full orbit."""
    frames = []
    for i in range(num_frames):
        t = 2.0 * math.pi * i / num_frames
        frames.append(render_preview(model, orbit_pose(t, radius), half_fov_x, resolution))
    return frames


def save_gif(frames: List[torch.Tensor], path: Path, fps: int = 20, scale: int = 4):
    """Write frames as an animated GIF, upscaled with nearest-neighbour."""
    images = []
    for frame in frames:
        img_np = (frame.numpy() * 255).round().clip(0, 255).astype("uint8")
        img = Image.fromarray(img_np).convert("RGB")
        if scale != 1:
            img = img.resize((img.width * scale, img.height * scale), Image.NEAREST)
        images.append(img)
    images[0].save(
        path,
        save_all=True,
        append_images=images[1:],
        duration=int(1000 / fps),
        loop=0,
    )


def main():
    parser = argparse.ArgumentParser(description="Render previews from a trained implicit scene model")
    parser.add_argument("--checkpoint", type=str, required=True,
                        help="Path to checkpoint .pt file")
    parser.add_argument("--output_dir", type=str, default="renders",
                        help="Where to write images")
    parser.add_argument("--eye", type=float, nargs=3, default=[0.0, -5.0, 5.0],
                        help="Camera position for the still preview")
    parser.add_argument("--resolution", type=int, default=None,
                        help="Render resolution (default: training resolution)")
    parser.add_argument("--orbit", action="store_true",
                        help="Also render an orbit sequence")
    parser.add_argument("--num_frames", type=int, default=60,
                        help="Frames in the orbit")
    parser.add_argument("--radius", type=float, default=4.0,
                        help="Orbit radius")
    parser.add_argument("--device", type=str, default="cpu")

    args = parser.parse_args()

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    model, checkpoint = load_checkpoint(Path(args.checkpoint), device=args.device)
    half_fov_x = checkpoint["half_fov_x"]
    resolution = args.resolution or checkpoint["resolution"]
    print(f"Loaded checkpoint at step {checkpoint.get('step', 0)} "
          f"(half fov {half_fov_x:.4f} rad, {resolution}x{resolution})")

    still = render_preview(model, look_at_pose(args.eye), half_fov_x, resolution)
    still_path = output_dir / "preview.png"
    save_image(still, still_path)
    print(f"Saved {still_path}")

    if args.orbit:
        frames = render_orbit(model, half_fov_x, resolution, args.num_frames, args.radius)
        frames_dir = output_dir / "orbit"
        frames_dir.mkdir(exist_ok=True)
        for i, frame in enumerate(frames):
            save_image(frame, frames_dir / f"frame_{i:04d}.png")
        gif_path = output_dir / "orbit.gif"
        save_gif(frames, gif_path)
        print(f"Saved {len(frames)} orbit frames and {gif_path}")


if __name__ == "__main__":
    main()
