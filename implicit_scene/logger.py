"""
Experiment logging for implicit scene training.

Every step goes to a CSV file (read back by ``visualize.py``) and, when
available, to TensorBoard. Preview snapshots are written as PNGs and the run
ends with a JSON summary next to the dumped config.
"""

from __future__ import annotations

import csv
import json
import time
from dataclasses import dataclass, asdict, fields, is_dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import torch
from PIL import Image


@dataclass
class TrainingMetrics:
    """One row of the training log."""
    iteration: int
    loss: float
    psnr: float = 0.0
    example_index: int = -1
    learning_rate: float = 0.0
    time_per_iter: float = 0.0
    applied: bool = True


METRIC_FIELDS = [f.name for f in fields(TrainingMetrics)]


class TensorBoardLogger:
    """Lazily opened ``SummaryWriter``; silently off if tensorboard is missing."""

    def __init__(self, log_dir: Path):
        self.log_dir = log_dir
        self.writer = None
        self._available: Optional[bool] = None

    @property
    def available(self) -> bool:
        if self._available is None:
            try:
                from torch.utils.tensorboard import SummaryWriter
            except ImportError:
                print("TensorBoard not available. Install with: pip install tensorboard")
                self._available = False
            else:
                self.writer = SummaryWriter(str(self.log_dir))
                self._available = True
        return self._available

    def log_step(self, metrics: TrainingMetrics):
        # Skipped updates carry NaN and would break the curves
        if not metrics.applied or not self.available:
            return
        step = metrics.iteration
        self.writer.add_scalar("train/loss", metrics.loss, step)
        self.writer.add_scalar("train/psnr", metrics.psnr, step)
        self.writer.add_scalar("train/lr", metrics.learning_rate, step)

    def log_preview(self, tag: str, image: torch.Tensor, step: int):
        """``image`` is (H, W, C) in [0, 1]."""
        if self.available:
            self.writer.add_image(tag, image.permute(2, 0, 1), step)

    def close(self):
        if self.writer is not None:
            self.writer.close()
            self.writer = None


class MetricsCSV:
    """Append-only CSV with one column per ``TrainingMetrics`` field."""

    def __init__(self, path: Path):
        self.path = path
        self._handle = open(path, "w", newline="")
        self._writer = csv.DictWriter(self._handle, fieldnames=METRIC_FIELDS)
        self._writer.writeheader()

    def append(self, metrics: TrainingMetrics):
        self._writer.writerow(asdict(metrics))
        self._handle.flush()

    def close(self):
        if not self._handle.closed:
            self._handle.close()


class ExperimentLogger:
    """
    Output directory of one training run.

    Layout::

        <output_dir>/
            config.json
            summary.json
            logs/train_metrics.csv
            logs/tensorboard/
            images/<tag>_<step>.png

    Parameters
    ----------
    output_dir : Path
        Run directory, created if missing.
    experiment_name : str
        Stored in the summary.
    use_tensorboard : bool
        Mirror scalars and previews to TensorBoard.
    """

    def __init__(
        self,
        output_dir: Path,
        experiment_name: str = "experiment",
        use_tensorboard: bool = True,
    ):
        self.output_dir = Path(output_dir)
        self.logs_dir = self.output_dir / "logs"
        self.images_dir = self.output_dir / "images"
        for d in (self.output_dir, self.logs_dir, self.images_dir):
            d.mkdir(parents=True, exist_ok=True)

        self.csv = MetricsCSV(self.logs_dir / "train_metrics.csv")
        self.tb = TensorBoardLogger(self.logs_dir / "tensorboard") if use_tensorboard else None

        self.history: List[TrainingMetrics] = []
        self.num_previews = 0
        self.start_time = time.time()
        self.metadata: Dict[str, Any] = {
            "experiment_name": experiment_name,
            "start_time": datetime.now().isoformat(),
            "output_dir": str(self.output_dir),
        }

    def log_training(self, metrics: TrainingMetrics):
        self.history.append(metrics)
        self.csv.append(metrics)
        if self.tb is not None:
            self.tb.log_step(metrics)

    def log_preview(self, tag: str, image: torch.Tensor, iteration: int) -> Path:
        """Write a (H, W, C) preview in [0, 1] as PNG and return its path."""
        path = self.images_dir / f"{tag}_{iteration:07d}.png"
        save_image(image, path)
        self.num_previews += 1
        if self.tb is not None:
            self.tb.log_preview(f"{tag}/preview", image, iteration)
        return path

    def log_model_info(self, model: torch.nn.Module, name: str = "model"):
        from .model import count_parameters

        total = count_parameters(model)
        self.metadata[f"{name}_params"] = total
        self.metadata[f"{name}_layers"] = len(getattr(model, "layers", []))
        print(f"{name}: {total:,} trainable params")

    def log_config(self, config: Any):
        """Dump a (nested) dataclass config to ``config.json``."""
        config_dict = asdict(config) if is_dataclass(config) else dict(config)
        self.metadata["config"] = config_dict
        with open(self.output_dir / "config.json", "w") as f:
            json.dump(config_dict, f, indent=2, default=str)

    def summary(self) -> Dict[str, Any]:
        applied = [m for m in self.history if m.applied]
        summary = dict(self.metadata)
        summary.update({
            "end_time": datetime.now().isoformat(),
            "total_time_seconds": time.time() - self.start_time,
            "total_iterations": len(self.history),
            "skipped_updates": len(self.history) - len(applied),
            "num_previews": self.num_previews,
        })
        if applied:
            summary["final_loss"] = applied[-1].loss
            summary["best_loss"] = min(m.loss for m in applied)
            summary["final_psnr"] = applied[-1].psnr
        return summary

    def save_summary(self) -> Path:
        path = self.output_dir / "summary.json"
        with open(path, "w") as f:
            json.dump(self.summary(), f, indent=2, default=str)
        print(f"\nExperiment summary saved to {path}")
        return path

    def close(self):
        self.csv.close()
        if self.tb is not None:
            self.tb.close()


def save_image(img: torch.Tensor, path: Path):
    """Save an (H, W, C) tensor in [0, 1] as an 8-bit PNG."""
    pixels = (img.detach().cpu().numpy() * 255).round().clip(0, 255).astype(np.uint8)
    Image.fromarray(pixels).save(path)
