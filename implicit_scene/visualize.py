"""
Plots and image strips from implicit scene run directories.

Reads what ``ExperimentLogger`` writes: ``logs/train_metrics.csv``,
``summary.json`` and the ``images/`` snapshots.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

try:
    import matplotlib.pyplot as plt
    HAS_MATPLOTLIB = True
except ImportError:
    HAS_MATPLOTLIB = False

try:
    import pandas as pd
    HAS_PANDAS = True
except ImportError:
    HAS_PANDAS = False


def check_dependencies():
    missing = [name for name, ok in (("matplotlib", HAS_MATPLOTLIB), ("pandas", HAS_PANDAS)) if not ok]
    if missing:
        raise ImportError(f"Plotting requires: pip install {' '.join(missing)}")


def load_training_logs(exp_dir: Path) -> "pd.DataFrame":
    """Per-step metrics of one run, with ``applied`` as a bool column."""
    check_dependencies()
    csv_path = Path(exp_dir) / "logs" / "train_metrics.csv"
    if not csv_path.exists():
        raise FileNotFoundError(f"Training log not found: {csv_path}")
    df = pd.read_csv(csv_path)
    if "applied" in df.columns:
        df["applied"] = df["applied"].astype(str).str.lower() == "true"
    else:
        df["applied"] = True
    return df


def load_summary(exp_dir: Path) -> Dict[str, Any]:
    summary_path = Path(exp_dir) / "summary.json"
    if not summary_path.exists():
        raise FileNotFoundError(f"Summary not found: {summary_path}")
    with open(summary_path) as f:
        return json.load(f)


def smooth(data, window: int = 50):
    return pd.Series(data).rolling(window=window, min_periods=1).mean()


def _finish(fig, output_path: Optional[Path], show: bool):
    if output_path:
        fig.savefig(output_path, dpi=150, bbox_inches="tight")
        print(f"Saved figure to {output_path}")
    if show:
        plt.show()
    else:
        plt.close(fig)


def plot_training_curves(
    exp_dir: Path,
    output_path: Optional[Path] = None,
    show: bool = True,
    window: int = 50,
):
    """
    Loss, PSNR and step time of a single run.

    Steps rejected by the divergence guard are drawn as red ticks along the
    bottom of the loss panel.
    """
    check_dependencies()
    exp_dir = Path(exp_dir)
    df = load_training_logs(exp_dir)
    ok = df[df["applied"]]
    skipped = df[~df["applied"]]

    fig, (ax_loss, ax_psnr, ax_time) = plt.subplots(1, 3, figsize=(15, 4))
    fig.suptitle(f"Training: {exp_dir.name}", fontsize=14, fontweight="bold")

    ax_loss.plot(ok["iteration"], ok["loss"], color="tab:blue", alpha=0.2)
    ax_loss.plot(ok["iteration"], smooth(ok["loss"], window), color="tab:blue")
    if len(skipped) and len(ok):
        ax_loss.plot(skipped["iteration"], np.full(len(skipped), ok["loss"].min()),
                     "|", color="red", markersize=12, label=f"skipped ({len(skipped)})")
        ax_loss.legend()
    ax_loss.set_yscale("log")
    ax_loss.set_ylabel("MSE (signed RGBA)")

    ax_psnr.plot(ok["iteration"], smooth(ok["psnr"], window), color="tab:green")
    ax_psnr.set_ylabel("PSNR (dB)")

    ax_time.plot(df["iteration"], smooth(df["time_per_iter"] * 1000.0, window), color="tab:gray")
    ax_time.set_ylabel("ms / step")

    for ax in (ax_loss, ax_psnr, ax_time):
        ax.set_xlabel("Step")
        ax.grid(True, alpha=0.3)

    fig.tight_layout()
    _finish(fig, output_path, show)


def compare_experiments(
    exp_dirs: List[Path],
    metric: str = "loss",
    labels: Optional[List[str]] = None,
    output_path: Optional[Path] = None,
    show: bool = True,
):
    """
    Overlay one smoothed metric from several runs.

    Legend entries carry the final loss from each run's summary when one was
    saved.

    Parameters
    ----------
    exp_dirs : List[Path]
        Run directories.
    metric : str
        ``loss`` or ``psnr``.
    labels : List[str], optional
        Legend names, defaulting to the directory names.
    """
    check_dependencies()

    fig, ax = plt.subplots(figsize=(10, 6))
    for i, exp_dir in enumerate(map(Path, exp_dirs)):
        try:
            df = load_training_logs(exp_dir)
        except FileNotFoundError as e:
            print(f"Warning: {e}")
            continue
        df = df[df["applied"]]

        label = labels[i] if labels else exp_dir.name
        try:
            final = load_summary(exp_dir).get("final_loss")
        except FileNotFoundError:
            final = None
        if final is not None:
            label = f"{label} (final loss {final:.4f})"
        ax.plot(df["iteration"], smooth(df[metric]), label=label, alpha=0.8)

    ax.set_xlabel("Step")
    ax.set_ylabel(metric.upper())
    if metric == "loss":
        ax.set_yscale("log")
    ax.legend()
    ax.grid(True, alpha=0.3)
    _finish(fig, output_path, show)


def preview_strip(exp_dir: Path, tag: str = "view") -> np.ndarray:
    """Saved ``tag`` previews side by side, oldest first, as (R, R * N, 4) uint8."""
    from PIL import Image

    paths = sorted((Path(exp_dir) / "images").glob(f"{tag}_[0-9]*.png"))
    if not paths:
        raise FileNotFoundError(f"No '{tag}' previews in {exp_dir}")
    frames = []
    for p in paths:
        with Image.open(p) as img:
            frames.append(np.asarray(img.convert("RGBA")))
    return np.concatenate(frames, axis=1)


def main():
    import argparse
    from PIL import Image

    parser = argparse.ArgumentParser(description="Plot implicit scene training logs")
    parser.add_argument("exp_dirs", nargs="+", type=str,
                        help="Run directories")
    parser.add_argument("--metric", type=str, default="loss", choices=["loss", "psnr"],
                        help="Metric when comparing several runs")
    parser.add_argument("--output", type=str, default=None,
                        help="Save the figure here instead of showing it")
    parser.add_argument("--strip", type=str, default=None,
                        help="Also write the preview snapshots of the first run as one PNG strip")
    args = parser.parse_args()

    output = Path(args.output) if args.output else None
    if len(args.exp_dirs) == 1:
        plot_training_curves(Path(args.exp_dirs[0]), output_path=output, show=output is None)
    else:
        compare_experiments([Path(d) for d in args.exp_dirs], metric=args.metric,
                            output_path=output, show=output is None)

    if args.strip:
        Image.fromarray(preview_strip(Path(args.exp_dirs[0]))).save(args.strip)
        print(f"Saved preview strip to {args.strip}")


if __name__ == "__main__":
    main()
