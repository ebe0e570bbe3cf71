"""
Metrics for implicit scene training.

Predictions and targets live in signed color space [-1, 1], so the
default peak value for PSNR is the full range width 2.
"""

from __future__ import annotations

import torch


def compute_mse(pred: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
    """Compute Mean Squared Error."""
    return torch.mean((pred - target) ** 2)


def compute_psnr(
    pred: torch.Tensor,
    target: torch.Tensor,
    max_val: float = 2.0,
) -> torch.Tensor:
    """
    Compute Peak Signal-to-Noise Ratio.

    Parameters
    ----------
    pred : torch.Tensor
        Predicted image.
    target : torch.Tensor
        Ground truth image.
    max_val : float
        Peak-to-peak value range (2.0 for [-1, 1] data).

    Returns
    -------
    torch.Tensor
        PSNR in dB.
    """
    mse = compute_mse(pred, target)
    if mse == 0:
        return torch.tensor(float('inf'))
    return 20.0 * torch.log10(torch.tensor(max_val)) - 10.0 * torch.log10(mse)


def is_finite(value) -> bool:
    """True if a scalar or tensor holds only finite values."""
    value = torch.as_tensor(value)
    return bool(torch.isfinite(value).all())
