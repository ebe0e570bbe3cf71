"""
Coordinate network for the implicit scene (PyTorch).

A small sine-activated MLP maps a per-pixel ray description
(localized origin + unit direction) straight to an RGBA prediction
in signed color space [-1, 1]. Every pixel goes through the same dense
layers, so a whole ray field is evaluated in one batched call.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import List

import torch
import torch.nn as nn

from .config import ModelConfig


class ActivationKind(Enum):
    SINE = "sine"
    TANH = "tanh"
    IDENTITY = "identity"


def apply_activation(kind: ActivationKind, x: torch.Tensor) -> torch.Tensor:
    if kind is ActivationKind.SINE:
        return torch.sin(x)
    if kind is ActivationKind.TANH:
        return torch.tanh(x)
    if kind is ActivationKind.IDENTITY:
        return x
    raise ValueError(f"Unknown activation: {kind!r}")


class ImplicitSceneModel(nn.Module):
    """
    Per-pixel coordinate network.

    Architecture:
    - 6 -> 32 -> 64 -> 32 dense layers, each followed by sin(.)
    - 32 -> 4 output layer followed by tanh, giving RGBA in [-1, 1]

    Initialization is not the PyTorch default:
    - first layer weights ~ U(-limit, limit), limit in [1.5, 2]
    - later weights are He-uniform (fan-in)
    - all biases ~ U(-pi, pi) so neuron phases are decorrelated

    Parameters
    ----------
    config : ModelConfig
        Configuration for the model architecture.
    """

    def __init__(self, config: ModelConfig | None = None) -> None:
        super().__init__()
        if config is None:
            config = ModelConfig()
        self.config = config

        widths = [config.in_features, *config.hidden_widths, config.out_features]
        self.layers = nn.ModuleList(
            nn.Linear(w_in, w_out) for w_in, w_out in zip(widths[:-1], widths[1:])
        )
        self.activations: List[ActivationKind] = (
            [ActivationKind.SINE] * len(config.hidden_widths) + [ActivationKind.TANH]
        )

        self.reset_parameters()

    @torch.no_grad()
    def reset_parameters(self) -> None:
        """Draw a fresh set of weights and biases."""
        limit = self.config.first_layer_limit
        for i, layer in enumerate(self.layers):
            if i == 0:
                nn.init.uniform_(layer.weight, -limit, limit)
            else:
                # bound = sqrt(6 / fan_in)
                nn.init.kaiming_uniform_(layer.weight, a=0.0, mode="fan_in", nonlinearity="relu")
            nn.init.uniform_(layer.bias, -math.pi, math.pi)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Parameters
        ----------
        x : torch.Tensor
            Ray field of shape (..., 6).

        Returns
        -------
        torch.Tensor
            RGBA prediction of shape (..., 4) in [-1, 1].
        """
        h = x
        for layer, kind in zip(self.layers, self.activations):
            h = apply_activation(kind, layer(h))
        return h

    @torch.no_grad()
    def predict(self, field: torch.Tensor) -> torch.Tensor:
        """Inference on a ray field without recording gradients."""
        field = field.to(self.layers[0].weight.device, dtype=torch.float32)
        return self.forward(field)


def create_model(config: ModelConfig | None = None, device: str = "cpu") -> ImplicitSceneModel:
    """Build a freshly initialized model on ``device``."""
    return ImplicitSceneModel(config).to(device)


def count_parameters(model: nn.Module) -> int:
    return sum(p.numel() for p in model.parameters())
