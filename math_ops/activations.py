"""Elementwise nonlinearities with their analytic derivatives.

Every hidden layer of the VAE shares one :class:`Activation`, the latent
(``p(z|x)``) heads use a second one.  The derivative is always evaluated at
the **pre-activation**, which is what the backward pass caches.
"""

from __future__ import annotations

from enum import Enum

import torch
import torch.nn.functional as F
from torch import Tensor

_LEAKY_SLOPE = 0.01


class Activation(str, Enum):
    """Closed set of supported nonlinearities."""

    IDENTITY = "identity"
    SIGMOID = "sigmoid"
    TANH = "tanh"
    RELU = "relu"
    LEAKYRELU = "leakyrelu"
    SOFTPLUS = "softplus"
    ELU = "elu"

    @classmethod
    def parse(cls, name: str | "Activation") -> "Activation":
        if isinstance(name, Activation):
            return name
        try:
            return cls(name.lower())
        except ValueError:
            supported = ", ".join(a.value for a in cls)
            raise ValueError(
                f"Unknown activation function '{name}' (supported: {supported})"
            ) from None

    # ------------------------------------------------------------------
    #  Forward / derivative
    # ------------------------------------------------------------------

    def forward(self, x: Tensor) -> Tensor:
        if self is Activation.IDENTITY:
            return x.clone()
        if self is Activation.SIGMOID:
            return torch.sigmoid(x)
        if self is Activation.TANH:
            return torch.tanh(x)
        if self is Activation.RELU:
            return torch.relu(x)
        if self is Activation.LEAKYRELU:
            return F.leaky_relu(x, negative_slope=_LEAKY_SLOPE)
        if self is Activation.SOFTPLUS:
            return F.softplus(x)
        return F.elu(x)

    def derivative(self, pre: Tensor) -> Tensor:
        """d f(pre) / d pre, elementwise."""
        if self is Activation.IDENTITY:
            return torch.ones_like(pre)
        if self is Activation.SIGMOID:
            s = torch.sigmoid(pre)
            return s * (1.0 - s)
        if self is Activation.TANH:
            t = torch.tanh(pre)
            return 1.0 - t * t
        if self is Activation.RELU:
            return (pre > 0).to(pre.dtype)
        if self is Activation.LEAKYRELU:
            return torch.where(pre > 0, torch.ones_like(pre), torch.full_like(pre, _LEAKY_SLOPE))
        if self is Activation.SOFTPLUS:
            return torch.sigmoid(pre)
        # ELU (alpha = 1): exp(x) on the negative side
        return torch.where(pre > 0, torch.ones_like(pre), torch.exp(pre))
