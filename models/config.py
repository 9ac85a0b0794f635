"""Structured configuration of one analytic VAE layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import torch

from math_ops.activations import Activation
from utils.objectives import RegularizationConfig

_DTYPES = {"float32": torch.float32, "float64": torch.float64}


@dataclass
class VAELayerConfig:
    # Shapes
    n_in: int = 128
    n_latent: int = 16
    encoder_layer_sizes: List[int] = field(default_factory=lambda: [256])
    decoder_layer_sizes: List[int] = field(default_factory=lambda: [256])

    # Nonlinearities
    activation: str = "tanh"            # every encoder/decoder hidden layer
    pzx_activation: str = "identity"    # latent mean / log-variance heads

    # p(x|z)
    reconstruction: str = "gaussian"    # "gaussian" or "bernoulli"
    reconstruction_activation: Optional[str] = None
    reconstruction_variance: Optional[float] = None  # None → learned log σ²

    # Regularization
    use_regularization: bool = False
    l1: float = 0.0
    l2: float = 0.0
    l1_bias: float = 0.0
    l2_bias: float = 0.0
    regularization_in_gradient: bool = False  # else applied by the updater (weight decay)

    dtype: str = "float32"

    def validate(self) -> None:
        if self.n_in <= 0 or self.n_latent <= 0:
            raise ValueError(
                f"n_in and n_latent must be positive, got n_in={self.n_in}, n_latent={self.n_latent}"
            )
        for label, sizes in (("encoder", self.encoder_layer_sizes), ("decoder", self.decoder_layer_sizes)):
            if len(sizes) == 0:
                raise ValueError(f"At least one {label} layer is required")
            if any(s <= 0 for s in sizes):
                raise ValueError(f"{label} layer sizes must be positive, got {list(sizes)}")
        Activation.parse(self.activation)
        Activation.parse(self.pzx_activation)
        if self.dtype not in _DTYPES:
            raise ValueError(f"Unsupported dtype '{self.dtype}' (supported: {', '.join(_DTYPES)})")

    @property
    def torch_dtype(self) -> torch.dtype:
        return _DTYPES[self.dtype]

    @property
    def regularization(self) -> RegularizationConfig:
        return RegularizationConfig(
            use_regularization=self.use_regularization,
            l1=self.l1,
            l2=self.l2,
            l1_bias=self.l1_bias,
            l2_bias=self.l2_bias,
        )
