"""Typed parameter slots and the flattened-buffer layout.

All weights and biases of one VAE layer live in a single contiguous 1-D
buffer.  :class:`ParamLayout` slices that buffer into non-overlapping views
in the canonical order::

    encoder.0.weight, encoder.0.bias, ..., encoder.{n-1}.bias,
    latent.mean.weight, latent.mean.bias,
    latent.log_var.weight, latent.log_var.bias,
    decoder.0.weight, decoder.0.bias, ..., decoder.{m-1}.bias,
    output.weight, output.bias

The same layout is applied to the gradient buffer, so a gradient view and
its parameter view always share a name, a shape and an offset.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

import torch
from torch import Tensor

LATENT_MEAN = "latent.mean"
LATENT_LOG_VAR = "latent.log_var"
OUTPUT = "output"


def is_pretrain_eligible(name: str) -> bool:
    """Encoder and latent-mean parameters take part in pretrain-only
    gradients; log-variance, decoder and output parameters do not."""
    return name.startswith("encoder.") or name.startswith(LATENT_MEAN + ".")


def is_bias(name: str) -> bool:
    return name.endswith(".bias")


# ---------------------------------------------------------------------------
#  Typed slots
# ---------------------------------------------------------------------------

@dataclass
class DenseParams:
    """Weight ``[n_in, n_out]`` and row-vector bias ``[1, n_out]``."""

    weight: Tensor
    bias: Tensor


@dataclass
class VAEParams:
    """Every slot of the layer.  Used for parameters and gradients alike."""

    encoder: list[DenseParams]
    pzx_mean: DenseParams
    pzx_log_var: DenseParams
    decoder: list[DenseParams]
    pxz: DenseParams

    def named(self) -> Iterator[tuple[str, Tensor]]:
        for i, layer in enumerate(self.encoder):
            yield f"encoder.{i}.weight", layer.weight
            yield f"encoder.{i}.bias", layer.bias
        yield f"{LATENT_MEAN}.weight", self.pzx_mean.weight
        yield f"{LATENT_MEAN}.bias", self.pzx_mean.bias
        yield f"{LATENT_LOG_VAR}.weight", self.pzx_log_var.weight
        yield f"{LATENT_LOG_VAR}.bias", self.pzx_log_var.bias
        for j, layer in enumerate(self.decoder):
            yield f"decoder.{j}.weight", layer.weight
            yield f"decoder.{j}.bias", layer.bias
        yield f"{OUTPUT}.weight", self.pxz.weight
        yield f"{OUTPUT}.bias", self.pxz.bias

    def as_dict(self, eligible_only: bool = False) -> dict[str, Tensor]:
        return {
            name: t for name, t in self.named()
            if not eligible_only or is_pretrain_eligible(name)
        }

    @property
    def n_latent(self) -> int:
        return self.pzx_mean.weight.size(1)


# ---------------------------------------------------------------------------
#  Layout
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParamLayout:
    """Canonical ``(name, shape)`` list for one layer configuration."""

    n_encoder: int
    n_decoder: int
    shapes: tuple[tuple[str, tuple[int, int]], ...]

    @classmethod
    def build(
        cls,
        n_in: int,
        n_latent: int,
        encoder_layer_sizes: Sequence[int],
        decoder_layer_sizes: Sequence[int],
        n_dist_params: int,
    ) -> "ParamLayout":
        shapes: list[tuple[str, tuple[int, int]]] = []

        def dense(prefix: str, fan_in: int, fan_out: int) -> None:
            shapes.append((f"{prefix}.weight", (fan_in, fan_out)))
            shapes.append((f"{prefix}.bias", (1, fan_out)))

        fan_in = n_in
        for i, size in enumerate(encoder_layer_sizes):
            dense(f"encoder.{i}", fan_in, size)
            fan_in = size
        dense(LATENT_MEAN, fan_in, n_latent)
        dense(LATENT_LOG_VAR, fan_in, n_latent)

        fan_in = n_latent
        for j, size in enumerate(decoder_layer_sizes):
            dense(f"decoder.{j}", fan_in, size)
            fan_in = size
        dense(OUTPUT, fan_in, n_dist_params)

        return cls(len(encoder_layer_sizes), len(decoder_layer_sizes), tuple(shapes))

    def num_params(self, eligible_only: bool = False) -> int:
        return sum(
            r * c for name, (r, c) in self.shapes
            if not eligible_only or is_pretrain_eligible(name)
        )

    def check_length(self, flat: Tensor, what: str = "parameters") -> None:
        expected = self.num_params()
        if flat.numel() != expected:
            raise ValueError(
                f"Invalid {what} buffer: expected length {expected}, got length {flat.numel()}"
            )

    def views(self, flat: Tensor) -> VAEParams:
        """Slice *flat* into per-parameter views (no copies)."""
        self.check_length(flat)
        if flat.dim() != 1 or not flat.is_contiguous():
            raise ValueError("Parameter buffer must be a contiguous 1-D tensor")

        it = iter(self._slice(flat))

        def dense() -> DenseParams:
            return DenseParams(weight=next(it), bias=next(it))

        encoder = [dense() for _ in range(self.n_encoder)]
        pzx_mean = dense()
        pzx_log_var = dense()
        decoder = [dense() for _ in range(self.n_decoder)]
        pxz = dense()
        return VAEParams(encoder, pzx_mean, pzx_log_var, decoder, pxz)

    def _slice(self, flat: Tensor) -> Iterator[Tensor]:
        offset = 0
        for _, (r, c) in self.shapes:
            yield flat[offset:offset + r * c].view(r, c)
            offset += r * c


def init_params(
    params: VAEParams,
    generator: Optional[torch.Generator] = None,
) -> None:
    """Xavier-uniform weights and zero biases, written in place."""
    for name, t in params.named():
        if is_bias(name):
            torch.nn.init.zeros_(t)
        else:
            torch.nn.init.xavier_uniform_(t, generator=generator)
