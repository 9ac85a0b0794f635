"""Noise sources for the reparameterization trick.

The sampler never draws from the global RNG: randomness is an injected
capability so that a forward/backward cycle can be replayed exactly.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

import torch
from torch import Tensor


class NoiseSource(Protocol):
    def sample(
        self,
        shape: Sequence[int],
        dtype: torch.dtype,
        device: torch.device,
    ) -> Tensor: ...


class GaussianNoise:
    """Standard-normal draws from a private :class:`torch.Generator`.

    Parameters
    ----------
    seed : int, optional
        Initial seed.  If ``None`` the generator is seeded non-deterministically.
    device : str
        Device the generator lives on (CPU by default).
    """

    def __init__(self, seed: Optional[int] = None, device: str = "cpu"):
        self._generator = torch.Generator(device=device)
        if seed is None:
            self._generator.seed()
        else:
            self._generator.manual_seed(seed)

    def manual_seed(self, seed: int) -> "GaussianNoise":
        self._generator.manual_seed(seed)
        return self

    def sample(self, shape, dtype, device) -> Tensor:
        eps = torch.randn(
            tuple(shape), generator=self._generator, dtype=dtype,
            device=self._generator.device,
        )
        return eps.to(device)


class FixedNoise:
    """Replays the same ``eps`` on every call."""

    def __init__(self, eps: Tensor):
        self.eps = eps

    def sample(self, shape, dtype, device) -> Tensor:
        if tuple(self.eps.shape) != tuple(shape):
            raise ValueError(
                f"Fixed noise has shape {tuple(self.eps.shape)}, "
                f"but the latent sample needs {tuple(shape)}"
            )
        return self.eps.to(dtype=dtype, device=device)
