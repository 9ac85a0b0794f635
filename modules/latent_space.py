"""Gaussian latent space q(z|x) with the reparameterization trick.

Orchestrates:
  1. Parameter heads (last encoder activation → mean, log σ²)
  2. Sampling  z = μ + σ ⊙ ε,  ε ~ N(0, I),  σ = sqrt(exp(log σ²))
  3. The analytic backward pass through the sample *and* the closed-form
     KL term against the N(0, I) prior
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import torch
from torch import Tensor

from math_ops.activations import Activation
from math_ops.noise import NoiseSource
from .layers import affine, write_dense_gradient
from .params import DenseParams


@dataclass
class LatentSample:
    """Everything the backward pass needs from one latent draw."""

    mean_pre: Tensor
    log_var_pre: Tensor
    mean: Tensor
    log_var: Tensor
    sigma: Tensor
    eps: Tensor
    z: Tensor


class GaussianLatentSpace:
    """Diagonal-Gaussian posterior heads.

    Parameters
    ----------
    activation : Activation
        Applied to both the mean and the log-variance pre-activations
        (``identity`` is the usual choice).
    """

    def __init__(self, activation: Activation | str = Activation.IDENTITY):
        self.activation = Activation.parse(activation)

    # ------------------------------------------------------------------
    #  Forward
    # ------------------------------------------------------------------

    def mean_pre_output(self, h: Tensor, mean_params: DenseParams) -> Tensor:
        return affine(h, mean_params)

    @staticmethod
    def sample(mean: Tensor, sigma: Tensor, eps: Tensor) -> Tensor:
        """Reparameterized draw ``z = mean + sigma ⊙ eps``."""
        return mean + sigma * eps

    def draw(
        self,
        h: Tensor,
        mean_params: DenseParams,
        log_var_params: DenseParams,
        noise: NoiseSource,
        mean_pre: Optional[Tensor] = None,
    ) -> LatentSample:
        """
        Parameters
        ----------
        h : Tensor — ``[B, n_hidden]``
            Last encoder activation.
        noise : NoiseSource
            Provides ``eps`` with the shape of the mean.
        mean_pre : Tensor, optional
            Mean pre-activation if the caller already computed it.

        Returns
        -------
        LatentSample
        """
        if mean_pre is None:
            mean_pre = self.mean_pre_output(h, mean_params)
        log_var_pre = affine(h, log_var_params)

        mean = self.activation.forward(mean_pre)
        log_var = self.activation.forward(log_var_pre)
        sigma = torch.sqrt(torch.exp(log_var))

        eps = noise.sample(mean.shape, dtype=mean.dtype, device=mean.device)
        z = self.sample(mean, sigma, eps)
        return LatentSample(mean_pre, log_var_pre, mean, log_var, sigma, eps, z)

    # ------------------------------------------------------------------
    #  Backward
    # ------------------------------------------------------------------

    def backward(
        self,
        dl_dz: Tensor,
        h: Tensor,
        latent: LatentSample,
        mean_params: DenseParams,
        log_var_params: DenseParams,
        mean_grads: DenseParams,
        log_var_grads: DenseParams,
        scale: float = 1.0,
    ) -> Tensor:
        """Backprop through the sample and the KL term.

        With the summed objective
        ``Σ log p(x|z) + ½ Σ (−μ² − σ² + log σ² + 1)``:

        * ``dL/dμ      = dL/dz − μ``
        * ``dL/dlog σ² = ½ (dL/dz ⊙ ε ⊙ σ − σ² + 1)``

        Returns the gradient w.r.t. *h* (unscaled).
        """
        dl_dmean = dl_dz - latent.mean
        dl_dlog_var = 0.5 * (dl_dz * latent.eps * latent.sigma - latent.sigma * latent.sigma + 1.0)

        dl_dpre_mean = dl_dmean * self.activation.derivative(latent.mean_pre)
        dl_dpre_log_var = dl_dlog_var * self.activation.derivative(latent.log_var_pre)

        write_dense_gradient(mean_grads, h, dl_dpre_mean, scale)
        write_dense_gradient(log_var_grads, h, dl_dpre_log_var, scale)

        epsilon = dl_dpre_mean.mm(mean_params.weight.t())
        epsilon.addmm_(dl_dpre_log_var, log_var_params.weight.t())
        return epsilon

    def backward_mean_only(
        self,
        epsilon: Tensor,
        h: Tensor,
        mean_pre: Tensor,
        mean_params: DenseParams,
        mean_grads: DenseParams,
        scale: float = 1.0,
    ) -> Tensor:
        """Backprop an upstream gradient w.r.t. the activated mean.

        Used when the layer acts as a plain encoder inside a larger model:
        neither the sampler, the KL term nor the log-variance head is part
        of that graph.
        """
        delta = epsilon * self.activation.derivative(mean_pre)
        write_dense_gradient(mean_grads, h, delta, scale)
        return delta.mm(mean_params.weight.t())
