"""Reconstruction distributions p(x|z).

The output projection of the decoder produces *distribution parameters*;
a :class:`ReconstructionDistribution` turns them into a log-likelihood score
for the true data, and into the gradient of that score w.r.t. the
parameters.

Conventions
-----------
* :meth:`log_probability` sums over all elements, then divides by the batch
  size when ``average=True``.
* :meth:`gradient` is the gradient of the **summed** log-probability.  The
  layer applies the ``1/N`` minibatch scaling itself, once, for every term of
  the objective.
"""

from __future__ import annotations

import math
from typing import Optional, Protocol

import torch
import torch.nn.functional as F
from torch import Tensor

from math_ops.activations import Activation

_LOG_2PI = math.log(2.0 * math.pi)
_PROB_EPS = 1e-12


class ReconstructionDistribution(Protocol):
    def distribution_input_size(self, data_size: int) -> int: ...

    def log_probability(self, data: Tensor, dist_params: Tensor, average: bool = True) -> float: ...

    def gradient(self, data: Tensor, dist_params: Tensor) -> Tensor: ...


# ---------------------------------------------------------------------------
#  Gaussian
# ---------------------------------------------------------------------------

class GaussianReconstruction:
    """Diagonal Gaussian p(x|z).

    Parameters
    ----------
    activation : str
        Applied to the mean half of the parameters.
    variance : float, optional
        If given, the variance is fixed and the decoder outputs only the
        means (``n_in`` parameters).  Otherwise the decoder outputs
        ``[mean | log σ²]`` (``2 · n_in`` parameters).
    """

    def __init__(self, activation: str = "identity", variance: Optional[float] = None):
        if variance is not None and variance <= 0.0:
            raise ValueError(f"Gaussian variance must be > 0, got {variance}")
        self.activation = Activation.parse(activation)
        self.variance = variance

    def distribution_input_size(self, data_size: int) -> int:
        return data_size if self.variance is not None else 2 * data_size

    def _split(self, data: Tensor, dist_params: Tensor) -> tuple[Tensor, Optional[Tensor]]:
        n = data.size(1)
        if dist_params.size(1) != self.distribution_input_size(n):
            raise ValueError(
                f"Expected {self.distribution_input_size(n)} distribution parameters "
                f"for data of width {n}, got {dist_params.size(1)}"
            )
        if self.variance is not None:
            return dist_params, None
        return dist_params[:, :n], dist_params[:, n:]

    def log_probability(self, data: Tensor, dist_params: Tensor, average: bool = True) -> float:
        mean_pre, log_var = self._split(data, dist_params)
        mean = self.activation.forward(mean_pre)
        sq = (data - mean) ** 2
        if log_var is None:
            v = self.variance
            logp = -0.5 * (_LOG_2PI + math.log(v)) * data.numel() - 0.5 * sq.sum() / v
        else:
            logp = -0.5 * (_LOG_2PI * data.numel() + log_var.sum() + (sq * torch.exp(-log_var)).sum())
        logp = float(logp)
        return logp / data.size(0) if average else logp

    def gradient(self, data: Tensor, dist_params: Tensor) -> Tensor:
        mean_pre, log_var = self._split(data, dist_params)
        mean = self.activation.forward(mean_pre)
        diff = data - mean
        if log_var is None:
            return diff / self.variance * self.activation.derivative(mean_pre)

        inv_var = torch.exp(-log_var)
        d_mean = diff * inv_var * self.activation.derivative(mean_pre)
        d_log_var = 0.5 * (diff * diff * inv_var - 1.0)
        return torch.cat([d_mean, d_log_var], dim=1)


# ---------------------------------------------------------------------------
#  Bernoulli
# ---------------------------------------------------------------------------

class BernoulliReconstruction:
    """Independent Bernoulli p(x|z) for data in [0, 1].

    With the default sigmoid activation the parameters are logits and the
    stable form ``x·a − softplus(a)`` is used.  Any other activation must map
    into (0, 1); probabilities are clamped away from the boundary.
    """

    def __init__(self, activation: str = "sigmoid"):
        self.activation = Activation.parse(activation)

    def distribution_input_size(self, data_size: int) -> int:
        return data_size

    def _check(self, data: Tensor, dist_params: Tensor) -> None:
        if dist_params.shape != data.shape:
            raise ValueError(
                f"Expected distribution parameters of shape {tuple(data.shape)}, "
                f"got {tuple(dist_params.shape)}"
            )

    def log_probability(self, data: Tensor, dist_params: Tensor, average: bool = True) -> float:
        self._check(data, dist_params)
        if self.activation is Activation.SIGMOID:
            logp = (data * dist_params - F.softplus(dist_params)).sum()
        else:
            p = self.activation.forward(dist_params).clamp(_PROB_EPS, 1.0 - _PROB_EPS)
            logp = (data * torch.log(p) + (1.0 - data) * torch.log1p(-p)).sum()
        logp = float(logp)
        return logp / data.size(0) if average else logp

    def gradient(self, data: Tensor, dist_params: Tensor) -> Tensor:
        self._check(data, dist_params)
        if self.activation is Activation.SIGMOID:
            return data - torch.sigmoid(dist_params)
        raw = self.activation.forward(dist_params)
        p = raw.clamp(_PROB_EPS, 1.0 - _PROB_EPS)
        d_p = data / p - (1.0 - data) / (1.0 - p)
        # Clamped entries do not depend on the parameters
        inside = (raw >= _PROB_EPS) & (raw <= 1.0 - _PROB_EPS)
        return d_p * self.activation.derivative(dist_params) * inside


# ---------------------------------------------------------------------------
#  Factory
# ---------------------------------------------------------------------------

def build_reconstruction(
    name: str,
    activation: Optional[str] = None,
    variance: Optional[float] = None,
) -> ReconstructionDistribution:
    """Build a reconstruction distribution from its config name."""
    name = name.lower()
    if name == "gaussian":
        return GaussianReconstruction(activation=activation or "identity", variance=variance)
    if name == "bernoulli":
        return BernoulliReconstruction(activation=activation or "sigmoid")
    raise ValueError(f"Unknown reconstruction distribution '{name}' (supported: gaussian, bernoulli)")
