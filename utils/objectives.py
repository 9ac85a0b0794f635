"""ELBO objective and L1/L2 regularization for the analytic VAE.

The score is *maximized*:

    score = (1/N) Σ log p(x|z)  +  (0.5/N) Σ (−μ² − σ² + log σ² + 1)  +  (L1 + L2)/N

The second term is the negated closed-form KL(N(μ, σ²) ‖ N(0, I)).

Regularization
--------------
    L2 = Σ_p ½ · λ₂(p) · ‖p‖²
    L1 = Σ_p λ₁(p) · ‖p‖₁

summed over the parameters whose coefficient is strictly positive, with
``λ(p)`` the weight or the bias coefficient depending on the parameter.
In pretrain-only contexts the sums are restricted to the pretrain-eligible
parameters.
"""

from __future__ import annotations

from dataclasses import dataclass

import torch
from torch import Tensor

from modules.params import VAEParams, is_bias, is_pretrain_eligible
from modules.reconstruction import ReconstructionDistribution


# ---------------------------------------------------------------------------
#  Regularization
# ---------------------------------------------------------------------------

@dataclass
class RegularizationConfig:
    use_regularization: bool = False
    l1: float = 0.0
    l2: float = 0.0
    l1_bias: float = 0.0
    l2_bias: float = 0.0

    def l1_for(self, name: str) -> float:
        if not self.use_regularization:
            return 0.0
        return self.l1_bias if is_bias(name) else self.l1

    def l2_for(self, name: str) -> float:
        if not self.use_regularization:
            return 0.0
        return self.l2_bias if is_bias(name) else self.l2


def _selected(params: VAEParams, eligible_only: bool):
    for name, t in params.named():
        if eligible_only and not is_pretrain_eligible(name):
            continue
        yield name, t


def calc_l2(params: VAEParams, reg: RegularizationConfig, eligible_only: bool = False) -> float:
    total = 0.0
    for name, t in _selected(params, eligible_only):
        coef = reg.l2_for(name)
        if coef <= 0.0:
            continue
        total += 0.5 * coef * float((t * t).sum())
    return total


def calc_l1(params: VAEParams, reg: RegularizationConfig, eligible_only: bool = False) -> float:
    total = 0.0
    for name, t in _selected(params, eligible_only):
        coef = reg.l1_for(name)
        if coef <= 0.0:
            continue
        total += coef * float(t.abs().sum())
    return total


def add_regularization_gradient(
    params: VAEParams,
    grads: VAEParams,
    reg: RegularizationConfig,
    scale: float,
    eligible_only: bool = False,
) -> None:
    """Add ``scale · (λ₁ sign(p) + λ₂ p)`` to each gradient view in place."""
    for (name, p), (_, g) in zip(_selected(params, eligible_only), _selected(grads, eligible_only)):
        l1 = reg.l1_for(name)
        l2 = reg.l2_for(name)
        if l1 > 0.0:
            g.add_(torch.sign(p), alpha=scale * l1)
        if l2 > 0.0:
            g.add_(p, alpha=scale * l2)


# ---------------------------------------------------------------------------
#  KL term (closed form, diagonal Gaussian vs. N(0, I))
# ---------------------------------------------------------------------------

def kl_term(mean: Tensor, sigma: Tensor, log_var: Tensor, batch_size: int) -> float:
    """``0.5/N · Σ (−μ² − σ² + log σ² + 1)`` over latent dims and batch.

    This is −KL averaged over the minibatch, i.e. the term that enters the
    ELBO with a plus sign.
    """
    t = -(mean * mean) - sigma * sigma + log_var + 1.0
    return 0.5 / batch_size * float(t.sum())


# ---------------------------------------------------------------------------
#  Combined ELBO score
# ---------------------------------------------------------------------------

def elbo_score(
    data: Tensor,
    dist_params: Tensor,
    distribution: ReconstructionDistribution,
    mean: Tensor,
    sigma: Tensor,
    log_var: Tensor,
    l1: float = 0.0,
    l2: float = 0.0,
) -> tuple[float, dict[str, float]]:
    """Score = log p(x|z) + (−KL) + (L1 + L2)/N.

    Parameters
    ----------
    data : Tensor — ``[B, n_in]``
    dist_params : Tensor
        Output projection of the decoder.
    distribution : ReconstructionDistribution
    mean, sigma, log_var : Tensor — ``[B, n_latent]``
    l1, l2 : float
        Unscaled penalties from :func:`calc_l1` / :func:`calc_l2`.

    Returns
    -------
    score : float
    components : dict
        ``{"log_px", "kl", "regularization"}`` for logging.
    """
    batch_size = data.size(0)
    log_px = distribution.log_probability(data, dist_params, True)
    kl = kl_term(mean, sigma, log_var, batch_size)
    regularization = (l1 + l2) / batch_size
    total = log_px + kl + regularization
    return total, {"log_px": log_px, "kl": kl, "regularization": regularization}
