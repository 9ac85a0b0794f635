"""Gradient checks for the analytic VAE backward pass.

The analytic gradient of the ELBO score is compared against
1. a central finite-difference gradient of the score itself, and
2. an independent torch.autograd implementation of the same forward graph.

All checks run in float64 with a fixed ε so the score is a deterministic
function of the parameters.
"""

from __future__ import annotations

import pytest
import torch
import torch.distributions as dist

from math_ops.noise import FixedNoise
from models.config import VAELayerConfig
from models.vae import VariationalAutoencoder


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

_TORCH_ACT = {
    "identity": lambda t: t,
    "sigmoid": torch.sigmoid,
    "tanh": torch.tanh,
    "softplus": torch.nn.functional.softplus,
}


def _make_layer(cfg: VAELayerConfig, batch: int, seed: int = 0, binary: bool = False):
    gen = torch.Generator().manual_seed(seed)
    eps = torch.randn(batch, cfg.n_latent, generator=gen, dtype=torch.float64)
    layer = VariationalAutoencoder(cfg, noise=FixedNoise(eps), seed=seed)
    # Random (non-zero) biases so every parameter gets a non-trivial check
    layer.params().copy_(0.5 * torch.randn(layer.num_params(), generator=gen, dtype=torch.float64))
    if binary:
        x = (torch.rand(batch, cfg.n_in, generator=gen, dtype=torch.float64) > 0.5).to(torch.float64)
    else:
        x = torch.randn(batch, cfg.n_in, generator=gen, dtype=torch.float64)
    layer.set_input(x)
    return layer, x, eps


def _numeric_gradient(layer: VariationalAutoencoder, h: float = 1e-6) -> torch.Tensor:
    """Central finite differences of the score w.r.t. every flat parameter."""
    flat = layer.params().clone()
    grad = torch.zeros_like(flat)
    for i in range(flat.numel()):
        orig = flat[i].item()

        flat[i] = orig + h
        layer.set_params(flat)
        layer.compute_gradient_and_score()
        f_plus = layer.score()

        flat[i] = orig - h
        layer.set_params(flat)
        layer.compute_gradient_and_score()
        f_minus = layer.score()

        flat[i] = orig
        grad[i] = (f_plus - f_minus) / (2 * h)
    layer.set_params(flat)
    return grad


def _autograd_score(layer: VariationalAutoencoder, x: torch.Tensor, eps: torch.Tensor):
    """Same graph as the layer, Gaussian p(x|z) with unit variance, via autograd."""
    cfg = layer.config
    f = _TORCH_ACT[cfg.activation]
    g = _TORCH_ACT[cfg.pzx_activation]

    leaf = layer.params().detach().clone().requires_grad_(True)
    p = layer.layout.views(leaf)

    h = x
    for d in p.encoder:
        h = f(h @ d.weight + d.bias)
    mean = g(h @ p.pzx_mean.weight + p.pzx_mean.bias)
    log_var = g(h @ p.pzx_log_var.weight + p.pzx_log_var.bias)
    sigma = torch.exp(0.5 * log_var)
    z = mean + sigma * eps

    out = z
    for d in p.decoder:
        out = f(out @ d.weight + d.bias)
    out = out @ p.pxz.weight + p.pxz.bias

    n = x.size(0)
    log_px = dist.Normal(out, 1.0).log_prob(x).sum() / n
    kl = dist.kl_divergence(
        dist.Normal(mean, sigma), dist.Normal(torch.zeros_like(mean), torch.ones_like(mean))
    ).sum() / n
    score = log_px - kl
    score.backward()
    return score.item(), leaf.grad


def _assert_close(analytic: torch.Tensor, reference: torch.Tensor, layer: VariationalAutoencoder,
                  rtol: float = 1e-4, atol: float = 1e-7) -> None:
    offset = 0
    for name, (r, c) in layer.layout.shapes:
        a = analytic[offset:offset + r * c]
        ref = reference[offset:offset + r * c]
        assert torch.allclose(a, ref, rtol=rtol, atol=atol), (
            f"{name}: max abs err {(a - ref).abs().max().item():.3e}"
        )
        offset += r * c


# ---------------------------------------------------------------------------
#  Tests
# ---------------------------------------------------------------------------

GRADIENT_CHECK_CONFIGS = [
    # Small identity-activation network with unit-variance Gaussian p(x|z)
    dict(activation="identity", pzx_activation="identity",
         reconstruction="gaussian", reconstruction_variance=1.0),
    dict(activation="sigmoid", pzx_activation="identity",
         reconstruction="gaussian", reconstruction_variance=1.0),
    dict(activation="tanh", pzx_activation="tanh",
         reconstruction="gaussian", reconstruction_variance=None),
    dict(activation="softplus", pzx_activation="identity",
         reconstruction="bernoulli"),
]


class TestFiniteDifference:

    @pytest.mark.parametrize("overrides", GRADIENT_CHECK_CONFIGS)
    def test_full_gradient(self, overrides: dict):
        cfg = VAELayerConfig(
            n_in=4, n_latent=2,
            encoder_layer_sizes=[4, 3], decoder_layer_sizes=[3, 4],
            dtype="float64", **overrides,
        )
        layer, _, _ = _make_layer(cfg, batch=5, binary=cfg.reconstruction == "bernoulli")

        layer.compute_gradient_and_score()
        analytic = layer.gradient_flat().clone()

        numeric = _numeric_gradient(layer)
        _assert_close(analytic, numeric, layer)

    def test_with_regularization_in_gradient(self):
        cfg = VAELayerConfig(
            n_in=4, n_latent=2,
            encoder_layer_sizes=[3], decoder_layer_sizes=[3],
            activation="sigmoid", reconstruction_variance=1.0,
            use_regularization=True, l1=0.01, l2=0.05, l1_bias=0.02, l2_bias=0.03,
            regularization_in_gradient=True, dtype="float64",
        )
        layer, _, _ = _make_layer(cfg, batch=3, seed=4)

        layer.compute_gradient_and_score()
        analytic = layer.gradient_flat().clone()
        assert layer.score_components()["regularization"] > 0.0

        numeric = _numeric_gradient(layer)
        _assert_close(analytic, numeric, layer)


class TestAutogradReference:

    @pytest.mark.parametrize("activation, pzx_activation", [
        ("identity", "identity"),
        ("sigmoid", "identity"),
        ("tanh", "sigmoid"),
    ])
    def test_matches_autograd(self, activation: str, pzx_activation: str):
        cfg = VAELayerConfig(
            n_in=6, n_latent=3,
            encoder_layer_sizes=[5, 4, 3], decoder_layer_sizes=[3, 5],
            activation=activation, pzx_activation=pzx_activation,
            reconstruction="gaussian", reconstruction_variance=1.0,
            dtype="float64",
        )
        layer, x, eps = _make_layer(cfg, batch=7, seed=2)

        layer.compute_gradient_and_score()
        ref_score, ref_grad = _autograd_score(layer, x, eps)

        assert layer.score() == pytest.approx(ref_score, rel=1e-10)
        _assert_close(layer.gradient_flat(), ref_grad, layer, rtol=1e-9, atol=1e-12)

    def test_pretrain_gradient_matches_autograd(self):
        cfg = VAELayerConfig(
            n_in=5, n_latent=3,
            encoder_layer_sizes=[4, 4], decoder_layer_sizes=[4],
            activation="tanh", pzx_activation="sigmoid",
            reconstruction_variance=1.0, dtype="float64",
        )
        layer, x, _ = _make_layer(cfg, batch=6, seed=9)
        upstream = torch.randn(6, 3, generator=torch.Generator().manual_seed(1), dtype=torch.float64)

        gradient, epsilon_in = layer.backprop_gradient(upstream)

        leaf = layer.params().detach().clone().requires_grad_(True)
        x_leaf = x.clone().requires_grad_(True)
        p = layer.layout.views(leaf)
        h = x_leaf
        for d in p.encoder:
            h = torch.tanh(h @ d.weight + d.bias)
        activated_mean = torch.sigmoid(h @ p.pzx_mean.weight + p.pzx_mean.bias)
        (activated_mean * upstream).sum().backward()

        ref = layer.layout.views(leaf.grad).as_dict(eligible_only=True)
        assert list(gradient) == list(ref)
        for name, g in gradient.items():
            assert torch.allclose(g, ref[name], rtol=1e-10, atol=1e-12), name
        assert torch.allclose(epsilon_in, x_leaf.grad, rtol=1e-10, atol=1e-12)
