"""Variational autoencoder layer with an exact, hand-derived gradient.

Combines:
  * A dense encoder stack and the Gaussian q(z|x) heads,
  * The reparameterization sampler (injectable noise source),
  * A dense decoder stack and the output projection onto the parameters
    of p(x|z),
  * The ELBO score and its analytic backward pass.

Two gradient modes:
  * ``compute_gradient_and_score`` — full VAE: gradient of the ELBO score
    w.r.t. every parameter.
  * ``backprop_gradient`` — pretrain-only: the layer acts as an encoder
    ``x → activation(μ)`` inside a larger model.  Only encoder and
    latent-mean parameters receive gradients; the other gradient views are
    zeroed once per backward session.

Parameters and gradients live in two flat buffers sharing one
:class:`modules.params.ParamLayout`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import torch
from torch import Tensor

from math_ops.noise import GaussianNoise, NoiseSource
from modules.latent_space import GaussianLatentSpace, LatentSample
from modules.layers import DenseStack, affine, write_dense_gradient
from modules.params import ParamLayout, VAEParams, init_params, is_pretrain_eligible
from modules.reconstruction import build_reconstruction
from utils.objectives import add_regularization_gradient, calc_l1, calc_l2, elbo_score
from .config import VAELayerConfig

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
#  Per-cycle and per-session state
# ---------------------------------------------------------------------------

@dataclass
class ForwardCache:
    """Activations of one forward pass, owned by one backward call."""

    input: Tensor
    encoder_pre_outs: list[Tensor]
    encoder_acts: list[Tensor]
    pzx_mean_pre: Tensor

    # Filled in by VariationalAutoencoder.compute_score
    latent: Optional[LatentSample] = None
    decoder_pre_outs: Optional[list[Tensor]] = None
    decoder_acts: Optional[list[Tensor]] = None
    dist_params: Optional[Tensor] = None

    consumed: bool = False

    @property
    def batch_size(self) -> int:
        return self.input.size(0)


@dataclass
class BackwardSession:
    # Non-eligible gradient views are zeroed on the first pretrain-only
    # backward call of a session, and never again within it.
    pretrain_gradients_zeroed: bool = False


# ---------------------------------------------------------------------------
#  Layer
# ---------------------------------------------------------------------------

class VariationalAutoencoder:
    """Dense VAE layer.

    Parameters
    ----------
    config : VAELayerConfig
    noise : NoiseSource, optional
        Source of ``eps`` for the reparameterization trick.  Defaults to a
        :class:`math_ops.noise.GaussianNoise` seeded with *seed*.
    params : Tensor, optional
        Flat parameter buffer to adopt as a view.  If omitted a buffer is
        allocated and Xavier-initialized.
    gradients : Tensor, optional
        Flat gradient buffer to adopt as a view.  Allocated if omitted.
    seed : int, optional
        Seeds parameter initialization and the default noise source.
    """

    def __init__(
        self,
        config: VAELayerConfig,
        noise: Optional[NoiseSource] = None,
        params: Optional[Tensor] = None,
        gradients: Optional[Tensor] = None,
        seed: Optional[int] = None,
    ):
        config.validate()
        self.config = config
        self.dtype = config.torch_dtype
        self.regularization = config.regularization

        self.distribution = build_reconstruction(
            config.reconstruction,
            activation=config.reconstruction_activation,
            variance=config.reconstruction_variance,
        )
        self.encoder = DenseStack(config.activation)
        self.latent = GaussianLatentSpace(config.pzx_activation)
        self.decoder = DenseStack(config.activation)
        self.noise = noise if noise is not None else GaussianNoise(seed)

        self.layout = ParamLayout.build(
            n_in=config.n_in,
            n_latent=config.n_latent,
            encoder_layer_sizes=config.encoder_layer_sizes,
            decoder_layer_sizes=config.decoder_layer_sizes,
            n_dist_params=self.distribution.distribution_input_size(config.n_in),
        )

        if params is None:
            params = torch.empty(self.layout.num_params(), dtype=self.dtype)
            self.set_params_view(params)
            generator = torch.Generator()
            if seed is None:
                generator.seed()
            else:
                generator.manual_seed(seed)
            init_params(self._params, generator)
        else:
            self.set_params_view(params)

        if gradients is None:
            gradients = torch.zeros(self.layout.num_params(), dtype=self.dtype)
        self.set_gradients_view(gradients)

        self._input: Optional[Tensor] = None
        self._score = 0.0
        self._components: dict[str, float] = {}
        self._gradient: Optional[dict[str, Tensor]] = None

    # ------------------------------------------------------------------
    #  Input
    # ------------------------------------------------------------------

    def set_input(self, x: Tensor) -> None:
        if x.dim() != 2 or x.size(1) != self.config.n_in:
            raise ValueError(
                f"Expected input of shape [batch, {self.config.n_in}], got {tuple(x.shape)}"
            )
        self._input = x.to(dtype=self.dtype)

    def input(self) -> Optional[Tensor]:
        return self._input

    def clear(self) -> None:
        self._input = None

    def batch_size(self) -> int:
        return self._require_input().size(0)

    def _require_input(self) -> Tensor:
        if self._input is None or self._input.numel() == 0:
            raise RuntimeError("Cannot do forward pass: no input set")
        return self._input

    # ------------------------------------------------------------------
    #  Parameter / gradient buffers
    # ------------------------------------------------------------------

    def params(self) -> Tensor:
        return self._flat_params

    def set_params(self, flat: Tensor) -> None:
        """Copy *flat* into the current parameter buffer."""
        if flat.numel() != self._flat_params.numel():
            raise ValueError(
                f"Cannot set parameters: expected parameters vector of length "
                f"{self._flat_params.numel()}, got length {flat.numel()}"
            )
        self._flat_params.copy_(flat.reshape(-1))

    def set_params_view(self, flat: Tensor) -> None:
        """Adopt *flat* as the parameter buffer (no copy)."""
        self.layout.check_length(flat, "parameters")
        self._params = self.layout.views(flat)
        self._flat_params = flat

    def set_gradients_view(self, flat: Tensor) -> None:
        """Adopt *flat* as the gradient buffer; starts a new backward session."""
        self.layout.check_length(flat, "gradients")
        self._grads = self.layout.views(flat)
        self._flat_gradients = flat
        self.reset_session()

    def reset_session(self) -> None:
        self.session = BackwardSession()

    def num_params(self, eligible_only: bool = False) -> int:
        return self.layout.num_params(eligible_only)

    def param_table(self) -> dict[str, Tensor]:
        return self._params.as_dict()

    def get_param(self, name: str) -> Tensor:
        table = self.param_table()
        if name not in table:
            raise ValueError(f"Unknown parameter '{name}'")
        return table[name]

    def gradient_views(self) -> VAEParams:
        return self._grads

    # ------------------------------------------------------------------
    #  Score / gradient accessors
    # ------------------------------------------------------------------

    def score(self) -> float:
        return self._score

    def score_components(self) -> dict[str, float]:
        return dict(self._components)

    def gradient(self) -> Optional[dict[str, Tensor]]:
        return self._gradient

    def gradient_flat(self) -> Tensor:
        return self._flat_gradients

    def gradient_and_score(self) -> tuple[Optional[dict[str, Tensor]], float]:
        return self.gradient(), self.score()

    def calc_l1(self, eligible_only: bool = False) -> float:
        return calc_l1(self._params, self.regularization, eligible_only)

    def calc_l2(self, eligible_only: bool = False) -> float:
        return calc_l2(self._params, self.regularization, eligible_only)

    # ------------------------------------------------------------------
    #  Forward
    # ------------------------------------------------------------------

    def forward(self) -> ForwardCache:
        """Encoder stack + latent-mean pre-activation for the current input."""
        x = self._require_input()
        pre_outs, acts = self.encoder.forward(x, self._params.encoder)
        mean_pre = self.latent.mean_pre_output(acts[-1], self._params.pzx_mean)
        return ForwardCache(x, pre_outs, acts, mean_pre)

    def pre_output(self, x: Optional[Tensor] = None) -> Tensor:
        """Latent mean pre-activation."""
        if x is not None:
            self.set_input(x)
        return self.forward().pzx_mean_pre

    def activate(self, x: Optional[Tensor] = None) -> Tensor:
        """Posterior mean after the latent activation (no sampling)."""
        return self.latent.activation.forward(self.pre_output(x))

    def compute_score(self, cache: ForwardCache) -> float:
        """Sample z, decode, and score the minibatch held by *cache*."""
        self._check_cache(cache)
        p = self._params
        h = cache.encoder_acts[-1]

        latent = self.latent.draw(h, p.pzx_mean, p.pzx_log_var, self.noise, mean_pre=cache.pzx_mean_pre)
        dec_pre, dec_acts = self.decoder.forward(latent.z, p.decoder)
        dist_params = affine(dec_acts[-1], p.pxz)

        self._score, self._components = elbo_score(
            data=cache.input,
            dist_params=dist_params,
            distribution=self.distribution,
            mean=latent.mean,
            sigma=latent.sigma,
            log_var=latent.log_var,
            l1=self.calc_l1(),
            l2=self.calc_l2(),
        )
        cache.latent = latent
        cache.decoder_pre_outs = dec_pre
        cache.decoder_acts = dec_acts
        cache.dist_params = dist_params

        log.debug(
            "score %.6f (log_px %.6f, kl %.6f, reg %.6f)",
            self._score,
            self._components["log_px"],
            self._components["kl"],
            self._components["regularization"],
        )
        return self._score

    # ------------------------------------------------------------------
    #  Backward (full VAE)
    # ------------------------------------------------------------------

    def backward(self, cache: ForwardCache) -> dict[str, Tensor]:
        """Exact gradient of the last score w.r.t. every parameter.

        Every chain-rule term is computed for the summed objective and the
        ``1/N`` minibatch scaling is applied once, when each gradient view
        is written.
        """
        self._check_cache(cache)
        if cache.latent is None:
            raise RuntimeError("Cannot backprop: score has not been computed for this forward pass")
        cache.consumed = True

        p, g = self._params, self._grads
        x = cache.input
        latent = cache.latent
        scale = 1.0 / cache.batch_size

        # Output projection → p(x|z) parameters
        d_dist = self.distribution.gradient(x, cache.dist_params)
        write_dense_gradient(g.pxz, cache.decoder_acts[-1], d_dist, scale)
        epsilon = d_dist.mm(p.pxz.weight.t())

        epsilon = self.decoder.backward(
            epsilon, latent.z, p.decoder, g.decoder,
            cache.decoder_pre_outs, cache.decoder_acts, scale,
        )
        epsilon = self.latent.backward(
            epsilon, cache.encoder_acts[-1], latent,
            p.pzx_mean, p.pzx_log_var, g.pzx_mean, g.pzx_log_var, scale,
        )
        self.encoder.backward(
            epsilon, x, p.encoder, g.encoder,
            cache.encoder_pre_outs, cache.encoder_acts, scale,
        )

        if self.config.regularization_in_gradient:
            add_regularization_gradient(p, g, self.regularization, scale)

        self._gradient = g.as_dict()
        return self._gradient

    def compute_gradient_and_score(self) -> None:
        cache = self.forward()
        self.compute_score(cache)
        self.backward(cache)

    # ------------------------------------------------------------------
    #  Backward (pretrain-only)
    # ------------------------------------------------------------------

    def backprop_gradient(self, epsilon: Tensor) -> tuple[dict[str, Tensor], Tensor]:
        """Backprop a downstream gradient through ``x → activation(μ)``.

        Parameters
        ----------
        epsilon : Tensor — ``[B, n_latent]``
            Gradient of the downstream objective w.r.t. :meth:`activate`.

        Returns
        -------
        gradient : dict
            Gradients of the pretrain-eligible parameters only.
        epsilon : Tensor — ``[B, n_in]``
            Gradient w.r.t. the layer input.
        """
        cache = self.forward()
        expected = (cache.batch_size, self.config.n_latent)
        if tuple(epsilon.shape) != expected:
            raise ValueError(f"Expected epsilon of shape {expected}, got {tuple(epsilon.shape)}")
        cache.consumed = True

        if not self.session.pretrain_gradients_zeroed:
            for name, view in self._grads.named():
                if not is_pretrain_eligible(name):
                    view.zero_()
            self.session.pretrain_gradients_zeroed = True

        p, g = self._params, self._grads
        epsilon = epsilon.to(dtype=self.dtype)
        epsilon = self.latent.backward_mean_only(
            epsilon, cache.encoder_acts[-1], cache.pzx_mean_pre, p.pzx_mean, g.pzx_mean,
        )
        epsilon = self.encoder.backward(
            epsilon, cache.input, p.encoder, g.encoder,
            cache.encoder_pre_outs, cache.encoder_acts,
        )

        if self.config.regularization_in_gradient:
            add_regularization_gradient(
                p, g, self.regularization, 1.0 / cache.batch_size, eligible_only=True,
            )
        return g.as_dict(eligible_only=True), epsilon

    # ------------------------------------------------------------------
    #  Guards
    # ------------------------------------------------------------------

    def _check_cache(self, cache: ForwardCache) -> None:
        if cache.consumed:
            raise RuntimeError("Forward cache already consumed by a backward pass; run forward again")
        if self._input is None or cache.batch_size != self._input.size(0):
            raise RuntimeError(
                "Stale forward cache: input changed since the forward pass; run forward again"
            )

    # ------------------------------------------------------------------
    #  Unsupported structural operations
    # ------------------------------------------------------------------

    def transpose(self):
        raise NotImplementedError("transpose is not supported by the VAE layer")

    def merge(self, other: "VariationalAutoencoder", batch_size: int):
        raise NotImplementedError("merge is not supported by the VAE layer")

    def clone(self):
        raise NotImplementedError("clone is not supported by the VAE layer")

    def update(self, gradient, param_type: Optional[str] = None):
        raise NotImplementedError("parameter updates belong to the external optimizer")

    def set_param(self, name: str, value: Tensor):
        raise NotImplementedError("set individual parameters through set_params / set_params_view")
