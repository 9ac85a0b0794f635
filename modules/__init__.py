"""Building blocks of the analytic VAE.

Typed parameter slots and the flat-buffer layout, dense encoder/decoder
stacks, the Gaussian latent space (reparameterization sampler), and the
reconstruction distributions p(x|z).
"""

from .params import DenseParams, VAEParams, ParamLayout, init_params, is_pretrain_eligible
from .layers import DenseStack
from .latent_space import GaussianLatentSpace, LatentSample
from .reconstruction import (
    ReconstructionDistribution,
    GaussianReconstruction,
    BernoulliReconstruction,
    build_reconstruction,
)

__all__ = [
    "DenseParams",
    "VAEParams",
    "ParamLayout",
    "init_params",
    "is_pretrain_eligible",
    "DenseStack",
    "GaussianLatentSpace",
    "LatentSample",
    "ReconstructionDistribution",
    "GaussianReconstruction",
    "BernoulliReconstruction",
    "build_reconstruction",
]
