"""Elementwise math capabilities for the analytic VAE.

Activation functions with closed-form derivatives, and the injectable noise
sources consumed by the reparameterization sampler.
"""

from .activations import Activation
from .noise import NoiseSource, GaussianNoise, FixedNoise

__all__ = [
    "Activation",
    "NoiseSource",
    "GaussianNoise",
    "FixedNoise",
]
