"""The analytic-gradient VAE layer and its configuration."""

from .config import VAELayerConfig
from .vae import VariationalAutoencoder, ForwardCache, BackwardSession

__all__ = ["VAELayerConfig", "VariationalAutoencoder", "ForwardCache", "BackwardSession"]
