"""Hydra-configurable training script for the analytic VAE layer.

The layer computes the ELBO score and its exact gradient; the update rule
is an ordinary ``torch.optim.Adam`` (``maximize=True``) driving the layer's
flat parameter buffer.

Usage
-----
    python train.py                              # defaults
    python train.py n_latent=2 lr=1e-3           # override via CLI
    python train.py encoder_layer_sizes=[256,64] # deeper encoder
    python train.py --cfg job                    # print resolved config
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import torch
from torch.utils.data import DataLoader, TensorDataset

import hydra
from hydra.core.config_store import ConfigStore
from omegaconf import DictConfig, OmegaConf

from math_ops.noise import GaussianNoise
from models.config import VAELayerConfig
from models.vae import VariationalAutoencoder
from utils.visualization import HAS_MPL, plot_latent_means, plot_score_history

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
#  Hydra structured config
# ---------------------------------------------------------------------------

@dataclass
class TrainConfig:
    # Data
    input_length: int = 64
    n_samples: int = 2000
    batch_size: int = 64

    # Architecture
    n_latent: int = 8
    encoder_layer_sizes: List[int] = field(default_factory=lambda: [128, 64])
    decoder_layer_sizes: List[int] = field(default_factory=lambda: [64, 128])
    activation: str = "tanh"
    pzx_activation: str = "identity"
    reconstruction: str = "gaussian"
    reconstruction_variance: Optional[float] = None  # None → learned log σ²

    # Regularization
    use_regularization: bool = False
    l1: float = 0.0
    l2: float = 0.0
    regularization_in_gradient: bool = False  # False → l2 applied as Adam weight decay

    # Training
    lr: float = 1e-3
    epochs: int = 200
    clip_norm: float = 5.0

    # Misc
    seed: int = 42
    log_every: int = 10
    save_dir: str = "./checkpoints"


# ---------------------------------------------------------------------------
#  Toy data generator — continuous sinusoids
# ---------------------------------------------------------------------------

def make_toy_data(
    n_samples: int = 2000,
    length: int = 64,
    n_components: int = 3,
    seed: int = 0,
) -> TensorDataset:
    """Sum of *n_components* sinusoids per example, scaled to ~[-1, 1]."""
    rng = torch.Generator().manual_seed(seed)
    t = torch.linspace(0, 2 * torch.pi, length)

    signals = []
    for _ in range(n_samples):
        freqs = torch.randint(1, 8, (n_components,), generator=rng).float()
        amps = torch.rand(n_components, generator=rng) + 0.3
        phases = torch.rand(n_components, generator=rng) * 2 * torch.pi
        sig = sum(a * torch.sin(f * t + p) for a, f, p in zip(amps, freqs, phases))
        signals.append(sig)

    # Max theoretical amplitude ≈ 3 × 1.3 = 3.9.  Divide by 4.
    X = torch.stack(signals) / 4.0  # [N, T]
    return TensorDataset(X)


def build_layer(cfg: TrainConfig) -> VariationalAutoencoder:
    layer_cfg = VAELayerConfig(
        n_in=cfg.input_length,
        n_latent=cfg.n_latent,
        encoder_layer_sizes=list(cfg.encoder_layer_sizes),
        decoder_layer_sizes=list(cfg.decoder_layer_sizes),
        activation=cfg.activation,
        pzx_activation=cfg.pzx_activation,
        reconstruction=cfg.reconstruction,
        reconstruction_variance=cfg.reconstruction_variance,
        use_regularization=cfg.use_regularization,
        l1=cfg.l1,
        l2=cfg.l2,
        regularization_in_gradient=cfg.regularization_in_gradient,
    )
    return VariationalAutoencoder(layer_cfg, noise=GaussianNoise(cfg.seed), seed=cfg.seed)


# ---------------------------------------------------------------------------
#  Training loop
# ---------------------------------------------------------------------------

def train(cfg: TrainConfig) -> dict[str, list[float]]:
    if cfg.use_regularization and cfg.regularization_in_gradient:
        # The penalty enters the maximized score with a + sign, so its
        # gradient would push weights away from zero under maximize=True.
        raise ValueError(
            "regularization_in_gradient is not supported by the maximizing Adam loop; "
            "leave it False so l2 is applied as weight decay"
        )
    torch.manual_seed(cfg.seed)

    dataset = make_toy_data(n_samples=cfg.n_samples, length=cfg.input_length, seed=cfg.seed)
    loader = DataLoader(dataset, batch_size=cfg.batch_size, shuffle=True)

    layer = build_layer(cfg)
    params = layer.params()
    log.info(f"VAE layer: {layer.num_params()} parameters "
             f"({layer.num_params(eligible_only=True)} pretrain-eligible)")

    weight_decay = cfg.l2 if cfg.use_regularization and not cfg.regularization_in_gradient else 0.0
    optimizer = torch.optim.Adam([params], lr=cfg.lr, weight_decay=weight_decay, maximize=True)

    history: dict[str, list[float]] = {"score": [], "log_px": [], "kl": []}
    Path(cfg.save_dir).mkdir(parents=True, exist_ok=True)

    for epoch in range(1, cfg.epochs + 1):
        totals = {key: 0.0 for key in history}

        for (batch_x,) in loader:
            layer.set_input(batch_x)
            layer.compute_gradient_and_score()

            params.grad = layer.gradient_flat()
            torch.nn.utils.clip_grad_norm_([params], max_norm=cfg.clip_norm)
            optimizer.step()

            components = layer.score_components()
            totals["score"] += layer.score()
            totals["log_px"] += components["log_px"]
            totals["kl"] += components["kl"]

        n_batches = len(loader)
        for key in history:
            history[key].append(totals[key] / n_batches)

        if epoch % cfg.log_every == 0 or epoch == 1:
            log.info(
                f"Epoch {epoch:4d} | "
                f"score {history['score'][-1]:.4f} | "
                f"log p(x|z) {history['log_px'][-1]:.4f} | "
                f"-KL {history['kl'][-1]:.4f}"
            )

    # ---- Save ----------------------------------------------------------
    ckpt_path = Path(cfg.save_dir) / "vae_params_final.pt"
    torch.save(params.detach().clone(), ckpt_path)
    log.info(f"Saved parameters → {ckpt_path}")

    if HAS_MPL:
        plot_score_history(history, save_path=Path(cfg.save_dir) / "score_history.png")
        if cfg.n_latent >= 2:
            means = layer.activate(dataset.tensors[0])
            plot_latent_means(means, save_path=Path(cfg.save_dir) / "latent_means.png")
    return history


# ---------------------------------------------------------------------------
#  Hydra entry-point
# ---------------------------------------------------------------------------

cs = ConfigStore.instance()
cs.store(name="train", node=TrainConfig)


@hydra.main(config_path=None, config_name="train", version_base="1.3")
def main(cfg: DictConfig) -> None:
    train_cfg: TrainConfig = OmegaConf.to_object(cfg)  # type: ignore[assignment]
    train(train_cfg)


if __name__ == "__main__":
    main()
