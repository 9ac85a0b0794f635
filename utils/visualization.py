"""Visualization utilities for the analytic VAE.

Provides plots for:
  * The ELBO score (and its components) over training
  * The posterior means μ(x) in the first two latent dimensions
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import numpy as np
from torch import Tensor

try:
    import matplotlib

    matplotlib.use("Agg")  # non-interactive backend
    import matplotlib.pyplot as plt
    from matplotlib.figure import Figure

    HAS_MPL = True
except ImportError:
    HAS_MPL = False


def _require_mpl() -> None:
    if not HAS_MPL:
        raise ImportError("matplotlib is required for visualization utilities.")


# ---------------------------------------------------------------------------
#  Score history
# ---------------------------------------------------------------------------

def plot_score_history(
    history: dict[str, Sequence[float]],
    title: str = "ELBO during training",
    save_path: Optional[str | Path] = None,
) -> "Figure":
    """Line plot of per-epoch values.

    Parameters
    ----------
    history : dict
        ``{"score": [...], "log_px": [...], "kl": [...]}`` or any subset;
        one line per key.
    """
    _require_mpl()
    fig, ax = plt.subplots(figsize=(8, 4))
    for key, values in history.items():
        ax.plot(np.arange(1, len(values) + 1), np.asarray(values), label=key)
    ax.set_xlabel("Epoch")
    ax.set_ylabel("Value (higher is better)")
    ax.set_title(title)
    ax.legend()
    fig.tight_layout()
    if save_path:
        fig.savefig(str(save_path), dpi=150, bbox_inches="tight")
    return fig


# ---------------------------------------------------------------------------
#  Latent means
# ---------------------------------------------------------------------------

def plot_latent_means(
    mean: Tensor,
    title: str = "Posterior means",
    save_path: Optional[str | Path] = None,
) -> "Figure":
    """Scatter of μ(x) over the first two latent dimensions.

    Parameters
    ----------
    mean : Tensor — ``[N, n_latent]`` with ``n_latent ≥ 2``
    """
    _require_mpl()
    data = mean.detach().cpu().numpy()
    if data.ndim != 2 or data.shape[1] < 2:
        raise ValueError(f"Need at least 2 latent dimensions, got shape {data.shape}")

    fig, ax = plt.subplots(figsize=(5, 5))
    ax.scatter(data[:, 0], data[:, 1], s=6, alpha=0.6, color="steelblue")
    ax.axhline(0.0, color="grey", linewidth=0.5)
    ax.axvline(0.0, color="grey", linewidth=0.5)
    ax.set_xlabel("z₀")
    ax.set_ylabel("z₁")
    ax.set_title(title)
    fig.tight_layout()
    if save_path:
        fig.savefig(str(save_path), dpi=150, bbox_inches="tight")
    return fig
