"""Utility functions (objectives, regularization, visualization)."""

from .objectives import (
    RegularizationConfig,
    elbo_score,
    kl_term,
    calc_l1,
    calc_l2,
    add_regularization_gradient,
)

__all__ = [
    "RegularizationConfig",
    "elbo_score",
    "kl_term",
    "calc_l1",
    "calc_l2",
    "add_regularization_gradient",
]
