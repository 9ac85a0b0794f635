"""Dense encoder/decoder stacks with a hand-derived backward pass.

The encoder maps the input minibatch to the last hidden representation
consumed by :class:`modules.latent_space.GaussianLatentSpace`; the decoder
maps a latent sample to the representation consumed by the output
projection.  Both are the same structure: a sequence of
``affine → activation`` layers sharing one activation function.

No autograd is involved.  The forward pass returns the pre-activations and
activations that :meth:`DenseStack.backward` needs, and the backward pass
writes gradients into caller-owned views.
"""

from __future__ import annotations

from typing import Sequence

import torch
from torch import Tensor

from math_ops.activations import Activation
from .params import DenseParams


def affine(x: Tensor, layer: DenseParams) -> Tensor:
    """``x · W + b`` with the row-vector bias broadcast over the batch."""
    return torch.addmm(layer.bias, x, layer.weight)


def write_dense_gradient(grad: DenseParams, act_in: Tensor, delta: Tensor, scale: float) -> None:
    """``grad W = scale · act_inᵀ · delta`` and ``grad b = scale · Σ_rows delta``.

    Overwrites the views; whatever they held before is ignored.
    """
    grad.weight.addmm_(act_in.t(), delta, beta=0.0, alpha=scale)
    grad.bias.copy_(delta.sum(dim=0, keepdim=True)).mul_(scale)


class DenseStack:
    """Sequential affine + activation layers.

    Parameters
    ----------
    activation : Activation
        Shared by every layer of the stack.
    """

    def __init__(self, activation: Activation | str):
        self.activation = Activation.parse(activation)

    # ------------------------------------------------------------------
    #  Forward
    # ------------------------------------------------------------------

    def forward(
        self,
        x: Tensor,
        layers: Sequence[DenseParams],
    ) -> tuple[list[Tensor], list[Tensor]]:
        """
        Parameters
        ----------
        x : Tensor — ``[B, n_in]``
        layers : sequence of DenseParams

        Returns
        -------
        pre_outs : list[Tensor]
            Affine outputs, one per layer.
        acts : list[Tensor]
            Activations, one per layer; ``acts[-1]`` is the stack output.
        """
        pre_outs: list[Tensor] = []
        acts: list[Tensor] = []
        current = x
        for layer in layers:
            pre = affine(current, layer)
            current = self.activation.forward(pre)
            pre_outs.append(pre)
            acts.append(current)
        return pre_outs, acts

    # ------------------------------------------------------------------
    #  Backward
    # ------------------------------------------------------------------

    def backward(
        self,
        epsilon: Tensor,
        x: Tensor,
        layers: Sequence[DenseParams],
        grads: Sequence[DenseParams],
        pre_outs: Sequence[Tensor],
        acts: Sequence[Tensor],
        scale: float = 1.0,
    ) -> Tensor:
        """Walk the stack in reverse.

        Parameters
        ----------
        epsilon : Tensor — ``[B, n_out]``
            Gradient of the objective w.r.t. the stack output.
        x : Tensor
            The stack input (the minibatch for the encoder, ``z`` for the
            decoder).
        grads : sequence of DenseParams
            Gradient views, same structure as *layers*.
        scale : float
            Multiplier applied to the parameter gradients when written.
            The returned epsilon is unscaled.

        Returns
        -------
        epsilon : Tensor — ``[B, n_in]``
            Gradient w.r.t. the stack input.
        """
        for i in range(len(layers) - 1, -1, -1):
            delta = epsilon * self.activation.derivative(pre_outs[i])
            act_in = x if i == 0 else acts[i - 1]
            write_dense_gradient(grads[i], act_in, delta, scale)
            epsilon = delta.mm(layers[i].weight.t())
        return epsilon
