"""Analytic activation derivatives vs. torch.autograd."""

from __future__ import annotations

import pytest
import torch

from math_ops.activations import Activation


@pytest.mark.parametrize("activation", list(Activation))
def test_derivative_matches_autograd(activation: Activation):
    torch.manual_seed(0)
    x = torch.randn(6, 5, dtype=torch.float64, requires_grad=True)

    y = activation.forward(x)
    y.sum().backward()

    analytic = activation.derivative(x.detach())
    assert analytic.shape == x.shape
    assert torch.allclose(analytic, x.grad, atol=1e-12), (
        f"{activation.value}: max err {(analytic - x.grad).abs().max().item():.3e}"
    )


def test_forward_known_values():
    x = torch.tensor([[-1.0, 0.0, 2.0]])
    assert torch.equal(Activation.IDENTITY.forward(x), x)
    assert torch.equal(Activation.RELU.forward(x), torch.tensor([[0.0, 0.0, 2.0]]))
    assert torch.allclose(Activation.SIGMOID.forward(torch.zeros(1)), torch.tensor([0.5]))


def test_identity_forward_does_not_alias_input():
    x = torch.ones(2, 2)
    y = Activation.IDENTITY.forward(x)
    y.add_(1.0)
    assert torch.equal(x, torch.ones(2, 2))


class TestParse:
    def test_case_insensitive(self):
        assert Activation.parse("Sigmoid") is Activation.SIGMOID
        assert Activation.parse("tanh") is Activation.TANH

    def test_passthrough(self):
        assert Activation.parse(Activation.ELU) is Activation.ELU

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown activation"):
            Activation.parse("swishy")
