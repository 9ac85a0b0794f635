"""Canonical parameter layout and flat-buffer views."""

from __future__ import annotations

import pytest
import torch

from modules.params import ParamLayout, init_params, is_pretrain_eligible


class TestParamLayout:

    def setup_method(self):
        self.layout = ParamLayout.build(
            n_in=6,
            n_latent=2,
            encoder_layer_sizes=[5, 3],
            decoder_layer_sizes=[3, 5],
            n_dist_params=6,
        )

    def test_canonical_order_and_shapes(self):
        assert list(self.layout.shapes) == [
            ("encoder.0.weight", (6, 5)),
            ("encoder.0.bias", (1, 5)),
            ("encoder.1.weight", (5, 3)),
            ("encoder.1.bias", (1, 3)),
            ("latent.mean.weight", (3, 2)),
            ("latent.mean.bias", (1, 2)),
            ("latent.log_var.weight", (3, 2)),
            ("latent.log_var.bias", (1, 2)),
            ("decoder.0.weight", (2, 3)),
            ("decoder.0.bias", (1, 3)),
            ("decoder.1.weight", (3, 5)),
            ("decoder.1.bias", (1, 5)),
            ("output.weight", (5, 6)),
            ("output.bias", (1, 6)),
        ]

    def test_num_params(self):
        expected = 30 + 5 + 15 + 3 + 6 + 2 + 6 + 2 + 6 + 3 + 15 + 5 + 30 + 6
        assert self.layout.num_params() == expected
        # encoder + latent mean only
        assert self.layout.num_params(eligible_only=True) == 30 + 5 + 15 + 3 + 6 + 2

    def test_views_match_layout_order(self):
        flat = torch.arange(self.layout.num_params(), dtype=torch.float64)
        params = self.layout.views(flat)
        names = [name for name, _ in params.named()]
        assert names == [name for name, _ in self.layout.shapes]
        for (name, t), (_, shape) in zip(params.named(), self.layout.shapes):
            assert tuple(t.shape) == shape, name

        # Offsets are contiguous and non-overlapping
        offset = 0
        for _, t in params.named():
            assert t.flatten()[0].item() == offset
            offset += t.numel()
        assert offset == flat.numel()

    def test_views_alias_buffer(self):
        flat = torch.zeros(self.layout.num_params())
        params = self.layout.views(flat)
        params.pzx_log_var.bias.fill_(7.0)

        assert flat.sum().item() == pytest.approx(14.0)
        # neighbours untouched
        assert params.pzx_log_var.weight.abs().sum().item() == 0.0
        assert params.decoder[0].weight.abs().sum().item() == 0.0

    def test_length_mismatch(self):
        with pytest.raises(ValueError, match="expected length"):
            self.layout.views(torch.zeros(self.layout.num_params() + 1))

    def test_requires_flat_buffer(self):
        n = self.layout.num_params()
        with pytest.raises(ValueError, match="contiguous 1-D"):
            self.layout.views(torch.zeros(1, n))

    def test_n_latent(self):
        params = self.layout.views(torch.zeros(self.layout.num_params()))
        assert params.n_latent == 2
        assert params.pzx_log_var.weight.size(1) == params.n_latent


class TestEligibility:

    @pytest.mark.parametrize(
        "name, eligible",
        [
            ("encoder.0.weight", True),
            ("encoder.3.bias", True),
            ("latent.mean.weight", True),
            ("latent.mean.bias", True),
            ("latent.log_var.weight", False),
            ("latent.log_var.bias", False),
            ("decoder.0.weight", False),
            ("output.bias", False),
        ],
    )
    def test_static_classification(self, name: str, eligible: bool):
        assert is_pretrain_eligible(name) is eligible


def test_init_params():
    layout = ParamLayout.build(10, 4, [20], [20], 10)
    flat = torch.full((layout.num_params(),), float("nan"))
    params = layout.views(flat)
    init_params(params, torch.Generator().manual_seed(0))

    assert not flat.isnan().any()
    for name, t in params.named():
        if name.endswith(".bias"):
            assert t.abs().sum().item() == 0.0, name
        else:
            bound = (6.0 / (t.size(0) + t.size(1))) ** 0.5
            assert t.abs().max().item() <= bound, name
            assert t.abs().sum().item() > 0.0, name


def test_init_params_reproducible_with_generator():
    layout = ParamLayout.build(10, 4, [20], [20], 10)
    a = torch.empty(layout.num_params())
    b = torch.empty(layout.num_params())
    init_params(layout.views(a), torch.Generator().manual_seed(7))
    init_params(layout.views(b), torch.Generator().manual_seed(7))
    assert torch.equal(a, b)
    assert a.abs().sum().item() > 0.0
