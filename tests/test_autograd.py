"""Tests for ChainObjfFunction and chain_loss."""

import pytest
import torch

from torch_lfmmi.autograd import chain_loss
from torch_lfmmi.objective import compute_chain_objf_and_deriv, compute_kl_objf_and_deriv
from torch_lfmmi.options import ChainTrainingOptions
from torch_lfmmi.supervision import Supervision


class TestChainLoss:
    def test_loss_and_gradient(self, den_graph, supervision, nnet_output):
        opts = ChainTrainingOptions(l2_regularize=0.01)
        x = nnet_output.clone().requires_grad_(True)

        loss = chain_loss(x, supervision, den_graph, opts)
        loss.backward()

        deriv = torch.empty_like(nnet_output)
        result = compute_chain_objf_and_deriv(opts, den_graph, supervision, nnet_output, deriv)

        assert loss.dim() == 0
        assert loss.item() == pytest.approx(-(result.objf + result.l2_term) / result.weight)
        torch.testing.assert_close(x.grad, -deriv / result.weight)

    def test_gradcheck(self, den_graph, supervision, nnet_output):
        opts = ChainTrainingOptions(l2_regularize=0.01)
        x = nnet_output.clone().requires_grad_(True)
        assert torch.autograd.gradcheck(
            lambda inp: chain_loss(inp, supervision, den_graph, opts), (x,)
        )

    def test_xent_output(self, den_graph, supervision, nnet_output):
        opts = ChainTrainingOptions(xent_regularize=0.1)
        x = nnet_output.clone().requires_grad_(True)
        xent_output = torch.log_softmax(nnet_output * 0.5, dim=1).requires_grad_(True)

        loss = chain_loss(x, supervision, den_graph, opts, xent_output=xent_output)
        loss.backward()

        deriv = torch.empty_like(nnet_output)
        xent_deriv = torch.empty_like(nnet_output)
        result = compute_chain_objf_and_deriv(
            opts, den_graph, supervision, nnet_output, deriv, xent_deriv
        )
        xent_objf = float((xent_output.detach() * xent_deriv).sum())

        assert loss.item() == pytest.approx(-(result.objf + 0.1 * xent_objf) / result.weight)
        torch.testing.assert_close(x.grad, -deriv / result.weight)
        torch.testing.assert_close(xent_output.grad, -0.1 * xent_deriv / result.weight)

    def test_gradcheck_xent_output(self, den_graph, supervision, nnet_output):
        opts = ChainTrainingOptions(xent_regularize=0.25)
        xent_output = torch.log_softmax(nnet_output, dim=1).requires_grad_(True)
        assert torch.autograd.gradcheck(
            lambda xo: chain_loss(nnet_output, supervision, den_graph, opts, xent_output=xo),
            (xent_output,),
        )

    def test_smbr_loss_includes_mmi_part(self, den_graph, supervision, nnet_output):
        opts = ChainTrainingOptions(use_smbr_objective=True, mmi_factor=1.0, smbr_factor=0.0)
        smbr_loss = chain_loss(nnet_output, supervision, den_graph, opts)
        mmi_loss = chain_loss(nnet_output, supervision, den_graph, ChainTrainingOptions())
        assert smbr_loss.item() == pytest.approx(mmi_loss.item(), rel=1e-10)

    def test_failed_minibatch(self, den_graph, supervision, nnet_output):
        """A non-finite minibatch gives the constant penalty and zero gradients."""
        x = nnet_output.clone()
        x[1, 1] = float("nan")
        x.requires_grad_(True)

        loss = chain_loss(x, supervision, den_graph)
        loss.backward()

        assert loss.item() == pytest.approx(10.0)
        assert torch.count_nonzero(x.grad) == 0

    def test_zero_weight(self, den_graph, make_supervision, nnet_output):
        x = nnet_output.clone().requires_grad_(True)
        loss = chain_loss(x, make_supervision(weight=0.0), den_graph)
        loss.backward()

        assert loss.item() == 0.0
        assert torch.count_nonzero(x.grad) == 0

    def test_default_options(self, den_graph, supervision, nnet_output):
        loss = chain_loss(nnet_output, supervision, den_graph)
        assert torch.isfinite(loss)
        assert loss.dtype == nnet_output.dtype


def _soft_targets(shape):
    generator = torch.Generator().manual_seed(5)
    logits = torch.randn(shape, dtype=torch.float64, generator=generator)
    return torch.softmax(logits, dim=1)


class TestChainLossSoftTargets:
    def test_loss_includes_target_term(self, den_graph, nnet_output):
        targets = _soft_targets(nnet_output.shape)
        supervision = Supervision.from_targets(targets, 2, 3, weight=1.5)
        opts = ChainTrainingOptions()

        loss = chain_loss(nnet_output, supervision, den_graph, opts)

        result = compute_kl_objf_and_deriv(opts, den_graph, supervision, nnet_output)
        target_term = 1.5 * float((targets * nnet_output).sum())
        assert loss.item() == pytest.approx(-(result.objf + target_term) / result.weight)

    def test_gradcheck(self, den_graph, nnet_output):
        supervision = Supervision.from_targets(_soft_targets(nnet_output.shape), 2, 3)
        opts = ChainTrainingOptions(l2_regularize=0.01)
        x = nnet_output.clone().requires_grad_(True)
        assert torch.autograd.gradcheck(
            lambda inp: chain_loss(inp, supervision, den_graph, opts), (x,)
        )
