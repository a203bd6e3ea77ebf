r"""Denominator forward-backward: probability mass of all competing paths.

All sequences of a minibatch share the :class:`~torch_lfmmi.graph.DenominatorGraph`.
Each sequence starts from the graph's initial distribution, every state is
final, and leaky smoothing is applied with ``opts.leaky_hmm_coefficient``.

The log-likelihoods returned by :meth:`DenominatorComputation.forward` are
unweighted; the caller passes the supervision weight as the scale of the
backward pass.
"""

import logging

import torch
from torch import Tensor

from .graph import DenominatorGraph
from .options import ChainTrainingOptions
from .scan import (
    as_log_likelihood,
    expected_accuracy,
    expected_accuracy_scan,
    forward_scan,
    frames_view,
    posterior_mass_ok,
    posteriors,
    total_log_likelihood,
)

logger = logging.getLogger(__name__)

__all__ = ["DenominatorComputation", "DenominatorSmbrComputation"]


class DenominatorComputation:
    """Forward-backward over the denominator graph.

    Args:
        opts (ChainTrainingOptions): provides ``leaky_hmm_coefficient``.
        den_graph (DenominatorGraph): shared competing-path graph.
        num_sequences (int): sequences in the minibatch.
        nnet_output (Tensor): score matrix, read only.
    """

    def __init__(
        self,
        opts: ChainTrainingOptions,
        den_graph: DenominatorGraph,
        num_sequences: int,
        nnet_output: Tensor,
    ):
        self.opts = opts
        self.den_graph = den_graph
        self.num_sequences = num_sequences
        self.nnet_output = nnet_output
        self._frames = None
        self._logprob = None

    def _prepare(self):
        dtype, device = self.nnet_output.dtype, self.nnet_output.device
        graph = self.den_graph.fst.to(device=device, dtype=dtype)
        log_init = self.den_graph.log_initial_probs(dtype=dtype, device=device)
        alpha0 = log_init.unsqueeze(0).expand(self.num_sequences, -1)
        frames = frames_view(self.nnet_output, self.num_sequences).detach().requires_grad_(True)
        return graph, log_init, alpha0, frames

    def forward(self) -> float:
        """Total (unweighted) log-likelihood over all sequences."""
        graph, log_init, alpha0, frames = self._prepare()
        with torch.enable_grad():
            alpha = forward_scan(
                frames,
                graph,
                alpha0,
                leaky_coefficient=self.opts.leaky_hmm_coefficient,
                log_init=log_init,
            )
            self._logprob = total_log_likelihood(alpha, graph.final)
        self._frames = frames
        return float(as_log_likelihood(self._logprob).sum())

    def backward(self, deriv_weight: float, nnet_output_deriv: Tensor) -> bool:
        r"""Add ``deriv_weight`` times the denominator posteriors to ``nnet_output_deriv``.

        Returns:
            ``False`` if the posteriors are not finite or some frame's posterior
            mass is not one, which signals an unstable normalization. Nothing is
            written when the posteriors are not finite.
        """
        if self._logprob is None:
            self.forward()
        with torch.enable_grad():
            post = posteriors(self._logprob.sum(), self._frames)
        ok = posterior_mass_ok(post)
        if bool(torch.isfinite(post).all()):
            nnet_output_deriv.add_(post.reshape_as(nnet_output_deriv), alpha=deriv_weight)
        return ok


class DenominatorSmbrComputation(DenominatorComputation):
    r"""Denominator pass of the sMBR objective.

    The accuracy of emitting pdf ``p`` on row ``r`` is ``num_posteriors[r, p]``
    (after any silence adjustment), and the objective is the expected accuracy
    under the denominator posterior, interpolated with the MMI denominator term:

    .. math::
        \text{smbr\_factor} \sum_b E_b[\text{acc}] \;-\; \text{mmi\_factor} \sum_b \log Z_b

    Args:
        num_posteriors (Tensor): numerator posteriors, same shape as ``nnet_output``;
          treated as a constant.
    """

    def __init__(
        self,
        opts: ChainTrainingOptions,
        den_graph: DenominatorGraph,
        num_sequences: int,
        nnet_output: Tensor,
        num_posteriors: Tensor,
    ):
        super().__init__(opts, den_graph, num_sequences, nnet_output)
        self.num_posteriors = num_posteriors
        self._accuracy = None

    def forward_smbr(self) -> tuple[float, float]:
        """Returns ``(smbr_objf, den_logprob_negated)``.

        ``smbr_objf`` is ``smbr_factor`` times the total expected accuracy and
        ``den_logprob_negated`` is ``-mmi_factor`` times the total denominator
        log-likelihood. Neither includes the supervision weight.
        """
        graph, log_init, alpha0, frames = self._prepare()
        accuracy = frames_view(self.num_posteriors, self.num_sequences).detach()
        with torch.enable_grad():
            alpha, acc_alpha = expected_accuracy_scan(
                frames,
                accuracy,
                graph,
                alpha0,
                leaky_coefficient=self.opts.leaky_hmm_coefficient,
                log_init=log_init,
            )
            self._logprob = total_log_likelihood(alpha, graph.final)
            self._accuracy = expected_accuracy(alpha, acc_alpha, graph.final)
        self._frames = frames

        smbr_objf = self.opts.smbr_factor * float(self._accuracy.detach().sum())
        den_logprob_negated = -self.opts.mmi_factor * float(as_log_likelihood(self._logprob).sum())
        return smbr_objf, den_logprob_negated

    def backward_smbr(self, deriv_weight: float, nnet_output_deriv: Tensor) -> bool:
        """Add ``deriv_weight`` times the gradient of ``smbr_objf + den_logprob_negated``.

        Returns ``False`` under the same conditions as :meth:`DenominatorComputation.backward`.
        """
        if self._accuracy is None:
            self.forward_smbr()
        with torch.enable_grad():
            den_post = posteriors(self._logprob.sum(), self._frames, retain_graph=True)
            objective = (
                self.opts.smbr_factor * self._accuracy.sum()
                - self.opts.mmi_factor * self._logprob.sum()
            )
            grad = posteriors(objective, self._frames)
        ok = posterior_mass_ok(den_post) and bool(torch.isfinite(grad).all())
        if bool(torch.isfinite(grad).all()):
            nnet_output_deriv.add_(grad.reshape_as(nnet_output_deriv), alpha=deriv_weight)
        return ok
