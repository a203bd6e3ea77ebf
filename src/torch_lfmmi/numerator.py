r"""Numerator forward-backward: probability mass of the reference-consistent paths.

Both computations run every sequence through its own supervision FST. The
supervision weight is included as a factor in the returned log-likelihood and
in the posteriors added by :meth:`backward`.
"""

import logging

import torch
from torch import Tensor

from .scan import (
    as_log_likelihood,
    forward_scan,
    frames_view,
    posterior_mass_ok,
    posteriors,
    start_alpha,
    total_log_likelihood,
)
from .supervision import Supervision

logger = logging.getLogger(__name__)

__all__ = ["NumeratorComputation", "GenericNumeratorComputation"]


class NumeratorComputation:
    """Forward-backward over reference-constrained numerator FSTs.

    Args:
        supervision (Supervision): minibatch reference, one FST per sequence.
        nnet_output (Tensor): score matrix, read only.
    """

    def __init__(self, supervision: Supervision, nnet_output: Tensor):
        self.supervision = supervision
        self.nnet_output = nnet_output
        self._frames = None
        self._logprob = None

    def forward(self) -> float:
        """Weighted total log-likelihood of the numerator FSTs."""
        sup = self.supervision
        dtype, device = self.nnet_output.dtype, self.nnet_output.device
        with torch.enable_grad():
            frames = frames_view(self.nnet_output, sup.num_sequences).detach().requires_grad_(True)
            logprobs = []
            for b, fst in enumerate(sup.fsts):
                graph = fst.to(device=device, dtype=dtype)
                alpha = forward_scan(
                    frames[:, b : b + 1, :],
                    graph,
                    start_alpha(graph, 1, dtype=dtype, device=device),
                )
                logprobs.append(total_log_likelihood(alpha, graph.final))
            self._frames = frames
            self._logprob = torch.cat(logprobs)
        return sup.weight * float(as_log_likelihood(self._logprob).sum())

    def _posteriors(self) -> Tensor:
        if self._logprob is None:
            self.forward()
        with torch.enable_grad():
            return posteriors(self._logprob.sum(), self._frames)

    def backward(self, nnet_output_deriv: Tensor) -> None:
        """Add ``supervision.weight`` times the numerator posteriors to ``nnet_output_deriv``."""
        post = self._posteriors()
        nnet_output_deriv.add_(post.reshape_as(nnet_output_deriv), alpha=self.supervision.weight)


class GenericNumeratorComputation(NumeratorComputation):
    """Forward-backward over end-to-end numerator FSTs.

    The FSTs only constrain the symbol sequence, so the scan normalizes over
    an unconstrained enumeration of alignments and can become unstable.
    :meth:`backward` reports that instead of raising.
    """

    def backward(self, nnet_output_deriv: Tensor) -> bool:
        """Add weighted posteriors; returns ``False`` on numerical failure.

        Nothing is written when the posteriors are not finite.
        """
        if self._logprob is None:
            self.forward()
        if not bool(torch.isfinite(as_log_likelihood(self._logprob)).all()):
            logger.debug("generic numerator: no surviving path for some sequence")
            return False

        post = self._posteriors()
        ok = posterior_mass_ok(post)
        if bool(torch.isfinite(post).all()):
            nnet_output_deriv.add_(
                post.reshape_as(nnet_output_deriv), alpha=self.supervision.weight
            )
        return ok
