r"""Autograd function and functional API for chain training."""

from typing import Optional

import torch

from .graph import DenominatorGraph
from .objective import compute_objf_and_deriv
from .options import ChainTrainingOptions
from .supervision import Supervision

__all__ = ["ChainObjfFunction", "chain_loss"]


class ChainObjfFunction(torch.autograd.Function):
    r"""Chain objective as a differentiable per-frame loss.

    The forward pass runs :func:`~torch_lfmmi.objective.compute_objf_and_deriv`
    and returns

    .. math::
        -\frac{\text{objf} + \text{aux\_objf} + \text{l2\_term}
               + \text{xent\_regularize} \cdot \text{xent\_objf}}{\text{weight}}

    where ``xent_objf = sum(xent_output * xent_deriv)``. For soft-target
    supervisions the target term ``supervision.weight * sum(targets * nnet_output)``
    is added to the objective, matching the target gradient in the derivative.
    The derivatives computed in the forward pass are saved, so the backward
    pass is a scaling.
    A minibatch that hit the failure penalty contributes a constant loss and
    zero gradients.
    """

    @staticmethod
    def forward(
        ctx,
        nnet_output: torch.Tensor,
        xent_output: Optional[torch.Tensor],
        opts: ChainTrainingOptions,
        den_graph: DenominatorGraph,
        supervision: Supervision,
        sil_indices: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        nnet_output = nnet_output.detach()
        deriv = torch.empty_like(nnet_output)
        xent_deriv = torch.empty_like(nnet_output) if xent_output is not None else None

        result = compute_objf_and_deriv(
            opts, den_graph, supervision, nnet_output, deriv, xent_deriv, sil_indices
        )

        xent_objf = 0.0
        if xent_output is not None:
            xent_objf = float((xent_output.detach() * xent_deriv).sum())

        # a zero-weight minibatch has no frames to normalize by
        scale = 1.0 / result.weight if result.weight > 0 else 0.0
        total = result.objf + result.aux_objf + result.l2_term + opts.xent_regularize * xent_objf
        if supervision.has_targets and result.ok:
            # the target term is left out of objf but its gradient is in deriv
            targets = supervision.dense_targets().to(
                device=nnet_output.device, dtype=nnet_output.dtype
            )
            total += supervision.weight * float((targets * nnet_output).sum())

        ctx.save_for_backward(deriv, xent_deriv)
        ctx.scale = scale
        ctx.xent_regularize = opts.xent_regularize

        return torch.tensor(-total * scale, dtype=nnet_output.dtype, device=nnet_output.device)

    @staticmethod
    def backward(ctx, grad_output: torch.Tensor):
        deriv, xent_deriv = ctx.saved_tensors
        scale = grad_output * ctx.scale

        grad_nnet_output = None
        if ctx.needs_input_grad[0]:
            grad_nnet_output = -deriv * scale
        grad_xent_output = None
        if xent_deriv is not None and ctx.needs_input_grad[1]:
            grad_xent_output = -ctx.xent_regularize * xent_deriv * scale

        return (
            grad_nnet_output,
            grad_xent_output,
            None,  # opts
            None,  # den_graph
            None,  # supervision
            None,  # sil_indices
        )


def chain_loss(
    nnet_output: torch.Tensor,
    supervision: Supervision,
    den_graph: DenominatorGraph,
    opts: Optional[ChainTrainingOptions] = None,
    xent_output: Optional[torch.Tensor] = None,
    sil_indices: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    r"""chain_loss(nnet_output, supervision, den_graph, opts=None, xent_output=None, sil_indices=None) -> Tensor

    Per-frame chain loss (negated objective), differentiable with respect to
    ``nnet_output`` and ``xent_output``.

    Args:
        nnet_output (Tensor): chain output of shape
          ``(num_sequences * frames_per_sequence, num_pdfs)``, frame-major.
        supervision (Supervision): reference of the minibatch.
        den_graph (DenominatorGraph): competing-path graph.
        opts (ChainTrainingOptions, optional): options. Default: ``ChainTrainingOptions()``
        xent_output (Tensor, optional): log-softmax output of a cross-entropy
          head of the same shape, regularized with ``opts.xent_regularize``.
        sil_indices (Tensor, optional): silence index array for sMBR, see
          :meth:`ChainTrainingOptions.make_silence_indices`.

    Returns:
        Scalar tensor.

    Examples::

        >>> den_graph = DenominatorGraph(ChainGraph.from_text(open("den.fst.txt").read()), num_pdfs)
        >>> loss = chain_loss(model(feats), supervision, den_graph, ChainTrainingOptions(l2_regularize=5e-4))
        >>> loss.backward()
    """
    if opts is None:
        opts = ChainTrainingOptions()
    return ChainObjfFunction.apply(
        nnet_output, xent_output, opts, den_graph, supervision, sil_indices
    )
