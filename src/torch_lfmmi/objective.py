r"""Chain objective functions and their derivatives.

Each entry point combines a numerator pass (paths consistent with the
reference) and a denominator pass (all competing paths) into the objective of
one minibatch and its derivative with respect to the network output:

- :func:`compute_chain_objf_and_deriv`: lattice-free MMI.
- :func:`compute_chain_smbr_objf_and_deriv`: sMBR (expected frame accuracy),
  optionally interpolated with MMI.
- :func:`compute_kl_objf_and_deriv`: soft targets instead of a numerator graph.
- :func:`compute_chain_objf_and_deriv_e2e`: end-to-end numerator graphs.

:func:`compute_objf_and_deriv` picks the variant for a supervision.

Derivative buffers are owned by the caller. They need not be zeroed: every
entry point overwrites them completely. A minibatch whose objective is not
finite, or whose forward-backward reports an unstable normalization, is not
an error. Its derivatives are zeroed and its objective is replaced by a fixed
per-frame penalty, so one bad minibatch cannot put NaN into accumulated
statistics or optimizer state.

Examples::

    >>> opts = ChainTrainingOptions(l2_regularize=5e-4)
    >>> deriv = torch.empty_like(nnet_output)
    >>> result = compute_objf_and_deriv(opts, den_graph, supervision, nnet_output, deriv)
    >>> print(result.objf / result.weight)  # per-frame objective
"""

import enum
import logging
import math
from dataclasses import dataclass
from typing import Optional

import torch
from torch import Tensor

from .denominator import DenominatorComputation, DenominatorSmbrComputation
from .graph import DenominatorGraph
from .numerator import GenericNumeratorComputation, NumeratorComputation
from .options import ChainTrainingOptions
from .scan import frames_view
from .supervision import Supervision
from .validation import (
    validate_deriv_buffer,
    validate_device_consistency,
    validate_kl_targets,
    validate_nnet_output,
    validate_silence_indices,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ObjectiveVariant",
    "ChainObjective",
    "select_variant",
    "compute_objf_and_deriv",
    "compute_chain_objf_and_deriv",
    "compute_chain_smbr_objf_and_deriv",
    "compute_kl_objf_and_deriv",
    "compute_chain_objf_and_deriv_e2e",
    "adjust_silence_posteriors",
]

# objective assigned per frame to a minibatch that failed
DEFAULT_OBJF_PER_FRAME = -10.0


class ObjectiveVariant(enum.Enum):
    STANDARD = "standard"
    SMBR = "smbr"
    KL = "kl"
    E2E = "e2e"


@dataclass
class ChainObjective:
    """Objective of one minibatch.

    Attributes:
        objf (float): objective, weighted by the supervision weight; divide by
            :attr:`weight` for a per-frame value. For sMBR this is the sMBR part.
        l2_term (float): regularization term, to be added to :attr:`objf`.
        weight (float): ``supervision.weight * num_sequences * frames_per_sequence``.
        aux_objf (float): MMI part of the sMBR objective; ``0.0`` otherwise.
        ok (bool): ``False`` if the failure penalty was applied.
    """

    objf: float
    l2_term: float
    weight: float
    aux_objf: float = 0.0
    ok: bool = True


def select_variant(opts: ChainTrainingOptions, supervision: Supervision) -> ObjectiveVariant:
    """Soft targets take precedence, then sMBR, then end-to-end supervision."""
    if supervision.has_targets:
        return ObjectiveVariant.KL
    if opts.use_smbr_objective:
        return ObjectiveVariant.SMBR
    if supervision.e2e:
        return ObjectiveVariant.E2E
    return ObjectiveVariant.STANDARD


def compute_objf_and_deriv(
    opts: ChainTrainingOptions,
    den_graph: DenominatorGraph,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor] = None,
    xent_output_deriv: Optional[Tensor] = None,
    sil_indices: Optional[Tensor] = None,
) -> ChainObjective:
    """Compute the objective of whichever variant :func:`select_variant` picks."""
    variant = select_variant(opts, supervision)
    if variant == ObjectiveVariant.KL:
        return compute_kl_objf_and_deriv(
            opts, den_graph, supervision, nnet_output, nnet_output_deriv, xent_output_deriv
        )
    if variant == ObjectiveVariant.SMBR:
        return compute_chain_smbr_objf_and_deriv(
            opts,
            den_graph,
            supervision,
            nnet_output,
            nnet_output_deriv,
            xent_output_deriv,
            sil_indices,
        )
    if variant == ObjectiveVariant.E2E:
        return compute_chain_objf_and_deriv_e2e(
            opts, den_graph, supervision, nnet_output, nnet_output_deriv, xent_output_deriv
        )
    return compute_chain_objf_and_deriv(
        opts, den_graph, supervision, nnet_output, nnet_output_deriv, xent_output_deriv
    )


def compute_chain_objf_and_deriv(
    opts: ChainTrainingOptions,
    den_graph: DenominatorGraph,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor] = None,
    xent_output_deriv: Optional[Tensor] = None,
) -> ChainObjective:
    r"""compute_chain_objf_and_deriv(opts, den_graph, supervision, nnet_output, nnet_output_deriv=None, xent_output_deriv=None) -> ChainObjective

    Numerator and denominator parts of the chain (LF-MMI) computation in one call.
    End-to-end supervisions are delegated to :func:`compute_chain_objf_and_deriv_e2e`.

    Args:
        opts (ChainTrainingOptions): options.
        den_graph (DenominatorGraph): competing-path graph.
        supervision (Supervision): reference of the minibatch.
        nnet_output (Tensor): network output of shape
          ``(num_sequences * frames_per_sequence, den_graph.num_pdfs)``, rows
          ordered frame-major. Not modified.
        nnet_output_deriv (Tensor, optional): if given, receives the derivative
          of ``objf + l2_term`` with respect to ``nnet_output``.
        xent_output_deriv (Tensor, optional): if given, receives the numerator
          posteriors scaled by the supervision weight, for cross-entropy
          regularization. Written even when ``nnet_output_deriv`` is ``None``.

    Returns:
        ChainObjective with ``objf = num_logprob_weighted - supervision.weight * den_logprob``.

    Raises:
        ShapeMismatchError: If a matrix does not match the supervision or graph.
    """
    if supervision.e2e:
        return compute_chain_objf_and_deriv_e2e(
            opts, den_graph, supervision, nnet_output, nnet_output_deriv, xent_output_deriv
        )
    _check_inputs(den_graph, supervision, nnet_output, nnet_output_deriv, xent_output_deriv)

    if nnet_output_deriv is not None:
        nnet_output_deriv.zero_()

    # Denominator first: its scratch memory is released before the numerator
    # (and the cross-entropy derivative) is computed.
    den_logprob, den_ok = _denominator_pass(
        opts, den_graph, supervision, nnet_output, nnet_output_deriv
    )
    num_logprob_weighted, _ = _numerator_pass(
        NumeratorComputation(supervision, nnet_output), nnet_output_deriv, xent_output_deriv
    )

    objf = num_logprob_weighted - supervision.weight * den_logprob
    weight = _total_weight(supervision)
    objf, ok = _apply_failure_policy(
        objf, den_ok, weight, DEFAULT_OBJF_PER_FRAME, nnet_output_deriv, xent_output_deriv
    )
    _log_derivs_per_frame(nnet_output_deriv, supervision)
    l2_term = _regularize(opts, supervision, nnet_output, nnet_output_deriv)
    return ChainObjective(objf=objf, l2_term=l2_term, weight=weight, ok=ok)


def compute_chain_objf_and_deriv_e2e(
    opts: ChainTrainingOptions,
    den_graph: DenominatorGraph,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor] = None,
    xent_output_deriv: Optional[Tensor] = None,
) -> ChainObjective:
    """Chain objective with end-to-end numerator graphs.

    Same arguments and combination as :func:`compute_chain_objf_and_deriv`,
    but the numerator runs through :class:`GenericNumeratorComputation`, whose
    failure is handled by the failure penalty rather than raised.
    """
    _check_inputs(den_graph, supervision, nnet_output, nnet_output_deriv, xent_output_deriv)

    if nnet_output_deriv is not None:
        nnet_output_deriv.zero_()

    den_logprob, den_ok = _denominator_pass(
        opts, den_graph, supervision, nnet_output, nnet_output_deriv
    )
    num_logprob_weighted, num_ok = _numerator_pass(
        GenericNumeratorComputation(supervision, nnet_output),
        nnet_output_deriv,
        xent_output_deriv,
    )
    if not num_ok:
        logger.warning("Numerator forward-backward failed.")
    num_ok = num_ok and math.isfinite(num_logprob_weighted)

    objf = num_logprob_weighted - supervision.weight * den_logprob
    weight = _total_weight(supervision)
    objf, ok = _apply_failure_policy(
        objf,
        den_ok and num_ok,
        weight,
        DEFAULT_OBJF_PER_FRAME,
        nnet_output_deriv,
        xent_output_deriv,
    )
    _log_derivs_per_frame(nnet_output_deriv, supervision)
    l2_term = _regularize(opts, supervision, nnet_output, nnet_output_deriv)
    return ChainObjective(objf=objf, l2_term=l2_term, weight=weight, ok=ok)


def compute_kl_objf_and_deriv(
    opts: ChainTrainingOptions,
    den_graph: DenominatorGraph,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor] = None,
    xent_output_deriv: Optional[Tensor] = None,
) -> ChainObjective:
    r"""compute_kl_objf_and_deriv(opts, den_graph, supervision, nnet_output, nnet_output_deriv=None, xent_output_deriv=None) -> ChainObjective

    Objective with a fixed numerator: ``supervision.numerator_post_targets``
    holds the per-frame target posteriors (e.g. from a larger model being distilled).

    The reported ``objf`` is ``-supervision.weight * den_logprob``. The
    target term is constant with respect to the discriminative score and is
    not folded in, but its gradient (the targets times the supervision weight)
    is added to ``nnet_output_deriv`` and copied into ``xent_output_deriv``.

    Raises:
        ValueError: If the supervision has no targets.
        ShapeMismatchError: If the targets do not have exactly the shape of
          ``nnet_output``.
    """
    if not supervision.has_targets:
        raise ValueError("compute_kl_objf_and_deriv requires supervision.numerator_post_targets")
    _check_inputs(den_graph, supervision, nnet_output, nnet_output_deriv, xent_output_deriv)
    validate_kl_targets(supervision.numerator_post_targets, nnet_output)

    if nnet_output_deriv is not None:
        nnet_output_deriv.zero_()

    den_logprob, den_ok = _denominator_pass(
        opts, den_graph, supervision, nnet_output, nnet_output_deriv
    )

    targets = supervision.dense_targets().to(
        device=nnet_output.device, dtype=nnet_output.dtype
    )
    if xent_output_deriv is not None:
        xent_output_deriv.copy_(targets).mul_(supervision.weight)
        if nnet_output_deriv is not None:
            nnet_output_deriv.add_(xent_output_deriv)
    elif nnet_output_deriv is not None:
        nnet_output_deriv.add_(targets, alpha=supervision.weight)

    objf = -supervision.weight * den_logprob
    weight = _total_weight(supervision)
    objf, ok = _apply_failure_policy(
        objf, den_ok, weight, DEFAULT_OBJF_PER_FRAME, nnet_output_deriv, xent_output_deriv
    )
    _log_derivs_per_frame(nnet_output_deriv, supervision)
    l2_term = _regularize(opts, supervision, nnet_output, nnet_output_deriv)
    return ChainObjective(objf=objf, l2_term=l2_term, weight=weight, ok=ok)


def compute_chain_smbr_objf_and_deriv(
    opts: ChainTrainingOptions,
    den_graph: DenominatorGraph,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor] = None,
    xent_output_deriv: Optional[Tensor] = None,
    sil_indices: Optional[Tensor] = None,
) -> ChainObjective:
    r"""compute_chain_smbr_objf_and_deriv(opts, den_graph, supervision, nnet_output, nnet_output_deriv=None, xent_output_deriv=None, sil_indices=None) -> ChainObjective

    Numerator and denominator parts of the chain sMBR computation in one call.

    The numerator posteriors serve three purposes: scaled by ``opts.mmi_factor``
    they seed the derivative (the MMI numerator term), copied unscaled they
    are the cross-entropy target, and after silence adjustment (see
    :func:`adjust_silence_posteriors`) they are the per-frame accuracy whose
    expectation under the denominator is the sMBR objective.

    Returns:
        ChainObjective where ``objf = supervision.weight * smbr_objf`` and
        ``aux_objf`` is the MMI objective
        ``supervision.weight * den_logprob_negated + num_logprob_weighted``.
        On failure ``objf`` is ``0`` and ``aux_objf`` is
        ``-mmi_factor * 10`` per frame.
    """
    _check_inputs(den_graph, supervision, nnet_output, nnet_output_deriv, xent_output_deriv)
    if sil_indices is not None:
        validate_silence_indices(sil_indices, nnet_output.shape[1])

    num_posteriors = torch.zeros_like(nnet_output, requires_grad=False)
    numerator = _make_numerator(supervision, nnet_output)
    num_logprob_weighted = opts.mmi_factor * numerator.forward()
    num_ok = numerator.backward(num_posteriors) is not False
    del numerator

    if nnet_output_deriv is not None and opts.mmi_factor != 0.0:
        nnet_output_deriv.copy_(num_posteriors).mul_(opts.mmi_factor)
    if xent_output_deriv is not None:
        xent_output_deriv.copy_(num_posteriors)

    accuracy = adjust_silence_posteriors(opts, num_posteriors, sil_indices)

    denominator = DenominatorSmbrComputation(
        opts, den_graph, supervision.num_sequences, nnet_output, accuracy
    )
    smbr_objf, den_logprob_negated = denominator.forward_smbr()
    den_ok = True
    if nnet_output_deriv is not None:
        if opts.mmi_factor == 0.0:
            nnet_output_deriv.zero_()
        den_ok = denominator.backward_smbr(supervision.weight, nnet_output_deriv)
    del denominator

    objf = supervision.weight * smbr_objf
    mmi_objf = supervision.weight * den_logprob_negated + num_logprob_weighted
    weight = _total_weight(supervision)

    total_objf, ok = _apply_failure_policy(
        objf + mmi_objf,
        den_ok and num_ok,
        weight,
        -opts.mmi_factor * 10.0,
        nnet_output_deriv,
        xent_output_deriv,
    )
    if not ok:
        mmi_objf = total_objf
        objf = 0.0

    _log_derivs_per_frame(nnet_output_deriv, supervision)
    l2_term = _regularize(opts, supervision, nnet_output, nnet_output_deriv, allow_norm=True)
    return ChainObjective(objf=objf, l2_term=l2_term, weight=weight, aux_objf=mmi_objf, ok=ok)


def adjust_silence_posteriors(
    opts: ChainTrainingOptions,
    num_posteriors: Tensor,
    sil_indices: Optional[Tensor],
) -> Tensor:
    r"""adjust_silence_posteriors(opts, num_posteriors, sil_indices) -> Tensor

    Silence handling of the sMBR accuracy. Returns a new tensor unless no
    adjustment applies, in which case ``num_posteriors`` itself is returned.

    - ``opts.exclude_silence``: columns whose index is ``-1`` are zeroed.
    - ``opts.one_silence_class``: the posteriors of the silence columns (those
      whose index is not ``-1``) are summed per row and that sum is written
      to every silence column, so all silence pdfs count as one class.
    - otherwise, or without ``sil_indices``: unchanged.
    """
    if sil_indices is None:
        return num_posteriors
    sil_indices = sil_indices.to(num_posteriors.device)
    if opts.exclude_silence:
        return _copy_cols(num_posteriors, sil_indices)
    if opts.one_silence_class:
        silence_post = _copy_cols(num_posteriors, sil_indices)
        total_silence_post = silence_post.sum(dim=1, keepdim=True)
        is_silence = (sil_indices >= 0).unsqueeze(0)
        return torch.where(is_silence, total_silence_post.expand_as(num_posteriors), num_posteriors)
    return num_posteriors


def _copy_cols(matrix: Tensor, indices: Tensor) -> Tensor:
    """``out[:, c] = matrix[:, indices[c]]``, or zero where ``indices[c] == -1``."""
    out = matrix[:, indices.clamp(min=0)]
    return out.masked_fill((indices < 0).unsqueeze(0), 0.0)


def _make_numerator(supervision: Supervision, nnet_output: Tensor):
    if supervision.e2e:
        return GenericNumeratorComputation(supervision, nnet_output)
    return NumeratorComputation(supervision, nnet_output)


def _check_inputs(
    den_graph: DenominatorGraph,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor],
    xent_output_deriv: Optional[Tensor],
) -> None:
    validate_nnet_output(
        nnet_output,
        supervision.num_sequences,
        supervision.frames_per_sequence,
        num_pdfs=den_graph.num_pdfs,
    )
    validate_deriv_buffer(nnet_output_deriv, nnet_output)
    validate_deriv_buffer(xent_output_deriv, nnet_output, name="xent_output_deriv")
    validate_device_consistency(
        nnet_output,
        nnet_output_deriv,
        xent_output_deriv,
        names=["nnet_output", "nnet_output_deriv", "xent_output_deriv"],
    )


def _total_weight(supervision: Supervision) -> float:
    return supervision.weight * supervision.num_sequences * supervision.frames_per_sequence


def _denominator_pass(
    opts: ChainTrainingOptions,
    den_graph: DenominatorGraph,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor],
) -> tuple[float, bool]:
    denominator = DenominatorComputation(opts, den_graph, supervision.num_sequences, nnet_output)
    den_logprob = denominator.forward()
    ok = True
    if nnet_output_deriv is not None:
        ok = denominator.backward(-supervision.weight, nnet_output_deriv)
    return den_logprob, ok


def _numerator_pass(
    numerator: NumeratorComputation,
    nnet_output_deriv: Optional[Tensor],
    xent_output_deriv: Optional[Tensor],
) -> tuple[float, bool]:
    """Forward, then backward into the xent buffer (added to the main one) if present.

    ``NumeratorComputation.backward`` returns ``None`` and the generic one a
    success flag, so only an explicit ``False`` counts as failure.
    """
    num_logprob_weighted = numerator.forward()
    ok = True
    if xent_output_deriv is not None:
        xent_output_deriv.zero_()
        ok = numerator.backward(xent_output_deriv) is not False
        if nnet_output_deriv is not None:
            nnet_output_deriv.add_(xent_output_deriv)
    elif nnet_output_deriv is not None:
        ok = numerator.backward(nnet_output_deriv) is not False
    return num_logprob_weighted, ok


def _apply_failure_policy(
    objf: float,
    ok: bool,
    weight: float,
    default_objf: float,
    nnet_output_deriv: Optional[Tensor],
    xent_output_deriv: Optional[Tensor],
) -> tuple[float, bool]:
    """Replace a non-finite objective or failed computation by ``default_objf`` per frame."""
    if math.isfinite(objf) and ok:
        return objf, True

    if nnet_output_deriv is not None:
        nnet_output_deriv.zero_()
    if xent_output_deriv is not None:
        xent_output_deriv.zero_()
    logger.warning(
        f"Objective function is {objf} and denominator computation (if done) "
        f"returned {ok}, setting objective function to {default_objf} per frame."
    )
    return default_objf * weight, False


def _log_derivs_per_frame(nnet_output_deriv: Optional[Tensor], supervision: Supervision) -> None:
    # Derivatives are smaller towards the edges of the sequences (incorrect
    # pdfs are penalized there); this shows how much, per frame index.
    if nnet_output_deriv is None or not logger.isEnabledFor(logging.DEBUG):
        return
    row_products = (nnet_output_deriv * nnet_output_deriv).sum(dim=1, keepdim=True)
    per_frame = frames_view(row_products, supervision.num_sequences).sum(dim=(1, 2))
    logger.debug(f"Derivs per frame are {per_frame.tolist()}")


def _regularize(
    opts: ChainTrainingOptions,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor],
    allow_norm: bool = False,
) -> float:
    """Regularization term; its derivative is added to ``nnet_output_deriv``."""
    if opts.l2_regularize == 0.0:
        return 0.0

    scale = supervision.weight * opts.l2_regularize
    output = nnet_output.detach()
    if allow_norm and opts.norm_regularize:
        # d/dx sum(exp(x)) is exp(x) itself
        exp_output = output.exp()
        l2_term = -scale * float(exp_output.sum())
        if nnet_output_deriv is not None:
            nnet_output_deriv.add_(exp_output, alpha=-scale)
    else:
        l2_term = -0.5 * scale * float((output * output).sum())
        if nnet_output_deriv is not None:
            nnet_output_deriv.add_(output, alpha=-scale)
    return l2_term
