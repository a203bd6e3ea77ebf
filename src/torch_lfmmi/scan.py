r"""Forward scans over chain graphs.

The scans walk a :class:`~torch_lfmmi.graph.ChainGraph` one frame at a time in
log space. Every arc consumes exactly one frame and adds the score of its pdf.
Only forward quantities are computed; posteriors are obtained as
:math:`\partial \log Z / \partial x` with :func:`torch.autograd.grad`, which is
the backward pass of the forward-backward algorithm.

Leaky smoothing: after each frame every state leaks a fraction ``c`` of the
total mass, redistributed according to the initial probabilities, and the
result is renormalized by :math:`1 / (1 + c)`.

:func:`expected_accuracy_scan` additionally carries, for every state, the
expected accuracy accumulated by the partial paths ending there (the
normalized form of the expectation semiring). The expected accuracy of the
whole graph is then differentiable with first-order autograd.
"""

import math
from typing import Optional

import torch
from torch import Tensor

from .graph import ChainGraph
from .semirings import NEG_INF, LogSemiring

__all__ = [
    "frames_view",
    "start_alpha",
    "forward_scan",
    "expected_accuracy_scan",
    "total_log_likelihood",
    "expected_accuracy",
    "as_log_likelihood",
    "posteriors",
    "posterior_mass_ok",
]


def frames_view(matrix: Tensor, num_sequences: int) -> Tensor:
    r"""View a frame-major :math:`(T \cdot B, P)` matrix as :math:`(T, B, P)`."""
    return matrix.reshape(-1, num_sequences, matrix.shape[-1])


def start_alpha(graph: ChainGraph, batch: int, dtype=torch.float32, device=None) -> Tensor:
    """Log alpha of frame 0 when every sequence starts in the graph's start state."""
    alpha = torch.full((batch, graph.num_states), NEG_INF, dtype=dtype, device=device)
    alpha[:, graph.start] = 0.0
    return alpha


def _arc_step(alpha: Tensor, x_t: Tensor, graph: ChainGraph) -> tuple[Tensor, Tensor]:
    arc = LogSemiring.times(alpha[:, graph.src], graph.log_weight, x_t[:, graph.pdf])
    return arc, LogSemiring.scatter_sum(arc, graph.dst, graph.num_states)


def _leak(alpha: Tensor, leaky_coefficient: float, log_init: Tensor) -> Tensor:
    tot = LogSemiring.sum(alpha, dim=-1).unsqueeze(-1)
    leaked = tot + math.log(leaky_coefficient) + log_init
    return LogSemiring.plus(alpha, leaked) - math.log1p(leaky_coefficient)


def forward_scan(
    frames: Tensor,
    graph: ChainGraph,
    log_alpha0: Tensor,
    leaky_coefficient: float = 0.0,
    log_init: Optional[Tensor] = None,
) -> Tensor:
    r"""forward_scan(frames, graph, log_alpha0, leaky_coefficient=0.0, log_init=None) -> Tensor

    Log forward probabilities after the last frame.

    Args:
        frames (Tensor): scores of shape :math:`(T, B, P)`
        graph (ChainGraph): graph shared by the :math:`B` sequences, weights on
          the device and dtype of ``frames``
        log_alpha0 (Tensor): log alpha before the first frame, :math:`(B, S)`
        leaky_coefficient (float, optional): leaky smoothing mass; ``0`` disables
          it. Default: ``0.0``
        log_init (Tensor, optional): log initial probabilities :math:`(S,)`,
          required when ``leaky_coefficient > 0``

    Returns:
        Tensor of shape :math:`(B, S)`.
    """
    alpha = log_alpha0
    for t in range(frames.shape[0]):
        _, alpha = _arc_step(alpha, frames[t], graph)
        if leaky_coefficient > 0.0:
            alpha = _leak(alpha, leaky_coefficient, log_init)
    return alpha


def expected_accuracy_scan(
    frames: Tensor,
    accuracy: Tensor,
    graph: ChainGraph,
    log_alpha0: Tensor,
    leaky_coefficient: float = 0.0,
    log_init: Optional[Tensor] = None,
) -> tuple[Tensor, Tensor]:
    r"""expected_accuracy_scan(frames, accuracy, graph, log_alpha0, leaky_coefficient=0.0, log_init=None) -> (Tensor, Tensor)

    Like :func:`forward_scan`, also returning the expected accumulated accuracy
    of the partial paths ending in each state.

    Args:
        frames (Tensor): scores of shape :math:`(T, B, P)`
        accuracy (Tensor): accuracy of emitting pdf ``p`` at frame ``t`` for
          sequence ``b``, shape :math:`(T, B, P)`; treated as a constant

    Returns:
        ``(log_alpha, acc_alpha)``, both of shape :math:`(B, S)`.
    """
    alpha = log_alpha0
    acc_alpha = torch.zeros_like(log_alpha0)
    for t in range(frames.shape[0]):
        arc, new_alpha = _arc_step(alpha, frames[t], graph)
        share = torch.exp(arc - new_alpha[:, graph.dst])
        contrib = share * (acc_alpha[:, graph.src] + accuracy[t][:, graph.pdf])
        new_acc = torch.zeros_like(new_alpha).index_add(1, graph.dst, contrib)

        if leaky_coefficient > 0.0:
            expected = (torch.softmax(new_alpha, dim=-1) * new_acc).sum(-1, keepdim=True)
            leaked = _leak(new_alpha, leaky_coefficient, log_init)
            kept = torch.exp(new_alpha - math.log1p(leaky_coefficient) - leaked)
            new_acc = kept * new_acc + (1.0 - kept) * expected
            new_alpha = leaked

        alpha, acc_alpha = new_alpha, new_acc
    return alpha, acc_alpha


def total_log_likelihood(log_alpha: Tensor, final: Tensor) -> Tensor:
    """Per-sequence log-likelihood, shape ``(B,)``."""
    return LogSemiring.sum(LogSemiring.mul(log_alpha, final), dim=-1)


def expected_accuracy(log_alpha: Tensor, acc_alpha: Tensor, final: Tensor) -> Tensor:
    """Per-sequence expected accuracy of complete paths, shape ``(B,)``."""
    return (torch.softmax(log_alpha + final, dim=-1) * acc_alpha).sum(-1)


def as_log_likelihood(logprob: Tensor) -> Tensor:
    """Detached copy with totals below ``NEG_INF / 2`` (no surviving path) set to ``-inf``."""
    logprob = logprob.detach()
    return torch.where(logprob < NEG_INF / 2, torch.full_like(logprob, -math.inf), logprob)


def posteriors(objective: Tensor, inputs: Tensor, retain_graph: bool = False) -> Tensor:
    r"""Gradient of a scalar ``objective`` with respect to ``inputs``.

    For a total log-likelihood this is the occupation probability of every
    (frame, pdf) pair.
    """
    (grad,) = torch.autograd.grad(objective, inputs, retain_graph=retain_graph)
    return grad


def posterior_mass_ok(post: Tensor, tolerance: float = 1e-2) -> bool:
    r"""True if ``post`` (:math:`(T, B, P)`) is finite and sums to one on every frame.

    Every path emits exactly one pdf per frame, so any other per-frame mass
    means the normalization inside the scan was unstable.
    """
    if not bool(torch.isfinite(post).all()):
        return False
    return bool(((post.sum(-1) - 1.0).abs() <= tolerance).all())
