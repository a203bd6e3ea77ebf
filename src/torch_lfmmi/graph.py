r"""Arc-list graphs for chain training.

A :class:`ChainGraph` is an acceptor whose arcs are labeled with pdf ids. It is
used both for the per-sequence numerator graphs of a :class:`~torch_lfmmi.supervision.Supervision`
and, wrapped in a :class:`DenominatorGraph`, for the shared competing-path graph.

Weights are natural-log probabilities. When reading the OpenFst text format,
costs (negated log probabilities) are converted and input labels are
interpreted as ``pdf + 1`` since label 0 is reserved for epsilon.
"""

import math
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

import torch
from torch import Tensor

from .semirings import NEG_INF

__all__ = ["ChainGraph", "DenominatorGraph"]


@dataclass
class ChainGraph:
    """Acceptor over pdf ids stored as parallel arc tensors.

    Attributes:
        num_states (int): number of states :math:`S`.
        src (LongTensor): source state of each arc, shape :math:`(A,)`.
        dst (LongTensor): destination state of each arc, shape :math:`(A,)`.
        pdf (LongTensor): zero-based pdf id of each arc, shape :math:`(A,)`.
        log_weight (Tensor): log probability of each arc, shape :math:`(A,)`.
        start (int): start state.
        final (Tensor): log final weight per state, shape :math:`(S,)`;
            non-final states hold ``NEG_INF``.
    """

    num_states: int
    src: Tensor
    dst: Tensor
    pdf: Tensor
    log_weight: Tensor
    start: int = 0
    final: Optional[Tensor] = field(default=None)

    def __post_init__(self):
        if self.final is None:
            self.final = torch.zeros(self.num_states, dtype=self.log_weight.dtype)
        if not (self.src.shape == self.dst.shape == self.pdf.shape == self.log_weight.shape):
            raise ValueError("src, dst, pdf and log_weight must have the same shape")
        if self.final.shape[0] != self.num_states:
            raise ValueError(
                f"final has {self.final.shape[0]} entries, expected {self.num_states}"
            )
        if not 0 <= self.start < self.num_states:
            raise ValueError(f"start state {self.start} out of range [0, {self.num_states})")
        if self.num_arcs > 0:
            if self.src.min() < 0 or self.src.max() >= self.num_states:
                raise ValueError("arc source state out of range")
            if self.dst.min() < 0 or self.dst.max() >= self.num_states:
                raise ValueError("arc destination state out of range")
            if self.pdf.min() < 0:
                raise ValueError("pdf ids must be >= 0 (epsilon arcs are not supported)")

    @property
    def num_arcs(self) -> int:
        return self.src.shape[0]

    @property
    def max_pdf(self) -> int:
        """Largest pdf id on any arc, ``-1`` for an arc-less graph."""
        return int(self.pdf.max()) if self.num_arcs > 0 else -1

    @classmethod
    def from_arcs(
        cls,
        arcs: Iterable[Sequence],
        finals: Optional[dict] = None,
        start: int = 0,
        num_states: Optional[int] = None,
    ) -> "ChainGraph":
        """Build a graph from ``(src, dst, pdf[, prob])`` tuples.

        ``finals`` maps final states to their probability (default: every state
        final with probability one). ``prob`` defaults to one.
        """
        src, dst, pdf, log_weight = [], [], [], []
        for arc in arcs:
            prob = arc[3] if len(arc) > 3 else 1.0
            src.append(int(arc[0]))
            dst.append(int(arc[1]))
            pdf.append(int(arc[2]))
            log_weight.append(math.log(prob) if prob > 0 else NEG_INF)

        if num_states is None:
            states = src + dst + [start] + list((finals or {}).keys())
            num_states = max(states) + 1

        if finals is None:
            final = torch.zeros(num_states)
        else:
            final = torch.full((num_states,), NEG_INF)
            for state, prob in finals.items():
                final[int(state)] = math.log(prob) if prob > 0 else NEG_INF

        return cls(
            num_states=num_states,
            src=torch.tensor(src, dtype=torch.long),
            dst=torch.tensor(dst, dtype=torch.long),
            pdf=torch.tensor(pdf, dtype=torch.long),
            log_weight=torch.tensor(log_weight, dtype=torch.float32),
            start=start,
            final=final,
        )

    @classmethod
    def from_text(cls, text: str, acceptor: bool = False) -> "ChainGraph":
        """Read an acceptor in OpenFst text format.

        Arc lines are ``src dst ilabel [olabel] [cost]`` where ``ilabel`` is
        ``pdf + 1``; final lines are ``state [cost]``. The source state of the
        first arc line is the start state. With ``acceptor=True`` (the output of
        ``fstprint --acceptor``) arc lines are ``src dst label [cost]``.
        """
        arcs = []
        finals = {}
        start = None
        for lineno, line in enumerate(text.splitlines(), 1):
            parts = line.split()
            if not parts:
                continue
            if len(parts) <= 2:
                cost = float(parts[1]) if len(parts) == 2 else 0.0
                finals[int(parts[0])] = math.exp(-cost)
                continue
            if len(parts) > (4 if acceptor else 5):
                raise ValueError(f"line {lineno}: cannot parse arc '{line}'")
            s, d, ilabel = int(parts[0]), int(parts[1]), int(parts[2])
            if ilabel <= 0:
                raise ValueError(f"line {lineno}: epsilon input label is not supported")
            cost_field = 3 if acceptor else 4
            cost = float(parts[cost_field]) if len(parts) > cost_field else 0.0
            if start is None:
                start = s
            arcs.append((s, d, ilabel - 1, math.exp(-cost)))

        if start is None:
            start = min(finals) if finals else 0
        return cls.from_arcs(arcs, finals=finals, start=start)

    def to(self, device=None, dtype=None) -> "ChainGraph":
        """Copy of the graph with weights moved to ``device``/``dtype``."""
        return ChainGraph(
            num_states=self.num_states,
            src=self.src.to(device=device),
            dst=self.dst.to(device=device),
            pdf=self.pdf.to(device=device),
            log_weight=self.log_weight.to(device=device, dtype=dtype),
            start=self.start,
            final=self.final.to(device=device, dtype=dtype),
        )


class DenominatorGraph:
    r"""Competing-path graph shared by all minibatches of a training run.

    Every state is final with probability one. The initial distribution is
    obtained by running the graph for 100 steps from its start state,
    renormalizing after each step, and averaging the iterates. It is used as the
    starting distribution of every sequence and as the destination
    distribution of the leaky transitions.

    Args:
        fst (ChainGraph): the denominator acceptor.
        num_pdfs (int): number of pdfs (columns of the score matrix).

    Raises:
        ValueError: If an arc carries a pdf id outside ``[0, num_pdfs)``.
    """

    num_initial_iters = 100

    def __init__(self, fst: ChainGraph, num_pdfs: int):
        if fst.max_pdf >= num_pdfs:
            raise ValueError(
                f"denominator graph has pdf id {fst.max_pdf}, but num_pdfs is {num_pdfs}"
            )
        self.num_pdfs = num_pdfs
        self.fst = ChainGraph(
            num_states=fst.num_states,
            src=fst.src,
            dst=fst.dst,
            pdf=fst.pdf,
            log_weight=fst.log_weight,
            start=fst.start,
            final=torch.zeros(fst.num_states, dtype=fst.log_weight.dtype),
        )
        self.initial_probs = self._compute_initial_probs()

    @property
    def num_states(self) -> int:
        return self.fst.num_states

    def _compute_initial_probs(self) -> Tensor:
        fst = self.fst
        weights = fst.log_weight.double().exp()
        cur = torch.zeros(fst.num_states, dtype=torch.float64)
        cur[fst.start] = 1.0
        avg = torch.zeros_like(cur)
        for _ in range(self.num_initial_iters):
            avg += cur / self.num_initial_iters
            nxt = torch.zeros_like(cur).index_add(0, fst.dst, cur[fst.src] * weights)
            total = nxt.sum()
            if total <= 0:
                # dead end: keep the mass where it is
                break
            cur = nxt / total
        return (avg / avg.sum()).float()

    def log_initial_probs(self, dtype=torch.float32, device=None) -> Tensor:
        probs = self.initial_probs.to(device=device, dtype=dtype)
        return torch.where(probs > 0, probs.log(), torch.full_like(probs, NEG_INF))

    def __repr__(self):
        return "{}(num_states={}, num_arcs={}, num_pdfs={})".format(
            self.__class__.__name__,
            self.fst.num_states,
            self.fst.num_arcs,
            self.num_pdfs,
        )
