r"""Per-minibatch supervision for chain training.

A :class:`Supervision` describes ``num_sequences`` sequences of
``frames_per_sequence`` frames each. The rows of the matching score matrix are
ordered frame-major: all sequences for frame 0, then all sequences for frame 1,
and so on.

Three kinds of reference are supported:

- reference-constrained FSTs (one per sequence), used by the numerator pass;
- end-to-end FSTs (``e2e=True``) that only constrain the symbol sequence,
  used by the generic numerator pass;
- dense soft targets (``numerator_post_targets``), used by the KL objective.
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence

import torch
from torch import Tensor

from .graph import ChainGraph

__all__ = [
    "Supervision",
    "alignment_fst",
    "sequence_fst",
    "merge_supervisions",
]


@dataclass
class Supervision:
    """Reference for one minibatch.

    Attributes:
        weight (float): importance of the minibatch, ``>= 0``. Included as a
            factor in the numerator log-likelihood and posteriors.
        num_sequences (int): number of sequences.
        frames_per_sequence (int): frames in every sequence.
        label_dim (int): number of pdfs.
        fsts (list[ChainGraph]): one numerator graph per sequence.
        e2e (bool): the FSTs only constrain the symbol sequence.
        numerator_post_targets (Tensor, optional): soft target posteriors,
            shape ``(num_sequences * frames_per_sequence, label_dim)``.
    """

    weight: float
    num_sequences: int
    frames_per_sequence: int
    label_dim: int
    fsts: list[ChainGraph] = field(default_factory=list)
    e2e: bool = False
    numerator_post_targets: Optional[Tensor] = None

    def __post_init__(self):
        if self.weight < 0:
            raise ValueError(f"supervision weight must be >= 0, got {self.weight}")
        if self.num_sequences <= 0 or self.frames_per_sequence <= 0:
            raise ValueError(
                f"num_sequences and frames_per_sequence must be positive, got "
                f"{self.num_sequences} and {self.frames_per_sequence}"
            )
        if self.numerator_post_targets is None:
            if len(self.fsts) != self.num_sequences:
                raise ValueError(
                    f"expected one fst per sequence ({self.num_sequences}), got {len(self.fsts)}"
                )
        for fst in self.fsts:
            if fst.max_pdf >= self.label_dim:
                raise ValueError(
                    f"supervision fst has pdf id {fst.max_pdf}, label_dim is {self.label_dim}"
                )

    @property
    def num_frames(self) -> int:
        """Total rows of the score matrix."""
        return self.num_sequences * self.frames_per_sequence

    @property
    def has_targets(self) -> bool:
        return self.numerator_post_targets is not None

    def dense_targets(self) -> Optional[Tensor]:
        """``numerator_post_targets`` as a strided tensor; sparse targets are densified."""
        targets = self.numerator_post_targets
        if targets is not None and targets.layout != torch.strided:
            targets = targets.to_dense()
        return targets

    @classmethod
    def from_alignments(
        cls, alignments: Sequence[Sequence[int]], label_dim: int, weight: float = 1.0
    ) -> "Supervision":
        """Numerator graphs that admit exactly one pdf per frame (a fixed alignment)."""
        lengths = {len(ali) for ali in alignments}
        if len(lengths) != 1:
            raise ValueError(f"all alignments must have the same length, got {sorted(lengths)}")
        return cls(
            weight=weight,
            num_sequences=len(alignments),
            frames_per_sequence=lengths.pop(),
            label_dim=label_dim,
            fsts=[alignment_fst(ali) for ali in alignments],
        )

    @classmethod
    def from_pdf_sequences(
        cls,
        sequences: Sequence[Sequence[int]],
        frames_per_sequence: int,
        label_dim: int,
        weight: float = 1.0,
    ) -> "Supervision":
        """End-to-end supervision: each pdf sequence may be stretched to any alignment."""
        return cls(
            weight=weight,
            num_sequences=len(sequences),
            frames_per_sequence=frames_per_sequence,
            label_dim=label_dim,
            fsts=[sequence_fst(seq) for seq in sequences],
            e2e=True,
        )

    @classmethod
    def from_targets(
        cls,
        targets: Tensor,
        num_sequences: int,
        frames_per_sequence: int,
        weight: float = 1.0,
    ) -> "Supervision":
        """Soft-target supervision, e.g. posteriors of a model being distilled."""
        return cls(
            weight=weight,
            num_sequences=num_sequences,
            frames_per_sequence=frames_per_sequence,
            label_dim=targets.shape[1],
            numerator_post_targets=targets,
        )


def alignment_fst(pdfs: Sequence[int]) -> ChainGraph:
    """Linear acceptor ``0 -pdfs[0]-> 1 -pdfs[1]-> ... -> T`` with ``T`` final."""
    arcs = [(t, t + 1, pdf) for t, pdf in enumerate(pdfs)]
    return ChainGraph.from_arcs(arcs, finals={len(pdfs): 1.0}, num_states=len(pdfs) + 1)


def sequence_fst(pdfs: Sequence[int]) -> ChainGraph:
    """Acceptor for ``pdfs`` where every symbol may repeat (self-loop) any number of times."""
    arcs = []
    for i, pdf in enumerate(pdfs):
        arcs.append((i, i + 1, pdf))
        arcs.append((i + 1, i + 1, pdf))
    return ChainGraph.from_arcs(arcs, finals={len(pdfs): 1.0}, num_states=len(pdfs) + 1)


def merge_supervisions(supervisions: Sequence[Supervision]) -> Supervision:
    """Merge supervisions with equal frame count, weight and kind into one minibatch.

    Sequences keep their order; soft targets are re-interleaved so the merged
    matrix stays frame-major.
    """
    if not supervisions:
        raise ValueError("merge_supervisions needs at least one supervision")
    first = supervisions[0]
    for sup in supervisions[1:]:
        if (
            sup.frames_per_sequence != first.frames_per_sequence
            or sup.weight != first.weight
            or sup.label_dim != first.label_dim
            or sup.e2e != first.e2e
            or sup.has_targets != first.has_targets
        ):
            raise ValueError(
                "supervisions to merge must share frames_per_sequence, weight, "
                "label_dim, e2e and the presence of targets"
            )

    targets = None
    if first.has_targets:
        T, P = first.frames_per_sequence, first.label_dim
        targets = torch.cat(
            [sup.dense_targets().reshape(T, sup.num_sequences, P)
             for sup in supervisions],
            dim=1,
        ).reshape(-1, P)

    return Supervision(
        weight=first.weight,
        num_sequences=sum(sup.num_sequences for sup in supervisions),
        frames_per_sequence=first.frames_per_sequence,
        label_dim=first.label_dim,
        fsts=[fst for sup in supervisions for fst in sup.fsts],
        e2e=first.e2e,
        numerator_post_targets=targets,
    )
