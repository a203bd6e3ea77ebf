r"""Log-space semiring for forward passes over sparse arc graphs.

Chain graphs are stored as arc lists rather than dense transition matrices, so
the semiring sum has to be taken over all arcs entering a state. This is the
:meth:`LogSemiring.scatter_sum` reduction: a logsumexp grouped by destination
state.

- :class:`LogSemiring`: Log-space operations (logsumexp, +). Gradients give posteriors.

Log-space zero is the finite constant :data:`NEG_INF`. Keeping it finite means
``zero - zero`` and ``exp(zero)`` never produce NaN, so gradients through
unreachable states are exactly zero instead of undefined.

Examples::

    >>> from torch_lfmmi.semirings import LogSemiring
    >>> values = torch.tensor([[0.0, 0.0, 1.0]])
    >>> index = torch.tensor([0, 0, 1])
    >>> LogSemiring.scatter_sum(values, index, 2)  # tensor([[0.6931, 1.0000]])
"""

import torch
from torch import Tensor

NEG_INF = -1e9

__all__ = ["Semiring", "LogSemiring", "NEG_INF"]


class Semiring:
    r"""Base semiring class.

    A semiring :math:`(K, \oplus, \otimes, \bar{0}, \bar{1})` provides:

    - An addition operation :math:`\oplus` (commutative, associative)
    - A multiplication operation :math:`\otimes` (associative, distributes over :math:`\oplus`)
    - Zero element :math:`\bar{0}` (identity for :math:`\oplus`, annihilator for :math:`\otimes`)
    - One element :math:`\bar{1}` (identity for :math:`\otimes`)

    Subclasses must define ``zero``, ``one``, ``sum(xs, dim)``, ``mul(a, b)``
    and ``scatter_sum(values, index, size)``.
    """

    @classmethod
    def times(cls, *ls):
        r"""times(*ls) -> Tensor

        Multiply a sequence of tensors together using :math:`\otimes`.
        """
        cur = ls[0]
        for item in ls[1:]:
            cur = cls.mul(cur, item)
        return cur

    @classmethod
    def plus(cls, a, b):
        r"""plus(a, b) -> Tensor

        Binary semiring addition: :math:`a \oplus b`.
        """
        return cls.sum(torch.stack([a, b], dim=-1))

    @staticmethod
    def sum(xs, dim=-1):
        raise NotImplementedError()

    @staticmethod
    def mul(a, b):
        raise NotImplementedError()

    @classmethod
    def scatter_sum(cls, values: Tensor, index: Tensor, size: int) -> Tensor:
        raise NotImplementedError()


class LogSemiring(Semiring):
    r"""Log-space semiring :math:`(\mathbb{R} \cup \{-\infty\}, \text{logsumexp}, +, -\infty, 0)`.

    Operations:

    - :math:`\oplus`: ``torch.logsumexp``
    - :math:`\otimes`: ``+``
    - :math:`\bar{0}`: ``NEG_INF`` (finite stand-in for :math:`-\infty`)
    - :math:`\bar{1}`: ``0.0``
    """

    zero = NEG_INF
    one = 0.0

    @staticmethod
    def sum(xs, dim=-1):
        return torch.logsumexp(xs, dim=dim)

    @staticmethod
    def mul(a, b):
        return a + b

    @classmethod
    def plus(cls, a, b):
        return torch.logaddexp(a, b)

    @classmethod
    def scatter_sum(cls, values: Tensor, index: Tensor, size: int) -> Tensor:
        r"""scatter_sum(values, index, size) -> Tensor

        Grouped logsumexp: ``out[b, s] = logsumexp(values[b, a] for a with index[a] == s)``.

        Args:
            values (Tensor): arc scores of shape :math:`(B, A)`
            index (LongTensor): destination of each arc, shape :math:`(A,)`
            size (int): number of destinations :math:`S`

        Returns:
            Tensor of shape :math:`(B, S)`. Destinations without any entry get
            :attr:`zero`.
        """
        batch = values.shape[0]
        expanded = index.unsqueeze(0).expand(batch, -1)

        # The max is a stabilizer only; detaching it leaves the gradient exact.
        m = torch.full((batch, size), cls.zero, dtype=values.dtype, device=values.device)
        m = m.scatter_reduce(1, expanded, values.detach(), reduce="amax", include_self=True)

        shifted = torch.exp(values - m.gather(1, expanded))
        s = torch.zeros((batch, size), dtype=values.dtype, device=values.device)
        s = s.index_add(1, index, shifted)

        # every destination with an entry has s >= 1 (its max contributes exp(0))
        empty = s == 0
        s = s.masked_fill(empty, 1.0)
        return torch.log(s) + m
