"""Options for chain (lattice-free MMI / sMBR) objective computation."""

import logging
import re
import warnings
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

import torch
from torch import Tensor

from .validation import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["ChainTrainingOptions"]


@dataclass
class ChainTrainingOptions:
    r"""Options of the chain objective.

    Attributes:
        l2_regularize (float): l2 regularization constant on the chain output;
            the term added to the objective is ``-0.5 * l2_regularize`` times the
            squared l2 norm of the output (times the supervision weight).
        leaky_hmm_coefficient (float): mass of the epsilon transitions that let
            every denominator state jump to every other state in proportion to its
            initial probability. Ensures gradual forgetting of context. For
            numerical reasons it should not be exactly zero.
        xent_regularize (float): cross-entropy regularization constant. If
            nonzero, a cross-entropy derivative buffer is filled from the
            numerator posteriors.
        use_smbr_objective (bool): use the sMBR objective instead of MMI.
        exclude_silence (bool): exclude numerator posteriors of silence pdfs from
            the accuracy computation of sMBR training. Needs ``silence_pdfs``.
        one_silence_class (bool): treat all silence pdfs as a single class for
            the accuracy computation of sMBR training. Needs ``silence_pdfs``.
        silence_pdfs (str): comma (or colon) separated list of silence pdfs.
            Only makes sense when the silence pdfs are context independent.
        mmi_factor (float): with sMBR, interpolate the MMI objective with this weight.
        smbr_factor (float): with sMBR, interpolate the sMBR objective with this weight.
        norm_regularize (bool): penalize the sum of ``exp(output)`` instead of the
            squared l2 norm. Tends to make ``exp(output)`` small and more like
            probabilities.
    """

    l2_regularize: float = 0.0
    leaky_hmm_coefficient: float = 1.0e-05
    xent_regularize: float = 0.0
    use_smbr_objective: bool = False
    exclude_silence: bool = False
    one_silence_class: bool = False
    silence_pdfs: str = ""
    mmi_factor: float = 0.0
    smbr_factor: float = 1.0
    norm_regularize: bool = False

    def __post_init__(self):
        self.check()

    def check(self) -> None:
        """Raise :class:`ConfigurationError` on inconsistent settings."""
        if self.l2_regularize < 0.0:
            raise ConfigurationError(f"l2_regularize must be >= 0, got {self.l2_regularize}")
        if self.xent_regularize < 0.0:
            raise ConfigurationError(f"xent_regularize must be >= 0, got {self.xent_regularize}")
        if self.leaky_hmm_coefficient < 0.0:
            raise ConfigurationError(
                f"leaky_hmm_coefficient must be >= 0, got {self.leaky_hmm_coefficient}"
            )
        if self.exclude_silence and self.one_silence_class:
            raise ConfigurationError("exclude_silence and one_silence_class are mutually exclusive")
        if (self.exclude_silence or self.one_silence_class) and not self.silence_pdfs.strip():
            raise ConfigurationError(
                "silence_pdfs is required if exclude_silence or one_silence_class is true."
            )
        if self.silence_pdfs.strip() and not (self.exclude_silence or self.one_silence_class):
            warnings.warn(
                "silence_pdfs is set but neither exclude_silence nor one_silence_class is; "
                "the silence list has no effect",
                UserWarning,
                stacklevel=3,
            )
        # parse now so a bad list fails at setup time
        self.silence_pdf_list()

    def load_from_config(self, cfg: dict[str, Any]) -> "ChainTrainingOptions":
        """Set the known keys of ``cfg`` (dashes or underscores), ignore the rest."""
        names = {field.name for field in fields(self)}
        updates = {}
        for key, value in cfg.items():
            key = key.replace("-", "_")
            if key not in names:
                continue
            type_of_value = type(getattr(self, key))
            if type_of_value is bool and isinstance(value, str):
                value = value.lower() in ("true", "1", "yes")
            updates[key] = type_of_value(value)
        # validated on a copy; self is untouched if the config is rejected
        replace(self, **updates)
        for key, value in updates.items():
            setattr(self, key, value)
        logger.info(str(self))
        return self

    def silence_pdf_list(self) -> list[int]:
        """Parse :attr:`silence_pdfs` into a list of pdf ids."""
        pdfs = []
        for item in re.split(r"[:,]", self.silence_pdfs):
            item = item.strip()
            if not item:
                continue
            try:
                pdf = int(item)
            except ValueError:
                raise ConfigurationError(
                    f"Invalid pdf '{item}' in silence_pdfs {self.silence_pdfs}"
                ) from None
            if pdf < 0:
                raise ConfigurationError(f"Invalid pdf {pdf} in silence_pdfs {self.silence_pdfs}")
            pdfs.append(pdf)
        return pdfs

    def make_silence_indices(
        self, num_pdfs: int, device: Optional[torch.device] = None
    ) -> Optional[Tensor]:
        r"""make_silence_indices(num_pdfs, device=None) -> Optional[Tensor]

        Build the silence index array used by the sMBR objective.

        - ``exclude_silence``: entry ``i`` is ``i``, silence pdfs hold ``-1``
          (their posteriors are zeroed).
        - ``one_silence_class``: entry ``i`` is ``-1``, silence pdfs hold their
          own index (their posteriors are merged).
        - neither: ``None``.

        Raises:
            ConfigurationError: If a silence pdf is out of range.
        """
        if not (self.exclude_silence or self.one_silence_class):
            return None

        silence = self.silence_pdf_list()
        for pdf in silence:
            if pdf >= num_pdfs:
                raise ConfigurationError(
                    f"Invalid pdf {pdf} in silence_pdfs {self.silence_pdfs} "
                    f"(only {num_pdfs} pdfs)"
                )

        if self.exclude_silence:
            indices = torch.arange(num_pdfs, dtype=torch.long)
            indices[silence] = -1
        else:
            indices = torch.full((num_pdfs,), -1, dtype=torch.long)
            indices[silence] = torch.tensor(silence, dtype=torch.long)
        return indices.to(device) if device is not None else indices
