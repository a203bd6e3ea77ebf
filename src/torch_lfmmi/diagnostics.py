r"""Objective accumulation across minibatches, e.g. for validation diagnostics.

:class:`ChainComputeProb` computes the chain objective of every named output
of a minibatch, applies per-output objective scales, and keeps running totals
that can be printed or combined into one number.

Examples::

    >>> prob = ChainComputeProb(opts, den_graph, objective_scales="output:1.0")
    >>> for outputs, xent_outputs, supervisions in minibatches:
    ...     prob.compute(outputs, supervisions, xent_outputs)
    >>> prob.print_total_stats()
    >>> tot_objf, tot_weight = prob.get_total_objective()
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

import torch
from torch import Tensor

from .graph import DenominatorGraph
from .objective import compute_objf_and_deriv
from .options import ChainTrainingOptions
from .supervision import Supervision
from .validation import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["ChainObjectiveInfo", "ChainComputeProb", "parse_objective_scales"]


@dataclass
class ChainObjectiveInfo:
    """Running totals of one output.

    ``tot_like`` and ``tot_aux_objfs`` include the objective scales;
    ``objf_scale`` and ``aux_objf_scales`` are kept so they can be removed for
    printing. The auxiliary objectives are the l2 term and, for sMBR, the MMI
    objective.
    """

    tot_weight: float = 0.0
    tot_like: float = 0.0
    tot_aux_objfs: list[float] = field(default_factory=list)
    objf_scale: float = 1.0
    aux_objf_scales: list[float] = field(default_factory=list)

    def add_aux_objfs(self, aux_objfs: list[float]) -> None:
        if not self.tot_aux_objfs:
            self.tot_aux_objfs = [0.0] * len(aux_objfs)
        for i, value in enumerate(aux_objfs):
            self.tot_aux_objfs[i] += value

    @property
    def aux_is_zero(self) -> bool:
        return all(value == 0.0 for value in self.tot_aux_objfs)


def parse_objective_scales(objective_scales: Union[str, dict, None]) -> dict[str, float]:
    """Parse ``"output:1.0,output-xent:0.5"`` into a dict; dicts pass through."""
    if not objective_scales:
        return {}
    if isinstance(objective_scales, dict):
        return {name: float(scale) for name, scale in objective_scales.items()}

    scales = {}
    for item in objective_scales.split(","):
        item = item.strip()
        if not item:
            continue
        parts = item.split(":")
        if len(parts) != 2:
            raise ConfigurationError(
                f"Invalid objective scale '{item}', expected <output-name>:<scale>"
            )
        try:
            scales[parts[0]] = float(parts[1])
        except ValueError:
            raise ConfigurationError(f"Invalid scale in objective scale '{item}'") from None
    return scales


class ChainComputeProb:
    r"""Accumulates chain objectives over minibatches.

    Args:
        chain_config (ChainTrainingOptions): options of the objective.
        den_graph (DenominatorGraph): competing-path graph.
        objective_scales (str or dict, optional): per-output scales, as
          ``"name:scale,name2:scale"`` or a dict. Outputs not listed use 1.
          Default: ``""``
        compute_deriv (bool, optional): return the derivative of every output
          from :meth:`compute`. Default: ``False``

    Raises:
        ConfigurationError: If a silence mode is set for sMBR without a valid
          silence pdf list.
    """

    def __init__(
        self,
        chain_config: ChainTrainingOptions,
        den_graph: DenominatorGraph,
        objective_scales: Union[str, dict] = "",
        compute_deriv: bool = False,
    ):
        self.chain_config = chain_config
        self.den_graph = den_graph
        self.compute_deriv = compute_deriv
        self.objective_scales = parse_objective_scales(objective_scales)
        self.sil_indices = None
        if chain_config.use_smbr_objective:
            self.sil_indices = chain_config.make_silence_indices(den_graph.num_pdfs)
        self.objf_info: dict[str, ChainObjectiveInfo] = {}
        self.num_minibatches_processed = 0

    def reset(self) -> None:
        self.num_minibatches_processed = 0
        self.objf_info.clear()

    def compute(
        self,
        nnet_outputs: dict[str, Tensor],
        supervisions: dict[str, Supervision],
        xent_outputs: Optional[dict[str, Tensor]] = None,
    ) -> dict[str, Tensor]:
        r"""compute(nnet_outputs, supervisions, xent_outputs=None) -> dict[str, Tensor]

        Accumulate the objective of every supervised output of one minibatch.

        Args:
            nnet_outputs (dict[str, Tensor]): chain outputs by name, e.g. ``"output"``.
            supervisions (dict[str, Supervision]): supervision per output name.
            xent_outputs (dict[str, Tensor], optional): cross-entropy outputs
              by name, e.g. ``"output-xent"``. Required for every supervised
              output when ``xent_regularize`` is nonzero.

        Returns:
            Derivatives by output name (scaled like the objective) if
            ``compute_deriv``, else an empty dict.

        Raises:
            ValueError: If a supervision has no matching output, or no
              matching ``-xent`` output when ``xent_regularize`` is nonzero.
        """
        xent_outputs = xent_outputs or {}
        use_xent = self.chain_config.xent_regularize != 0.0
        derivs = {}

        for name, supervision in supervisions.items():
            if name not in nnet_outputs:
                raise ValueError(f"Network has no output named {name}")
            if use_xent and name + "-xent" not in xent_outputs:
                raise ValueError(f"Network has no output named {name}-xent")
            nnet_output = nnet_outputs[name].detach()
            nnet_output_deriv = torch.empty_like(nnet_output) if self.compute_deriv else None
            xent_deriv = torch.empty_like(nnet_output) if use_xent else None

            result = compute_objf_and_deriv(
                self.chain_config,
                self.den_graph,
                supervision,
                nnet_output,
                nnet_output_deriv,
                xent_deriv,
                self.sil_indices,
            )

            objf_scale = self.objective_scales.get(name, 1.0)
            tot_like = result.objf * objf_scale
            tot_l2_term = result.l2_term * objf_scale
            tot_mmi_objf = result.aux_objf * objf_scale
            tot_weight = result.weight * objf_scale
            if nnet_output_deriv is not None:
                nnet_output_deriv.mul_(objf_scale)
                derivs[name] = nnet_output_deriv

            aux_objfs = [tot_l2_term]
            if self.chain_config.use_smbr_objective:
                aux_objfs.append(tot_mmi_objf)

            info = self.objf_info.get(name)
            if info is None:
                this_objf_scale = objf_scale
                aux_objf_scales = [objf_scale]
                if self.chain_config.use_smbr_objective:
                    this_objf_scale *= self.chain_config.smbr_factor
                    aux_objf_scales.append(objf_scale * self.chain_config.mmi_factor)
                info = ChainObjectiveInfo(
                    objf_scale=this_objf_scale, aux_objf_scales=aux_objf_scales
                )
                self.objf_info[name] = info

            info.tot_weight += tot_weight
            info.tot_like += tot_like
            info.add_aux_objfs(aux_objfs)

            xent_name = name + "-xent"
            if use_xent:
                # xent_deriv carries the supervision weight, and so does tot_weight
                xent_output = xent_outputs[xent_name].detach()
                xent_objf = float((xent_output * xent_deriv).sum())
                xent_objf *= self.objective_scales.get(xent_name, 1.0)
                xent_totals = self.objf_info.setdefault(xent_name, ChainObjectiveInfo())
                xent_totals.tot_weight += tot_weight
                xent_totals.tot_like += xent_objf

            self.num_minibatches_processed += 1

        return derivs

    def print_total_stats(self) -> bool:
        """Log the per-frame objective of every output; True if any has frames."""
        ans = False
        for name, info in self.objf_info.items():
            if info.tot_weight > 0:
                like = info.tot_like / info.tot_weight
                aux_objfs = [value / info.tot_weight for value in info.tot_aux_objfs]
            else:
                like = 0.0
                aux_objfs = [0.0] * len(info.tot_aux_objfs)
            tot_objf = like + sum(aux_objfs)

            # scales removed for printing
            if info.objf_scale != 0.0:
                like /= info.objf_scale
            for i, scale in enumerate(info.aux_objf_scales[: len(aux_objfs)]):
                if scale != 0.0:
                    aux_objfs[i] /= scale

            if info.aux_is_zero:
                logger.info(
                    f"Overall log-probability for '{name}' is {like} per frame, "
                    f"over {info.tot_weight} frames."
                )
            else:
                aux_str = " + ".join(str(value) for value in aux_objfs)
                logger.info(
                    f"Overall log-probability for '{name}' is {like} + ({aux_str}) = "
                    f"{tot_objf} per frame, over {info.tot_weight} frames."
                )
            if info.tot_weight > 0:
                ans = True
        return ans

    def get_total_objective(self) -> tuple[float, float]:
        """``(tot_objf, tot_weight)`` summed over outputs; divide for a per-frame value."""
        tot_objf, tot_weight = 0.0, 0.0
        for info in self.objf_info.values():
            tot_objf += info.tot_like + sum(info.tot_aux_objfs)
            tot_weight += info.tot_weight
        return tot_objf, tot_weight

    def get_objective(self, output_name: str) -> Optional[ChainObjectiveInfo]:
        return self.objf_info.get(output_name)
