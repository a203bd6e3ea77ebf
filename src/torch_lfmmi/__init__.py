"""
torch-lfmmi: Lattice-free discriminative training objectives for PyTorch

This package computes, per training minibatch, the sequence-level chain
objective of an acoustic model and its derivative with respect to the raw
network output, without frame-level alignments or lattices.

Key Features:
- LF-MMI objective with leaky-HMM denominator and l2 / cross-entropy regularization
- sMBR (expected frame accuracy) objective with silence handling, interpolated with MMI
- KL objective against soft targets (distillation)
- End-to-end numerator graphs built from pdf sequences
- Failure containment: a non-finite minibatch gets a fixed penalty and zero derivatives
- Objective accumulation across minibatches for diagnostics

Graphs are arc lists read from the OpenFst text format; the forward-backward
passes are log-space scans whose posteriors come from autograd.
"""

from .autograd import ChainObjfFunction, chain_loss
from .denominator import DenominatorComputation, DenominatorSmbrComputation
from .diagnostics import ChainComputeProb, ChainObjectiveInfo
from .graph import ChainGraph, DenominatorGraph
from .numerator import GenericNumeratorComputation, NumeratorComputation
from .objective import (
    ChainObjective,
    ObjectiveVariant,
    adjust_silence_posteriors,
    compute_chain_objf_and_deriv,
    compute_chain_objf_and_deriv_e2e,
    compute_chain_smbr_objf_and_deriv,
    compute_kl_objf_and_deriv,
    compute_objf_and_deriv,
    select_variant,
)
from .options import ChainTrainingOptions
from .supervision import Supervision, merge_supervisions
from .validation import ConfigurationError, ShapeMismatchError

__version__ = "0.1.0"

__all__ = [
    # Objective API
    "compute_objf_and_deriv",
    "compute_chain_objf_and_deriv",
    "compute_chain_smbr_objf_and_deriv",
    "compute_kl_objf_and_deriv",
    "compute_chain_objf_and_deriv_e2e",
    "select_variant",
    "adjust_silence_posteriors",
    "ObjectiveVariant",
    "ChainObjective",
    # Training glue
    "ChainObjfFunction",
    "chain_loss",
    # Configuration
    "ChainTrainingOptions",
    # Graphs and supervision
    "ChainGraph",
    "DenominatorGraph",
    "Supervision",
    "merge_supervisions",
    # Forward-backward engines
    "NumeratorComputation",
    "GenericNumeratorComputation",
    "DenominatorComputation",
    "DenominatorSmbrComputation",
    # Diagnostics
    "ChainComputeProb",
    "ChainObjectiveInfo",
    # Errors
    "ShapeMismatchError",
    "ConfigurationError",
]
