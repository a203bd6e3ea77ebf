"""Input validation utilities for chain objective computation.

This module provides the exception types of the objective layer and the
validation functions run before any caller-owned buffer is written. Shape
problems are fatal: they raise early instead of producing an objective that
silently disagrees with the supervision.

Functions:
    validate_nnet_output: Validate the score matrix against supervision and graph.
    validate_deriv_buffer: Validate a caller-supplied derivative buffer.
    validate_kl_targets: Validate soft targets for the KL objective.
    validate_silence_indices: Validate a silence index array.
    validate_device_consistency: Validate all tensors are on the same device.
"""

from typing import Optional

from torch import Tensor

__all__ = [
    "ShapeMismatchError",
    "ConfigurationError",
    "validate_nnet_output",
    "validate_deriv_buffer",
    "validate_kl_targets",
    "validate_silence_indices",
    "validate_device_consistency",
]


class ShapeMismatchError(ValueError):
    """A matrix does not have the shape implied by the supervision or graph."""


class ConfigurationError(ValueError):
    """Options are inconsistent; raised at setup time, never per minibatch."""


def validate_nnet_output(
    nnet_output: Tensor,
    num_sequences: int,
    frames_per_sequence: int,
    num_pdfs: Optional[int] = None,
    name: str = "nnet_output",
) -> None:
    r"""validate_nnet_output(nnet_output, num_sequences, frames_per_sequence, num_pdfs=None, name='nnet_output') -> None

    Validates the score matrix layout.

    Args:
        nnet_output (Tensor): score matrix, expected shape
          :math:`(\text{num\_sequences} \cdot \text{frames\_per\_sequence}, \text{num\_pdfs})`
        num_sequences (int): number of sequences in the minibatch
        frames_per_sequence (int): frames in every sequence
        num_pdfs (int, optional): expected column count. Default: ``None``
        name (str, optional): name to use in error messages. Default: ``"nnet_output"``

    Raises:
        ShapeMismatchError: If the tensor is not 2D.
        ShapeMismatchError: If the row count differs from
          ``num_sequences * frames_per_sequence``.
        ShapeMismatchError: If the column count differs from ``num_pdfs``.

    Examples::

        >>> scores = torch.randn(6, 10)
        >>> validate_nnet_output(scores, 2, 3, num_pdfs=10)  # OK

        >>> validate_nnet_output(scores, 2, 4)
        ShapeMismatchError: nnet_output has 6 rows, expected 2 * 4 = 8
    """
    if nnet_output.ndim != 2:
        raise ShapeMismatchError(
            f"{name} must be 2D (frames * sequences, pdfs), got {nnet_output.ndim}D"
        )

    expected_rows = num_sequences * frames_per_sequence
    if nnet_output.shape[0] != expected_rows:
        raise ShapeMismatchError(
            f"{name} has {nnet_output.shape[0]} rows, expected "
            f"{num_sequences} * {frames_per_sequence} = {expected_rows}"
        )

    if num_pdfs is not None and nnet_output.shape[1] != num_pdfs:
        raise ShapeMismatchError(
            f"{name} has {nnet_output.shape[1]} columns, denominator graph has {num_pdfs} pdfs"
        )


def validate_deriv_buffer(
    deriv: Optional[Tensor],
    nnet_output: Tensor,
    name: str = "nnet_output_deriv",
) -> None:
    """Check that an optional derivative buffer matches the score matrix shape."""
    if deriv is None:
        return
    if deriv.shape != nnet_output.shape:
        raise ShapeMismatchError(
            f"{name} has shape {tuple(deriv.shape)}, expected {tuple(nnet_output.shape)}"
        )


def validate_kl_targets(
    targets: Tensor,
    nnet_output: Tensor,
    name: str = "numerator_post_targets",
) -> None:
    r"""validate_kl_targets(targets, nnet_output, name='numerator_post_targets') -> None

    Validates soft targets for the KL objective. Targets must cover exactly the
    rows of the score matrix: partial minibatches are not supported.

    Args:
        targets (Tensor): dense or sparse per-frame target posteriors
        nnet_output (Tensor): score matrix
        name (str, optional): name to use in error messages.
          Default: ``"numerator_post_targets"``

    Raises:
        ShapeMismatchError: If row or column counts differ.
    """
    if targets.shape[0] != nnet_output.shape[0]:
        raise ShapeMismatchError(
            f"{name} has {targets.shape[0]} rows but nnet_output has "
            f"{nnet_output.shape[0]}"
        )
    if targets.shape[1] != nnet_output.shape[1]:
        raise ShapeMismatchError(
            f"{name} has {targets.shape[1]} columns but nnet_output has "
            f"{nnet_output.shape[1]}"
        )


def validate_silence_indices(
    sil_indices: Tensor,
    num_pdfs: int,
    name: str = "sil_indices",
) -> None:
    """Silence indices: one entry per pdf, each either ``-1`` or a valid column."""
    if sil_indices.ndim != 1:
        raise ShapeMismatchError(f"{name} must be 1D, got {sil_indices.ndim}D")
    if sil_indices.shape[0] != num_pdfs:
        raise ShapeMismatchError(
            f"{name} has {sil_indices.shape[0]} entries, expected one per pdf ({num_pdfs})"
        )
    if sil_indices.numel() > 0:
        if sil_indices.min().item() < -1 or sil_indices.max().item() >= num_pdfs:
            raise ValueError(f"{name} entries must be -1 or in [0, {num_pdfs})")


def validate_device_consistency(
    *tensors: Tensor,
    names: Optional[list[str]] = None,
) -> None:
    r"""validate_device_consistency(*tensors, names=None) -> None

    Validates that all tensors are on the same device.

    Args:
        *tensors (Tensor): tensors to check (``None`` values are skipped)
        names (list[str], optional): list of names for error messages.
          Default: ``None``

    Raises:
        ValueError: If tensors are on different devices.
    """
    valid_tensors = [t for t in tensors if t is not None]
    if len(valid_tensors) <= 1:
        return

    devices = [t.device for t in valid_tensors]
    if len({str(d) for d in devices}) > 1:
        if names is not None:
            valid_names = [n for n, t in zip(names, tensors) if t is not None]
            device_map = dict(zip(valid_names, devices))
        else:
            device_map = {f"tensor_{i}": d for i, d in enumerate(devices)}
        raise ValueError(f"Device mismatch: {device_map}")

