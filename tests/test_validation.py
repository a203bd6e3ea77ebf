"""Tests for input validation utilities."""

import pytest
import torch

from torch_lfmmi.validation import (
    ConfigurationError,
    ShapeMismatchError,
    validate_deriv_buffer,
    validate_device_consistency,
    validate_kl_targets,
    validate_nnet_output,
    validate_silence_indices,
)


class TestErrorTypes:
    def test_are_value_errors(self):
        """Callers catching ValueError also catch the specific errors."""
        assert issubclass(ShapeMismatchError, ValueError)
        assert issubclass(ConfigurationError, ValueError)


class TestValidateNnetOutput:
    """Tests for validate_nnet_output."""

    def test_valid(self):
        """Matching rows and columns should pass."""
        validate_nnet_output(torch.randn(6, 10), 2, 3, num_pdfs=10)  # Should not raise

    def test_columns_unchecked_without_num_pdfs(self):
        validate_nnet_output(torch.randn(6, 7), 2, 3)  # Should not raise

    def test_1d_raises(self):
        with pytest.raises(ShapeMismatchError, match="must be 2D"):
            validate_nnet_output(torch.randn(6), 2, 3)

    def test_row_mismatch_raises(self):
        with pytest.raises(ShapeMismatchError, match="6 rows, expected 2 \\* 4 = 8"):
            validate_nnet_output(torch.randn(6, 10), 2, 4)

    def test_column_mismatch_raises(self):
        with pytest.raises(ShapeMismatchError, match="10 columns"):
            validate_nnet_output(torch.randn(6, 10), 2, 3, num_pdfs=12)

    def test_custom_name(self):
        with pytest.raises(ShapeMismatchError, match="scores"):
            validate_nnet_output(torch.randn(5, 10), 2, 3, name="scores")


class TestValidateDerivBuffer:
    def test_none_passes(self):
        validate_deriv_buffer(None, torch.randn(6, 3))  # Should not raise

    def test_matching_passes(self):
        validate_deriv_buffer(torch.empty(6, 3), torch.randn(6, 3))  # Should not raise

    def test_mismatch_raises(self):
        with pytest.raises(ShapeMismatchError, match="xent_output_deriv has shape \\(6, 2\\)"):
            validate_deriv_buffer(torch.empty(6, 2), torch.randn(6, 3), name="xent_output_deriv")


class TestValidateKLTargets:
    def test_valid(self):
        validate_kl_targets(torch.rand(6, 3), torch.randn(6, 3))  # Should not raise

    def test_sparse_valid(self):
        validate_kl_targets(torch.rand(6, 3).to_sparse(), torch.randn(6, 3))  # Should not raise

    def test_row_mismatch_raises(self):
        """Partial minibatches are not supported."""
        with pytest.raises(ShapeMismatchError, match="4 rows but nnet_output has 6"):
            validate_kl_targets(torch.rand(4, 3), torch.randn(6, 3))

    def test_column_mismatch_raises(self):
        with pytest.raises(ShapeMismatchError, match="columns"):
            validate_kl_targets(torch.rand(6, 4), torch.randn(6, 3))


class TestValidateSilenceIndices:
    def test_valid(self):
        validate_silence_indices(torch.tensor([-1, 1, 2]), 3)  # Should not raise

    def test_2d_raises(self):
        with pytest.raises(ShapeMismatchError, match="must be 1D"):
            validate_silence_indices(torch.tensor([[0, 1, 2]]), 3)

    def test_length_mismatch_raises(self):
        with pytest.raises(ShapeMismatchError, match="one per pdf"):
            validate_silence_indices(torch.tensor([0, 1]), 3)

    def test_out_of_range_raises(self):
        with pytest.raises(ValueError, match="must be -1 or in"):
            validate_silence_indices(torch.tensor([0, 3, -1]), 3)

    def test_below_sentinel_raises(self):
        with pytest.raises(ValueError, match="must be -1 or in"):
            validate_silence_indices(torch.tensor([0, -2, 1]), 3)


class TestValidateDeviceConsistency:
    """Tests for validate_device_consistency."""

    def test_same_device_passes(self, cpu_device):
        a = torch.randn(2, 3, device=cpu_device)
        b = torch.randn(2, 3, device=cpu_device)
        validate_device_consistency(a, b)  # Should not raise

    def test_none_skipped(self):
        validate_device_consistency(torch.randn(2), None, None)  # Should not raise

    @pytest.mark.requires_cuda
    def test_mismatch_raises(self, skip_if_no_cuda):
        a = torch.randn(2, 3)
        b = torch.randn(2, 3, device="cuda")
        with pytest.raises(ValueError, match="Device mismatch"):
            validate_device_consistency(a, b, names=["a", "b"])
