"""Tests for ChainTrainingOptions."""

import pytest
import torch

from torch_lfmmi.options import ChainTrainingOptions
from torch_lfmmi.validation import ConfigurationError


class TestDefaults:
    def test_defaults(self):
        opts = ChainTrainingOptions()
        assert opts.l2_regularize == 0.0
        assert opts.leaky_hmm_coefficient == 1e-5
        assert opts.xent_regularize == 0.0
        assert not opts.use_smbr_objective
        assert not opts.exclude_silence
        assert not opts.one_silence_class
        assert opts.silence_pdfs == ""
        assert opts.mmi_factor == 0.0
        assert opts.smbr_factor == 1.0
        assert not opts.norm_regularize


class TestCheck:
    def test_negative_l2(self):
        with pytest.raises(ConfigurationError, match="l2_regularize"):
            ChainTrainingOptions(l2_regularize=-0.1)

    def test_negative_xent(self):
        with pytest.raises(ConfigurationError, match="xent_regularize"):
            ChainTrainingOptions(xent_regularize=-1.0)

    def test_negative_leaky(self):
        with pytest.raises(ConfigurationError, match="leaky_hmm_coefficient"):
            ChainTrainingOptions(leaky_hmm_coefficient=-1e-5)

    @pytest.mark.parametrize("mode", ["exclude_silence", "one_silence_class"])
    def test_silence_mode_requires_pdfs(self, mode):
        with pytest.raises(ConfigurationError, match="silence_pdfs is required"):
            ChainTrainingOptions(**{mode: True})

    def test_both_silence_modes(self):
        with pytest.raises(ConfigurationError, match="mutually exclusive"):
            ChainTrainingOptions(exclude_silence=True, one_silence_class=True, silence_pdfs="0")

    def test_silence_pdfs_without_mode_warns(self):
        with pytest.warns(UserWarning, match="no effect"):
            ChainTrainingOptions(silence_pdfs="0")

    def test_bad_silence_pdf(self):
        with pytest.raises(ConfigurationError, match="Invalid pdf 'x'"):
            ChainTrainingOptions(exclude_silence=True, silence_pdfs="1,x")

    def test_negative_silence_pdf(self):
        with pytest.raises(ConfigurationError, match="Invalid pdf -2"):
            ChainTrainingOptions(exclude_silence=True, silence_pdfs="-2")


class TestLoadFromConfig:
    def test_dashes_and_coercion(self):
        opts = ChainTrainingOptions().load_from_config(
            {
                "l2-regularize": "5e-4",
                "leaky_hmm_coefficient": 0.1,
                "use-smbr-objective": "true",
                "exclude-silence": "True",
                "silence-pdfs": "0:1",
                "mmi-factor": 1,
            }
        )
        assert opts.l2_regularize == 5e-4
        assert opts.leaky_hmm_coefficient == 0.1
        assert opts.use_smbr_objective is True
        assert opts.exclude_silence is True
        assert opts.silence_pdfs == "0:1"
        assert isinstance(opts.mmi_factor, float) and opts.mmi_factor == 1.0

    def test_false_strings(self):
        opts = ChainTrainingOptions().load_from_config({"norm-regularize": "false"})
        assert opts.norm_regularize is False

    def test_unknown_keys_ignored(self):
        opts = ChainTrainingOptions().load_from_config({"learning-rate": 0.1})
        assert opts == ChainTrainingOptions()

    def test_revalidates(self):
        with pytest.raises(ConfigurationError, match="silence_pdfs is required"):
            ChainTrainingOptions().load_from_config({"one-silence-class": "true"})

    def test_rejected_config_leaves_options_unchanged(self):
        opts = ChainTrainingOptions(l2_regularize=1e-4)
        with pytest.raises(ConfigurationError, match="l2_regularize must be >= 0"):
            opts.load_from_config({"l2-regularize": -1.0, "mmi-factor": 0.5})
        assert opts == ChainTrainingOptions(l2_regularize=1e-4)


class TestSilenceIndices:
    def test_pdf_list(self):
        opts = ChainTrainingOptions(exclude_silence=True, silence_pdfs="1:3, 5")
        assert opts.silence_pdf_list() == [1, 3, 5]

    def test_exclude_silence(self):
        opts = ChainTrainingOptions(exclude_silence=True, silence_pdfs="0,2")
        indices = opts.make_silence_indices(4)
        assert indices.dtype == torch.long
        assert indices.tolist() == [-1, 1, -1, 3]

    def test_one_silence_class(self):
        opts = ChainTrainingOptions(one_silence_class=True, silence_pdfs="0,2")
        assert opts.make_silence_indices(4).tolist() == [0, -1, 2, -1]

    def test_no_mode(self):
        assert ChainTrainingOptions().make_silence_indices(4) is None

    def test_out_of_range(self):
        opts = ChainTrainingOptions(exclude_silence=True, silence_pdfs="4")
        with pytest.raises(ConfigurationError, match="only 4 pdfs"):
            opts.make_silence_indices(4)
