"""
Pytest configuration for torch-lfmmi tests.

CPU-ONLY TESTING
----------------
The suite runs on CPU. Graphs and minibatches are tiny (a handful of states,
pdfs and frames) so the pure-PyTorch scans and the finite-difference checks
stay fast.

Shared fixtures:
- ``den_graph``: 2-state, 3-pdf denominator graph
- ``make_supervision``: factory for alignment supervisions (2 sequences x 3 frames)
- ``nnet_output``: seeded float64 score matrix matching the above
"""

import pytest
import torch

from torch_lfmmi.graph import ChainGraph, DenominatorGraph
from torch_lfmmi.supervision import Supervision

NUM_PDFS = 3
NUM_SEQUENCES = 2
FRAMES_PER_SEQUENCE = 3

ALIGNMENTS = [[0, 1, 2], [1, 2, 0]]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "requires_cuda: mark test as requiring CUDA (will be skipped if not available)",
    )


@pytest.fixture(autouse=True)
def ensure_cpu_default():
    """Verify tensors are created on CPU unless a test asks otherwise."""
    assert torch.tensor([1.0]).device.type == "cpu", "Default device should be CPU"
    yield


@pytest.fixture
def cpu_device():
    """Fixture providing CPU device for explicit device specification."""
    return torch.device("cpu")


@pytest.fixture
def skip_if_no_cuda():
    """Fixture to skip tests that require CUDA."""
    if not torch.cuda.is_available():
        pytest.skip("CUDA not available")


def make_den_fst():
    """Two states; every pdf is reachable from both."""
    arcs = [
        (0, 0, 0, 0.5),
        (0, 1, 1, 0.5),
        (1, 1, 2, 0.4),
        (1, 0, 0, 0.3),
        (1, 1, 1, 0.3),
    ]
    return ChainGraph.from_arcs(arcs)


@pytest.fixture
def den_graph():
    return DenominatorGraph(make_den_fst(), NUM_PDFS)


@pytest.fixture
def make_supervision():
    """Factory: ``make_supervision(weight=1.0, alignments=ALIGNMENTS)``."""

    def _make(weight=1.0, alignments=None):
        return Supervision.from_alignments(
            alignments if alignments is not None else ALIGNMENTS,
            label_dim=NUM_PDFS,
            weight=weight,
        )

    return _make


@pytest.fixture
def supervision(make_supervision):
    return make_supervision(weight=2.0)


@pytest.fixture
def nnet_output():
    generator = torch.Generator().manual_seed(0)
    return torch.randn(
        NUM_SEQUENCES * FRAMES_PER_SEQUENCE, NUM_PDFS, dtype=torch.float64, generator=generator
    )
