import torch

from torch_lfmmi.semirings import NEG_INF, LogSemiring


def test_log_semiring_times_and_plus():
    a = torch.tensor([0.0, 1.0])
    b = torch.tensor([2.0, -1.0])

    assert torch.equal(LogSemiring.times(a, b, a), a + b + a)
    assert torch.allclose(LogSemiring.plus(a, b), torch.logaddexp(a, b))
    assert LogSemiring.zero == NEG_INF
    assert LogSemiring.one == 0.0


def test_scatter_sum_matches_grouped_logsumexp():
    torch.manual_seed(0)
    values = torch.randn(3, 6, dtype=torch.float64)
    index = torch.tensor([0, 2, 0, 1, 2, 2])

    out = LogSemiring.scatter_sum(values, index, 3)

    assert out.shape == (3, 3)
    for s in range(3):
        expected = torch.logsumexp(values[:, index == s], dim=-1)
        assert torch.allclose(out[:, s], expected)


def test_scatter_sum_empty_destination_is_zero():
    values = torch.tensor([[1.0, 2.0]])
    index = torch.tensor([0, 0])

    out = LogSemiring.scatter_sum(values, index, 3)

    assert out[0, 1].item() == NEG_INF
    assert out[0, 2].item() == NEG_INF


def test_scatter_sum_large_values_stable():
    values = torch.tensor([[1000.0, 1000.0, -1000.0]])
    index = torch.tensor([0, 0, 1])

    out = LogSemiring.scatter_sum(values, index, 2)

    assert torch.isfinite(out).all()
    assert torch.allclose(out[0, 0], torch.tensor(1000.0 + 0.6931471805599453))


def test_scatter_sum_gradient_is_group_softmax():
    torch.manual_seed(1)
    values = torch.randn(2, 5, dtype=torch.float64, requires_grad=True)
    index = torch.tensor([1, 0, 1, 1, 0])

    LogSemiring.scatter_sum(values, index, 2).sum().backward()

    expected = torch.zeros_like(values)
    for s in range(2):
        mask = index == s
        expected[:, mask] = torch.softmax(values.detach()[:, mask], dim=-1)
    assert torch.allclose(values.grad, expected)


def test_scatter_sum_gradient_finite_through_log_zero():
    """Entries at log-zero get zero gradient, not NaN."""
    values = torch.tensor([[NEG_INF, 0.0, 0.0]], requires_grad=True)
    index = torch.tensor([0, 0, 1])

    LogSemiring.scatter_sum(values, index, 3).sum().backward()

    assert values.grad.tolist() == [[0.0, 1.0, 1.0]]
