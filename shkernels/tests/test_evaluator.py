from __future__ import annotations

import math

import numpy as np
import pytest
import torch

from shkernels.evaluator import (
    evaluate,
    evaluate_index,
    evaluate_sum,
    is_zero,
    l1_distance,
    l2_distance,
)
from shkernels.index_math import coefficient_count, coefficient_index, degree_order

DTYPE = torch.float64


def _random_angles(n: int, seed: int = 0):
    g = torch.Generator().manual_seed(seed)
    theta = 2 * math.pi * torch.rand(n, generator=g, dtype=DTYPE)
    phi = math.pi * torch.rand(n, generator=g, dtype=DTYPE)
    return theta, phi


def test_constant_basis_function():
    theta, phi = _random_angles(64)
    y = evaluate(0, 0, theta, phi)
    assert torch.allclose(y, torch.full_like(y, 1.0 / math.sqrt(4 * math.pi)), atol=1e-14)


def test_degree_one_closed_forms():
    theta, phi = _random_angles(64, seed=1)
    c = math.sqrt(3.0 / (4.0 * math.pi))
    assert torch.allclose(evaluate(1, 0, theta, phi), c * torch.cos(phi), atol=1e-13)
    assert torch.allclose(evaluate(1, 1, theta, phi), -c * torch.sin(phi) * torch.cos(theta), atol=1e-13)
    assert torch.allclose(evaluate(1, -1, theta, phi), -c * torch.sin(phi) * torch.sin(theta), atol=1e-13)


def test_orthonormal_up_to_degree_three():
    max_l = 3
    C = coefficient_count(max_l)

    # Gauss-Legendre in cos(phi), uniform in theta: exact for these degrees
    nodes, weights = np.polynomial.legendre.leggauss(12)
    n_theta = 16
    theta_1d = torch.arange(n_theta, dtype=DTYPE) * (2 * math.pi / n_theta)
    phi_1d = torch.arccos(torch.as_tensor(nodes, dtype=DTYPE))
    w_1d = torch.as_tensor(weights, dtype=DTYPE) * (2 * math.pi / n_theta)

    theta, phi = torch.meshgrid(theta_1d, phi_1d, indexing="ij")
    w = w_1d.expand_as(theta).reshape(-1)
    theta, phi = theta.reshape(-1), phi.reshape(-1)

    Y = torch.stack([evaluate_index(i, theta, phi) for i in range(C)])
    gram = (Y * w) @ Y.T
    assert torch.allclose(gram, torch.eye(C, dtype=DTYPE), atol=1e-12)


def test_per_element_degree_and_order():
    theta, phi = _random_angles(6, seed=2)
    l = torch.tensor([0, 1, 2, 3, 3, 5])
    m = torch.tensor([0, -1, 2, -3, 1, -4])
    mixed = evaluate(l, m, theta, phi)
    for i in range(6):
        single = evaluate(int(l[i]), int(m[i]), theta[i], phi[i])
        assert torch.allclose(mixed[i], single, atol=1e-14)


def test_evaluate_index_matches_evaluate():
    theta, phi = _random_angles(8, seed=3)
    for idx in range(coefficient_count(4)):
        l, m = degree_order(idx)
        assert torch.equal(evaluate_index(idx, theta, phi), evaluate(l, m, theta, phi))


def test_precision_follows_angles():
    assert evaluate(2, 1, torch.tensor(0.3, dtype=torch.float32), 0.7).dtype == torch.float32
    assert evaluate(2, 1, 0.3, torch.tensor(0.7, dtype=torch.float64)).dtype == torch.float64


@pytest.mark.parametrize(
    "l, m, expected",
    [
        (20, 20, [0.8685, -0.0287]),
        (22, -22, [0.2883, -0.0167]),
        (25, 25, [-0.3309, 0.0091]),
    ],
)
def test_high_degree_single_precision(l, m, expected):
    theta = torch.tensor([0.3, 1.1], dtype=DTYPE)
    phi = torch.tensor([math.pi / 2, 1.0], dtype=DTYPE)
    y64 = evaluate(l, m, theta, phi)
    y32 = evaluate(l, m, theta.float(), phi.float())

    assert y64.tolist() == pytest.approx(expected, abs=5e-4)
    assert y32.dtype == torch.float32
    assert torch.isfinite(y32).all()
    assert (y32 != 0).all()
    assert torch.allclose(y32.to(DTYPE), y64, rtol=1e-3, atol=1e-6)


def test_evaluate_sum_matches_manual_sum():
    max_l = 3
    theta, phi = _random_angles(10, seed=4)
    coeffs = torch.randn(coefficient_count(max_l), dtype=DTYPE, generator=torch.Generator().manual_seed(5))
    expected = torch.zeros_like(theta)
    for l in range(max_l + 1):
        for m in range(-l, l + 1):
            expected += coeffs[coefficient_index(l, m)] * evaluate(l, m, theta, phi)
    assert torch.allclose(evaluate_sum(max_l, theta, phi, coeffs), expected, atol=1e-13)


def test_evaluate_sum_of_empty_expansion():
    theta, phi = _random_angles(5, seed=6)
    total = evaluate_sum(-1, theta, phi, torch.zeros(0, dtype=DTYPE))
    assert isinstance(total, torch.Tensor)
    assert total.shape == theta.shape and total.dtype == DTYPE
    assert torch.equal(total, torch.zeros_like(theta))

    scalar = evaluate_sum(-1, 0.3, 0.7, torch.zeros(0))
    assert scalar.shape == () and float(scalar) == 0.0


def test_is_zero():
    assert is_zero(torch.zeros(9))
    assert is_zero(torch.tensor([0.0, -0.0]))
    v = torch.zeros(9)
    v[4] = 1e-30
    assert not is_zero(v)


def test_distances():
    a = torch.tensor([1.0, -2.0, 3.0, 0.5], dtype=DTYPE)
    b = torch.tensor([0.0, -2.0, 1.0, 0.5], dtype=DTYPE)
    assert float(l1_distance(a, a)) == 0.0
    assert float(l2_distance(a, a)) == 0.0
    assert float(l1_distance(a, b)) == pytest.approx(3.0)
    assert float(l2_distance(a, b)) == pytest.approx(math.sqrt(5.0))
    assert float(l2_distance(a, b)) == pytest.approx(float(l2_distance(b, a)))


def test_distance_length_mismatch():
    with pytest.raises(ValueError):
        l1_distance(torch.zeros(4), torch.zeros(9))
    with pytest.raises(ValueError):
        l2_distance(torch.zeros(4), torch.zeros(9))
