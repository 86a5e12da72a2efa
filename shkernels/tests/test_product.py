from __future__ import annotations

import math
import time

import pytest
import torch

from shkernels.config import KernelConfig
from shkernels.index_math import coefficient_count, coefficient_index, degree_order
from shkernels.product import product, product_batched
from shkernels.special import clebsch_gordan

DTYPE = torch.float64


def _randn(n: int, seed: int) -> torch.Tensor:
    return torch.randn(n, dtype=DTYPE, generator=torch.Generator().manual_seed(seed))


def _reference_product(lhs: torch.Tensor, rhs: torch.Tensor) -> torch.Tensor:
    C = lhs.numel()
    out = torch.zeros(C, dtype=DTYPE)
    for i in range(C):
        l1, m1 = degree_order(i)
        for j in range(C):
            l2, m2 = degree_order(j)
            for k in range(C):
                l3, m3 = degree_order(k)
                coupling = (
                    math.sqrt((2 * l1 + 1) * (2 * l2 + 1) / (4 * math.pi * (2 * l3 + 1)))
                    * clebsch_gordan(l1, l2, l3, 0, 0, 0)
                    * clebsch_gordan(l1, l2, l3, m1, m2, m3)
                )
                out[k] += coupling * lhs[i] * rhs[j]
    return out


def test_matches_reference_sum():
    C = coefficient_count(2)
    lhs, rhs = _randn(C, 0), _randn(C, 1)
    out = torch.zeros(C, dtype=DTYPE)
    product(C, lhs, rhs, out)
    assert torch.allclose(out, _reference_product(lhs, rhs), atol=1e-12)


def test_constant_lhs_scales_rhs():
    C = coefficient_count(3)
    c = 2.5
    lhs = torch.zeros(C, dtype=DTYPE)
    lhs[0] = c
    rhs = _randn(C, 2)
    out = torch.zeros(C, dtype=DTYPE)
    product(C, lhs, rhs, out)
    assert torch.allclose(out, c * rhs / math.sqrt(4 * math.pi), atol=1e-12)


def test_degree_eight_product_is_fast_and_exact():
    max_l = 8
    C = coefficient_count(max_l)
    lhs, rhs = _randn(C, 9), _randn(C, 10)
    constant = torch.zeros(C, dtype=DTYPE)
    constant[0] = 1.5

    start = time.perf_counter()
    scaled = torch.zeros(C, dtype=DTYPE)
    product(C, constant, rhs, scaled)
    out = torch.zeros(C, dtype=DTYPE)
    product(C, lhs, rhs, out)
    elapsed = time.perf_counter() - start

    assert elapsed < 20.0
    assert torch.allclose(scaled, 1.5 * rhs / math.sqrt(4 * math.pi), atol=1e-12)

    # single-term products against the exact coupling coefficients
    pairs = [((8, 3), (8, -2)), ((5, -4), (7, 4))]
    for (l1, m1), (l2, m2) in pairs:
        i, j = coefficient_index(l1, m1), coefficient_index(l2, m2)
        unit_lhs = torch.zeros(C, dtype=DTYPE)
        unit_rhs = torch.zeros(C, dtype=DTYPE)
        unit_lhs[i] = 1.0
        unit_rhs[j] = 1.0
        single = torch.zeros(C, dtype=DTYPE)
        product(C, unit_lhs, unit_rhs, single)

        for k in range(C):
            l3, m3 = degree_order(k)
            expected = (
                math.sqrt((2 * l1 + 1) * (2 * l2 + 1) / (4 * math.pi * (2 * l3 + 1)))
                * clebsch_gordan(l1, l2, l3, 0, 0, 0)
                * clebsch_gordan(l1, l2, l3, m1, m2, m3)
            )
            assert single[k].item() == pytest.approx(expected, abs=1e-10)

    assert torch.isfinite(out).all()


def test_selection_rule():
    C = coefficient_count(2)
    for i in range(C):
        for j in range(C):
            lhs = torch.zeros(C, dtype=DTYPE)
            rhs = torch.zeros(C, dtype=DTYPE)
            lhs[i] = 1.0
            rhs[j] = 1.0
            out = torch.zeros(C, dtype=DTYPE)
            product(C, lhs, rhs, out)

            (l1, m1), (l2, m2) = degree_order(i), degree_order(j)
            for k in range(C):
                l3, m3 = degree_order(k)
                if not abs(l1 - l2) <= l3 <= l1 + l2 or m3 != m1 + m2:
                    assert out[k].item() == 0.0


def test_accumulates_into_output():
    C = 4
    lhs, rhs = _randn(C, 3), _randn(C, 4)
    out = torch.zeros(C, dtype=DTYPE)
    product(C, lhs, rhs, out)
    first = out.clone()
    product(C, lhs, rhs, out)
    assert torch.allclose(out, 2 * first)


def test_float32_accumulator():
    C = coefficient_count(2)
    lhs, rhs = _randn(C, 5), _randn(C, 6)
    out64 = torch.zeros(C, dtype=DTYPE)
    out32 = torch.zeros(C, dtype=torch.float32)
    product(C, lhs, rhs, out64)
    product(C, lhs, rhs, out32)
    assert out32.dtype == torch.float32
    assert torch.allclose(out32.to(DTYPE), out64, atol=1e-5)


@pytest.mark.parametrize("workers", [1, 2])
def test_batched_matches_per_instance(workers):
    C = coefficient_count(1)
    instances = 6
    lhs, rhs = _randn(instances * C, 7), _randn(instances * C, 8)
    out = torch.zeros(instances * C, dtype=DTYPE)
    product_batched((1, 2, 3), C, lhs, rhs, out, config=KernelConfig(batch_workers=workers))

    for n in range(instances):
        s = slice(n * C, (n + 1) * C)
        single = torch.zeros(C, dtype=DTYPE)
        product(C, lhs[s].contiguous(), rhs[s].contiguous(), single)
        assert torch.allclose(out[s], single, atol=1e-14)


def test_rejects_bad_buffers():
    C = 4
    good = torch.zeros(C, dtype=DTYPE)
    with pytest.raises(ValueError):
        product(C, good, good, torch.zeros(C - 1, dtype=DTYPE))
    with pytest.raises(TypeError):
        product(C, good, torch.zeros(C, dtype=torch.int32), good.clone())
    with pytest.raises(ValueError):
        product(C, torch.zeros(C, 2, dtype=DTYPE)[:, 0], good, good.clone())
    with pytest.raises(ValueError):
        product_batched((2, 1, 1), C, good, good, good.clone())
