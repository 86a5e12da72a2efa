from __future__ import annotations

"""
Scalar special functions used by the spherical-harmonic kernels.

Everything here works per work unit: arguments are broadcastable tensors
(or Python scalars) and each element may carry its own degree / order, which
is what a data-parallel kernel needs. Out-of-domain inputs are not checked;
they produce undefined values (NaN / inf / garbage), never an exception.

Conventions
-----------
- P_l^m includes the Condon–Shortley phase (-1)^m:

      P_1^1(x) = -sqrt(1 - x^2)

- Clebsch–Gordan coefficients <j1 m1; j2 m2 | j3 m3> follow the standard
  Condon–Shortley convention. The kernels evaluate them with Racah's
  formula; sympy.physics.wigner provides the exact scalar reference.
"""

import math
from functools import lru_cache
from typing import Optional, Union

import torch
from sympy.physics.wigner import clebsch_gordan as _sympy_clebsch_gordan
from torch import Tensor

Number = Union[int, float]


def _as_float_tensor(
    x: Union[Number, Tensor],
    dtype: Optional[torch.dtype] = None,
    device: Optional[torch.device] = None,
) -> Tensor:
    t = torch.as_tensor(x, device=device)
    if dtype is not None:
        return t.to(dtype)
    if not torch.is_floating_point(t):
        return t.to(torch.get_default_dtype())
    return t


# ---------------------------------------------------------------------------
# Factorials
# ---------------------------------------------------------------------------


def log_factorial(
    n: Union[Number, Tensor],
    *,
    dtype: Optional[torch.dtype] = None,
    device: Optional[torch.device] = None,
) -> Tensor:
    """log(n!) via lgamma(n + 1). Undefined for n < 0."""
    return torch.lgamma(_as_float_tensor(n, dtype, device) + 1.0)


def factorial(
    n: Union[Number, Tensor],
    *,
    dtype: Optional[torch.dtype] = None,
    device: Optional[torch.device] = None,
) -> Tensor:
    """n! in the requested precision. Overflows to inf like the dtype does."""
    return torch.exp(log_factorial(n, dtype=dtype, device=device))


# ---------------------------------------------------------------------------
# Associated Legendre polynomials, one (l, m) per element
# ---------------------------------------------------------------------------


def associated_legendre(
    l: Union[int, Tensor],
    m: Union[int, Tensor],
    x: Union[Number, Tensor],
) -> Tensor:
    """
    Elementwise P_l^m(x) for 0 <= m <= l and x in [-1, 1].

    Uses the standard upward recurrences, vectorised across elements with
    different (l, m):

        P_m^m     = (-1)^m (2m - 1)!! (1 - x^2)^{m/2}
        P_{m+1}^m = x (2m + 1) P_m^m
        P_l^m     = ((2l - 1) x P_{l-1}^m - (l + m - 1) P_{l-2}^m) / (l - m)

    Each loop step updates only the elements whose own (l, m) still needs
    it, so memory stays O(N) regardless of the largest degree present.
    """
    x = _as_float_tensor(x)
    l = torch.as_tensor(l, device=x.device).to(torch.int64)
    m = torch.as_tensor(m, device=x.device).to(torch.int64)
    l, m, x = torch.broadcast_tensors(l, m, x)

    if x.numel() == 0:
        return torch.empty_like(x)

    l_max = max(int(l.max().item()), 0)
    m_max = max(int(m.max().item()), 0)

    somx2 = torch.sqrt(torch.clamp((1.0 - x) * (1.0 + x), min=0.0))

    # diagonal P_m^m
    pmm = torch.ones_like(x)
    for i in range(1, m_max + 1):
        pmm = torch.where(m >= i, -(2.0 * i - 1.0) * somx2 * pmm, pmm)

    m_f = m.to(x.dtype)
    pmmp1 = x * (2.0 * m_f + 1.0) * pmm

    prev, curr = pmm, pmmp1
    for ll in range(2, l_max + 1):
        active = (m + 2 <= ll) & (ll <= l)
        denom = torch.clamp(ll - m_f, min=1.0)
        nxt = ((2.0 * ll - 1.0) * x * curr - (ll + m_f - 1.0) * prev) / denom
        prev = torch.where(active, curr, prev)
        curr = torch.where(active, nxt, curr)

    return torch.where(l == m, pmm, curr)


# ---------------------------------------------------------------------------
# Clebsch–Gordan coefficients
# ---------------------------------------------------------------------------


def _as_int_tensor(x: Union[int, Tensor], device: torch.device) -> Tensor:
    return torch.as_tensor(x, device=device).to(torch.int64)


def clebsch_gordan_elementwise(
    j1: Union[int, Tensor],
    j2: Union[int, Tensor],
    j3: Union[int, Tensor],
    m1: Union[int, Tensor],
    m2: Union[int, Tensor],
    m3: Union[int, Tensor],
    *,
    dtype: torch.dtype = torch.float64,
) -> Tensor:
    """
    Elementwise <j1 m1; j2 m2 | j3 m3> for integer angular momenta.

    Racah's closed form, with every factorial taken through lgamma:

        C = sqrt((2 j3 + 1) Δ(j1 j2 j3)
                 (j3 + m3)! (j3 - m3)! (j1 - m1)! (j1 + m1)! (j2 - m2)! (j2 + m2)!)
            Σ_k (-1)^k / [ k! (j1 + j2 - j3 - k)! (j1 - m1 - k)! (j2 + m2 - k)!
                           (j3 - j2 + m1 + k)! (j3 - j1 - m2 + k)! ]

        Δ = (j1 + j2 - j3)! (j1 - j2 + j3)! (-j1 + j2 + j3)! / (j1 + j2 + j3 + 1)!

    where k runs over the integers keeping every factorial argument
    non-negative. Elements violating the selection rules are exactly zero.
    The alternating sum cancels heavily at high degree; ``dtype`` should
    stay float64 and callers cast the result.
    """
    device = next(
        (v.device for v in (j1, j2, j3, m1, m2, m3) if isinstance(v, Tensor)),
        torch.device("cpu"),
    )
    j1, j2, j3, m1, m2, m3 = torch.broadcast_tensors(
        *(_as_int_tensor(v, device) for v in (j1, j2, j3, m1, m2, m3))
    )

    valid = (
        (m1 + m2 == m3)
        & (m1.abs() <= j1)
        & (m2.abs() <= j2)
        & (m3.abs() <= j3)
        & (j3 >= (j1 - j2).abs())
        & (j3 <= j1 + j2)
    )
    total = torch.zeros(j1.shape, dtype=dtype, device=device)
    if not bool(valid.any()):
        return total

    def lf(n: Tensor) -> Tensor:
        return log_factorial(n.clamp(min=0), dtype=dtype)

    log_prefactor = 0.5 * (
        torch.log((2 * j3 + 1).to(dtype))
        + lf(j1 + j2 - j3)
        + lf(j1 - j2 + j3)
        + lf(-j1 + j2 + j3)
        - lf(j1 + j2 + j3 + 1)
        + lf(j3 + m3)
        + lf(j3 - m3)
        + lf(j1 - m1)
        + lf(j1 + m1)
        + lf(j2 - m2)
        + lf(j2 + m2)
    )

    zero = torch.zeros_like(j1)
    k_min = torch.maximum(torch.maximum(zero, j2 - j3 - m1), j1 + m2 - j3)
    k_max = torch.minimum(torch.minimum(j1 + j2 - j3, j1 - m1), j2 + m2)
    k_hi = int(torch.where(valid, k_max, zero - 1).max().item())

    for k in range(k_hi + 1):
        active = valid & (k_min <= k) & (k <= k_max)
        log_denominator = (
            math.lgamma(k + 1.0)
            + lf(j1 + j2 - j3 - k)
            + lf(j1 - m1 - k)
            + lf(j2 + m2 - k)
            + lf(j3 - j2 + m1 + k)
            + lf(j3 - j1 - m2 + k)
        )
        term = torch.exp(log_prefactor - log_denominator)
        total = total + torch.where(active, term if k % 2 == 0 else -term, torch.zeros_like(term))

    return torch.where(valid, total, torch.zeros_like(total))


@lru_cache(maxsize=65536)
def clebsch_gordan(j1: int, j2: int, j3: int, m1: int, m2: int, m3: int) -> float:
    """
    Exact <j1 m1; j2 m2 | j3 m3> from sympy, as a float.

    Scalar reference for :func:`clebsch_gordan_elementwise`; kernels never
    call it. Zero outside the selection rules (|mi| <= ji, m1 + m2 = m3,
    |j1 - j2| <= j3 <= j1 + j2).
    """
    if min(j1, j2, j3) < 0:
        return 0.0
    if abs(m1) > j1 or abs(m2) > j2 or abs(m3) > j3:
        return 0.0
    if m1 + m2 != m3:
        return 0.0
    if j3 < abs(j1 - j2) or j3 > j1 + j2:
        return 0.0
    return float(_sympy_clebsch_gordan(j1, j2, j3, m1, m2, m3))


__all__ = [
    "log_factorial",
    "factorial",
    "associated_legendre",
    "clebsch_gordan_elementwise",
    "clebsch_gordan",
]
