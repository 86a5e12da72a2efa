from __future__ import annotations

"""
Real spherical harmonics Y_l^m(theta, phi) and reference helpers.

Conventions
-----------
    theta ∈ [0, 2π)  azimuth
    phi   ∈ [0, π]   polar angle from +z

Orthonormal real basis built from the associated Legendre polynomials
(Condon–Shortley phase included in P_l^m):

    K_l^m = sqrt( (2l + 1) (l - |m|)! / (4π (l + |m|)!) )

    Y_l^m = sqrt(2) K_l^m cos( m θ) P_l^m (cos φ)      m > 0
    Y_l^m = sqrt(2) K_l^m sin(-m θ) P_l^-m(cos φ)      m < 0
    Y_l^0 =         K_l^0           P_l^0 (cos φ)

The evaluator is the per-unit device function of the kernels: every argument
may be a tensor and each element may carry its own (l, m). No bounds
checking is done; invalid (l, m) yield undefined values.

``evaluate_sum``, ``is_zero`` and the distances are sequential reference
helpers (correctness oracles for tests / diagnostics), not kernel code.
"""

import math
from typing import Union

import torch
from torch import Tensor

from shkernels.index_math import coefficient_index, degree_order
from shkernels.special import associated_legendre, log_factorial

Number = Union[int, float]
_SQRT2 = math.sqrt(2.0)


def _working_dtype(*values: Union[Number, Tensor]) -> torch.dtype:
    for v in values:
        if isinstance(v, Tensor) and torch.is_floating_point(v):
            return v.dtype
    return torch.get_default_dtype()


def _working_device(*values: Union[Number, Tensor]) -> torch.device:
    for v in values:
        if isinstance(v, Tensor):
            return v.device
    return torch.device("cpu")


def evaluate(
    l: Union[int, Tensor],
    m: Union[int, Tensor],
    theta: Union[Number, Tensor],
    phi: Union[Number, Tensor],
) -> Tensor:
    """Real spherical harmonic Y_l^m at (theta, phi), elementwise."""
    dtype = _working_dtype(theta, phi)
    device = _working_device(theta, phi, l, m)

    l = torch.as_tensor(l, device=device).to(torch.int64)
    m = torch.as_tensor(m, device=device).to(torch.int64)
    theta = torch.as_tensor(theta, device=device).to(dtype)
    phi = torch.as_tensor(phi, device=device).to(dtype)

    abs_m = m.abs()
    l_f = l.to(dtype)
    abs_m_f = abs_m.to(dtype)

    # log K_l^m; (l - |m|)! / (l + |m|)! is never formed outside log space
    log_k = 0.5 * (
        torch.log((2.0 * l_f + 1.0) / (4.0 * math.pi))
        + log_factorial(l_f - abs_m_f)
        - log_factorial(l_f + abs_m_f)
    )
    k = torch.exp(log_k)

    p = associated_legendre(l, abs_m, torch.cos(phi))
    m_theta = abs_m_f * theta

    return torch.where(
        m > 0,
        _SQRT2 * k * torch.cos(m_theta) * p,
        torch.where(m < 0, _SQRT2 * k * torch.sin(m_theta) * p, k * p),
    )


def evaluate_index(
    index: Union[int, Tensor],
    theta: Union[Number, Tensor],
    phi: Union[Number, Tensor],
) -> Tensor:
    """Y at a flat coefficient index (decoded with :func:`degree_order`)."""
    l, m = degree_order(index)
    return evaluate(l, m, theta, phi)


# ---------------------------------------------------------------------------
# Reference aggregate + comparison metrics
# ---------------------------------------------------------------------------


def evaluate_sum(
    max_l: int,
    theta: Union[Number, Tensor],
    phi: Union[Number, Tensor],
    coefficients: Tensor,
) -> Tensor:
    """
    Sum_{l <= max_l} Sum_m Y_l^m(theta, phi) c[index(l, m)].

    Sequential double loop; the parallel reconstruction in
    :mod:`shkernels.sampling` splits the same sum over work units. An
    empty expansion (``max_l < 0``) sums to zeros shaped like the angles.
    """
    dtype = _working_dtype(theta, phi)
    device = _working_device(theta, phi)
    theta_t, phi_t = torch.broadcast_tensors(
        torch.as_tensor(theta, device=device).to(dtype),
        torch.as_tensor(phi, device=device).to(dtype),
    )
    total = torch.zeros_like(theta_t)
    for l in range(max_l + 1):
        for m in range(-l, l + 1):
            term = evaluate(l, m, theta_t, phi_t) * coefficients[coefficient_index(l, m)]
            total = total + term
    return total


def is_zero(coefficients: Tensor) -> bool:
    """True iff every coefficient is exactly zero."""
    return bool(torch.all(torch.as_tensor(coefficients) == 0).item())


def _check_same_length(lhs: Tensor, rhs: Tensor) -> None:
    if lhs.numel() != rhs.numel():
        raise ValueError(
            f"coefficient vectors must have equal length; got {lhs.numel()} vs {rhs.numel()}"
        )


def l1_distance(lhs: Tensor, rhs: Tensor) -> Tensor:
    """Sum |lhs_i - rhs_i|."""
    lhs = torch.as_tensor(lhs)
    rhs = torch.as_tensor(rhs)
    _check_same_length(lhs, rhs)
    return (lhs.reshape(-1) - rhs.reshape(-1)).abs().sum()


def l2_distance(lhs: Tensor, rhs: Tensor) -> Tensor:
    """sqrt(Sum (lhs_i - rhs_i)^2).

    For an orthonormal basis this equals the L2 distance between the two
    reconstructed functions on the sphere (Kazhdan et al.).
    """
    lhs = torch.as_tensor(lhs)
    rhs = torch.as_tensor(rhs)
    _check_same_length(lhs, rhs)
    return torch.sqrt(((lhs.reshape(-1) - rhs.reshape(-1)) ** 2).sum())


__all__ = [
    "evaluate",
    "evaluate_index",
    "evaluate_sum",
    "is_zero",
    "l1_distance",
    "l2_distance",
]
