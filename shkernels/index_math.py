"""
Degree / order bookkeeping for flattened real spherical-harmonic expansions.

Packing
-------
    index = l (l + 1) + m,      0 <= l,  -l <= m <= l

so each degree l owns the contiguous block [l^2, (l + 1)^2):

    index:  0 | 1  2  3 | 4  5  6  7  8 | ...
    (l, m): (0, 0) | (1,-1) (1,0) (1,1) | (2,-2) ... (2,2) | ...

Every function accepts plain Python ints or integer tensors (elementwise).
Nothing is range-checked: decoding an index outside the packed domain, or
encoding an order with |m| > l, gives meaningless numbers rather than an
error. Kernels call these per work unit, so they stay branch-free.
"""

from __future__ import annotations

import math
from typing import Tuple, Union

import torch
from torch import Tensor

IntLike = Union[int, Tensor]


def _isqrt(n: IntLike) -> IntLike:
    """Exact floor(sqrt(n)) for ints and integer tensors."""
    if not isinstance(n, Tensor):
        return math.isqrt(int(n))
    r = torch.floor(torch.sqrt(n.to(torch.float64))).to(n.dtype)
    # float64 sqrt can be off by one for very large n
    r = torch.where(r * r > n, r - 1, r)
    r = torch.where((r + 1) * (r + 1) <= n, r + 1, r)
    return r


def coefficient_count(max_l: IntLike) -> IntLike:
    """Number of coefficients of an expansion truncated at degree ``max_l``."""
    return (max_l + 1) * (max_l + 1)


def maximum_degree(count: IntLike) -> IntLike:
    """Inverse of :func:`coefficient_count` for perfect-square counts."""
    return _isqrt(count) - 1


def coefficient_index(l: IntLike, m: IntLike) -> IntLike:
    """Flat index of the (l, m) basis function."""
    return l * (l + 1) + m


def degree_order(index: IntLike) -> Tuple[IntLike, IntLike]:
    """Decode a flat index into its (l, m) pair."""
    l = _isqrt(index)
    m = index - l * l - l
    return l, m


__all__ = [
    "coefficient_count",
    "maximum_degree",
    "coefficient_index",
    "degree_order",
]
