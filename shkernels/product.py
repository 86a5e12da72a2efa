from __future__ import annotations

"""
Product of two spherical functions in coefficient space.

For expansions f = Σ a_i Y_i and g = Σ b_j Y_j truncated at the same degree,
the projection of f·g back onto the first C basis functions is

    out[k] += Σ_{i,j} coupling(i, j, k) a_i b_j

    coupling = sqrt((2 l_i + 1)(2 l_j + 1) / (4π (2 l_k + 1)))
               * <l_i 0; l_j 0 | l_k 0> * <l_i m_i; l_j m_j | l_k m_k>

with (l, m) decoded from each flat index. One work unit per (i, j, k) on a
3D grid; all units with the same k accumulate into ``out[k]``, so the output
must be zeroed first. Accumulation runs in ``out.dtype`` (float32 by default
on devices without float64 atomics, see ``KernelConfig.atomics_dtype``).

Each unit evaluates its own Clebsch–Gordan factors. Units violating the
selection rules (m_k != m_i + m_j, l_k outside [|l_i - l_j|, l_i + l_j], or
l_i + l_j + l_k odd, which zeroes the m = 0 factor) contribute exactly zero
and are dropped right after the bounds guard. The coefficients themselves
are computed in float64 and cast to ``out.dtype``.
"""

import math
from typing import Any, Optional, Sequence, Union

import torch
from torch import Tensor

from shkernels.config import KernelConfig, resolve_config
from shkernels.index_math import degree_order
from shkernels.launch import (
    Dim3,
    ThreadIndex,
    advance,
    atomic_add,
    block_size_3d,
    dispatch_instances,
    grid_size,
    launch,
    require_capacity,
    require_contiguous,
)
from shkernels.special import clebsch_gordan_elementwise


def _product_kernel(
    idx: ThreadIndex,
    coefficient_count: int,
    lhs: Tensor,
    rhs: Tensor,
    out: Tensor,
) -> None:
    C = coefficient_count
    idx = idx.guard((C, C, C))
    if idx.empty:
        return

    lhs_l, lhs_m = degree_order(idx.x)
    rhs_l, rhs_m = degree_order(idx.y)
    out_l, out_m = degree_order(idx.z)
    coupled = (
        (out_m == lhs_m + rhs_m)
        & (out_l >= (lhs_l - rhs_l).abs())
        & (out_l <= lhs_l + rhs_l)
        & ((lhs_l + rhs_l + out_l) % 2 == 0)
    )
    if not bool(coupled.any()):
        return

    lhs_index, rhs_index, out_index = idx.x[coupled], idx.y[coupled], idx.z[coupled]
    lhs_l, lhs_m = lhs_l[coupled], lhs_m[coupled]
    rhs_l, rhs_m = rhs_l[coupled], rhs_m[coupled]
    out_l, out_m = out_l[coupled], out_m[coupled]

    zero = torch.zeros_like(lhs_l)
    cg1 = clebsch_gordan_elementwise(lhs_l, rhs_l, out_l, zero, zero, zero)
    cg2 = clebsch_gordan_elementwise(lhs_l, rhs_l, out_l, lhs_m, rhs_m, out_m)
    norm = torch.sqrt(
        (2 * lhs_l + 1).to(torch.float64)
        * (2 * rhs_l + 1).to(torch.float64)
        / (4.0 * math.pi * (2 * out_l + 1).to(torch.float64))
    )
    coupling = (norm * cg1 * cg2).to(out.dtype)

    dtype = out.dtype
    contributions = coupling * lhs[lhs_index].to(dtype) * rhs[rhs_index].to(dtype)
    atomic_add(out, out_index, contributions)


def _check_product_buffers(
    coefficient_count: int, lhs: Tensor, rhs: Tensor, out: Tensor, instances: int = 1
) -> None:
    if coefficient_count < 0:
        raise ValueError("coefficient_count must be non-negative")
    for name, buf in (("lhs", lhs), ("rhs", rhs), ("out", out)):
        require_contiguous(name, buf)
        if not torch.is_floating_point(buf):
            raise TypeError(f"{name} must be floating point, got {buf.dtype}")
        require_capacity(name, buf, instances * coefficient_count)


def product(
    coefficient_count: int,
    lhs: Tensor,
    rhs: Tensor,
    out: Tensor,
    *,
    config: Optional[KernelConfig] = None,
    logger: Optional[Any] = None,
) -> None:
    """Accumulate the coupled product of ``lhs`` and ``rhs`` into ``out``."""
    _check_product_buffers(coefficient_count, lhs, rhs, out)
    cfg = resolve_config(config)

    block = block_size_3d(cfg)
    launch(
        _product_kernel,
        grid_size((coefficient_count,) * 3, block),
        block,
        coefficient_count,
        lhs.view(-1),
        rhs.view(-1),
        out.view(-1),
        config=cfg,
        device=out.device,
        logger=logger,
        name="product",
    )


def product_batched(
    dimensions: Union[Dim3, Sequence[int]],
    coefficient_count: int,
    lhs: Tensor,
    rhs: Tensor,
    out: Tensor,
    *,
    config: Optional[KernelConfig] = None,
    logger: Optional[Any] = None,
) -> None:
    """Batched :func:`product`.

    Instance ``n`` uses the same offset ``n * coefficient_count`` into all
    three buffers: lhs, rhs and out are laid out identically, one
    coefficient vector per instance.
    """
    dims = Dim3.of(dimensions)
    _check_product_buffers(coefficient_count, lhs, rhs, out, instances=dims.volume)
    lhs, rhs, out = lhs.view(-1), rhs.view(-1), out.view(-1)

    def run_instance(instance: int) -> None:
        offset = coefficient_count * instance
        product(
            coefficient_count,
            advance(lhs, offset),
            advance(rhs, offset),
            advance(out, offset),
            config=config,
            logger=logger,
        )

    dispatch_instances(dims, run_instance, config=config, logger=logger, name="product_batched")


__all__ = ["product", "product_batched"]
