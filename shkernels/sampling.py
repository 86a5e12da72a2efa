from __future__ import annotations

"""
Tessellated sampling of spherical functions.

An ``X x Y`` tessellation places one vertex at every (longitude, latitude)
grid position

    theta = 2π * longitude / X          (azimuth)
    phi   =  π * latitude  / (Y - 1)    (polar, both poles included)

and stores it as the point record

    points[latitude + longitude * Y] = (value, theta, phi).

Every vertex also emits the two triangles of the quad spanning it and its
next neighbours, six vertex indices starting at ``6 * point_offset``::

    (lon, lat) (lon, lat+1) (lon+1, lat+1)  (lon, lat) (lon+1, lat+1) (lon+1, lat)

Both neighbours wrap modulo the grid size. Wrapping in longitude closes the
seam at theta = 2π; wrapping in latitude joins the last row (south pole) to
the first (north pole) with a degenerate strip, which mesh consumers rely on.
Indices are shifted by ``base_index`` so several meshes can share one
vertex pool. ``Y == 1`` divides by zero and gives non-finite angles.
"""

import math
from typing import Any, Optional, Sequence, Tuple, Union

import torch
from torch import Tensor

from shkernels.config import KernelConfig, resolve_config
from shkernels.evaluator import evaluate, evaluate_index
from shkernels.launch import (
    Dim3,
    ThreadIndex,
    advance,
    atomic_add,
    block_size_2d,
    block_size_3d,
    dispatch_instances,
    grid_size,
    launch,
    require_capacity,
    require_contiguous,
    require_records,
    store,
)

_VALUE, _THETA, _PHI = 0, 1, 2
_INDICES_PER_POINT = 6


# ---------------------------------------------------------------------------
# Per-vertex helpers
# ---------------------------------------------------------------------------


def _vertex_angles(
    longitude: Tensor, latitude: Tensor, tessellations: Dim3, dtype: torch.dtype
) -> Tuple[Tensor, Tensor]:
    theta = 2.0 * math.pi * longitude.to(dtype) / tessellations.x
    phi = math.pi * latitude.to(dtype) / (tessellations.y - 1)
    return theta, phi


def _triangle_indices(
    longitude: Tensor, latitude: Tensor, tessellations: Dim3, base_index: int
) -> Tensor:
    """(n, 6) vertex indices of the two triangles owned by each vertex."""
    X, Y = tessellations.x, tessellations.y
    next_lon = (longitude + 1) % X
    next_lat = (latitude + 1) % Y

    here = longitude * Y + latitude
    up = longitude * Y + next_lat
    diagonal = next_lon * Y + next_lat
    across = next_lon * Y + latitude
    return torch.stack([here, up, diagonal, here, diagonal, across], dim=-1) + base_index


def _write_vertex(
    longitude: Tensor,
    latitude: Tensor,
    tessellations: Dim3,
    values: Tensor,
    theta: Tensor,
    phi: Tensor,
    output_points: Tensor,
    output_indices: Tensor,
    base_index: int,
) -> None:
    point_offset = latitude + longitude * tessellations.y
    record = point_offset * 3
    store(output_points, record + _VALUE, values)
    store(output_points, record + _THETA, theta)
    store(output_points, record + _PHI, phi)

    slots = point_offset.unsqueeze(-1) * _INDICES_PER_POINT + torch.arange(
        _INDICES_PER_POINT, device=point_offset.device
    )
    quads = _triangle_indices(longitude, latitude, tessellations, base_index)
    store(output_indices, slots.reshape(-1), quads.reshape(-1))


# ---------------------------------------------------------------------------
# Kernels
# ---------------------------------------------------------------------------


def _sample_kernel(
    idx: ThreadIndex,
    l: int,
    m: int,
    tessellations: Dim3,
    output_points: Tensor,
    output_indices: Tensor,
) -> None:
    idx = idx.guard((tessellations.x, tessellations.y))
    if idx.empty:
        return

    longitude, latitude = idx.x, idx.y
    theta, phi = _vertex_angles(longitude, latitude, tessellations, output_points.dtype)
    values = evaluate(l, m, theta, phi)
    _write_vertex(
        longitude, latitude, tessellations, values, theta, phi,
        output_points, output_indices, 0,
    )


def _sample_sum_reset_kernel(
    idx: ThreadIndex,
    tessellations: Dim3,
    output_points: Tensor,
    output_indices: Tensor,
    base_index: int,
) -> None:
    idx = idx.guard((tessellations.x, tessellations.y))
    if idx.empty:
        return

    longitude, latitude = idx.x, idx.y
    theta, phi = _vertex_angles(longitude, latitude, tessellations, output_points.dtype)
    _write_vertex(
        longitude, latitude, tessellations, torch.zeros_like(theta), theta, phi,
        output_points, output_indices, base_index,
    )


def _sample_sum_kernel(
    idx: ThreadIndex,
    coefficient_count: int,
    tessellations: Dim3,
    coefficients: Tensor,
    output_points: Tensor,
) -> None:
    idx = idx.guard((tessellations.x, tessellations.y, coefficient_count))
    if idx.empty:
        return

    longitude, latitude, index = idx.x, idx.y, idx.z
    theta, phi = _vertex_angles(longitude, latitude, tessellations, output_points.dtype)
    contributions = evaluate_index(index, theta, phi) * coefficients[index].to(theta.dtype)

    point_offset = latitude + longitude * tessellations.y
    atomic_add(output_points, point_offset * 3 + _VALUE, contributions)


# ---------------------------------------------------------------------------
# Host entry points
# ---------------------------------------------------------------------------


def _check_sample_buffers(
    tessellations: Dim3,
    output_points: Tensor,
    output_indices: Tensor,
    instances: int = 1,
) -> None:
    require_records("output_points", output_points)
    require_contiguous("output_indices", output_indices)
    if torch.is_floating_point(output_indices) or output_indices.dtype == torch.bool:
        raise TypeError(f"output_indices must be an integer tensor, got {output_indices.dtype}")
    if tessellations.x < 0 or tessellations.y < 0:
        raise ValueError(f"tessellations must be non-negative, got {tuple(tessellations)}")
    vertices = tessellations.x * tessellations.y
    require_capacity("output_points", output_points, instances * vertices, rows=True)
    require_capacity(
        "output_indices", output_indices, instances * vertices * _INDICES_PER_POINT
    )


def _check_coefficients(coefficient_count: int, coefficients: Tensor, instances: int = 1) -> None:
    require_contiguous("coefficients", coefficients)
    if not torch.is_floating_point(coefficients):
        raise TypeError(f"coefficients must be floating point, got {coefficients.dtype}")
    if coefficient_count < 0:
        raise ValueError("coefficient_count must be non-negative")
    require_capacity("coefficients", coefficients, instances * coefficient_count)


def sample(
    l: int,
    m: int,
    tessellations: Union[Dim3, Sequence[int]],
    output_points: Tensor,
    output_indices: Tensor,
    *,
    config: Optional[KernelConfig] = None,
    logger: Optional[Any] = None,
) -> None:
    """Sample the single basis function Y_l^m on the tessellation.

    Every point record and every index slot is overwritten.
    """
    tess = Dim3.of(tessellations)
    _check_sample_buffers(tess, output_points, output_indices)
    cfg = resolve_config(config)
    block = block_size_2d(cfg)
    launch(
        _sample_kernel,
        grid_size((tess.x, tess.y), block),
        block,
        int(l),
        int(m),
        tess,
        output_points,
        output_indices,
        config=cfg,
        logger=logger,
        name="sample",
    )


def sample_sum(
    coefficient_count: int,
    tessellations: Union[Dim3, Sequence[int]],
    coefficients: Tensor,
    output_points: Tensor,
    output_indices: Tensor,
    base_index: int = 0,
    *,
    config: Optional[KernelConfig] = None,
    logger: Optional[Any] = None,
) -> None:
    """Reconstruct Σ_c coefficients[c] Y_c on the tessellation.

    Two launches: a 2D pass that zeroes every vertex value and writes its
    angles and triangle indices, then a 3D pass over (longitude, latitude,
    coefficient) that adds each coefficient's contribution. Launches on a
    device queue run in order, so no accumulation can precede its reset and
    stale buffer contents never leak into the result.
    """
    tess = Dim3.of(tessellations)
    _check_sample_buffers(tess, output_points, output_indices)
    _check_coefficients(coefficient_count, coefficients)
    cfg = resolve_config(config)

    block = block_size_2d(cfg)
    launch(
        _sample_sum_reset_kernel,
        grid_size((tess.x, tess.y), block),
        block,
        tess,
        output_points,
        output_indices,
        int(base_index),
        config=cfg,
        logger=logger,
        name="sample_sum:reset",
    )

    block = block_size_3d(cfg)
    launch(
        _sample_sum_kernel,
        grid_size((tess.x, tess.y, coefficient_count), block),
        block,
        coefficient_count,
        tess,
        coefficients.view(-1),
        output_points,
        config=cfg,
        logger=logger,
        name="sample_sum",
    )


def sample_sums(
    dimensions: Union[Dim3, Sequence[int]],
    coefficient_count: int,
    tessellations: Union[Dim3, Sequence[int]],
    coefficients: Tensor,
    output_points: Tensor,
    output_indices: Tensor,
    base_index: int = 0,
    *,
    config: Optional[KernelConfig] = None,
    logger: Optional[Any] = None,
) -> None:
    """Batched :func:`sample_sum`.

    Instance ``n`` reconstructs coefficient vector ``n`` (starting at
    element ``n * coefficient_count``) into the ``n``-th block of
    ``X * Y`` points and ``6 * X * Y`` indices. Its indices are shifted by
    ``base_index + n * X * Y`` so they address the shared point pool.
    """
    dims = Dim3.of(dimensions)
    tess = Dim3.of(tessellations)
    _check_sample_buffers(tess, output_points, output_indices, instances=dims.volume)
    _check_coefficients(coefficient_count, coefficients, instances=dims.volume)
    vertices = tess.x * tess.y
    coefficients = coefficients.view(-1)
    indices = output_indices.view(-1)

    def run_instance(instance: int) -> None:
        points_offset = vertices * instance
        sample_sum(
            coefficient_count,
            tess,
            advance(coefficients, coefficient_count * instance),
            advance(output_points, points_offset),
            advance(indices, points_offset * _INDICES_PER_POINT),
            base_index + points_offset,
            config=config,
            logger=logger,
        )

    dispatch_instances(dims, run_instance, config=config, logger=logger, name="sample_sums")


__all__ = ["sample", "sample_sum", "sample_sums"]
