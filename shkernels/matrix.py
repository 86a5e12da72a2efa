from __future__ import annotations

"""
Design matrices: every basis function evaluated at every direction.

Layout
------
A matrix for ``V`` directions and ``C`` coefficients is a flat buffer of
``V * C`` elements in column-major order,

    M[v, c] -> buffer[v + V * c]

so ``buffer.view(C, V).T`` is the usual (V, C) view. Directions are (N, 3)
records ``(r, theta, phi)``; the radius is ignored.

Entries are *accumulated* into the buffer, so it must be zeroed before the
call unless adding onto existing content is intended.
"""

from typing import Any, Optional, Sequence, Union

import torch
from torch import Tensor

from shkernels.config import KernelConfig, resolve_config
from shkernels.evaluator import evaluate_index
from shkernels.index_math import coefficient_count
from shkernels.launch import (
    Dim3,
    ThreadIndex,
    advance,
    atomic_add,
    block_size_2d,
    dispatch_instances,
    grid_size,
    launch,
    require_capacity,
    require_contiguous,
    require_records,
)


def _calculate_matrix_kernel(
    idx: ThreadIndex,
    vector_count: int,
    coefficient_count: int,
    vectors: Tensor,
    output_matrix: Tensor,
) -> None:
    idx = idx.guard((vector_count, coefficient_count))
    if idx.empty:
        return

    vector_index = idx.x
    index = idx.y
    theta = vectors[vector_index, 1]
    phi = vectors[vector_index, 2]

    values = evaluate_index(index, theta, phi)
    atomic_add(output_matrix, vector_index + vector_count * index, values)


def _check_matrix_buffers(
    vector_count: int,
    coefficient_count: int,
    vectors: Tensor,
    output_matrix: Tensor,
    instances: int = 1,
) -> None:
    require_records("vectors", vectors)
    require_contiguous("output_matrix", output_matrix)
    if not torch.is_floating_point(output_matrix):
        raise TypeError(f"output_matrix must be floating point, got {output_matrix.dtype}")
    if vector_count < 0 or coefficient_count < 0:
        raise ValueError("vector_count and coefficient_count must be non-negative")
    require_capacity("vectors", vectors, instances * vector_count, rows=True)
    require_capacity(
        "output_matrix", output_matrix, instances * vector_count * coefficient_count
    )


def calculate_matrix(
    vector_count: int,
    coefficient_count: int,
    vectors: Tensor,
    output_matrix: Tensor,
    *,
    config: Optional[KernelConfig] = None,
    logger: Optional[Any] = None,
) -> None:
    """Accumulate Y_c(vectors[v]) into ``output_matrix[v + V * c]``.

    One work unit per (direction, coefficient) pair on a 2D grid.
    """
    _check_matrix_buffers(vector_count, coefficient_count, vectors, output_matrix)
    cfg = resolve_config(config)
    block = block_size_2d(cfg)
    launch(
        _calculate_matrix_kernel,
        grid_size((vector_count, coefficient_count), block),
        block,
        vector_count,
        coefficient_count,
        vectors,
        output_matrix.view(-1),
        config=cfg,
        logger=logger,
        name="calculate_matrix",
    )


def calculate_matrices(
    dimensions: Union[Dim3, Sequence[int]],
    vector_count: int,
    coefficient_count: int,
    vectors: Tensor,
    output_matrices: Tensor,
    *,
    config: Optional[KernelConfig] = None,
    logger: Optional[Any] = None,
) -> None:
    """Batched :func:`calculate_matrix`.

    Instance ``n`` reads ``vector_count`` directions starting at record
    ``n * vector_count`` and writes its matrix starting at element
    ``n * vector_count * coefficient_count``.
    """
    dims = Dim3.of(dimensions)
    _check_matrix_buffers(
        vector_count, coefficient_count, vectors, output_matrices, instances=dims.volume
    )
    matrices = output_matrices.view(-1)

    def run_instance(instance: int) -> None:
        vectors_offset = vector_count * instance
        matrix_offset = vectors_offset * coefficient_count
        calculate_matrix(
            vector_count,
            coefficient_count,
            advance(vectors, vectors_offset),
            advance(matrices, matrix_offset),
            config=config,
            logger=logger,
        )

    dispatch_instances(
        dims, run_instance, config=config, logger=logger, name="calculate_matrices"
    )


def design_matrix(
    max_l: int,
    vectors: Tensor,
    *,
    config: Optional[KernelConfig] = None,
    logger: Optional[Any] = None,
) -> Tensor:
    """Allocate, fill and return the (V, C) design matrix for ``vectors``.

    The result is a transposed view of the column-major buffer, on the
    device and in the dtype of ``vectors``.
    """
    require_records("vectors", vectors)
    V = int(vectors.shape[0])
    C = coefficient_count(max_l)
    buffer = torch.zeros(V * C, dtype=vectors.dtype, device=vectors.device)
    calculate_matrix(V, C, vectors, buffer, config=config, logger=logger)
    return buffer.view(C, V).T


__all__ = ["calculate_matrix", "calculate_matrices", "design_matrix"]
