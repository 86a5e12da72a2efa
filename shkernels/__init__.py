"""Data-parallel real spherical-harmonic kernels on torch devices.

Public surface
--------------
- Index packing: ``coefficient_count``, ``maximum_degree``,
  ``coefficient_index``, ``degree_order``.
- Evaluation and reference helpers: ``evaluate``, ``evaluate_sum``,
  ``is_zero``, ``l1_distance``, ``l2_distance``.
- Kernels: ``calculate_matrix(es)``, ``sample``, ``sample_sum(s)``,
  ``product`` / ``product_batched``.
- Execution settings: ``KernelConfig`` / ``load_config``.
"""

from __future__ import annotations

from .config import KernelConfig, load_config
from .evaluator import evaluate, evaluate_index, evaluate_sum, is_zero, l1_distance, l2_distance
from .index_math import coefficient_count, coefficient_index, degree_order, maximum_degree
from .launch import Dim3, block_size_2d, block_size_3d, grid_size, synchronize
from .matrix import calculate_matrices, calculate_matrix, design_matrix
from .product import product, product_batched
from .sampling import sample, sample_sum, sample_sums

__version__ = "0.1.0"

__all__ = [
    "KernelConfig",
    "load_config",
    "evaluate",
    "evaluate_index",
    "evaluate_sum",
    "is_zero",
    "l1_distance",
    "l2_distance",
    "coefficient_count",
    "coefficient_index",
    "degree_order",
    "maximum_degree",
    "Dim3",
    "block_size_2d",
    "block_size_3d",
    "grid_size",
    "synchronize",
    "calculate_matrix",
    "calculate_matrices",
    "design_matrix",
    "sample",
    "sample_sum",
    "sample_sums",
    "product",
    "product_batched",
]
