from __future__ import annotations

import threading

import pytest
import torch

from shkernels.config import KernelConfig
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
    store,
)


def test_dim3_coercion():
    assert Dim3.of(5) == Dim3(5, 1, 1)
    assert Dim3.of((4, 3)) == Dim3(4, 3, 1)
    assert Dim3.of([2, 3, 4]).volume == 24
    assert tuple(Dim3(1, 2, 3)) == (1, 2, 3)
    with pytest.raises(ValueError):
        Dim3.of((1, 2, 3, 4))


def test_block_sizes():
    assert block_size_2d() == Dim3(16, 16, 1)
    assert block_size_3d() == Dim3(8, 8, 8)
    assert block_size_2d(KernelConfig(block_2d=(4, 4, 1))) == Dim3(4, 4, 1)


@pytest.mark.parametrize(
    "extent, block, expected",
    [
        ((20, 20), (16, 16, 1), Dim3(2, 2, 1)),
        ((16, 16), (16, 16, 1), Dim3(1, 1, 1)),
        ((17, 1), (16, 16, 1), Dim3(2, 1, 1)),
        ((9, 9, 9), (8, 8, 8), Dim3(2, 2, 2)),
        ((0, 5), (16, 16, 1), Dim3(0, 1, 1)),
    ],
)
def test_grid_size_ceil_divides(extent, block, expected):
    assert grid_size(extent, block) == expected


def _count_kernel(idx: ThreadIndex, extent: Dim3, counts: torch.Tensor, seen: list) -> None:
    seen.append(idx.size)
    idx = idx.guard(extent)
    if idx.empty:
        return
    flat = idx.x + extent.x * (idx.y + extent.y * idx.z)
    atomic_add(counts, flat, torch.ones(idx.size, dtype=counts.dtype))


@pytest.mark.parametrize("chunk", [7, 1 << 20])
def test_launch_covers_padded_grid_once(chunk):
    extent = Dim3(20, 5, 3)
    block = Dim3(8, 8, 8)
    grid = grid_size(extent, block)
    counts = torch.zeros(extent.volume + 4)
    counts[extent.volume:] = -1.0
    seen: list = []

    launch(
        _count_kernel, grid, block, extent, counts, seen,
        config=KernelConfig(max_units_per_chunk=chunk),
    )

    assert sum(seen) == grid.volume * block.volume
    assert max(seen) <= chunk
    assert torch.equal(counts[: extent.volume], torch.ones(extent.volume))
    # units outside the extent wrote nothing
    assert torch.equal(counts[extent.volume:], torch.full((4,), -1.0))


def test_atomic_add_sums_duplicates():
    buf = torch.zeros(2, 2, dtype=torch.float64)
    atomic_add(buf, torch.tensor([0, 0, 3, 0]), torch.tensor([1.0, 2.0, 3.0, 4.0], dtype=torch.float32))
    assert buf.tolist() == [[7.0, 0.0], [0.0, 3.0]]


def test_store_and_advance_write_through():
    buf = torch.zeros(6, 3)
    view = advance(buf, 2)
    store(view, torch.tensor([0, 4]), torch.tensor([5.0, 6.0]))
    assert buf[2, 0] == 5.0
    assert buf[3, 1] == 6.0
    assert buf[:2].abs().sum() == 0


def test_dispatch_instance_numbering():
    dims = Dim3(2, 3, 2)
    calls = []
    n = dispatch_instances(dims, calls.append)
    assert n == dims.volume
    assert sorted(calls) == list(range(dims.volume))


def test_dispatch_thread_pool():
    lock = threading.Lock()
    calls = []

    def record(instance: int) -> None:
        with lock:
            calls.append(instance)

    n = dispatch_instances((9, 2, 1), record, config=KernelConfig(batch_workers=4))
    assert n == 18
    assert sorted(calls) == list(range(18))


@pytest.mark.parametrize("workers", [1, 3])
def test_dispatch_propagates_errors(workers):
    def boom(instance: int) -> None:
        if instance == 2:
            raise RuntimeError("instance failed")

    with pytest.raises(RuntimeError, match="instance failed"):
        dispatch_instances((4, 1, 1), boom, config=KernelConfig(batch_workers=workers))


def test_dispatch_empty_dimensions():
    calls = []
    assert dispatch_instances((0, 4, 4), calls.append) == 0
    assert calls == []
